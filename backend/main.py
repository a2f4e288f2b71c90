import time
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from auth.errors import AuthHubError
from config import HUB_SERVICE_ID, settings
from database import init_db, close_db, AsyncSessionLocal
from routers import (
    auth_router,
    services_router,
    rbac_router,
    users_router,
    user_directory_router,
    api_keys_router,
    audit_logs_router,
)
from utils.logging_utils import setup_logging, get_logger, LogTimer
from utils.audit import audit

# Configure logging - INFO by default, DEBUG via LOG_LEVEL
setup_logging(level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    logger.info("=" * 60)
    logger.info("AUTHHUB STARTING UP")
    logger.info(f"App: {settings.APP_NAME} v{settings.APP_VERSION}")

    with LogTimer(logger, "Database initialization"):
        await init_db()

    from services.seed import seed_database
    async with AsyncSessionLocal() as db:
        await seed_database(db)
    logger.info(f"Hub service: {HUB_SERVICE_ID}")

    # Run startup health checks
    from services.health import run_health_checks
    health = await run_health_checks()
    for check in health.checks:
        status_icon = "+" if check.status == "ok" else "!"
        detail = ""
        if check.message:
            detail += f" ({check.message})"
        if check.response_time_ms is not None:
            detail += f" [{check.response_time_ms:.1f}ms]"
        logger.info(f"  {status_icon} {check.name}: {check.status}{detail}")
    if health.status != "healthy":
        logger.warning(f"STARTUP HEALTH: {health.status.upper()} - some checks failed")

    if not settings.AUTH_ENABLED:
        logger.warning("AUTH_ENABLED=False: admin endpoints are open to anyone")

    logger.info("STARTUP COMPLETE - Ready to accept requests")
    logger.info("=" * 60)

    yield

    logger.info("AUTHHUB SHUTTING DOWN")
    await close_db()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    lifespan=lifespan,
)


# ── Error handlers ────────────────────────────────────────────────────

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
):
    """
    Return user-friendly error messages when request validation fails.

    Instead of Pydantic's raw error output, this returns a structured
    response with per-field error messages.
    """
    errors = []
    for error in exc.errors():
        # Build a dotted field path (skip the top-level "body"/"query" prefix)
        loc_parts = [str(x) for x in error.get("loc", [])]
        if loc_parts and loc_parts[0] in ("body", "query", "path"):
            loc_parts = loc_parts[1:]
        field = ".".join(loc_parts) if loc_parts else "unknown"

        msg = error.get("msg", "Validation error")
        # Pydantic wraps custom ValueError messages in "Value error, ..."
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]

        errors.append({
            "field": field,
            "message": msg,
            "type": error.get("type", "unknown"),
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "detail": "Validation failed",
            "errors": errors,
        },
    )


@app.exception_handler(AuthHubError)
async def authhub_exception_handler(request: Request, exc: AuthHubError):
    """
    Render domain errors. Server-side failures are logged with context and
    returned with an opaque message.
    """
    if exc.status_code >= 500:
        logger.error(
            f"{exc.__class__.__name__} on {request.method} {request.url.path}: "
            f"{exc.message} rid={(audit.get_request_id() or '')[:8]}"
        )
        message = "Internal error; see server logs"
        if exc.status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
            message = exc.message
    else:
        message = exc.message

    content = {
        "detail": message,
        "error": exc.code,
        "errors": [{"field": exc.field or "unknown", "message": message}],
    }
    if exc.status_code < 500 and exc.details:
        content.update(exc.details)
    reason = getattr(exc, "reason", None)
    if reason:
        content["reason"] = reason

    headers = None
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(status_code=exc.status_code, content=content, headers=headers)


# ── Request ID + request logging middleware ───────────────────────────

@app.middleware("http")
async def request_lifecycle(request: Request, call_next):
    """Assign a request ID, log timing, and add the ID to response headers."""
    request_id = str(uuid.uuid4())
    audit.set_request_id(request_id)
    audit.set_actor(None)
    audit.set_client(
        request.client.host if request.client else None,
        request.headers.get("user-agent"),
    )

    start_time = time.perf_counter()
    logger.debug(f"→ {request.method} {request.url.path}")

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000
    status_indicator = "+" if response.status_code < 400 else "!"
    # Path only: query strings may carry tokens on redirect handoffs
    logger.info(
        f"{status_indicator} {request.method} {request.url.path} "
        f"[{response.status_code}] {duration_ms:.1f}ms rid={request_id[:8]}"
    )

    response.headers["X-Request-ID"] = request_id
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=settings.CORS_ALLOW_METHODS,
    allow_headers=settings.CORS_ALLOW_HEADERS,
)

app.include_router(auth_router)
app.include_router(services_router)
app.include_router(rbac_router)
app.include_router(users_router)
app.include_router(user_directory_router)
app.include_router(api_keys_router)
app.include_router(audit_logs_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Health check endpoint with component status breakdown."""
    from services.health import run_health_checks
    health = await run_health_checks()
    status_code = 200 if health.status in ("healthy", "degraded") else 503
    return JSONResponse(content=health.model_dump(), status_code=status_code)


@app.get("/api", tags=["root"])
async def api_root():
    """API root endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "hub_service_id": HUB_SERVICE_ID,
        "docs": "/docs",
        "openapi": "/openapi.json",
        "endpoints": {
            "auth": "/api/auth",
            "services": "/api/services",
            "rbac": "/api/admin/rbac",
            "users": "/api/admin/users",
            "assignments": "/api/admin/user-service-roles",
            "audit_logs": "/api/admin/audit-logs",
            "api_keys": "/api/keys",
            "user_directory": "/api/users",
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
    )
