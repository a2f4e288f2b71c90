"""
Health check service for AuthHub.

Checks database connectivity, that the secret vault's master key can
encrypt and decrypt, and tracks uptime. Returns structured health responses
with per-component status.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import text

from auth import secret_vault
from auth.errors import SecretDecryptionError
from config import settings
from database import AsyncSessionLocal

logger = logging.getLogger(__name__)

# Captured at module load - used to compute uptime
_start_time = time.monotonic()

_DEFAULT_MASTER_KEY = "change-me-in-production"


class ComponentHealth(BaseModel):
    name: str
    status: str  # "ok" | "degraded" | "error"
    message: Optional[str] = None
    response_time_ms: Optional[float] = None


class HealthResponse(BaseModel):
    status: str  # "healthy" | "degraded" | "unhealthy"
    app: str
    version: str
    uptime_seconds: float
    checks: list[ComponentHealth]
    timestamp: str


async def check_database() -> ComponentHealth:
    """Check database connectivity by running SELECT 1."""
    start = time.perf_counter()
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        elapsed = (time.perf_counter() - start) * 1000
        return ComponentHealth(
            name="database",
            status="ok",
            response_time_ms=round(elapsed, 1),
        )
    except Exception as e:
        elapsed = (time.perf_counter() - start) * 1000
        logger.error(f"Database health check failed: {e}")
        return ComponentHealth(
            name="database",
            status="error",
            message=str(e),
            response_time_ms=round(elapsed, 1),
        )


def check_secret_vault() -> ComponentHealth:
    """Encrypt and decrypt a throwaway secret with the configured master key."""
    sample = secret_vault.generate_secret()
    try:
        ciphertext = secret_vault.encrypt_secret(sample, "health-check")
        ok = secret_vault.reveal(ciphertext, "health-check") == sample
    except SecretDecryptionError:
        ok = False
    if not ok:
        return ComponentHealth(
            name="secret_vault",
            status="error",
            message="Encryption round trip failed",
        )
    if settings.SECRET_ENCRYPTION_KEY == _DEFAULT_MASTER_KEY:
        return ComponentHealth(
            name="secret_vault",
            status="degraded",
            message="SECRET_ENCRYPTION_KEY is the built-in default",
        )
    return ComponentHealth(name="secret_vault", status="ok")


async def run_health_checks() -> HealthResponse:
    """Run all health checks and return aggregated status."""
    checks = [
        await check_database(),
        check_secret_vault(),
    ]

    # Without the database or the vault no token can be issued or verified
    critical_names = {"database", "secret_vault"}
    has_critical_error = any(
        c.status == "error" and c.name in critical_names for c in checks
    )
    has_any_problem = any(c.status != "ok" for c in checks)

    if has_critical_error:
        overall = "unhealthy"
    elif has_any_problem:
        overall = "degraded"
    else:
        overall = "healthy"

    return HealthResponse(
        status=overall,
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        uptime_seconds=round(time.monotonic() - _start_time, 1),
        checks=checks,
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
