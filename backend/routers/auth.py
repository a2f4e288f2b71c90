"""
Authentication endpoints.

Public endpoints:
    POST /api/auth/register           - email/password registration, issues a token
    POST /api/auth/login              - email/password login
    POST /api/auth/uuid-login         - anonymous UUID login (no uuid = new account)
    POST /api/auth/login/{method_id}  - generic strategy login
    GET  /api/auth/methods            - effective login methods for a service
    POST /api/auth/verify-token       - verify a token (caller sends service_id + secret)
    POST /api/auth/authorize          - permission check (caller sends service_id + secret)

API key endpoints (``x-api-key`` header):
    POST /api/auth/verify             - check an email and password

Protected endpoints:
    GET  /api/auth/me                 - current user info
    POST /api/auth/logout             - audit-only logout

Every login endpoint accepts an optional ``service_id`` (defaults to the hub)
and ``redirect_uri``, in the body or the query string. With a redirect URI the
response carries ``redirect_target``, the URI with ``token`` and ``user_id``
appended.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from auth import auth_methods, secret_vault
from auth.authorization import authorize as authorize_token
from auth.authorization import effective_permissions, verify_token
from auth.dependencies import get_current_user, require_api_key
from auth.errors import (
    InvalidCredentials,
    InvalidServiceCredentials,
    NotFound,
    TokenInvalid,
)
from auth.handler import LoginOutcome, auth_handler
from auth.strategies import EmailRegisterRequest
from config import HUB_SERVICE_ID, settings
from database import get_db
from models import ApiKey, User
from schemas import (
    AuthorizeRequest,
    AuthorizeResponse,
    AuthResponse,
    CredentialCheckRequest,
    CredentialCheckResponse,
    LoginMethodsResponse,
    LoginRequest,
    RegisterRequest,
    ServiceCredentials,
    UserResponse,
    UserSummary,
    UuidLoginBody,
    VerifyTokenRequest,
    VerifyTokenResponse,
    IssuanceTarget,
)
from utils.audit import audit

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


def _as_request_error(exc: ValidationError) -> RequestValidationError:
    """Report a validation failure inside a handler like a FastAPI body error."""
    return RequestValidationError(
        [{**err, "loc": ("body", *err["loc"])} for err in exc.errors()]
    )


def _target(
    body_service_id: Optional[str],
    body_redirect_uri: Optional[str],
    service_id: Optional[str],
    redirect_uri: Optional[str],
) -> IssuanceTarget:
    # Body values win over query values
    try:
        return IssuanceTarget(
            service_id=body_service_id or service_id,
            redirect_uri=body_redirect_uri or redirect_uri,
        )
    except ValidationError as exc:
        raise _as_request_error(exc)


async def _response(db: AsyncSession, outcome: LoginOutcome, method: str) -> AuthResponse:
    issued = outcome.issued
    response = AuthResponse(
        token=issued.token,
        expires_in=issued.expires_in,
        service_id=issued.service_id,
        user=UserSummary.model_validate(outcome.user),
        is_new_user=outcome.is_new_user,
        redirect_target=issued.redirect_target,
    )
    await audit.log_login(
        db,
        user_id=response.user.id,
        method=method,
        service_id=issued.service_id,
        is_new_user=outcome.is_new_user,
        redirected=issued.redirect_target is not None,
    )
    return response


async def _login(
    db: AsyncSession,
    method_id: str,
    credentials: Any,
    target: IssuanceTarget,
) -> AuthResponse:
    try:
        outcome = await auth_handler.authenticate(
            db,
            method_id,
            credentials,
            service_id=target.service_id,
            redirect_uri=target.redirect_uri,
        )
    except ValidationError as exc:
        raise _as_request_error(exc)
    except InvalidCredentials as exc:
        await audit.log_login_failed(db, method_id, exc.code)
        raise
    return await _response(db, outcome, method_id)


# ── Public endpoints ───────────────────────────────────────────────────


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    body: RegisterRequest,
    service_id: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Create an email/password account and sign it in."""
    if not settings.ALLOW_REGISTRATION:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Registration is disabled",
        )
    target = _target(body.service_id, body.redirect_uri, service_id, redirect_uri)
    outcome = await auth_handler.register(
        db,
        EmailRegisterRequest(email=body.email, password=body.password),
        service_id=target.service_id,
        redirect_uri=target.redirect_uri,
    )
    return await _response(db, outcome, "email")


@router.post("/login", response_model=AuthResponse)
async def login(
    body: LoginRequest,
    service_id: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Authenticate with email and password."""
    target = _target(body.service_id, body.redirect_uri, service_id, redirect_uri)
    return await _login(
        db, "email", {"email": body.email, "password": body.password}, target
    )


@router.post("/uuid-login", response_model=AuthResponse)
async def uuid_login(
    body: Optional[UuidLoginBody] = None,
    service_id: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """
    Anonymous login. Without a ``uuid`` a new account is created and its ID
    returned; the first account ever created becomes the hub admin.
    """
    body = body or UuidLoginBody()
    target = _target(body.service_id, body.redirect_uri, service_id, redirect_uri)
    return await _login(db, "uuid", {"uuid": body.uuid}, target)


@router.post("/login/{method_id}", response_model=AuthResponse)
async def strategy_login(
    method_id: str,
    body: Optional[dict[str, Any]] = Body(None),
    service_id: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    """Log in through any registered strategy. Placeholder methods return 501."""
    credentials = dict(body or {})
    target = _target(
        credentials.pop("service_id", None),
        credentials.pop("redirect_uri", None),
        service_id,
        redirect_uri,
    )
    return await _login(db, method_id, credentials, target)


@router.get("/methods", response_model=LoginMethodsResponse)
async def list_login_methods(
    service_id: str = Query(HUB_SERVICE_ID),
    include_disabled: bool = Query(False),
    db: AsyncSession = Depends(get_db),
):
    """Ordered login methods and branding for a service's login page."""
    config, methods = await auth_methods.get_login_page(db, service_id)
    if not include_disabled:
        methods = [m for m in methods if m.enabled]
    return LoginMethodsResponse(
        service_id=service_id,
        title=config.title,
        description=config.description,
        logo_url=config.logo_url,
        primary_color=config.primary_color,
        default_method=config.default_method,
        methods=methods,
    )


async def _authenticate_service(
    db: AsyncSession, credentials: ServiceCredentials, endpoint: str
) -> None:
    """Unknown services and wrong secrets are rejected alike."""
    try:
        valid = await secret_vault.verify_secret(
            db, credentials.service_id, credentials.secret
        )
    except NotFound:
        valid = False
    if not valid:
        await audit.log_service_auth_failed(db, credentials.service_id, endpoint)
        raise InvalidServiceCredentials("Invalid service ID or secret", field="secret")


@router.post("/verify-token", response_model=VerifyTokenResponse)
async def verify(body: VerifyTokenRequest, db: AsyncSession = Depends(get_db)):
    """
    Verify a token for the calling service, which authenticates with its
    ``service_id`` and ``secret``. Returns the claims and the *current*
    permissions of the token's roles, or the reason it was rejected.
    """
    await _authenticate_service(db, body, "verify-token")
    try:
        claims = await verify_token(db, body.token, body.service_id)
    except TokenInvalid as exc:
        return VerifyTokenResponse(valid=False, reason=exc.reason)
    permissions = await effective_permissions(db, claims, body.service_id)
    return VerifyTokenResponse(valid=True, claims=claims, permissions=sorted(permissions))


@router.post("/authorize", response_model=AuthorizeResponse)
async def authorize(body: AuthorizeRequest, db: AsyncSession = Depends(get_db)):
    """Does the token's principal currently hold ``permission`` on the calling service?"""
    await _authenticate_service(db, body, "authorize")
    allowed = await authorize_token(db, body.token, body.service_id, body.permission)
    return AuthorizeResponse(allowed=allowed)


@router.post("/verify", response_model=CredentialCheckResponse)
async def verify_credentials(
    body: CredentialCheckRequest,
    api_key: ApiKey = Depends(require_api_key),
    db: AsyncSession = Depends(get_db),
):
    """
    Check an email and password for a trusted backend (``x-api-key``).

    Issues no token. A wrong password and an unknown email both answer
    ``valid: false``.
    """
    strategy = auth_handler.strategy_for("email")
    try:
        result = await strategy.authenticate(db, strategy.validate_request(body.model_dump()))
    except InvalidCredentials:
        logger.debug(f"Credential check failed for API key {api_key.id}")
        return CredentialCheckResponse(valid=False)
    if not result.user.is_active:
        return CredentialCheckResponse(valid=False)
    return CredentialCheckResponse(valid=True, user_id=result.user.id, email=result.user.email)


# ── Protected endpoints ────────────────────────────────────────────────


@router.get("/me", response_model=UserResponse)
async def get_me(user: User = Depends(get_current_user)):
    """Get the authenticated user's profile."""
    return UserResponse.model_validate(user)


@router.post("/logout")
async def logout(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Logout endpoint - records the event in audit log.

    Tokens are stateless; the client discards its token. Rotating the hub
    service's secret invalidates every outstanding hub token.
    """
    await audit.log_logout(db, user.id)
    return {"status": "ok", "message": "Logged out"}
