"""
FastAPI dependencies for authentication and hub-level access control.

Hub tokens are ordinary service tokens whose audience is the hub's own
service ID, so they are verified by the same resolver as any other token.

Usage in routers::

    from auth.dependencies import require_admin, get_current_user

    @router.get("/admin-only")
    async def admin_endpoint(user: User = Depends(require_admin)):
        ...

    @router.get("/any-authed")
    async def any_endpoint(user: User = Depends(get_current_user)):
        ...

    @router.get("/for-backends")
    async def backend_endpoint(api_key: ApiKey = Depends(require_api_key)):
        ...
"""

import logging
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from config import HUB_SERVICE_ID, settings
from database import get_db
from models import ApiKey, User
from utils.audit import audit

from .api_keys import verify_api_key
from .authorization import verify_token
from .errors import TokenInvalid

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)
_api_key_scheme = APIKeyHeader(name="x-api-key", auto_error=False)


async def _user_from_token(db: AsyncSession, token: str) -> User:
    try:
        claims = await verify_token(db, token, HUB_SERVICE_ID)
    except TokenInvalid as exc:
        logger.debug(f"Rejected hub token: {exc.reason}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await db.get(User, claims["sub"])
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found or inactive",
        )
    audit.set_actor(f"user:{user.id}")
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """
    Extract and validate the hub JWT from ``Authorization: Bearer <token>``.

    Raises:
        HTTPException 401 if the token is missing, invalid, or the user is inactive.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return await _user_from_token(db, credentials.credentials)


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> Optional[User]:
    """
    Like :func:`get_current_user` but returns ``None`` instead of raising
    when authentication is missing or invalid.
    """
    if not credentials:
        return None
    try:
        return await _user_from_token(db, credentials.credentials)
    except HTTPException:
        return None


def require_role(*allowed_roles: str):
    """
    Dependency factory for hub-level role checks.

    Only gates hub administration. Access to downstream services is decided
    by service-scoped role assignments, never by ``User.role``.
    """

    async def _check_role(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
        db: AsyncSession = Depends(get_db),
    ) -> User:
        # When auth is disabled, allow all requests with a synthetic admin user
        if not settings.AUTH_ENABLED:
            return User(id=None, email="anon@localhost", role="admin", is_active=True)

        user = await get_current_user(credentials, db)
        if user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=(
                    f"Insufficient permissions. Your role '{user.role}' "
                    f"does not have access. Required: {', '.join(allowed_roles)}"
                ),
            )
        return user

    return _check_role


require_admin = require_role("admin")
require_any_authenticated = require_role("user", "admin")


async def require_api_key(
    presented: Optional[str] = Depends(_api_key_scheme),
    db: AsyncSession = Depends(get_db),
) -> ApiKey:
    """
    Authenticate an external backend by its ``x-api-key`` header.

    Raises:
        HTTPException 401 if the header is missing or matches no stored key.
    """
    if not presented:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key is required",
        )
    api_key = await verify_api_key(db, presented)
    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
    audit.set_actor(f"api_key:{api_key.id}")
    return api_key
