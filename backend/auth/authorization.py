"""
Authorization resolver: token verification and permission checks.

Tokens are verified against the service's *current* secret, so rotating a
secret invalidates every token issued before the rotation. Permissions are
never read from the token; they are re-derived from the RBAC graph for the
roles the token names, limited to roles the user still holds.
"""

import logging
from typing import Any, Dict

from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings

from . import rbac_store, secret_vault
from .errors import (
    NotFound,
    TokenExpired,
    TokenInvalid,
    TokenMalformed,
    TokenWrongAudience,
)

logger = logging.getLogger(__name__)


def _claimed_audience(token: str):
    try:
        return jwt.get_unverified_claims(token).get("aud")
    except JWTError:
        return None


def _names_other_audience(claimed, service_id: str) -> bool:
    """True if ``aud`` is present and does not include ``service_id``."""
    if claimed is None:
        return False
    if isinstance(claimed, list):
        return service_id not in claimed
    return claimed != service_id


async def verify_token(db: AsyncSession, token: str, service_id: str) -> Dict[str, Any]:
    """
    Verify a token for ``service_id`` and return its claims.

    Raises:
        TokenExpired: signature valid but ``exp`` has passed.
        TokenWrongAudience: token was issued for another service.
        TokenMalformed: bad signature, unparseable token, or missing claims.
    """
    if _names_other_audience(_claimed_audience(token), service_id):
        raise TokenWrongAudience("Token was issued for a different service")

    try:
        secret = await secret_vault.get_signing_secret(db, service_id)
    except NotFound:
        raise TokenWrongAudience(f"Unknown service '{service_id}'")
    if secret is None:
        raise TokenMalformed("Service has no signing secret; no token can be valid")

    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[settings.JWT_ALGORITHM],
            audience=service_id,
        )
    except ExpiredSignatureError:
        raise TokenExpired("Token has expired")
    except JWTError as exc:
        raise TokenMalformed(f"Token could not be verified: {exc.__class__.__name__}")

    if claims.get("type") != "access" or not claims.get("sub"):
        raise TokenMalformed("Not an access token")
    if not isinstance(claims.get("roles", []), list):
        raise TokenMalformed("Token roles claim is not a list")
    return claims


async def effective_permissions(
    db: AsyncSession, claims: Dict[str, Any], service_id: str
) -> set[str]:
    """Current permissions for the roles named in verified ``claims``."""
    held = {r.id for r in await rbac_store.resolve_roles(db, claims["sub"], service_id)}
    role_ids = [r for r in claims.get("roles", []) if r in held]
    return await rbac_store.permissions_for_roles(db, service_id, role_ids)


async def authorize(
    db: AsyncSession, token: str, service_id: str, required_permission: str
) -> bool:
    """True if the token's principal currently holds ``required_permission``."""
    try:
        claims = await verify_token(db, token, service_id)
    except TokenInvalid as exc:
        logger.info(f"Authorization denied on service {service_id}: token {exc.reason}")
        return False

    granted = required_permission in await effective_permissions(db, claims, service_id)
    if not granted:
        logger.debug(
            f"Authorization denied on service {service_id}: user {claims['sub']} "
            f"lacks '{required_permission}'"
        )
    return granted
