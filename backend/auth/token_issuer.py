"""Service-scoped JWT issuance using python-jose."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, NamedTuple, Optional
from urllib.parse import urlencode, urlsplit

from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models import User

from . import rbac_store, secret_vault
from .errors import NotFound, SecretDecryptionError, ServiceNotConfigured

logger = logging.getLogger(__name__)


class IssuedToken(NamedTuple):
    token: str
    service_id: str
    redirect_target: Optional[str]
    expires_in: int
    roles: List[str]


def sign_token(
    secret: str,
    user_id: str,
    service_id: str,
    role_ids: List[str],
    extra_claims: Optional[Dict[str, Any]] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a signed JWT access token.

    Args:
        secret: The service's plaintext signing secret.
        user_id: Subject.
        service_id: Audience.
        role_ids: Role IDs the user holds on the service.
        extra_claims: Optional additional claims to embed.
        expires_delta: Custom expiration (default from settings).

    Returns:
        Encoded JWT string.
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.TOKEN_EXPIRATION_MINUTES)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": user_id,
        "aud": service_id,
        "roles": list(role_ids),
        "iat": now,
        "exp": now + expires_delta,
        "type": "access",
    }
    if extra_claims:
        payload.update(extra_claims)

    return jwt.encode(payload, secret, algorithm=settings.JWT_ALGORITHM)


def build_redirect_target(
    redirect_uri: Optional[str], token: str, user_id: str
) -> Optional[str]:
    """
    Attach ``token`` and ``user_id`` to an external redirect URI.

    The URI is kept exactly as given; the new parameters are appended with
    ``&`` when it already has a query string, ``?`` otherwise. Without a
    redirect URI there is no target and the token stays out of URLs.
    """
    if not redirect_uri:
        return None

    params = urlencode({"token": token, "user_id": user_id})
    base, _, fragment = redirect_uri.partition("#")
    if urlsplit(base).query:
        separator = "&"
    elif base.endswith("?"):
        separator = ""
    else:
        separator = "?"
    target = f"{base}{separator}{params}"
    if fragment:
        target = f"{target}#{fragment}"
    return target


async def issue(
    db: AsyncSession,
    user_id: str,
    service_id: str,
    redirect_uri: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> IssuedToken:
    """
    Mint a token for ``user_id`` on ``service_id``.

    1. Resolve the service's signing secret, generating it if absent.
    2. Resolve the user's roles on the service (may be empty).
    3. Sign subject, audience, iat, exp and role IDs with the secret.
    4. Compute the redirect target, if any.

    Raises:
        ServiceNotConfigured: unknown service, or no usable secret.
    """
    try:
        secret = await secret_vault.ensure_secret(db, service_id)
    except NotFound:
        raise ServiceNotConfigured(f"Service '{service_id}' is not registered")
    except SecretDecryptionError:
        raise ServiceNotConfigured(
            f"Signing secret for service '{service_id}' is unavailable"
        )

    roles = await rbac_store.resolve_roles(db, user_id, service_id)
    role_ids = [r.id for r in roles]
    model = await rbac_store.get_bound_model(db, service_id)

    user = await db.get(User, user_id)
    extra = {
        "email": user.email if user else None,
        "rbac_model": model.id if model else None,
    }

    token = sign_token(
        secret,
        user_id=user_id,
        service_id=service_id,
        role_ids=role_ids,
        extra_claims=extra,
        expires_delta=expires_delta,
    )
    if expires_delta is None:
        expires_in = settings.TOKEN_EXPIRATION_MINUTES * 60
    else:
        expires_in = int(expires_delta.total_seconds())

    logger.debug(
        f"Issued token for user {user_id} on service {service_id} "
        f"({len(role_ids)} role(s))"
    )
    return IssuedToken(
        token=token,
        service_id=service_id,
        redirect_target=build_redirect_target(redirect_uri, token, user_id),
        expires_in=expires_in,
        roles=role_ids,
    )
