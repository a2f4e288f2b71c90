"""
Per-service signing secrets: generation, encryption at rest, preview.

Secrets are ``sk_`` followed by 64 hex characters (256 bits). At rest they
are stored only as an AES-256-GCM envelope::

    v1:<key commitment>:<nonce>:<ciphertext||tag>     (base64 parts)

The service ID is bound in as associated data so a ciphertext copied onto a
different service does not decrypt. The key commitment lets ``reveal``
report a wrong master key explicitly instead of as a generic tag failure.

Writes are guarded so two concurrent "lazy generate on first login" calls
cannot produce two different secrets: the write is a conditional UPDATE and
the loser re-reads the winner's value.
"""

import base64
import hashlib
import hmac
import logging
import os
import secrets
from typing import NamedTuple, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models import Service

from .errors import NotFound, SecretDecryptionError, ServiceNotConfigured

logger = logging.getLogger(__name__)

_ENVELOPE_VERSION = "v1"
_SECRET_PREFIX = "sk_"
_SECRET_BYTES = 32
_NONCE_BYTES = 12
_COMMIT_LABEL = b"authhub/secret-vault/key-commitment"
# 32 hex characters, 128 bits
_MIN_HIDDEN_CHARS = 32

# Rotation gives up after this many lost compare-and-set rounds
_MAX_ROTATE_ATTEMPTS = 5


class GeneratedSecret(NamedTuple):
    secret: str
    preview: str
    created: bool


def _master_key() -> bytes:
    """Derive the 32-byte AES key from the configured master key."""
    return hashlib.sha256(settings.SECRET_ENCRYPTION_KEY.encode("utf-8")).digest()


def _key_commitment(key: bytes) -> bytes:
    return hmac.new(key, _COMMIT_LABEL, hashlib.sha256).digest()[:16]


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.urlsafe_b64decode(data.encode("ascii"))


def generate_secret() -> str:
    """Return a new random signing secret."""
    return _SECRET_PREFIX + secrets.token_hex(_SECRET_BYTES)


def make_preview(secret: str) -> str:
    """
    Display-safe truncation of a secret, e.g. ``sk_3f9a01c2...8be41d``.

    The hidden middle always holds at least 128 bits of the random part.
    """
    visible = max(len(secret) - _MIN_HIDDEN_CHARS, 0)
    head = min(settings.SECRET_PREVIEW_HEAD, visible)
    tail = min(settings.SECRET_PREVIEW_TAIL, visible - head)
    return f"{secret[:head]}...{secret[len(secret) - tail:]}"


def encrypt_secret(plaintext: str, service_id: str) -> str:
    key = _master_key()
    nonce = os.urandom(_NONCE_BYTES)
    ciphertext = AESGCM(key).encrypt(
        nonce, plaintext.encode("utf-8"), service_id.encode("utf-8")
    )
    return ":".join(
        (_ENVELOPE_VERSION, _b64(_key_commitment(key)), _b64(nonce), _b64(ciphertext))
    )


def reveal(encrypted: str, service_id: str) -> str:
    """
    Decrypt a stored secret.

    Raises:
        SecretDecryptionError: envelope is malformed, was produced under a
            different master key, or fails authentication. Wrong plaintext is
            never returned.
    """
    parts = encrypted.split(":") if encrypted else []
    if len(parts) != 4 or parts[0] != _ENVELOPE_VERSION:
        raise SecretDecryptionError("Stored secret has an unrecognised format")

    try:
        commitment, nonce, ciphertext = (_unb64(p) for p in parts[1:])
    except (ValueError, TypeError) as exc:
        raise SecretDecryptionError("Stored secret has an unrecognised format") from exc

    key = _master_key()
    if not hmac.compare_digest(commitment, _key_commitment(key)):
        raise SecretDecryptionError(
            "Stored secret was encrypted under a different master key"
        )

    try:
        plaintext = AESGCM(key).decrypt(nonce, ciphertext, service_id.encode("utf-8"))
    except (InvalidTag, ValueError) as exc:
        raise SecretDecryptionError("Stored secret failed integrity check") from exc
    return plaintext.decode("utf-8")


async def _load_service(db: AsyncSession, service_id: str) -> Service:
    result = await db.execute(
        select(Service)
        .where(Service.id == service_id)
        .execution_options(populate_existing=True)
    )
    service = result.scalar_one_or_none()
    if service is None:
        raise NotFound(f"Service '{service_id}' not found")
    return service


def _reveal_for(service: Service) -> str:
    try:
        return reveal(service.encrypted_secret, service.id)
    except SecretDecryptionError:
        logger.error(
            f"Signing secret for service {service.id} could not be decrypted "
            f"(secret_version={service.secret_version})"
        )
        raise


async def generate(db: AsyncSession, service_id: str) -> GeneratedSecret:
    """
    Give the service a secret if it has none yet.

    Uses a conditional UPDATE (``WHERE encrypted_secret IS NULL``). If another
    request won the race, the stored secret is re-read and returned with
    ``created=False``; it is never overwritten.
    """
    plaintext = generate_secret()
    preview = make_preview(plaintext)
    ciphertext = encrypt_secret(plaintext, service_id)

    result = await db.execute(
        update(Service)
        .where(Service.id == service_id, Service.encrypted_secret.is_(None))
        .values(
            encrypted_secret=ciphertext,
            secret_preview=preview,
            secret_version=Service.secret_version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if result.rowcount == 1:
        await _load_service(db, service_id)
        logger.info(f"Generated signing secret for service {service_id}")
        return GeneratedSecret(plaintext, preview, True)

    service = await _load_service(db, service_id)
    if service.encrypted_secret is None:
        raise ServiceNotConfigured(
            f"Signing secret for service '{service_id}' could not be generated"
        )
    logger.debug(f"Secret for service {service_id} already present, re-reading")
    return GeneratedSecret(_reveal_for(service), service.secret_preview, False)


async def ensure_secret(db: AsyncSession, service_id: str) -> str:
    """Return the plaintext signing secret, generating it lazily if absent."""
    service = await _load_service(db, service_id)
    if service.encrypted_secret is not None:
        return _reveal_for(service)
    return (await generate(db, service_id)).secret


async def get_signing_secret(db: AsyncSession, service_id: str) -> Optional[str]:
    """Return the plaintext secret, or None if the service has none yet."""
    service = await _load_service(db, service_id)
    if service.encrypted_secret is None:
        return None
    return _reveal_for(service)


async def rotate(db: AsyncSession, service_id: str) -> GeneratedSecret:
    """
    Replace the service's secret.

    Every previously issued token for the service stops verifying. The write
    is a compare-and-set on ``secret_version``; a concurrent rotation makes
    this attempt re-read and try again, so the returned secret is always the
    one actually stored.
    """
    for _ in range(_MAX_ROTATE_ATTEMPTS):
        service = await _load_service(db, service_id)
        expected_version = service.secret_version

        plaintext = generate_secret()
        preview = make_preview(plaintext)
        result = await db.execute(
            update(Service)
            .where(
                Service.id == service_id,
                Service.secret_version == expected_version,
            )
            .values(
                encrypted_secret=encrypt_secret(plaintext, service_id),
                secret_preview=preview,
                secret_version=expected_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount == 1:
            await _load_service(db, service_id)
            logger.info(
                f"Rotated signing secret for service {service_id} "
                f"(secret_version={expected_version + 1})"
            )
            return GeneratedSecret(plaintext, preview, True)
        logger.warning(f"Concurrent secret write on service {service_id}, retrying")

    raise ServiceNotConfigured(
        f"Signing secret for service '{service_id}' could not be rotated"
    )


async def verify_secret(db: AsyncSession, service_id: str, presented: str) -> bool:
    """
    Constant-time check of a secret presented by a calling service.

    False when the service has no secret yet. Raises :class:`NotFound` for an
    unknown service.
    """
    stored = await get_signing_secret(db, service_id)
    if stored is None or not presented:
        return False
    return hmac.compare_digest(stored.encode("utf-8"), presented.encode("utf-8"))
