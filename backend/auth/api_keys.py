"""
API keys for external backends (``x-api-key`` header).

Keys are ``ak_`` followed by 48 hex characters. They are encrypted at rest
with the secret vault, using the key's ID as associated data, so a key is
checked by decrypting each stored envelope and comparing in constant time.
"""

import hmac
import logging
import secrets
import uuid
from datetime import datetime, timezone
from typing import NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models import ApiKey

from . import secret_vault

logger = logging.getLogger(__name__)

_KEY_PREFIX = "ak_"
_KEY_BYTES = 24


class CreatedApiKey(NamedTuple):
    api_key: ApiKey
    plaintext: str


def _associated_data(key_id: str) -> str:
    return f"api-key:{key_id}"


def generate_api_key() -> str:
    return _KEY_PREFIX + secrets.token_hex(_KEY_BYTES)


async def create_api_key(
    db: AsyncSession, name: str, created_by: Optional[str] = None
) -> CreatedApiKey:
    """Store a new key and return it with its plaintext, which is not kept."""
    key_id = str(uuid.uuid4())
    plaintext = generate_api_key()
    api_key = ApiKey(
        id=key_id,
        name=name,
        encrypted_key=secret_vault.encrypt_secret(plaintext, _associated_data(key_id)),
        key_preview=secret_vault.make_preview(plaintext),
        created_by=created_by,
    )
    db.add(api_key)
    await db.commit()
    await db.refresh(api_key)
    logger.info(f"Created API key {api_key.id} ({api_key.name})")
    return CreatedApiKey(api_key, plaintext)


async def list_api_keys(db: AsyncSession) -> list[ApiKey]:
    result = await db.execute(select(ApiKey).order_by(ApiKey.created_at.desc()))
    return list(result.scalars().all())


async def verify_api_key(db: AsyncSession, presented: str) -> Optional[ApiKey]:
    """
    Return the stored key matching ``presented``, or None.

    Raises:
        SecretDecryptionError: a stored key cannot be decrypted under the
            current master key.
    """
    if not presented or not presented.startswith(_KEY_PREFIX):
        return None

    candidate = presented.encode("utf-8")
    for api_key in await list_api_keys(db):
        stored = secret_vault.reveal(api_key.encrypted_key, _associated_data(api_key.id))
        if hmac.compare_digest(stored.encode("utf-8"), candidate):
            api_key.last_used_at = datetime.now(timezone.utc)
            await db.commit()
            return api_key
    return None
