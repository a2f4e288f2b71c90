"""API keys for trusted backends calling the hub directly."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String, Text
from database import Base


class ApiKey(Base):
    """
    A named key sent in the ``x-api-key`` header by external backends.

    Like service secrets, the key is stored only as a vault envelope bound to
    the key's own ID, next to a display-safe preview. The plaintext is shown
    once, when the key is created.
    """

    __tablename__ = "api_keys"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    encrypted_key = Column(Text, nullable=False)
    key_preview = Column(String(64), nullable=False)
    created_by = Column(String(36), nullable=True)
    created_at = Column(
        DateTime, default=lambda: datetime.now(timezone.utc), nullable=False
    )
    last_used_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<ApiKey {self.name} {self.key_preview}>"
