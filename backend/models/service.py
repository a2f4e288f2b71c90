"""Downstream service registered with the hub."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from database import Base


class Service(Base):
    """
    A downstream application that trusts tokens minted by the hub.

    Each service owns its own signing secret. The secret is stored only in
    encrypted form (``encrypted_secret``) next to a display-safe
    ``secret_preview`` computed once when the secret is written.
    ``secret_version`` increases on every secret write and guards
    compare-and-set rotation.

    System services (the hub itself) cannot be deleted.
    """

    __tablename__ = "services"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True, index=True
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    url = Column(String(500), nullable=False)
    # Where to send users after authentication (defaults to ``url``)
    redirect_url = Column(String(500), nullable=True)
    icon = Column(String(100), nullable=False, default="Globe")
    color = Column(String(100), nullable=True)
    is_system = Column(Boolean, default=False, nullable=False)

    encrypted_secret = Column(Text, nullable=True)
    secret_preview = Column(String(64), nullable=True)
    secret_version = Column(Integer, default=0, nullable=False)

    created_at = Column(
        DateTime, default=lambda: datetime.now(timezone.utc), nullable=False
    )

    rbac_binding = relationship(
        "ServiceRbacModel",
        back_populates="service",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    login_config = relationship(
        "LoginPageConfig",
        back_populates="service",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def has_secret(self) -> bool:
        return self.encrypted_secret is not None

    def __repr__(self):
        return f"<Service {self.name} system={self.is_system}>"
