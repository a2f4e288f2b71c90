"""User model for authentication."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, String
from database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """
    Hub user - created at registration, by UUID login, or by local admin
    bootstrap.

    Roles:
        admin  - manages services, RBAC models, role assignments and login pages
        user   - can sign in to the hub and to downstream services

    The ``role`` column is a hub-level tag only. Authorization for downstream
    services comes from :class:`UserServiceRole` rows, never from this column.
    """

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    # NULL for anonymous UUID-only users
    email = Column(String(255), unique=True, nullable=True, index=True)
    password_hash = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False, default="user", index=True)

    is_active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(
        DateTime, default=lambda: datetime.now(timezone.utc), nullable=False
    )
    last_login_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<User {self.id} email={self.email} role={self.role}>"
