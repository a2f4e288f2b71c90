"""Login strategy catalog and per-service login page configuration."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class AuthMethod(Base):
    """
    Global catalog entry describing one login strategy.

    Rows are synced from the strategy registry at startup. ``implemented``
    is False for strategies that are only advertised ("coming soon") and have
    no backend yet.
    """

    __tablename__ = "auth_methods"

    id = Column(String(50), primary_key=True)  # "uuid", "email", "webauthn", ...
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=False, default="")
    icon = Column(String(100), nullable=False, default="KeyRound")
    button_text = Column(String(255), nullable=False)
    button_variant = Column(String(20), nullable=False, default="outline")
    help_text = Column(Text, nullable=True)
    category = Column(String(20), nullable=False, default="standard")
    implemented = Column(Boolean, default=False, nullable=False)
    sort_order = Column(Integer, default=999, nullable=False)

    def __repr__(self):
        return f"<AuthMethod {self.id} implemented={self.implemented}>"


class LoginPageConfig(Base):
    """Branding and default-method selection for one service's login page."""

    __tablename__ = "login_page_configs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    service_id = Column(
        String(36),
        ForeignKey("services.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    title = Column(String(255), nullable=False, default="Sign in")
    description = Column(Text, nullable=False, default="")
    logo_url = Column(String(500), nullable=True)
    primary_color = Column(String(50), nullable=True)
    default_method = Column(
        String(50), ForeignKey("auth_methods.id"), nullable=True
    )
    created_by = Column(String(36), nullable=True)
    updated_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    service = relationship("Service", back_populates="login_config")
    methods = relationship(
        "ServiceAuthMethod",
        back_populates="login_config",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ServiceAuthMethod.display_order",
    )

    def __repr__(self):
        return f"<LoginPageConfig service={self.service_id} default={self.default_method}>"


class ServiceAuthMethod(Base):
    """
    Per-service override of one catalog method.

    Nullable text fields fall back to the catalog default when NULL.
    ``display_order`` is 0-based and contiguous within a login config.
    """

    __tablename__ = "service_auth_methods"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    login_config_id = Column(
        String(36),
        ForeignKey("login_page_configs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    auth_method_id = Column(
        String(50), ForeignKey("auth_methods.id", ondelete="CASCADE"), nullable=False
    )
    enabled = Column(Boolean, default=False, nullable=False)
    show_coming_soon_badge = Column(Boolean, nullable=True)
    button_text = Column(String(255), nullable=True)
    button_variant = Column(String(20), nullable=True)
    help_text = Column(Text, nullable=True)
    display_order = Column(Integer, default=0, nullable=False)

    login_config = relationship("LoginPageConfig", back_populates="methods")
    auth_method = relationship("AuthMethod", lazy="joined")

    __table_args__ = (
        UniqueConstraint(
            "login_config_id", "auth_method_id", name="uq_service_auth_method"
        ),
    )

    def __repr__(self):
        return (
            f"<ServiceAuthMethod {self.auth_method_id} enabled={self.enabled} "
            f"order={self.display_order}>"
        )
