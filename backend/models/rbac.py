"""RBAC graph: models, roles, permissions and their bindings."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


class RbacModel(Base):
    """
    A named, reusable bundle of roles and permissions.

    One model may be bound to many services, but a service binds to at most
    one model at a time (see :class:`ServiceRbacModel`). Deleting a model
    cascades to its roles, permissions and bindings.
    """

    __tablename__ = "rbac_models"

    id = Column(String(36), primary_key=True, default=_new_id)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    created_by = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    roles = relationship(
        "Role", back_populates="model", cascade="all, delete-orphan", passive_deletes=True
    )
    permissions = relationship(
        "Permission",
        back_populates="model",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self):
        return f"<RbacModel {self.name}>"


class Role(Base):
    __tablename__ = "roles"

    id = Column(String(36), primary_key=True, default=_new_id)
    rbac_model_id = Column(
        String(36),
        ForeignKey("rbac_models.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    model = relationship("RbacModel", back_populates="roles")

    __table_args__ = (
        UniqueConstraint("rbac_model_id", "name", name="uq_role_model_name"),
    )

    def __repr__(self):
        return f"<Role {self.name} model={self.rbac_model_id}>"


class Permission(Base):
    __tablename__ = "permissions"

    id = Column(String(36), primary_key=True, default=_new_id)
    rbac_model_id = Column(
        String(36),
        ForeignKey("rbac_models.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    model = relationship("RbacModel", back_populates="permissions")

    __table_args__ = (
        UniqueConstraint("rbac_model_id", "name", name="uq_permission_model_name"),
    )

    def __repr__(self):
        return f"<Permission {self.name} model={self.rbac_model_id}>"


class RolePermission(Base):
    """
    Role → permission edge.

    The schema cannot express that both endpoints share a model; that check
    lives in :func:`auth.rbac_store.add_role_permission`.
    """

    __tablename__ = "role_permissions"

    role_id = Column(
        String(36), ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True
    )
    permission_id = Column(
        String(36), ForeignKey("permissions.id", ondelete="CASCADE"), primary_key=True
    )


class ServiceRbacModel(Base):
    """Binds a service to its RBAC model. ``service_id`` is unique."""

    __tablename__ = "service_rbac_models"

    service_id = Column(
        String(36),
        ForeignKey("services.id", ondelete="CASCADE"),
        primary_key=True,
    )
    rbac_model_id = Column(
        String(36),
        ForeignKey("rbac_models.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    assigned_at = Column(DateTime, default=_utcnow, nullable=False)

    service = relationship("Service", back_populates="rbac_binding")
    model = relationship("RbacModel")


class UserServiceRole(Base):
    """
    Grants a user a role on one service.

    A user may hold several distinct roles on the same service, and the same
    role on several services, but never the same role twice on one service.
    """

    __tablename__ = "user_service_roles"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    service_id = Column(
        String(36),
        ForeignKey("services.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role_id = Column(
        String(36), ForeignKey("roles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    assigned_at = Column(DateTime, default=_utcnow, nullable=False)

    role = relationship("Role", lazy="joined")

    __table_args__ = (
        UniqueConstraint(
            "user_id", "service_id", "role_id", name="uq_user_service_role"
        ),
    )

    def __repr__(self):
        return (
            f"<UserServiceRole user={self.user_id} service={self.service_id} "
            f"role={self.role_id}>"
        )
