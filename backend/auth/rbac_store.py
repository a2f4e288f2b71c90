"""
RBAC graph store.

Holds RBAC models, their roles and permissions, role → permission edges,
service → model bindings and user → service → role assignments.

Invariants the row store cannot express on its own are enforced here as
guarded writes inside a single transaction:

* a role-permission edge must not span two models;
* a role can only be assigned on a service bound to the role's model;
* a service binds to at most one model at a time;
* a (user, service, role) triple exists at most once.

Every multi-row write commits once at the end and rolls back on any error,
so no partial cascade is ever observable.
"""

import logging
from typing import Any, Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from models import (
    Permission,
    RbacModel,
    Role,
    RolePermission,
    Service,
    ServiceRbacModel,
    User,
    UserServiceRole,
)

from .errors import Conflict, InvalidReference, NotFound

logger = logging.getLogger(__name__)


async def _commit(db: AsyncSession) -> None:
    try:
        await db.commit()
    except Exception:
        await db.rollback()
        raise


# ── Models ─────────────────────────────────────────────────────────────


async def create_model(
    db: AsyncSession, name: str, description: str, created_by: Optional[str]
) -> RbacModel:
    model = RbacModel(name=name, description=description, created_by=created_by)
    db.add(model)
    await _commit(db)
    await db.refresh(model)
    logger.info(f"Created RBAC model '{name}' ({model.id})")
    return model


async def get_model(db: AsyncSession, model_id: str) -> RbacModel:
    model = await db.get(RbacModel, model_id)
    if model is None:
        raise NotFound(f"RBAC model '{model_id}' not found")
    return model


async def list_models(db: AsyncSession) -> list[RbacModel]:
    result = await db.execute(select(RbacModel).order_by(RbacModel.created_at))
    return list(result.scalars().all())


async def update_model(
    db: AsyncSession,
    model_id: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> RbacModel:
    model = await get_model(db, model_id)
    if name is not None:
        model.name = name
    if description is not None:
        model.description = description
    await _commit(db)
    await db.refresh(model)
    return model


async def delete_model(db: AsyncSession, model_id: str) -> None:
    """
    Delete a model and everything hanging off it in one transaction:
    role-permission edges, role assignments using its roles, service
    bindings, roles, permissions and the model row.
    """
    await get_model(db, model_id)

    role_ids = select(Role.id).where(Role.rbac_model_id == model_id)
    permission_ids = select(Permission.id).where(Permission.rbac_model_id == model_id)

    try:
        await db.execute(
            delete(RolePermission)
            .where(
                RolePermission.role_id.in_(role_ids)
                | RolePermission.permission_id.in_(permission_ids)
            )
            .execution_options(synchronize_session="fetch")
        )
        await db.execute(
            delete(UserServiceRole)
            .where(UserServiceRole.role_id.in_(role_ids))
            .execution_options(synchronize_session="fetch")
        )
        await db.execute(
            delete(ServiceRbacModel)
            .where(ServiceRbacModel.rbac_model_id == model_id)
            .execution_options(synchronize_session="fetch")
        )
        await db.execute(
            delete(Role)
            .where(Role.rbac_model_id == model_id)
            .execution_options(synchronize_session="fetch")
        )
        await db.execute(
            delete(Permission)
            .where(Permission.rbac_model_id == model_id)
            .execution_options(synchronize_session="fetch")
        )
        await db.execute(
            delete(RbacModel)
            .where(RbacModel.id == model_id)
            .execution_options(synchronize_session="fetch")
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info(f"Deleted RBAC model {model_id} with all roles, permissions and bindings")


# ── Roles & permissions ───────────────────────────────────────────────


async def get_role(db: AsyncSession, role_id: str) -> Role:
    role = await db.get(Role, role_id)
    if role is None:
        raise NotFound(f"Role '{role_id}' not found")
    return role


async def get_permission(db: AsyncSession, permission_id: str) -> Permission:
    permission = await db.get(Permission, permission_id)
    if permission is None:
        raise NotFound(f"Permission '{permission_id}' not found")
    return permission


async def list_roles(db: AsyncSession, model_id: str) -> list[Role]:
    await get_model(db, model_id)
    result = await db.execute(
        select(Role).where(Role.rbac_model_id == model_id).order_by(Role.name)
    )
    return list(result.scalars().all())


async def list_permissions(db: AsyncSession, model_id: str) -> list[Permission]:
    await get_model(db, model_id)
    result = await db.execute(
        select(Permission)
        .where(Permission.rbac_model_id == model_id)
        .order_by(Permission.name)
    )
    return list(result.scalars().all())


async def _add_named(db: AsyncSession, row: Any, kind: str) -> Any:
    db.add(row)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict(
            f"A {kind} named '{row.name}' already exists in this model", field="name"
        )
    await db.refresh(row)
    return row


async def create_role(
    db: AsyncSession, model_id: str, name: str, description: str = ""
) -> Role:
    await get_model(db, model_id)
    return await _add_named(
        db, Role(rbac_model_id=model_id, name=name, description=description), "role"
    )


async def create_permission(
    db: AsyncSession, model_id: str, name: str, description: str = ""
) -> Permission:
    await get_model(db, model_id)
    return await _add_named(
        db,
        Permission(rbac_model_id=model_id, name=name, description=description),
        "permission",
    )


async def _rename(db: AsyncSession, row: Any, kind: str, name, description) -> Any:
    if name is not None:
        row.name = name
    if description is not None:
        row.description = description
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise Conflict(
            f"A {kind} named '{name}' already exists in this model", field="name"
        )
    await db.refresh(row)
    return row


async def update_role(
    db: AsyncSession,
    role_id: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> Role:
    role = await get_role(db, role_id)
    return await _rename(db, role, "role", name, description)


async def update_permission(
    db: AsyncSession,
    permission_id: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
) -> Permission:
    permission = await get_permission(db, permission_id)
    return await _rename(db, permission, "permission", name, description)


async def delete_role(db: AsyncSession, role_id: str) -> None:
    await get_role(db, role_id)
    try:
        await db.execute(
            delete(RolePermission)
            .where(RolePermission.role_id == role_id)
            .execution_options(synchronize_session="fetch")
        )
        await db.execute(
            delete(UserServiceRole)
            .where(UserServiceRole.role_id == role_id)
            .execution_options(synchronize_session="fetch")
        )
        await db.execute(
            delete(Role).where(Role.id == role_id).execution_options(synchronize_session="fetch")
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise


async def delete_permission(db: AsyncSession, permission_id: str) -> None:
    await get_permission(db, permission_id)
    try:
        await db.execute(
            delete(RolePermission)
            .where(RolePermission.permission_id == permission_id)
            .execution_options(synchronize_session="fetch")
        )
        await db.execute(
            delete(Permission)
            .where(Permission.id == permission_id)
            .execution_options(synchronize_session="fetch")
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise


# ── Role → permission edges ───────────────────────────────────────────


async def add_role_permission(
    db: AsyncSession, role_id: str, permission_id: str
) -> RolePermission:
    """
    Grant a permission to a role. Both must belong to the same model.
    Adding an existing edge is a no-op.
    """
    role = await db.get(Role, role_id)
    permission = await db.get(Permission, permission_id)
    if role is None:
        raise InvalidReference(f"Role '{role_id}' does not exist", field="role_id")
    if permission is None:
        raise InvalidReference(
            f"Permission '{permission_id}' does not exist", field="permission_id"
        )
    if role.rbac_model_id != permission.rbac_model_id:
        raise InvalidReference(
            "Role and permission belong to different RBAC models",
            field="permission_id",
        )

    existing = await db.get(RolePermission, (role_id, permission_id))
    if existing is not None:
        return existing

    edge = RolePermission(role_id=role_id, permission_id=permission_id)
    db.add(edge)
    try:
        await db.commit()
    except IntegrityError:
        # Lost a race with an identical insert; the edge exists either way
        await db.rollback()
        edge = await db.get(RolePermission, (role_id, permission_id))
    return edge


async def remove_role_permission(
    db: AsyncSession, role_id: str, permission_id: str
) -> bool:
    result = await db.execute(
        delete(RolePermission).where(
            RolePermission.role_id == role_id,
            RolePermission.permission_id == permission_id,
        )
    )
    await _commit(db)
    return result.rowcount > 0


async def set_role_permissions(
    db: AsyncSession, role_id: str, permission_ids: Iterable[str]
) -> list[Permission]:
    """Replace the full permission set of a role atomically."""
    role = await get_role(db, role_id)
    wanted = list(dict.fromkeys(permission_ids))

    permissions: list[Permission] = []
    if wanted:
        result = await db.execute(select(Permission).where(Permission.id.in_(wanted)))
        permissions = list(result.scalars().all())

    found = {p.id for p in permissions}
    missing = [pid for pid in wanted if pid not in found]
    if missing:
        raise InvalidReference(
            f"Unknown permission id(s): {', '.join(missing)}", field="permission_ids"
        )
    foreign = [p.id for p in permissions if p.rbac_model_id != role.rbac_model_id]
    if foreign:
        raise InvalidReference(
            "Permissions must belong to the role's RBAC model",
            field="permission_ids",
            details={"permission_ids": foreign},
        )

    try:
        await db.execute(
            delete(RolePermission)
            .where(RolePermission.role_id == role_id)
            .execution_options(synchronize_session="fetch")
        )
        for permission_id in wanted:
            db.add(RolePermission(role_id=role_id, permission_id=permission_id))
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return sorted(permissions, key=lambda p: p.name)


async def list_role_permissions(db: AsyncSession, role_id: str) -> list[Permission]:
    await get_role(db, role_id)
    result = await db.execute(
        select(Permission)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .where(RolePermission.role_id == role_id)
        .order_by(Permission.name)
    )
    return list(result.scalars().all())


async def list_role_permission_mappings(
    db: AsyncSession, model_id: str
) -> list[dict[str, Any]]:
    """Every role of a model with the permission names it holds."""
    roles = await list_roles(db, model_id)
    result = await db.execute(
        select(RolePermission.role_id, Permission.id, Permission.name)
        .join(Permission, Permission.id == RolePermission.permission_id)
        .where(Permission.rbac_model_id == model_id)
        .order_by(Permission.name)
    )
    by_role: dict[str, list[dict[str, str]]] = {}
    for role_id, permission_id, permission_name in result.all():
        by_role.setdefault(role_id, []).append(
            {"id": permission_id, "name": permission_name}
        )

    return [
        {"role_id": r.id, "role_name": r.name, "permissions": by_role.get(r.id, [])}
        for r in roles
    ]


async def export_model(db: AsyncSession, model_id: str) -> dict[str, Any]:
    """Serializable snapshot of a model, its roles, permissions and edges."""
    model = await get_model(db, model_id)
    permissions = await list_permissions(db, model_id)
    mappings = await list_role_permission_mappings(db, model_id)
    descriptions = {r.id: r.description for r in await list_roles(db, model_id)}
    return {
        "name": model.name,
        "description": model.description,
        "permissions": [
            {"name": p.name, "description": p.description} for p in permissions
        ],
        "roles": [
            {
                "name": m["role_name"],
                "description": descriptions.get(m["role_id"], ""),
                "permissions": [p["name"] for p in m["permissions"]],
            }
            for m in mappings
        ],
    }


# ── Service ↔ model binding ───────────────────────────────────────────


async def get_binding(db: AsyncSession, service_id: str) -> Optional[ServiceRbacModel]:
    result = await db.execute(
        select(ServiceRbacModel)
        .where(ServiceRbacModel.service_id == service_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_bound_model(db: AsyncSession, service_id: str) -> Optional[RbacModel]:
    result = await db.execute(
        select(RbacModel)
        .join(ServiceRbacModel, ServiceRbacModel.rbac_model_id == RbacModel.id)
        .where(ServiceRbacModel.service_id == service_id)
    )
    return result.scalar_one_or_none()


async def bind_model(db: AsyncSession, service_id: str, model_id: str) -> ServiceRbacModel:
    """
    Bind a model to a service.

    Re-binding the same model is a no-op. Binding a different model while one
    is bound raises :class:`Conflict`; unbind first.
    """
    if await db.get(Service, service_id) is None:
        raise NotFound(f"Service '{service_id}' not found")
    if await db.get(RbacModel, model_id) is None:
        raise InvalidReference(f"RBAC model '{model_id}' does not exist", field="rbac_model_id")

    existing = await get_binding(db, service_id)
    if existing is not None:
        if existing.rbac_model_id == model_id:
            return existing
        raise Conflict(
            "Service already has a different RBAC model bound; unbind it first",
            field="rbac_model_id",
            details={"bound_model_id": existing.rbac_model_id},
        )

    binding = ServiceRbacModel(service_id=service_id, rbac_model_id=model_id)
    db.add(binding)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await get_binding(db, service_id)
        if existing is not None and existing.rbac_model_id == model_id:
            return existing
        raise Conflict(
            "Service already has a different RBAC model bound; unbind it first",
            field="rbac_model_id",
        )
    await db.refresh(binding)
    logger.info(f"Bound RBAC model {model_id} to service {service_id}")
    return binding


async def unbind_model(db: AsyncSession, service_id: str) -> bool:
    """
    Remove the service's model binding together with the service's role
    assignments, which all reference roles of the old model.
    """
    binding = await get_binding(db, service_id)
    if binding is None:
        return False
    try:
        await db.execute(
            delete(UserServiceRole)
            .where(UserServiceRole.service_id == service_id)
            .execution_options(synchronize_session="fetch")
        )
        await db.execute(
            delete(ServiceRbacModel)
            .where(ServiceRbacModel.service_id == service_id)
            .execution_options(synchronize_session="fetch")
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    logger.info(f"Unbound RBAC model from service {service_id}")
    return True


async def list_model_services(db: AsyncSession, model_id: str) -> list[Service]:
    await get_model(db, model_id)
    result = await db.execute(
        select(Service)
        .join(ServiceRbacModel, ServiceRbacModel.service_id == Service.id)
        .where(ServiceRbacModel.rbac_model_id == model_id)
        .order_by(Service.name)
    )
    return list(result.scalars().all())


# ── User → service → role assignments ────────────────────────────────


async def _find_assignment(
    db: AsyncSession, user_id: str, service_id: str, role_id: str
) -> Optional[UserServiceRole]:
    result = await db.execute(
        select(UserServiceRole).where(
            UserServiceRole.user_id == user_id,
            UserServiceRole.service_id == service_id,
            UserServiceRole.role_id == role_id,
        )
    )
    return result.scalar_one_or_none()


async def assign_role(
    db: AsyncSession, user_id: str, service_id: str, role_id: str
) -> UserServiceRole:
    """
    Assign ``role_id`` to a user on a service.

    Raises:
        InvalidReference: unknown user/service/role, or the role's model is
            not the model bound to the service.
        Conflict: the exact triple already exists. Nothing is written; the
            existing assignment id is in ``details["assignment_id"]``.
    """
    if await db.get(User, user_id) is None:
        raise InvalidReference(f"User '{user_id}' does not exist", field="user_id")
    if await db.get(Service, service_id) is None:
        raise InvalidReference(f"Service '{service_id}' does not exist", field="service_id")
    role = await db.get(Role, role_id)
    if role is None:
        raise InvalidReference(f"Role '{role_id}' does not exist", field="role_id")

    binding = await get_binding(db, service_id)
    if binding is None or binding.rbac_model_id != role.rbac_model_id:
        raise InvalidReference(
            "Role does not belong to the RBAC model bound to this service",
            field="role_id",
        )

    existing = await _find_assignment(db, user_id, service_id, role_id)
    if existing is not None:
        raise Conflict(
            "User already holds this role on this service",
            details={"assignment_id": existing.id},
        )

    assignment = UserServiceRole(user_id=user_id, service_id=service_id, role_id=role_id)
    db.add(assignment)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await _find_assignment(db, user_id, service_id, role_id)
        raise Conflict(
            "User already holds this role on this service",
            details={"assignment_id": existing.id if existing else None},
        )
    await db.refresh(assignment)
    return assignment


async def get_assignment(db: AsyncSession, assignment_id: str) -> UserServiceRole:
    assignment = await db.get(UserServiceRole, assignment_id)
    if assignment is None:
        raise NotFound(f"Role assignment '{assignment_id}' not found")
    return assignment


async def unassign_role(db: AsyncSession, assignment_id: str) -> UserServiceRole:
    assignment = await get_assignment(db, assignment_id)
    await db.delete(assignment)
    await _commit(db)
    return assignment


async def unassign_role_triple(
    db: AsyncSession, user_id: str, service_id: str, role_id: str
) -> bool:
    result = await db.execute(
        delete(UserServiceRole).where(
            UserServiceRole.user_id == user_id,
            UserServiceRole.service_id == service_id,
            UserServiceRole.role_id == role_id,
        )
    )
    await _commit(db)
    return result.rowcount > 0


async def list_assignments(
    db: AsyncSession,
    user_id: Optional[str] = None,
    service_id: Optional[str] = None,
) -> list[UserServiceRole]:
    query = select(UserServiceRole).options(selectinload(UserServiceRole.role))
    if user_id is not None:
        query = query.where(UserServiceRole.user_id == user_id)
    if service_id is not None:
        query = query.where(UserServiceRole.service_id == service_id)
    result = await db.execute(query.order_by(UserServiceRole.assigned_at))
    return list(result.scalars().all())


# ── Resolution ────────────────────────────────────────────────────────


async def resolve_roles(db: AsyncSession, user_id: str, service_id: str) -> list[Role]:
    """Roles the user currently holds on the service (may be empty)."""
    result = await db.execute(
        select(Role)
        .join(UserServiceRole, UserServiceRole.role_id == Role.id)
        .join(
            ServiceRbacModel,
            (ServiceRbacModel.service_id == UserServiceRole.service_id)
            & (ServiceRbacModel.rbac_model_id == Role.rbac_model_id),
        )
        .where(
            UserServiceRole.user_id == user_id,
            UserServiceRole.service_id == service_id,
        )
        .order_by(Role.name)
    )
    return list(result.scalars().all())


async def resolve_permissions(db: AsyncSession, user_id: str, service_id: str) -> set[str]:
    """
    Union of permission names reachable from every role the user holds on
    the service. Empty set when the user holds no roles.
    """
    roles = await resolve_roles(db, user_id, service_id)
    return await permissions_for_roles(db, service_id, [r.id for r in roles])


async def permissions_for_roles(
    db: AsyncSession, service_id: str, role_ids: Iterable[str]
) -> set[str]:
    """
    Current permission names granted by ``role_ids`` on a service.

    Roles outside the service's bound model grant nothing.
    """
    role_ids = list(role_ids)
    if not role_ids:
        return set()
    result = await db.execute(
        select(Permission.name)
        .join(RolePermission, RolePermission.permission_id == Permission.id)
        .join(Role, Role.id == RolePermission.role_id)
        .join(ServiceRbacModel, ServiceRbacModel.rbac_model_id == Role.rbac_model_id)
        .where(
            ServiceRbacModel.service_id == service_id,
            RolePermission.role_id.in_(role_ids),
        )
        .distinct()
    )
    return set(result.scalars().all())
