"""
RBAC model administration (admin only).

    GET/POST          /api/admin/rbac/models
    GET/PATCH/DELETE  /api/admin/rbac/models/{id}
    GET/POST          /api/admin/rbac/models/{id}/roles
    GET/POST          /api/admin/rbac/models/{id}/permissions
    GET               /api/admin/rbac/models/{id}/services
    GET               /api/admin/rbac/models/{id}/role-permission-mappings
    GET               /api/admin/rbac/models/{id}/export
    PATCH/DELETE      /api/admin/rbac/roles/{id}
    GET/PUT           /api/admin/rbac/roles/{id}/permissions
    PUT/DELETE        /api/admin/rbac/roles/{id}/permissions/{permission_id}
    PATCH/DELETE      /api/admin/rbac/permissions/{id}
"""

import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from auth import rbac_store
from auth.dependencies import require_admin
from auth.errors import NotFound
from database import get_db
from models import User
from schemas import (
    PermissionCreate,
    PermissionResponse,
    PermissionUpdate,
    RbacModelCreate,
    RbacModelResponse,
    RbacModelUpdate,
    RoleCreate,
    RolePermissionMapping,
    RolePermissionsUpdate,
    RoleResponse,
    RoleUpdate,
    ServiceResponse,
)
from utils.audit import audit

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/admin/rbac",
    tags=["rbac"],
    dependencies=[Depends(require_admin)],
)


# ── Models ─────────────────────────────────────────────────────────────


@router.get("/models", response_model=list[RbacModelResponse])
async def list_models(db: AsyncSession = Depends(get_db)):
    return [RbacModelResponse.model_validate(m) for m in await rbac_store.list_models(db)]


@router.post("/models", response_model=RbacModelResponse, status_code=status.HTTP_201_CREATED)
async def create_model(
    body: RbacModelCreate,
    user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    model = await rbac_store.create_model(db, body.name, body.description, user.id)
    response = RbacModelResponse.model_validate(model)
    await audit.log_model_change(db, "CREATE_MODEL", model.id, model.name)
    return response


@router.get("/models/{model_id}", response_model=RbacModelResponse)
async def get_model(model_id: str, db: AsyncSession = Depends(get_db)):
    return RbacModelResponse.model_validate(await rbac_store.get_model(db, model_id))


@router.patch("/models/{model_id}", response_model=RbacModelResponse)
async def update_model(
    model_id: str,
    body: RbacModelUpdate,
    db: AsyncSession = Depends(get_db),
):
    model = await rbac_store.update_model(db, model_id, body.name, body.description)
    return RbacModelResponse.model_validate(model)


@router.delete("/models/{model_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_model(model_id: str, db: AsyncSession = Depends(get_db)):
    """
    Delete a model with its roles, permissions and edges. Services using it
    are unbound and their role assignments for the model's roles removed.
    """
    await rbac_store.delete_model(db, model_id)
    await audit.log_model_change(db, "DELETE_MODEL", model_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/models/{model_id}/services", response_model=list[ServiceResponse])
async def list_model_services(model_id: str, db: AsyncSession = Depends(get_db)):
    services = await rbac_store.list_model_services(db, model_id)
    return [ServiceResponse.model_validate(s) for s in services]


@router.get(
    "/models/{model_id}/role-permission-mappings",
    response_model=list[RolePermissionMapping],
)
async def role_permission_mappings(model_id: str, db: AsyncSession = Depends(get_db)):
    return await rbac_store.list_role_permission_mappings(db, model_id)


@router.get("/models/{model_id}/export")
async def export_model(model_id: str, db: AsyncSession = Depends(get_db)):
    """JSON snapshot of the model's roles, permissions and role → permission mapping."""
    return await rbac_store.export_model(db, model_id)


# ── Roles ──────────────────────────────────────────────────────────────


@router.get("/models/{model_id}/roles", response_model=list[RoleResponse])
async def list_roles(model_id: str, db: AsyncSession = Depends(get_db)):
    return [RoleResponse.model_validate(r) for r in await rbac_store.list_roles(db, model_id)]


@router.post(
    "/models/{model_id}/roles",
    response_model=RoleResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_role(model_id: str, body: RoleCreate, db: AsyncSession = Depends(get_db)):
    role = await rbac_store.create_role(db, model_id, body.name, body.description)
    return RoleResponse.model_validate(role)


@router.patch("/roles/{role_id}", response_model=RoleResponse)
async def update_role(role_id: str, body: RoleUpdate, db: AsyncSession = Depends(get_db)):
    role = await rbac_store.update_role(db, role_id, body.name, body.description)
    return RoleResponse.model_validate(role)


@router.delete("/roles/{role_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_role(role_id: str, db: AsyncSession = Depends(get_db)):
    await rbac_store.delete_role(db, role_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/roles/{role_id}/permissions", response_model=list[PermissionResponse])
async def list_role_permissions(role_id: str, db: AsyncSession = Depends(get_db)):
    permissions = await rbac_store.list_role_permissions(db, role_id)
    return [PermissionResponse.model_validate(p) for p in permissions]


@router.put("/roles/{role_id}/permissions", response_model=list[PermissionResponse])
async def set_role_permissions(
    role_id: str,
    body: RolePermissionsUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Replace the role's permission set. All permissions must share the role's model."""
    permissions = await rbac_store.set_role_permissions(db, role_id, body.permission_ids)
    return [PermissionResponse.model_validate(p) for p in permissions]


@router.put(
    "/roles/{role_id}/permissions/{permission_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def grant_permission(role_id: str, permission_id: str, db: AsyncSession = Depends(get_db)):
    await rbac_store.add_role_permission(db, role_id, permission_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete(
    "/roles/{role_id}/permissions/{permission_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
async def revoke_permission(role_id: str, permission_id: str, db: AsyncSession = Depends(get_db)):
    if not await rbac_store.remove_role_permission(db, role_id, permission_id):
        raise NotFound("Role does not hold this permission")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Permissions ────────────────────────────────────────────────────────


@router.get("/models/{model_id}/permissions", response_model=list[PermissionResponse])
async def list_permissions(model_id: str, db: AsyncSession = Depends(get_db)):
    permissions = await rbac_store.list_permissions(db, model_id)
    return [PermissionResponse.model_validate(p) for p in permissions]


@router.post(
    "/models/{model_id}/permissions",
    response_model=PermissionResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_permission(
    model_id: str,
    body: PermissionCreate,
    db: AsyncSession = Depends(get_db),
):
    permission = await rbac_store.create_permission(db, model_id, body.name, body.description)
    return PermissionResponse.model_validate(permission)


@router.patch("/permissions/{permission_id}", response_model=PermissionResponse)
async def update_permission(
    permission_id: str,
    body: PermissionUpdate,
    db: AsyncSession = Depends(get_db),
):
    permission = await rbac_store.update_permission(
        db, permission_id, body.name, body.description
    )
    return PermissionResponse.model_validate(permission)


@router.delete("/permissions/{permission_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_permission(permission_id: str, db: AsyncSession = Depends(get_db)):
    await rbac_store.delete_permission(db, permission_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
