"""
User administration and per-service role assignment (admin only).

    GET    /api/admin/users                          - list users
    PATCH  /api/admin/users/{id}/role                - change a user's hub role
    GET    /api/admin/users/{id}/service-roles       - a user's assignments
    GET    /api/admin/services/{id}/user-roles       - a service's assignments
    GET    /api/admin/user-service-roles             - list assignments (filterable)
    POST   /api/admin/user-service-roles             - assign a role on a service
    DELETE /api/admin/user-service-roles/{id}        - remove an assignment

For backends holding an API key (``x-api-key``):

    GET    /api/users/{id}                           - look up a user
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import rbac_store
from auth.dependencies import require_admin, require_api_key
from auth.errors import NotFound
from database import get_db
from models import ApiKey, Service, User
from schemas import (
    HubRoleUpdate,
    UserResponse,
    UserServiceRoleCreate,
    UserServiceRoleResponse,
)
from utils.audit import audit

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/api/admin",
    tags=["users"],
    dependencies=[Depends(require_admin)],
)


async def _get_user(db: AsyncSession, user_id: str) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFound(f"User '{user_id}' not found")
    return user


@router.get("/users", response_model=list[UserResponse])
async def list_users(db: AsyncSession = Depends(get_db)):
    """List all users, newest first."""
    result = await db.execute(select(User).order_by(User.created_at.desc()))
    return [UserResponse.model_validate(u) for u in result.scalars().all()]


@router.patch("/users/{user_id}/role", response_model=UserResponse)
async def update_user_role(
    user_id: str,
    body: HubRoleUpdate,
    db: AsyncSession = Depends(get_db),
):
    """Change a user's hub role. Does not affect any service-scoped roles."""
    target_user = await _get_user(db, user_id)
    old_role = target_user.role
    target_user.role = body.role
    await db.commit()
    await db.refresh(target_user)
    response = UserResponse.model_validate(target_user)
    await audit.log_hub_role_change(db, target_user.id, old_role, body.role)
    return response


@router.get("/users/{user_id}/service-roles", response_model=list[UserServiceRoleResponse])
async def list_user_service_roles(user_id: str, db: AsyncSession = Depends(get_db)):
    await _get_user(db, user_id)
    rows = await rbac_store.list_assignments(db, user_id=user_id)
    return [UserServiceRoleResponse.from_row(r) for r in rows]


@router.get("/services/{service_id}/user-roles", response_model=list[UserServiceRoleResponse])
async def list_service_user_roles(service_id: str, db: AsyncSession = Depends(get_db)):
    if await db.get(Service, service_id) is None:
        raise NotFound(f"Service '{service_id}' not found")
    rows = await rbac_store.list_assignments(db, service_id=service_id)
    return [UserServiceRoleResponse.from_row(r) for r in rows]


@router.get("/user-service-roles", response_model=list[UserServiceRoleResponse])
async def list_user_service_role_assignments(
    user_id: Optional[str] = Query(None),
    service_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    rows = await rbac_store.list_assignments(db, user_id=user_id, service_id=service_id)
    return [UserServiceRoleResponse.from_row(r) for r in rows]


@router.post(
    "/user-service-roles",
    response_model=UserServiceRoleResponse,
    status_code=status.HTTP_201_CREATED,
)
async def assign_user_service_role(
    body: UserServiceRoleCreate,
    db: AsyncSession = Depends(get_db),
):
    """
    Grant a role on a service. The role must belong to the service's bound
    RBAC model (422 otherwise); an existing identical grant returns 409 with
    the existing assignment id.
    """
    assignment = await rbac_store.assign_role(db, body.user_id, body.service_id, body.role_id)
    role = await rbac_store.get_role(db, assignment.role_id)
    response = UserServiceRoleResponse(
        id=assignment.id,
        user_id=assignment.user_id,
        service_id=assignment.service_id,
        role_id=assignment.role_id,
        role_name=role.name,
        assigned_at=assignment.assigned_at,
    )
    await audit.log_role_assignment(
        db, "ASSIGN_ROLE", body.user_id, body.service_id, body.role_id
    )
    return response


@router.delete("/user-service-roles/{assignment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_user_service_role(assignment_id: str, db: AsyncSession = Depends(get_db)):
    assignment = await rbac_store.unassign_role(db, assignment_id)
    await audit.log_role_assignment(
        db, "UNASSIGN_ROLE", assignment.user_id, assignment.service_id, assignment.role_id
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Lookup for trusted backends authenticated by API key
directory_router = APIRouter(prefix="/api/users", tags=["users"])


@directory_router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: str,
    api_key: ApiKey = Depends(require_api_key),
    db: AsyncSession = Depends(get_db),
):
    """Public profile of a user; never includes credentials."""
    return UserResponse.model_validate(await _get_user(db, user_id))
