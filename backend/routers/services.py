"""
Service registry endpoints.

    GET    /api/services                               - list services
    POST   /api/services                               - register a service (admin)
    GET    /api/services/{id}                          - service details
    PATCH  /api/services/{id}                          - update a service (admin)
    DELETE /api/services/{id}                          - delete a service (admin)
    POST   /api/services/{id}/rotate-secret            - new signing secret, shown once (admin)
    POST   /api/services/verify-secret                 - a service checks its own secret
    GET    /api/services/{id}/rbac-model               - bound RBAC model
    PUT    /api/services/{id}/rbac-model               - bind a model (admin)
    DELETE /api/services/{id}/rbac-model               - unbind the model (admin)
    GET    /api/services/{id}/login-config             - login page config (admin)
    PATCH  /api/services/{id}/login-config             - update branding / default (admin)
    PATCH  /api/services/{id}/login-config/methods     - replace method config (admin)
    GET    /api/services/{id}/users/{user_id}/permissions - resolved permissions (admin)
"""

import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import auth_methods, rbac_store, secret_vault
from auth.dependencies import require_admin, require_any_authenticated
from auth.errors import InvalidServiceCredentials, NotFound, SystemServiceProtected
from database import get_db
from models import Service, User
from schemas import (
    BindModelRequest,
    LoginConfigResponse,
    LoginConfigUpdate,
    LoginMethodsUpdate,
    RbacModelResponse,
    RoleResponse,
    SecretResponse,
    ServiceCreate,
    ServiceCredentials,
    ServiceRbacModelResponse,
    ServiceResponse,
    ServiceUpdate,
    UserPermissionsResponse,
    VerifySecretResponse,
)
from utils.audit import audit

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/services", tags=["services"])


async def _get_service(db: AsyncSession, service_id: str) -> Service:
    service = await db.get(Service, service_id)
    if service is None:
        raise NotFound(f"Service '{service_id}' not found")
    return service


def _login_config_response(config, methods) -> LoginConfigResponse:
    return LoginConfigResponse(
        id=config.id,
        service_id=config.service_id,
        title=config.title,
        description=config.description,
        logo_url=config.logo_url,
        primary_color=config.primary_color,
        default_method=config.default_method,
        updated_by=config.updated_by,
        updated_at=config.updated_at,
        methods=methods,
    )


# ── CRUD ───────────────────────────────────────────────────────────────


@router.get("", response_model=list[ServiceResponse])
async def list_services(
    user: User = Depends(require_any_authenticated),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Service).order_by(Service.is_system.desc(), Service.name)
    )
    return [ServiceResponse.model_validate(s) for s in result.scalars().all()]


@router.post("", response_model=ServiceResponse, status_code=status.HTTP_201_CREATED)
async def create_service(
    body: ServiceCreate,
    user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Register a downstream service. The signing secret is generated lazily on
    the first login to the service, or explicitly via ``rotate-secret``.
    """
    service = Service(
        owner_id=user.id,
        name=body.name,
        description=body.description,
        url=body.url,
        redirect_url=body.redirect_url or body.url,
        icon=body.icon,
        color=body.color,
        is_system=False,
    )
    db.add(service)
    await db.commit()
    await db.refresh(service)
    response = ServiceResponse.model_validate(service)
    await audit.log_service_change(db, "CREATE", service.id, service.name)
    return response


@router.get("/{service_id}", response_model=ServiceResponse)
async def get_service(
    service_id: str,
    user: User = Depends(require_any_authenticated),
    db: AsyncSession = Depends(get_db),
):
    return ServiceResponse.model_validate(await _get_service(db, service_id))


@router.patch("/{service_id}", response_model=ServiceResponse)
async def update_service(
    service_id: str,
    body: ServiceUpdate,
    user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    service = await _get_service(db, service_id)
    changes = body.model_dump(exclude_unset=True)
    for field, value in changes.items():
        if value is None and field not in ("color", "redirect_url"):
            continue
        setattr(service, field, value)
    await db.commit()
    await db.refresh(service)
    response = ServiceResponse.model_validate(service)
    await audit.log_service_change(db, "UPDATE", service.id, service.name)
    return response


@router.delete("/{service_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_service(
    service_id: str,
    user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Delete a service with its binding, assignments and login config."""
    service = await _get_service(db, service_id)
    if service.is_system:
        raise SystemServiceProtected("System services cannot be deleted")
    name = service.name
    try:
        await db.delete(service)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    await audit.log_service_change(db, "DELETE", service_id, name)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Signing secret ────────────────────────────────────────────────────


@router.post("/{service_id}/rotate-secret", response_model=SecretResponse)
async def rotate_secret(
    service_id: str,
    user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """
    Replace the service's signing secret. Every token issued for the service
    before this call stops verifying. The plaintext is returned only here.
    """
    rotated = await secret_vault.rotate(db, service_id)
    await audit.log_secret_rotation(db, service_id, rotated.preview)
    return SecretResponse(
        service_id=service_id,
        secret=rotated.secret,
        secret_preview=rotated.preview,
    )


@router.post("/verify-secret", response_model=VerifySecretResponse)
async def verify_service_secret(body: ServiceCredentials, db: AsyncSession = Depends(get_db)):
    """
    Let an external service confirm its secret. No user login is involved;
    the secret itself is the credential. 404 for an unknown service, 401 when
    the service has no secret yet or the secret does not match.
    """
    service = await _get_service(db, body.service_id)
    if not await secret_vault.verify_secret(db, body.service_id, body.secret):
        await audit.log_service_auth_failed(db, body.service_id, "verify-secret")
        raise InvalidServiceCredentials("Invalid service secret", field="secret")
    return VerifySecretResponse(service=ServiceResponse.model_validate(service))


# ── RBAC model binding ────────────────────────────────────────────────


@router.get("/{service_id}/rbac-model", response_model=ServiceRbacModelResponse)
async def get_service_rbac_model(
    service_id: str,
    user: User = Depends(require_any_authenticated),
    db: AsyncSession = Depends(get_db),
):
    await _get_service(db, service_id)
    binding = await rbac_store.get_binding(db, service_id)
    if binding is None:
        return ServiceRbacModelResponse(service_id=service_id)
    model = await rbac_store.get_model(db, binding.rbac_model_id)
    return ServiceRbacModelResponse(
        service_id=service_id,
        rbac_model=RbacModelResponse.model_validate(model),
        assigned_at=binding.assigned_at,
    )


@router.put("/{service_id}/rbac-model", response_model=ServiceRbacModelResponse)
async def bind_service_rbac_model(
    service_id: str,
    body: BindModelRequest,
    user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Bind an RBAC model. 409 if a different model is already bound."""
    binding = await rbac_store.bind_model(db, service_id, body.rbac_model_id)
    model = await rbac_store.get_model(db, binding.rbac_model_id)
    response = ServiceRbacModelResponse(
        service_id=service_id,
        rbac_model=RbacModelResponse.model_validate(model),
        assigned_at=binding.assigned_at,
    )
    await audit.log_model_binding(db, "BIND_MODEL", service_id, model.id)
    return response


@router.delete("/{service_id}/rbac-model", status_code=status.HTTP_204_NO_CONTENT)
async def unbind_service_rbac_model(
    service_id: str,
    user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Unbind the model. The service's role assignments are removed with it."""
    await _get_service(db, service_id)
    if not await rbac_store.unbind_model(db, service_id):
        raise NotFound("Service has no RBAC model bound")
    await audit.log_model_binding(db, "UNBIND_MODEL", service_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ── Login page configuration ──────────────────────────────────────────


@router.get("/{service_id}/login-config", response_model=LoginConfigResponse)
async def get_login_config(
    service_id: str,
    user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    config, methods = await auth_methods.get_login_page(db, service_id)
    return _login_config_response(config, methods)


@router.patch("/{service_id}/login-config", response_model=LoginConfigResponse)
async def update_login_config(
    service_id: str,
    body: LoginConfigUpdate,
    user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Partial branding update. ``defaultMethod`` must be enabled and implemented."""
    updates = body.model_dump(exclude_unset=True)
    await auth_methods.update_login_config(db, service_id, updates, actor_id=user.id)
    config, methods = await auth_methods.get_login_page(db, service_id)
    response = _login_config_response(config, methods)
    await audit.log_login_config_change(db, service_id, list(updates))
    return response


@router.patch("/{service_id}/login-config/methods", response_model=LoginConfigResponse)
async def update_login_methods(
    service_id: str,
    body: LoginMethodsUpdate,
    user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Replace enablement, badges, texts and order of the service's methods in one write."""
    entries = [m.model_dump(exclude_unset=True) for m in body.methods]
    await auth_methods.replace_methods(db, service_id, entries, actor_id=user.id)
    config, methods = await auth_methods.get_login_page(db, service_id)
    response = _login_config_response(config, methods)
    await audit.log_login_config_change(db, service_id, ["methods"])
    return response


# ── Resolution ────────────────────────────────────────────────────────


@router.get(
    "/{service_id}/users/{user_id}/permissions",
    response_model=UserPermissionsResponse,
)
async def get_user_permissions(
    service_id: str,
    user_id: str,
    user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await _get_service(db, service_id)
    if await db.get(User, user_id) is None:
        raise NotFound(f"User '{user_id}' not found")
    roles = await rbac_store.resolve_roles(db, user_id, service_id)
    permissions = await rbac_store.permissions_for_roles(
        db, service_id, [r.id for r in roles]
    )
    return UserPermissionsResponse(
        user_id=user_id,
        service_id=service_id,
        roles=[RoleResponse.model_validate(r) for r in roles],
        permissions=sorted(permissions),
    )
