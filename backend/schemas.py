"""
Pydantic v2 request/response schemas for the AuthHub API.

Architecture:
  - *Fields classes: pure field definitions, no validators.  Shared by both
    input (Create/Update) and output (Response) schemas.
  - *Create / *Update classes: ADD strict validators so bad data is
    rejected early with clear, actionable error messages.
  - *Response classes: serialize ORM rows (``from_attributes``).

Login page schemas accept both snake_case and the camelCase names used by
the admin frontend (``logoUrl``, ``defaultMethod``, ``displayOrder``...).
"""

from datetime import datetime
from typing import Any, Optional, List

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from auth.auth_methods import EffectiveAuthMethod


NAME_MAX = 255
VALID_HUB_ROLES = frozenset({"admin", "user"})
VALID_BUTTON_VARIANTS = frozenset({"default", "outline", "ghost", "secondary"})


def _validate_url(value: str, field_name: str = "URL") -> str:
    """Require an absolute http(s) URL."""
    value = value.strip()
    if not value.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid {field_name} '{value}'. Expected an absolute http:// or https:// URL"
        )
    return value


def _validate_name(value: str) -> str:
    value = value.strip()
    if not value:
        raise ValueError("Name must not be blank")
    return value


def _validate_button_variant(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    if value not in VALID_BUTTON_VARIANTS:
        raise ValueError(
            f"Invalid button variant '{value}'. "
            f"Allowed values: {', '.join(sorted(VALID_BUTTON_VARIANTS))}"
        )
    return value


# ═══════════════════════════════════════════════════════════════════════
# AUTH SCHEMAS
# ═══════════════════════════════════════════════════════════════════════


class IssuanceTarget(BaseModel):
    """Where the issued token is meant to go."""

    service_id: Optional[str] = None
    redirect_uri: Optional[str] = None

    @field_validator("redirect_uri")
    @classmethod
    def validate_redirect_uri(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        return _validate_url(v, "redirect URI")


class RegisterRequest(IssuanceTarget):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)


class LoginRequest(IssuanceTarget):
    email: EmailStr
    password: str = Field(..., min_length=1)


class UuidLoginBody(IssuanceTarget):
    uuid: Optional[str] = None


class UserSummary(BaseModel):
    id: str
    email: Optional[str] = None
    role: str

    model_config = ConfigDict(from_attributes=True)


class UserResponse(UserSummary):
    is_active: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None


class AuthResponse(BaseModel):
    token: str
    token_type: str = "Bearer"
    expires_in: int
    service_id: str
    user: UserSummary
    is_new_user: bool = False
    redirect_target: Optional[str] = None


class ServiceCredentials(BaseModel):
    """A calling service authenticates with its ID and current signing secret."""

    service_id: str = Field(..., alias="serviceId")
    secret: str = Field(..., min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class VerifyTokenRequest(ServiceCredentials):
    token: str = Field(..., min_length=1)


class VerifyTokenResponse(BaseModel):
    valid: bool
    reason: Optional[str] = None
    claims: Optional[dict[str, Any]] = None
    permissions: Optional[List[str]] = None


class AuthorizeRequest(ServiceCredentials):
    token: str = Field(..., min_length=1)
    permission: str = Field(..., min_length=1)


class AuthorizeResponse(BaseModel):
    allowed: bool


class CredentialCheckRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class CredentialCheckResponse(BaseModel):
    valid: bool
    user_id: Optional[str] = None
    email: Optional[str] = None


class LoginMethodsResponse(BaseModel):
    service_id: str
    title: str
    description: str
    logo_url: Optional[str] = None
    primary_color: Optional[str] = None
    default_method: Optional[str] = None
    methods: List[EffectiveAuthMethod]


# ═══════════════════════════════════════════════════════════════════════
# SERVICE SCHEMAS
# ═══════════════════════════════════════════════════════════════════════


class ServiceFields(BaseModel):
    """Pure field definitions for services.  No validators."""

    name: str = Field(..., min_length=1, max_length=NAME_MAX)
    description: str = Field("", max_length=5000)
    url: str = Field(..., max_length=500)
    redirect_url: Optional[str] = Field(None, max_length=500)
    icon: str = Field("Globe", max_length=100)
    color: Optional[str] = Field(None, max_length=100)


class _ServiceValidators:
    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if v is None:
            return v
        return _validate_name(v)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        if v is None:
            return v
        return _validate_url(v, "service URL")

    @field_validator("redirect_url")
    @classmethod
    def validate_redirect_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        return _validate_url(v, "redirect URL")


class ServiceCreate(ServiceFields, _ServiceValidators):
    pass


class ServiceUpdate(BaseModel, _ServiceValidators):
    name: Optional[str] = Field(None, min_length=1, max_length=NAME_MAX)
    description: Optional[str] = Field(None, max_length=5000)
    url: Optional[str] = Field(None, max_length=500)
    redirect_url: Optional[str] = Field(None, max_length=500)
    icon: Optional[str] = Field(None, max_length=100)
    color: Optional[str] = Field(None, max_length=100)


class ServiceResponse(ServiceFields):
    """The plaintext secret is never part of this schema."""

    id: str
    owner_id: Optional[str] = None
    is_system: bool
    has_secret: bool
    secret_preview: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SecretResponse(BaseModel):
    """Returned once, right after a rotation. The secret is not stored in plaintext."""

    service_id: str
    secret: str
    secret_preview: str
    message: str = "Store this secret now. It will not be shown again."


class VerifySecretResponse(BaseModel):
    success: bool = True
    message: str = "Secret verified successfully"
    service: ServiceResponse


# ═══════════════════════════════════════════════════════════════════════
# RBAC SCHEMAS
# ═══════════════════════════════════════════════════════════════════════


class NamedFields(BaseModel):
    name: str = Field(..., min_length=1, max_length=NAME_MAX)
    description: str = Field("", max_length=5000)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_name(v)


class NamedUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=NAME_MAX)
    description: Optional[str] = Field(None, max_length=5000)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _validate_name(v)


class RbacModelCreate(NamedFields):
    pass


class RbacModelUpdate(NamedUpdate):
    pass


class RbacModelResponse(BaseModel):
    id: str
    name: str
    description: str
    created_by: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RoleCreate(NamedFields):
    pass


class RoleUpdate(NamedUpdate):
    pass


class PermissionCreate(NamedFields):
    pass


class PermissionUpdate(NamedUpdate):
    pass


class RoleResponse(BaseModel):
    id: str
    rbac_model_id: str
    name: str
    description: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PermissionResponse(RoleResponse):
    pass


class RolePermissionsUpdate(BaseModel):
    permission_ids: List[str]


class PermissionRef(BaseModel):
    id: str
    name: str


class RolePermissionMapping(BaseModel):
    role_id: str
    role_name: str
    permissions: List[PermissionRef]


class BindModelRequest(BaseModel):
    rbac_model_id: str = Field(..., alias="rbacModelId")

    model_config = ConfigDict(populate_by_name=True)


class ServiceRbacModelResponse(BaseModel):
    service_id: str
    rbac_model: Optional[RbacModelResponse] = None
    assigned_at: Optional[datetime] = None


# ═══════════════════════════════════════════════════════════════════════
# LOGIN PAGE SCHEMAS
# ═══════════════════════════════════════════════════════════════════════


class LoginConfigUpdate(BaseModel):
    """Partial update of login page branding. Only sent fields are applied."""

    title: Optional[str] = Field(None, max_length=NAME_MAX)
    description: Optional[str] = Field(None, max_length=5000)
    logo_url: Optional[str] = Field(None, alias="logoUrl", max_length=500)
    primary_color: Optional[str] = Field(None, alias="primaryColor", max_length=50)
    default_method: Optional[str] = Field(None, alias="defaultMethod")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("logo_url")
    @classmethod
    def validate_logo_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        return _validate_url(v, "logo URL")


class LoginConfigResponse(BaseModel):
    id: str
    service_id: str
    title: str
    description: str
    logo_url: Optional[str] = None
    primary_color: Optional[str] = None
    default_method: Optional[str] = None
    updated_by: Optional[str] = None
    updated_at: datetime
    methods: List[EffectiveAuthMethod] = []

    model_config = ConfigDict(from_attributes=True)


class ServiceAuthMethodUpdate(BaseModel):
    """One entry of the per-service method list. Null overrides fall back to the catalog."""

    id: str = Field(..., min_length=1)
    enabled: Optional[bool] = None
    show_coming_soon_badge: Optional[bool] = Field(None, alias="showComingSoonBadge")
    button_text: Optional[str] = Field(None, alias="buttonText", max_length=255)
    button_variant: Optional[str] = Field(None, alias="buttonVariant")
    help_text: Optional[str] = Field(None, alias="helpText", max_length=5000)
    display_order: Optional[int] = Field(None, alias="displayOrder", ge=0)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("button_variant")
    @classmethod
    def validate_button_variant(cls, v: Optional[str]) -> Optional[str]:
        return _validate_button_variant(v)


class LoginMethodsUpdate(BaseModel):
    methods: List[ServiceAuthMethodUpdate]


# ═══════════════════════════════════════════════════════════════════════
# USER / ASSIGNMENT SCHEMAS
# ═══════════════════════════════════════════════════════════════════════


class HubRoleUpdate(BaseModel):
    role: str = Field(..., pattern="^(admin|user)$")


class UserServiceRoleCreate(BaseModel):
    user_id: str
    service_id: str
    role_id: str


class UserServiceRoleResponse(BaseModel):
    id: str
    user_id: str
    service_id: str
    role_id: str
    role_name: Optional[str] = None
    assigned_at: datetime

    @classmethod
    def from_row(cls, row) -> "UserServiceRoleResponse":
        return cls(
            id=row.id,
            user_id=row.user_id,
            service_id=row.service_id,
            role_id=row.role_id,
            role_name=row.role.name if row.role is not None else None,
            assigned_at=row.assigned_at,
        )


class UserPermissionsResponse(BaseModel):
    user_id: str
    service_id: str
    roles: List[RoleResponse]
    permissions: List[str]


# ═══════════════════════════════════════════════════════════════════════
# API KEY SCHEMAS
# ═══════════════════════════════════════════════════════════════════════


class ApiKeyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=NAME_MAX)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        return _validate_name(v)


class ApiKeyResponse(BaseModel):
    """Stored key metadata. The key itself is never part of this schema."""

    id: str
    name: str
    key_preview: str
    created_by: Optional[str] = None
    created_at: datetime
    last_used_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ApiKeyCreated(ApiKeyResponse):
    """Returned once, on creation."""

    key: str
    message: str = "Store this key now. It will not be shown again."


# ═══════════════════════════════════════════════════════════════════════
# AUDIT LOG SCHEMAS
# ═══════════════════════════════════════════════════════════════════════


class AuditLogResponse(BaseModel):
    id: int
    created_at: datetime
    action: str
    severity: str
    status: str
    actor: Optional[str] = None
    resource: str
    resource_id: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    request_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class AuditLogPage(BaseModel):
    total: int
    skip: int
    limit: int
    items: List[AuditLogResponse]
