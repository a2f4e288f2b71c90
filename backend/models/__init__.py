from .user import User
from .service import Service
from .rbac import (
    RbacModel,
    Role,
    Permission,
    RolePermission,
    ServiceRbacModel,
    UserServiceRole,
)
from .auth_method import AuthMethod, LoginPageConfig, ServiceAuthMethod
from .api_key import ApiKey
from .audit_log import AuditLog

__all__ = [
    "User",
    "Service",
    "RbacModel",
    "Role",
    "Permission",
    "RolePermission",
    "ServiceRbacModel",
    "UserServiceRole",
    "AuthMethod",
    "LoginPageConfig",
    "ServiceAuthMethod",
    "ApiKey",
    "AuditLog",
]
