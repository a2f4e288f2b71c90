from .auth import router as auth_router
from .services import router as services_router
from .rbac import router as rbac_router
from .users import router as users_router
from .users import directory_router as user_directory_router
from .api_keys import router as api_keys_router
from .audit_logs import router as audit_logs_router

__all__ = [
    "auth_router",
    "services_router",
    "rbac_router",
    "users_router",
    "user_directory_router",
    "api_keys_router",
    "audit_logs_router",
]
