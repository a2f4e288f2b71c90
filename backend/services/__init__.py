"""Services package for AuthHub."""

from .health import run_health_checks, HealthResponse, ComponentHealth
from .seed import seed_database, ensure_hub_service, bootstrap_admin

__all__ = [
    "run_health_checks",
    "HealthResponse",
    "ComponentHealth",
    "seed_database",
    "ensure_hub_service",
    "bootstrap_admin",
]
