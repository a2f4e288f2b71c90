from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


def _load_version() -> str:
    version_path = Path(__file__).resolve().parent / "VERSION"
    try:
        return version_path.read_text().strip()
    except FileNotFoundError:
        return "0.1.0"


# The hub is itself a registered service with a well-known ID
HUB_SERVICE_ID = "550e8400-e29b-41d4-a716-446655440000"


class Settings(BaseSettings):
    """Application configuration using Pydantic settings."""

    # Database
    DATABASE_URL: str = "sqlite:///./data/authhub.db"

    # CORS
    CORS_ORIGINS: list[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: list[str] = ["*"]
    CORS_ALLOW_HEADERS: list[str] = ["*"]

    # Application
    APP_NAME: str = "AuthHub"
    APP_VERSION: str = _load_version()
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    HUB_BASE_URL: str = "http://localhost:5000"

    # ── Tokens ─────────────────────────────────────────────────────────
    JWT_ALGORITHM: str = "HS256"
    TOKEN_EXPIRATION_MINUTES: int = 60 * 24 * 7

    # ── Secret vault ───────────────────────────────────────────────────
    # Master key for encrypting per-service signing secrets at rest
    SECRET_ENCRYPTION_KEY: str = "change-me-in-production"
    # Visible characters of a secret preview; clamped so 128 bits stay hidden
    SECRET_PREVIEW_HEAD: int = Field(12, ge=0)
    SECRET_PREVIEW_TAIL: int = Field(6, ge=0)

    # Auth feature flags
    AUTH_ENABLED: bool = True  # Master switch - False = admin endpoints public
    ALLOW_REGISTRATION: bool = True

    # Local admin bootstrap (set via env vars for first-run setup)
    LOCAL_ADMIN_EMAIL: Optional[str] = None
    LOCAL_ADMIN_PASSWORD: Optional[str] = None

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
