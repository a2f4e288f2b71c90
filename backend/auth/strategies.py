"""
Login strategies and the registry that catalogs them.

Each strategy validates its own request body and turns it into an
authenticated :class:`User`. Token issuance afterwards is shared by every
strategy (see :mod:`auth.handler`).

Strategies that have no backend yet are still listed as placeholder
metadata so administrators can lay out a login page before they ship; the
catalog marks them ``implemented=False``.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, NamedTuple, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models import User

from .errors import Conflict, InvalidCredentials
from .passwords import hash_password, verify_password

logger = logging.getLogger(__name__)


class AuthStrategyMetadata(BaseModel):
    id: str
    name: str
    description: str
    icon: str
    button_text: str
    button_variant: str = "outline"  # default | outline | ghost | secondary
    help_text: Optional[str] = None
    category: str = "standard"  # standard | alternative | enterprise


class AuthResult(NamedTuple):
    user: User
    is_new_user: bool


class EmailLoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class EmailRegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)


class UuidLoginRequest(BaseModel):
    uuid: Optional[UUID] = None


async def _first_user_role(db: AsyncSession) -> str:
    """The very first account becomes the hub administrator."""
    count = await db.scalar(select(func.count()).select_from(User))
    return "admin" if not count else "user"


class AuthStrategy(ABC):
    """Base class for a login strategy."""

    metadata: AuthStrategyMetadata
    request_model: type[BaseModel]

    def validate_request(self, data: Any) -> BaseModel:
        """Parse the raw request body. Raises ``pydantic.ValidationError``."""
        return self.request_model.model_validate(data or {})

    @abstractmethod
    async def authenticate(self, db: AsyncSession, credentials: BaseModel) -> AuthResult:
        """Return the authenticated user or raise :class:`InvalidCredentials`."""


class EmailPasswordStrategy(AuthStrategy):
    metadata = AuthStrategyMetadata(
        id="email",
        name="Email Login",
        description="Traditional email and password authentication",
        icon="Mail",
        button_text="Login with Email",
        help_text="Enter your registered email and password",
    )
    request_model = EmailLoginRequest

    async def authenticate(self, db: AsyncSession, credentials: EmailLoginRequest) -> AuthResult:
        result = await db.execute(select(User).where(User.email == credentials.email.lower()))
        user = result.scalar_one_or_none()

        if not user or not user.password_hash or not verify_password(
            credentials.password, user.password_hash
        ):
            raise InvalidCredentials("Invalid email or password")
        return AuthResult(user, False)

    async def register(self, db: AsyncSession, data: EmailRegisterRequest) -> AuthResult:
        """Create an email/password account."""
        email = data.email.lower()
        existing = await db.execute(select(User).where(User.email == email))
        if existing.scalar_one_or_none():
            raise Conflict("User with this email already exists", field="email")

        user = User(
            email=email,
            password_hash=hash_password(data.password),
            role=await _first_user_role(db),
            is_active=True,
        )
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise Conflict("User with this email already exists", field="email")
        await db.refresh(user)
        logger.info(f"Registered user {user.id} (role={user.role})")
        return AuthResult(user, True)


class UuidStrategy(AuthStrategy):
    metadata = AuthStrategyMetadata(
        id="uuid",
        name="UUID Login",
        description="Anonymous authentication with auto-generated UUID4",
        icon="KeyRound",
        button_text="Login with UUID",
        help_text="Generate a new UUID or login with existing one",
    )
    request_model = UuidLoginRequest

    async def authenticate(self, db: AsyncSession, credentials: UuidLoginRequest) -> AuthResult:
        if credentials.uuid is not None:
            user = await db.get(User, str(credentials.uuid))
            if user is None:
                # Users cannot pick their own UUIDs
                raise InvalidCredentials(
                    "User not found. Please generate a new UUID to create an account."
                )
            if user.password_hash:
                # Accounts with a password only log in with it
                raise InvalidCredentials("This account requires email and password login")
            return AuthResult(user, False)

        user = User(role=await _first_user_role(db), is_active=True)
        db.add(user)
        await db.commit()
        await db.refresh(user)
        logger.info(f"Created anonymous user {user.id} (role={user.role})")
        return AuthResult(user, True)


# Advertised strategies with no backend implementation yet
PLACEHOLDER_METHODS: list[AuthStrategyMetadata] = [
    AuthStrategyMetadata(
        id="nostr",
        name="Nostr",
        description="Authenticate using your Nostr public key",
        icon="Zap",
        button_text="Login with Nostr",
        help_text="Requires Nostr browser extension (Alby or nos2x)",
        category="alternative",
    ),
    AuthStrategyMetadata(
        id="bluesky",
        name="BlueSky",
        description="Authenticate using BlueSky ATProtocol",
        icon="Cloud",
        button_text="Login with BlueSky",
        help_text="Use your BlueSky DID for authentication",
        category="alternative",
    ),
    AuthStrategyMetadata(
        id="webauthn",
        name="WebAuthn",
        description="Authenticate using biometrics or security keys",
        icon="Fingerprint",
        button_text="Login with WebAuthn",
        help_text="Use fingerprint, Face ID, or hardware key",
    ),
    AuthStrategyMetadata(
        id="magic_link",
        name="Magic Link",
        description="Passwordless authentication via email",
        icon="Sparkles",
        button_text="Send Magic Link",
        help_text="Receive a one-time login link via email",
    ),
]


class CatalogEntry(NamedTuple):
    metadata: AuthStrategyMetadata
    implemented: bool


class StrategyRegistry:
    """Registry of implemented strategies plus placeholder metadata."""

    def __init__(self) -> None:
        self._strategies: dict[str, AuthStrategy] = {}
        self._placeholders: dict[str, AuthStrategyMetadata] = {}

    def register(self, strategy: AuthStrategy) -> None:
        self._strategies[strategy.metadata.id] = strategy
        self._placeholders.pop(strategy.metadata.id, None)
        logger.debug(f"Registered auth strategy: {strategy.metadata.name} ({strategy.metadata.id})")

    def register_placeholder(self, metadata: AuthStrategyMetadata) -> None:
        if metadata.id not in self._strategies:
            self._placeholders[metadata.id] = metadata

    def get(self, method_id: str) -> Optional[AuthStrategy]:
        return self._strategies.get(method_id)

    def is_implemented(self, method_id: str) -> bool:
        return method_id in self._strategies

    def is_known(self, method_id: str) -> bool:
        return method_id in self._strategies or method_id in self._placeholders

    def implemented_ids(self) -> list[str]:
        return list(self._strategies)

    def catalog(self) -> list[CatalogEntry]:
        """Implemented strategies first (registration order), then placeholders."""
        entries = [CatalogEntry(s.metadata, True) for s in self._strategies.values()]
        entries.extend(CatalogEntry(m, False) for m in self._placeholders.values())
        return entries


strategy_registry = StrategyRegistry()
strategy_registry.register(UuidStrategy())
strategy_registry.register(EmailPasswordStrategy())
for _placeholder in PLACEHOLDER_METHODS:
    strategy_registry.register_placeholder(_placeholder)
