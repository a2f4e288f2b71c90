"""
Shared login pipeline.

Every login strategy ends in the same place: look up the strategy, validate
the request body, authenticate, record the login, then issue a token for the
requested service (the hub itself when none is given). Registration creates
the user first and then follows the identical issuance path.
"""

import logging
from datetime import datetime, timezone
from typing import Any, NamedTuple, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import HUB_SERVICE_ID
from models import Service, User

from . import token_issuer
from .errors import (
    InvalidCredentials,
    MethodNotImplemented,
    NotFound,
    ServiceNotConfigured,
)
from .strategies import (
    EmailPasswordStrategy,
    EmailRegisterRequest,
    StrategyRegistry,
    strategy_registry,
)
from .token_issuer import IssuedToken

logger = logging.getLogger(__name__)


class LoginOutcome(NamedTuple):
    user: User
    is_new_user: bool
    issued: IssuedToken


class AuthHandler:
    def __init__(self, registry: StrategyRegistry = strategy_registry):
        self.registry = registry

    def strategy_for(self, method_id: str):
        strategy = self.registry.get(method_id)
        if strategy is not None:
            return strategy
        if self.registry.is_known(method_id):
            raise MethodNotImplemented(
                f"Authentication method '{method_id}' is not implemented yet",
                field="method",
            )
        raise NotFound(f"Unknown authentication method '{method_id}'")

    async def _check_service(self, db: AsyncSession, service_id: Optional[str]) -> None:
        # Checked up front so a bad target never creates an account
        if service_id and await db.get(Service, service_id) is None:
            raise ServiceNotConfigured(f"Service '{service_id}' is not registered")

    async def _finish(
        self,
        db: AsyncSession,
        user: User,
        is_new_user: bool,
        service_id: Optional[str],
        redirect_uri: Optional[str],
    ) -> LoginOutcome:
        if not user.is_active:
            raise InvalidCredentials("Account is disabled")

        user.last_login_at = datetime.now(timezone.utc)
        await db.commit()

        issued = await token_issuer.issue(
            db,
            user_id=user.id,
            service_id=service_id or HUB_SERVICE_ID,
            redirect_uri=redirect_uri,
        )
        return LoginOutcome(user, is_new_user, issued)

    async def authenticate(
        self,
        db: AsyncSession,
        method_id: str,
        credentials: Any,
        service_id: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ) -> LoginOutcome:
        """
        Run one login attempt.

        Raises:
            NotFound: unknown method.
            MethodNotImplemented: catalogued placeholder without a backend.
            pydantic.ValidationError: request body rejected by the strategy.
            InvalidCredentials: authentication failed.
            ServiceNotConfigured: token could not be issued for the service.
        """
        strategy = self.strategy_for(method_id)
        request = strategy.validate_request(credentials)
        await self._check_service(db, service_id)
        user, is_new_user = await strategy.authenticate(db, request)
        logger.debug(f"User {user.id} authenticated via {method_id}")
        return await self._finish(db, user, is_new_user, service_id, redirect_uri)

    async def register(
        self,
        db: AsyncSession,
        data: EmailRegisterRequest,
        service_id: Optional[str] = None,
        redirect_uri: Optional[str] = None,
    ) -> LoginOutcome:
        """Create an email/password account, then issue exactly as login does."""
        strategy = self.strategy_for("email")
        if not isinstance(strategy, EmailPasswordStrategy):
            raise MethodNotImplemented("Email registration is not available")
        await self._check_service(db, service_id)
        user, _ = await strategy.register(db, data)
        return await self._finish(db, user, True, service_id, redirect_uri)


auth_handler = AuthHandler()
