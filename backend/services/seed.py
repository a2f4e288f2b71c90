"""
First-run seeding: the hub's own service row, the auth method catalog and
an optional bootstrap administrator.

Every step is idempotent and runs on every startup.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth.auth_methods import sync_catalog
from auth.passwords import hash_password
from config import HUB_SERVICE_ID, settings
from models import Service, User
from utils.logging_utils import log_step

logger = logging.getLogger(__name__)


async def ensure_hub_service(db: AsyncSession) -> Service:
    """The hub is a system service with a well-known ID."""
    service = await db.get(Service, HUB_SERVICE_ID)
    if service is None:
        service = Service(
            id=HUB_SERVICE_ID,
            name=settings.APP_NAME,
            description="Central identity hub",
            url=settings.HUB_BASE_URL,
            icon="Shield",
            is_system=True,
        )
        db.add(service)
        await db.commit()
        logger.info(f"Created hub service {HUB_SERVICE_ID}")
    elif not service.is_system:
        service.is_system = True
        await db.commit()
    return service


async def bootstrap_admin(
    db: AsyncSession,
    email: Optional[str] = None,
    password: Optional[str] = None,
) -> Optional[User]:
    """Create the configured local admin unless an account with that email exists."""
    email = email or settings.LOCAL_ADMIN_EMAIL
    password = password or settings.LOCAL_ADMIN_PASSWORD
    if not email or not password:
        return None

    email = email.lower()
    result = await db.execute(select(User).where(User.email == email))
    if result.scalar_one_or_none():
        return None

    admin = User(
        email=email,
        password_hash=hash_password(password),
        role="admin",
        is_active=True,
    )
    db.add(admin)
    await db.commit()
    logger.info(f"Bootstrap admin user '{email}' created")
    return admin


async def seed_database(db: AsyncSession) -> None:
    with log_step(logger, 1, 3, "Ensuring hub service"):
        await ensure_hub_service(db)
    with log_step(logger, 2, 3, "Syncing auth method catalog"):
        await sync_catalog(db)
    with log_step(logger, 3, 3, "Bootstrapping local admin"):
        await bootstrap_admin(db)
