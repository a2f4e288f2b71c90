"""
Pytest configuration and fixtures for AuthHub tests.

Provides:
- Async SQLite in-memory database with foreign keys on, the hub service and
  the auth method catalog seeded
- ``db``: a session on that database for testing the core directly
- FastAPI app with dependency overrides and an AsyncClient
- ``admin_headers``: bearer headers of the first (admin) user
"""

from types import SimpleNamespace

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from auth.auth_methods import sync_catalog
from database import Base, enable_sqlite_foreign_keys, get_db
from main import app
from services.seed import ensure_hub_service


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        future=True,
    )
    enable_sqlite_foreign_keys(engine)

    factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with factory() as session:
        await ensure_hub_service(session)
        await sync_catalog(session)

    yield factory

    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def async_client(session_factory):
    """
    AsyncClient pointing to the FastAPI app with the test database.

    Yields:
        httpx.AsyncClient: Async HTTP client for making requests to the app.
    """
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def admin_headers(async_client: AsyncClient):
    """Register the first user (who becomes admin) and return auth headers."""
    response = await async_client.post(
        "/api/auth/register",
        json={"email": "admin@example.com", "password": "admin-password"},
    )
    assert response.status_code == 201, response.text
    assert response.json()["user"]["role"] == "admin"
    return {"Authorization": f"Bearer {response.json()['token']}"}


@pytest_asyncio.fixture
async def helpdesk(db):
    """
    A "Helpdesk" service bound to a "Support" model, with one user holding
    the Agent role (ticket.read). Lead (ticket.read, ticket.close) is left
    unassigned.
    """
    from auth import rbac_store
    from models import Service, User

    user = User(email="agent@example.com", role="user")
    service = Service(name="Helpdesk", url="https://helpdesk.example.com")
    db.add_all([user, service])
    await db.commit()

    model = await rbac_store.create_model(db, "Support", "", None)
    agent = await rbac_store.create_role(db, model.id, "Agent")
    lead = await rbac_store.create_role(db, model.id, "Lead")
    read = await rbac_store.create_permission(db, model.id, "ticket.read")
    close = await rbac_store.create_permission(db, model.id, "ticket.close")
    await rbac_store.set_role_permissions(db, agent.id, [read.id])
    await rbac_store.set_role_permissions(db, lead.id, [read.id, close.id])
    await rbac_store.bind_model(db, service.id, model.id)
    await rbac_store.assign_role(db, user.id, service.id, agent.id)

    return SimpleNamespace(
        user=user,
        service=service,
        model=model,
        agent=agent,
        lead=lead,
        read=read,
        close=close,
    )
