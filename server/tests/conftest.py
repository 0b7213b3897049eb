"""Test configuration and fixtures."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from courtslot.core.database import Base, get_db
from courtslot.models import *  # noqa: F403 - Import all models
from courtslot.schemas.auth import Principal, UserRole
from courtslot.schemas.resource import CreateResourceRequest
from courtslot.services.resource_service import ResourceService
from helpers import RecordingNotifier, make_token

# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # Create tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    # Drop tables
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def test_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def court(test_session):
    return await ResourceService(test_session).create_resource(
        CreateResourceRequest(name="Court 1", category="badminton")
    )


@pytest_asyncio.fixture(scope="function")
async def second_court(test_session):
    return await ResourceService(test_session).create_resource(
        CreateResourceRequest(name="Court 2", category="badminton")
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def alice():
    return Principal(user_id="alice")


@pytest.fixture
def bob():
    return Principal(user_id="bob")


@pytest.fixture
def carol():
    return Principal(user_id="carol")


@pytest.fixture
def staff():
    return Principal(user_id="desk-1", role=UserRole.STAFF)


@pytest_asyncio.fixture(scope="function")
async def test_app(test_session):
    """Create a test FastAPI application without lifespan hooks."""
    from courtslot.main import create_app

    app = create_app(use_lifespan=False)

    # Override database dependency
    async def override_get_db():
        yield test_session

    app.dependency_overrides[get_db] = override_get_db

    yield app

    # Clean up
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_client(test_app):
    """Create a test HTTP client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def user_headers():
    return {"Authorization": f"Bearer {make_token('alice')}"}


@pytest.fixture
def other_user_headers():
    return {"Authorization": f"Bearer {make_token('bob')}"}


@pytest.fixture
def staff_headers():
    return {"Authorization": f"Bearer {make_token('desk-1', role='staff')}"}
