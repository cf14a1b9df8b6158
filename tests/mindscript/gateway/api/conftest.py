import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient

from mindscript.gateway import create_app
from mindscript.gateway.auth import User, authenticate
from mindscript.gateway.db import close_db


@pytest_asyncio.fixture(scope="function")
async def app(settings) -> FastAPI:
    # Clean up any existing database state
    await close_db()

    app = create_app(settings)

    async with app.router.lifespan_context(app):
        yield app

    await close_db()


@pytest.fixture
def test_user():
    """Regular test user."""
    return User(id="test-user-123")


@pytest.fixture
def other_user():
    return User(id="other-user-456")


@pytest.fixture
def admin_user():
    """Admin test user."""
    return User(id="admin-user-123", is_admin=True)


@pytest.fixture
def as_test_user(app, test_user):
    """Set auth to regular test user."""
    app.dependency_overrides[authenticate] = lambda: test_user
    yield test_user
    app.dependency_overrides.pop(authenticate, None)


@pytest.fixture
def as_other_user(app, other_user):
    app.dependency_overrides[authenticate] = lambda: other_user
    yield other_user
    app.dependency_overrides.pop(authenticate, None)


@pytest.fixture
def as_admin_user(app, admin_user):
    """Set auth to admin user."""
    app.dependency_overrides[authenticate] = lambda: admin_user
    yield admin_user
    app.dependency_overrides.pop(authenticate, None)


@pytest_asyncio.fixture
async def client(app):
    """Test client with auth overrides."""
    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
