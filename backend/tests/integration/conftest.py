from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from deploy_console.db.session import create_session_factory
from deploy_console.main import create_app
from deploy_console.services.ledger import DeploymentLedger

# Use in-memory SQLite for fast integration tests
DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def ledger() -> AsyncGenerator[DeploymentLedger, None]:
    """A fresh ledger per test, tables created up front."""
    engine = create_async_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    ledger = DeploymentLedger(create_session_factory(engine), engine)
    await ledger.create_tables()
    yield ledger
    await ledger.dispose()


@pytest.fixture
def app(settings, ledger):
    return create_app(settings, ledger=ledger)


@pytest.fixture
def controller(app):
    return app.state.controller


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Provide an AsyncClient for the FastAPI app."""
    # Use ASGITransport for testing FastAPI apps
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
