"""API test fixtures: the application wired to a test database and the stub gateway."""

from collections.abc import AsyncGenerator

import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from usdc_payroll.api.app import create_app
from usdc_payroll.config import Settings
from usdc_payroll.database import Database
from usdc_payroll.providers.base import GatewayClients
from usdc_payroll.services import Services

from ..conftest import make_settings

ADMIN_HEADERS = {"X-Admin-ID": "admin-1"}


@pytest_asyncio.fixture
async def app(settings: Settings, db: Database, gateway: GatewayClients) -> AsyncGenerator[FastAPI, None]:
    """Application with its lifespan running (ASGITransport does not run it)."""
    application = create_app(settings, database=db, gateway=gateway)
    async with application.router.lifespan_context(application):
        yield application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create async test client."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def app_services(app: FastAPI) -> Services:
    """The service container the running application uses."""
    return app.state.services


@pytest_asyncio.fixture
async def limited_client(database_url: str, db: Database, gateway: GatewayClients) -> AsyncGenerator[AsyncClient, None]:
    """Client of an application with small inbound windows."""
    settings = make_settings(
        database_url,
        api_rate_limit="5/minute",
        upload_rate_limit="2/minute",
        webhook_rate_limit="2/minute",
    )
    application = create_app(settings, database=db, gateway=gateway)
    async with application.router.lifespan_context(application):
        async with AsyncClient(transport=ASGITransport(app=application), base_url="http://test") as ac:
            yield ac
