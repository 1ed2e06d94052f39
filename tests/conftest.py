"""Pytest fixtures for USDC payroll tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from dataclasses import replace
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import select

from usdc_payroll.chains import SupportedChain
from usdc_payroll.config import Settings
from usdc_payroll.database import Database
from usdc_payroll.models import AuditEventType, AuditLog, PayrollItem, Worker
from usdc_payroll.providers import StubGateway
from usdc_payroll.providers.base import GatewayClients, WalletResult
from usdc_payroll.services import Services, build_services

WEBHOOK_SECRET = "test-webhook-secret"
PAYMASTER_ADDRESS = "0x" + "5a" * 20
DESTINATION_ADDRESS = "0x" + "d1" * 20


def make_settings(database_url: str, **overrides) -> Settings:
    """Settings suitable for tests: fast polling, all optional features configured."""
    values = dict(
        database_url=database_url,
        webhook_secret=WEBHOOK_SECRET,
        paymaster_address=PAYMASTER_ADDRESS,
        dispatch_concurrency=3,
        attestation_poll_interval=0.0,
        attestation_max_attempts=3,
        receipt_poll_interval=0.0,
        receipt_max_attempts=3,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    # File-backed so concurrent sessions see each other's commits
    return f"sqlite+aiosqlite:///{tmp_path / 'payroll.db'}"


@pytest_asyncio.fixture
async def db(database_url: str) -> AsyncGenerator[Database, None]:
    """Open database with every table created."""
    database = Database(database_url)
    database.open()
    await database.create_all()
    yield database
    await database.close()


@pytest.fixture
def stub() -> StubGateway:
    """In-memory gateway; every new wallet starts with 1000 USDC per chain."""
    return StubGateway(initial_balance=Decimal("1000"))


@pytest_asyncio.fixture
async def treasury(stub: StubGateway) -> WalletResult:
    """Funded treasury wallet that pays gasless payroll items."""
    wallet = await stub.create_wallet(
        reference="treasury",
        chains=list(SupportedChain),
        idempotency_key="treasury-wallet",
    )
    stub.calls.clear()
    return wallet


@pytest.fixture
def gateway(stub: StubGateway) -> GatewayClients:
    return stub.clients()


@pytest.fixture
def settings(database_url: str, treasury: WalletResult) -> Settings:
    return make_settings(
        database_url,
        treasury_wallet_id=treasury.wallet_id,
        treasury_wallet_address=treasury.address,
    )


@pytest_asyncio.fixture
async def services(settings: Settings, db: Database, gateway: GatewayClients) -> AsyncGenerator[Services, None]:
    """Services over the stub; background monitors are cancelled before the database closes."""
    built = build_services(settings, db, gateway)
    yield built
    await built.supervisor.shutdown()


@pytest_asyncio.fixture
async def services_factory(db: Database, gateway: GatewayClients, settings: Settings):
    """Build services with settings overrides."""
    built: list[Services] = []

    def factory(**overrides) -> Services:
        built.append(build_services(replace(settings, **overrides), db, gateway))
        return built[-1]

    yield factory
    for extra in built:
        await extra.supervisor.shutdown()


@pytest_asyncio.fixture
async def worker(services: Services) -> Worker:
    """A fully provisioned worker (recipient and wallet)."""
    async with services.db.session() as session:
        record = Worker(name="Alice Doe", email="alice@example.com")
        session.add(record)
    result = await services.provisioning.provision_worker(record.id)
    assert result.success
    return await services.workers.get_worker(record.id)


@pytest.fixture
def load_items(db: Database):
    """Fetch a run's items straight from the ledger store."""

    async def load(run_id) -> list[PayrollItem]:
        async with db.session() as session:
            items = await session.scalars(
                select(PayrollItem)
                .where(PayrollItem.payroll_run_id == run_id)
                .order_by(PayrollItem.created_at)
            )
            return list(items)

    return load


@pytest.fixture
def audit_events(db: Database):
    """Fetch audit events of one type, oldest first."""

    async def load(event_type: AuditEventType) -> list[AuditLog]:
        async with db.session() as session:
            events = await session.scalars(
                select(AuditLog)
                .where(AuditLog.event_type == event_type.value)
                .order_by(AuditLog.created_at)
            )
            return list(events)

    return load
