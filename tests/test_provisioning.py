"""Tests for worker provisioning and the worker read services."""

import uuid
from decimal import Decimal

import pytest

from usdc_payroll.chains import SupportedChain
from usdc_payroll.errors import WorkerNotFound
from usdc_payroll.models import AuditEventType, Worker
from usdc_payroll.services.worker_rows import WorkerRow

pytestmark = pytest.mark.asyncio


async def add_worker(db, email="cy@example.com"):
    async with db.session() as session:
        worker = Worker(name="Cy Park", email=email)
        session.add(worker)
    return worker


class TestProvisioning:
    """Test gateway resource creation for workers."""

    async def test_creates_recipient_and_wallet(self, services, db, audit_events):
        worker = await add_worker(db)

        result = await services.provisioning.provision_worker(worker.id)

        assert result.success
        assert result.recipient_created and result.wallet_created
        stored = await services.workers.get_worker(worker.id)
        assert stored.recipient_id.startswith("rcp_")
        assert stored.wallet_id.startswith("wlt_")
        assert len(await audit_events(AuditEventType.WORKER_PROVISIONED)) == 2

    async def test_is_idempotent(self, services, stub, db):
        worker = await add_worker(db)
        await services.provisioning.provision_worker(worker.id)
        stub.calls.clear()

        result = await services.provisioning.provision_worker(worker.id)

        assert result.success
        assert not result.recipient_created and not result.wallet_created
        assert stub.calls == []

    async def test_failures_are_reported_not_raised(self, services, stub, db):
        worker = await add_worker(db)
        stub.fail_on("create_wallet")

        result = await services.provisioning.provision_worker(worker.id)

        assert not result.success
        assert result.recipient_created
        assert result.errors[0].startswith("wallet:")
        assert (await services.workers.get_worker(worker.id)).wallet_id is None

    async def test_unknown_worker(self, services):
        with pytest.raises(WorkerNotFound):
            await services.provisioning.provision_worker(uuid.uuid4())

    async def test_reprovision_missing(self, services, stub, db):
        stub.fail_on("create_wallet")
        first = await add_worker(db, "a@example.com")
        second = await add_worker(db, "b@example.com")
        for worker in (first, second):
            await services.provisioning.provision_worker(worker.id)
        stub.clear_failures()

        results = await services.provisioning.reprovision_missing()

        assert {r.worker_id for r in results} == {first.id, second.id}
        assert all(r.wallet_created for r in results)
        assert await services.provisioning.reprovision_missing() == []


class TestWorkerService:
    """Test balances and the merged transaction history."""

    async def test_balances_on_every_chain(self, services, stub, worker):
        stub.set_balance(worker.wallet_id, SupportedChain.BASE, Decimal("12.5"))

        balances = await services.workers.get_balances(worker.id)

        by_chain = {b.chain: b.balance for b in balances.balances}
        assert set(by_chain) == {c.value for c in SupportedChain}
        assert by_chain["base"] == "12.50"
        assert by_chain["ethereum"] == "1000.00"

    async def test_unreadable_chain_reports_zero(self, services, stub, worker):
        stub.fail_on("get_usdc_balance", lambda args: args["chain"] is SupportedChain.POLYGON)

        balances = await services.workers.get_balances(worker.id)

        assert {b.chain: b.balance for b in balances.balances}["polygon"] == "0"

    async def test_balances_require_wallet(self, services, db):
        worker = await add_worker(db)

        with pytest.raises(WorkerNotFound, match="wallet not found"):
            await services.workers.get_balances(worker.id)

    async def test_transactions_merge_all_sources(self, services, worker):
        await services.transfers.initiate_transfer(
            worker_id=worker.id,
            source_chain=SupportedChain.ETHEREUM,
            destination_chain=SupportedChain.BASE,
            amount="4",
            destination_address="0x" + "d1" * 20,
        )
        await services.gas_station.create_gasless_transfer(
            worker_id=worker.id,
            wallet_id=worker.wallet_id,
            chain=SupportedChain.BASE,
            recipient_address="0x" + "d2" * 20,
            amount=Decimal("1"),
        )

        page = await services.workers.list_transactions(worker.id, page=1, limit=10)

        assert page.total == 2
        assert [t.type for t in page.transactions] == ["gasless", "transfer"]
        assert page.transactions[1].amount == "4.00"
        assert page.transactions[1].status == "pending"

    async def test_treasury_payments_list_once_as_payouts(self, services, worker):
        """Test that a payroll payment to the worker is not shown as their own sponsored transaction."""
        run = await services.payroll.create_run(
            "admin-1", [WorkerRow(name=worker.name, email=worker.email, amount="12", chain="base")]
        )
        await services.payroll.execute_run(run.id)
        (item,) = (await services.payroll.get_run(run.id)).items
        operation = await services.gas_station.get_operation(item.payout_id)
        assert operation.worker_id == worker.id
        assert operation.payroll_item_id == item.id

        page = await services.workers.list_transactions(worker.id, page=1, limit=10)

        assert page.total == 1
        (entry,) = page.transactions
        assert entry.type == "payout"
        assert entry.reference == item.payout_id
        assert entry.amount == "12.00"

    async def test_transactions_pagination(self, services, worker):
        for _ in range(3):
            await services.gas_station.create_gasless_transfer(
                worker_id=worker.id,
                wallet_id=worker.wallet_id,
                chain=SupportedChain.BASE,
                recipient_address="0x" + "d2" * 20,
                amount=Decimal("1"),
            )

        page = await services.workers.list_transactions(worker.id, page=2, limit=2)

        assert page.total == 3
        assert page.pages == 2
        assert len(page.transactions) == 1
