"""Tests for the payroll run engine."""

import asyncio
import uuid
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import update

from usdc_payroll.chains import SupportedChain
from usdc_payroll.errors import InvalidState, RunNotFound, ValidationError
from usdc_payroll.models import AuditEventType, PayrollItem
from usdc_payroll.services.worker_rows import WorkerRow

pytestmark = pytest.mark.asyncio

ADMIN = "admin-1"


@pytest.fixture
def rows():
    return [
        WorkerRow(name="Ana Lima", email="ana@example.com", amount="10.50", chain="ethereum"),
        WorkerRow(name="Bo Chen", email="bo@example.com", amount="5.25", chain="base"),
    ]


def by_email(run):
    return {item.worker.email: item for item in run.items}


class TestCreateRun:
    """Test payroll run creation."""

    async def test_creates_pending_run_with_items(self, services, rows, audit_events):
        """Test that a run snapshots its totals and starts PENDING."""
        run = await services.payroll.create_run(ADMIN, rows)

        assert run.status == "PENDING"
        assert run.total_amount == Decimal("15.75")
        assert run.total_workers == 2
        assert {item.status for item in run.items} == {"PENDING"}
        assert by_email(run)["ana@example.com"].amount == Decimal("10.50")
        assert by_email(run)["bo@example.com"].chain == "base"

        assert len(await audit_events(AuditEventType.PAYROLL_ITEM_CREATED)) == 2
        created = await audit_events(AuditEventType.PAYROLL_RUN_CREATED)
        assert len(created) == 1
        assert created[0].payload["total_amount"] == "15.75"

    async def test_new_workers_are_provisioned(self, services, stub, rows):
        run = await services.payroll.create_run(ADMIN, rows)

        for item in run.items:
            assert item.worker.recipient_id is not None
            assert item.worker.wallet_id is not None
            assert item.worker.wallet_address.startswith("0x")
        assert len(stub.calls_to("create_wallet")) == 2

    async def test_existing_workers_are_reused(self, services, stub, rows):
        first = await services.payroll.create_run(ADMIN, rows)
        second = await services.payroll.create_run(ADMIN, rows[:1])

        assert second.items[0].worker_id == by_email(first)["ana@example.com"].worker_id
        assert len(stub.calls_to("create_recipient")) == 2

    async def test_provisioning_failure_does_not_block_run(self, services, stub, rows):
        stub.fail_on("create_wallet")

        run = await services.payroll.create_run(ADMIN, rows)

        assert run.status == "PENDING"
        assert all(item.worker.wallet_id is None for item in run.items)

    async def test_rejects_empty_batch(self, services):
        with pytest.raises(ValidationError):
            await services.payroll.create_run(ADMIN, [])

    async def test_requires_admin(self, services, rows):
        with pytest.raises(ValidationError):
            await services.payroll.create_run("", rows)


class TestReadRuns:
    async def test_get_unknown_run(self, services):
        with pytest.raises(RunNotFound) as exc_info:
            await services.payroll.get_run(uuid.uuid4())

        assert exc_info.value.status_code == 404

    async def test_list_runs_is_scoped_and_paginated(self, services, rows):
        for _ in range(3):
            await services.payroll.create_run(ADMIN, rows)
        await services.payroll.create_run("someone-else", rows)

        page = await services.payroll.list_runs(ADMIN, page=1, limit=2)

        assert page.total == 3
        assert page.pages == 2
        assert len(page.runs) == 2
        assert page.runs[0].created_at >= page.runs[1].created_at
        last = await services.payroll.list_runs(ADMIN, page=2, limit=2)
        assert len(last.runs) == 1


class TestExecuteRun:
    """Test run execution."""

    async def test_gasless_items_settle_through_monitors(self, services, stub, treasury, rows, load_items):
        """Test the happy path: every worker paid from the treasury, settled by the monitors."""
        stub.auto_confirm = True
        run = await services.payroll.create_run(ADMIN, rows)

        summary = await services.payroll.execute_run(run.id)

        assert summary.status == "COMPLETED"
        assert summary.dispatched == 2
        assert summary.failed == 0

        await services.supervisor.join()
        items = await load_items(run.id)
        assert {item.status for item in items} == {"COMPLETED"}
        for item in items:
            assert item.payout_id is not None
            assert item.transaction_hash.startswith("0x")
            assert item.completed_at is not None
            operation = await services.gas_station.get_operation(item.payout_id)
            assert operation.status == "COMPLETED"

        finished = await services.payroll.get_run(run.id)
        assert finished.status == "COMPLETED"
        assert finished.completed_at is not None
        assert await stub.get_usdc_balance(treasury.wallet_id, SupportedChain.ETHEREUM) == Decimal("989.50")
        assert await stub.get_usdc_balance(treasury.wallet_id, SupportedChain.BASE) == Decimal("994.75")

    async def test_gasless_transfers_are_sponsored(self, services, stub, treasury, rows):
        run = await services.payroll.create_run(ADMIN, rows)
        stub.calls.clear()

        await services.payroll.execute_run(run.id)

        executions = stub.calls_to("execute")
        assert len(executions) == 2
        assert {c.args["wallet_id"] for c in executions} == {treasury.wallet_id}
        assert all(c.args["sponsorship"].policy_id == "default" for c in executions)

    async def test_partial_failure_completes_run(self, services, stub, rows, load_items):
        """Test that one failing item does not fail the run."""
        run = await services.payroll.create_run(ADMIN, rows)
        stub.fail_on("execute", lambda args: args["chain"] is SupportedChain.BASE)

        summary = await services.payroll.execute_run(run.id)

        assert summary.status == "COMPLETED"
        assert summary.dispatched == 1
        assert summary.failed == 1
        assert list(summary.errors.values()) == ["Stub failure in execute"]

        statuses = {item.chain: item for item in await load_items(run.id)}
        assert statuses["ethereum"].status == "SUBMITTED"
        assert statuses["base"].status == "FAILED"
        assert statuses["base"].error_message == "Stub failure in execute"

    async def test_all_items_failing_fails_run(self, services, stub, rows):
        run = await services.payroll.create_run(ADMIN, rows)
        stub.fail_on("execute")

        summary = await services.payroll.execute_run(run.id)

        assert summary.status == "FAILED"
        assert summary.failed == 2
        finished = await services.payroll.get_run(run.id)
        assert finished.status == "FAILED"
        assert finished.completed_at is not None

    async def test_worker_without_payment_method(self, services, stub, rows, load_items):
        stub.fail_on("create_wallet")
        stub.fail_on("create_recipient")
        run = await services.payroll.create_run(ADMIN, rows[:1])

        summary = await services.payroll.execute_run(run.id)

        assert summary.status == "FAILED"
        (item,) = await load_items(run.id)
        assert item.status == "FAILED"
        assert "no wallet or payout recipient" in item.error_message

    async def test_missing_treasury_fails_items(self, services_factory, rows, load_items):
        services = services_factory(treasury_wallet_id=None)
        run = await services.payroll.create_run(ADMIN, rows[:1])

        summary = await services.payroll.execute_run(run.id)

        assert summary.status == "FAILED"
        (item,) = await load_items(run.id)
        assert item.error_message == "TREASURY_WALLET_ID is not configured"

    async def test_payout_path_submits_then_reconciles(self, services, stub, rows, load_items):
        """Test custodial payouts: SUBMITTED on dispatch, COMPLETED by notification."""
        stub.fail_on("create_wallet")
        run = await services.payroll.create_run(ADMIN, rows[:1])

        summary = await services.payroll.execute_run(run.id)

        assert summary.status == "COMPLETED"
        (item,) = await load_items(run.id)
        assert item.status == "SUBMITTED"
        assert item.payout_id.startswith("pay_")
        assert stub.calls_to("create_payout")[0].args["tracking_ref"] == f"payroll-{item.id}"

        result = await services.reconciliation.apply_payout_status(
            item.payout_id, "completed", transaction_hash="0xfeed"
        )
        assert result.applied is True
        (item,) = await load_items(run.id)
        assert item.status == "COMPLETED"
        assert item.transaction_hash == "0xfeed"

    async def test_execute_twice_is_rejected(self, services, rows):
        run = await services.payroll.create_run(ADMIN, rows)
        await services.payroll.execute_run(run.id)

        with pytest.raises(InvalidState, match="only PENDING runs"):
            await services.payroll.execute_run(run.id)

    async def test_concurrent_claims_have_one_winner(self, services, rows):
        run = await services.payroll.create_run(ADMIN, rows)

        results = await asyncio.gather(
            services.payroll.claim_run(run.id),
            services.payroll.claim_run(run.id),
            return_exceptions=True,
        )

        assert sum(1 for r in results if r is None) == 1
        assert sum(1 for r in results if isinstance(r, InvalidState)) == 1

    async def test_execute_unknown_run(self, services):
        with pytest.raises(RunNotFound):
            await services.payroll.execute_run(uuid.uuid4())

    async def test_background_execution(self, services, rows, audit_events):
        run = await services.payroll.create_run(ADMIN, rows)

        await services.payroll.start_execution(run.id)
        claimed = await services.payroll.get_run(run.id)
        assert claimed.status in ("PROCESSING", "COMPLETED")
        await services.supervisor.join()

        finished = await services.payroll.get_run(run.id)
        assert finished.status == "COMPLETED"
        changes = [e.payload["to"] for e in await audit_events(AuditEventType.RUN_STATUS_CHANGED)]
        assert changes == ["PROCESSING", "COMPLETED"]

    async def test_crash_recording_one_item_is_isolated(self, services, rows, load_items, monkeypatch):
        """Test that an item whose outcome cannot be recorded fails alone."""
        run = await services.payroll.create_run(ADMIN, rows)
        record = services.payroll._record_outcome

        async def record_or_crash(item, outcome):
            if item.chain == "base":
                raise RuntimeError("ledger unavailable")
            await record(item, outcome)

        monkeypatch.setattr(services.payroll, "_record_outcome", record_or_crash)

        summary = await services.payroll.execute_run(run.id)

        assert summary.status == "COMPLETED"
        assert summary.dispatched == 1
        assert summary.failed == 1
        assert list(summary.errors.values()) == ["ledger unavailable"]
        statuses = {item.chain: item for item in await load_items(run.id)}
        assert statuses["ethereum"].status == "SUBMITTED"
        assert statuses["base"].status == "FAILED"
        assert statuses["base"].error_message == "ledger unavailable"
        assert (await services.payroll.get_run(run.id)).status == "COMPLETED"


class TestSponsoredSettlement:
    """Test that gasless items follow their sponsored transaction."""

    @pytest_asyncio.fixture
    async def submitted(self, services, rows, load_items):
        run = await services.payroll.create_run(ADMIN, rows[:1])
        await services.payroll.execute_run(run.id)
        # Monitors give up; the stub never confirms on its own
        await services.supervisor.join()
        (item,) = await load_items(run.id)
        return item

    async def test_item_waits_for_the_transaction(self, services, submitted):
        assert submitted.status == "SUBMITTED"
        assert submitted.completed_at is None
        operation = await services.gas_station.get_operation(submitted.payout_id)
        assert operation.status == "PENDING"
        assert operation.payroll_item_id == submitted.id

    async def test_reverted_transaction_fails_item(self, services, stub, submitted, load_items, audit_events):
        stub.simulate_transaction_state(submitted.payout_id, "FAILED")

        result = await services.gas_station.monitor_operation(submitted.payout_id)

        assert result.applied is True
        (item,) = await load_items(submitted.payroll_run_id)
        assert item.status == "FAILED"
        assert item.error_message == "reverted"
        assert item.completed_at is None
        updates = await audit_events(AuditEventType.PAYOUT_STATUS_UPDATED)
        assert updates[-1].payload["from"] == "SUBMITTED"
        assert updates[-1].payload["to"] == "FAILED"

    async def test_webhook_completes_item(self, services, submitted, load_items):
        result = await services.reconciliation.apply_gas_station_status(
            submitted.payout_id, "complete", transaction_hash="0xfeed"
        )

        assert result.applied is True
        (item,) = await load_items(submitted.payroll_run_id)
        assert item.status == "COMPLETED"
        assert item.transaction_hash == "0xfeed"
        assert item.completed_at is not None

    async def test_monitor_after_webhook_settles_item(self, services, db, submitted, load_items):
        """Test the webhook landing before the item recorded its operation id."""
        async with db.session() as session:
            await session.execute(
                update(PayrollItem).where(PayrollItem.id == submitted.id).values(payout_id=None)
            )
        await services.reconciliation.apply_gas_station_status(submitted.payout_id, "completed")
        async with db.session() as session:
            await session.execute(
                update(PayrollItem).where(PayrollItem.id == submitted.id).values(payout_id=submitted.payout_id)
            )

        result = await services.gas_station.monitor_operation(submitted.payout_id, max_attempts=1)

        assert result.reason == "duplicate"
        (item,) = await load_items(submitted.payroll_run_id)
        assert item.status == "COMPLETED"
