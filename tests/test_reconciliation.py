"""Tests for webhook signature checks and idempotent status reconciliation."""

import pytest
import pytest_asyncio

from usdc_payroll.chains import SupportedChain
from usdc_payroll.errors import ConfigurationError, InvalidSignature
from usdc_payroll.models import AuditEventType
from usdc_payroll.services.reconciliation import (
    normalize_payout_status,
    sign_payload,
    verify_webhook_signature,
)
from usdc_payroll.services.state_machine import ItemStatus
from usdc_payroll.services.worker_rows import WorkerRow

from .conftest import DESTINATION_ADDRESS

pytestmark = pytest.mark.asyncio

SECRET = "shh"
BODY = b'{"eventType":"payouts.completed"}'


class TestSignatures:
    """Test HMAC verification of webhook bodies."""

    async def test_accepts_valid_signature(self):
        verify_webhook_signature(BODY, sign_payload(BODY, SECRET), SECRET)

    async def test_accepts_bare_hex_digest(self):
        verify_webhook_signature(BODY, sign_payload(BODY, SECRET).removeprefix("sha256="), SECRET)

    async def test_rejects_tampered_body(self):
        signature = sign_payload(BODY, SECRET)

        with pytest.raises(InvalidSignature):
            verify_webhook_signature(BODY + b" ", signature, SECRET)

    async def test_rejects_missing_signature(self):
        with pytest.raises(InvalidSignature, match="Missing"):
            verify_webhook_signature(BODY, None, SECRET)

    async def test_requires_secret(self):
        with pytest.raises(ConfigurationError):
            verify_webhook_signature(BODY, "sha256=00", None)


class TestStatusNormalization:
    async def test_payout_statuses(self):
        assert normalize_payout_status("complete") is ItemStatus.COMPLETED
        assert normalize_payout_status("FAILED") is ItemStatus.FAILED
        assert normalize_payout_status("pending") is None
        assert normalize_payout_status("mystery") is None


@pytest_asyncio.fixture
async def submitted_item(services, stub, load_items):
    """A payroll item paid through the custodial payout path, awaiting settlement."""
    stub.fail_on("create_wallet")
    run = await services.payroll.create_run(
        "admin-1",
        [WorkerRow(name="Ana Lima", email="ana@example.com", amount="10.50", chain="polygon")],
    )
    await services.payroll.execute_run(run.id)
    (item,) = await load_items(run.id)
    assert item.status == "SUBMITTED"
    return item


class TestPayoutReconciliation:
    """Test payout notifications against payroll items."""

    async def test_failure_is_recorded(self, services, submitted_item, load_items):
        result = await services.reconciliation.apply_payout_status(
            submitted_item.payout_id, "failed", error_message="Recipient address rejected"
        )

        assert result.applied is True
        assert result.previous_status == "SUBMITTED"
        (item,) = await load_items(submitted_item.payroll_run_id)
        assert item.status == "FAILED"
        assert item.error_message == "Recipient address rejected"

    async def test_duplicate_is_a_noop(self, services, submitted_item, audit_events):
        await services.reconciliation.apply_payout_status(submitted_item.payout_id, "complete", transaction_hash="0x1")
        before = len(await audit_events(AuditEventType.PAYOUT_STATUS_UPDATED))

        result = await services.reconciliation.apply_payout_status(
            submitted_item.payout_id, "complete", transaction_hash="0x1"
        )

        assert result.applied is False
        assert result.reason == "duplicate"
        assert len(await audit_events(AuditEventType.PAYOUT_STATUS_UPDATED)) == before

    async def test_stale_notification_never_moves_backwards(self, services, submitted_item, load_items):
        await services.reconciliation.apply_payout_status(submitted_item.payout_id, "completed")

        result = await services.reconciliation.apply_payout_status(submitted_item.payout_id, "failed")

        assert result.applied is False
        assert result.reason == "stale"
        (item,) = await load_items(submitted_item.payroll_run_id)
        assert item.status == "COMPLETED"

    async def test_in_flight_status_is_ignored(self, services, submitted_item):
        result = await services.reconciliation.apply_payout_status(submitted_item.payout_id, "pending")

        assert result.matched is False
        assert result.reason == "in_flight"

    async def test_unknown_payout_is_acknowledged(self, services, db):
        result = await services.reconciliation.apply_payout_status("pay_unknown", "completed")

        assert result.matched is False
        assert result.reason == "not_found"


class TestTransferReconciliation:
    async def test_completion_matched_by_burn_hash(self, services, worker):
        transfer = await services.transfers.initiate_transfer(
            worker_id=worker.id,
            source_chain=SupportedChain.ETHEREUM,
            destination_chain=SupportedChain.ARBITRUM,
            amount="3",
            destination_address=DESTINATION_ADDRESS,
        )

        result = await services.reconciliation.apply_transfer_status(
            transfer.transaction_hash, "completed", transaction_hash="0xmint"
        )

        assert result.applied is True
        stored = await services.transfers.get_transfer(transfer.id)
        assert stored.status == "COMPLETED"
        assert stored.mint_transaction_hash == "0xmint"

    async def test_attestation_for_unknown_message(self, services):
        result = await services.reconciliation.apply_attestation("0xdeadbeef", "0x00")

        assert result.reason == "not_found"

    async def test_late_attestation_after_completion_is_stale(self, services, stub, worker):
        transfer = await services.transfers.initiate_transfer(
            worker_id=worker.id,
            source_chain=SupportedChain.ETHEREUM,
            destination_chain=SupportedChain.ARBITRUM,
            amount="3",
            destination_address=DESTINATION_ADDRESS,
        )
        await services.reconciliation.apply_transfer_status(transfer.message_hash, "completed")

        result = await services.reconciliation.apply_attestation(transfer.message_hash, "0x" + "aa" * 65)

        assert result.reason == "stale"
        assert (await services.transfers.get_transfer(transfer.id)).attestation is None


class TestOperationReconciliation:
    async def test_unknown_status_is_reported(self, services):
        result = await services.reconciliation.apply_paymaster_status("0xop", "exploded")

        assert result.reason == "unknown_status"
