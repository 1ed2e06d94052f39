"""Webhook reconciliation - applies provider-reported status to the ledger store.

Webhooks and pollers report the same outcomes in no particular order and
sometimes more than once. Every update here is "move to this status if that
is a forward transition from the current one"; anything else is logged and
acknowledged as a no-op.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from usdc_payroll.database import Database
from usdc_payroll.errors import ConfigurationError, InvalidSignature
from usdc_payroll.models import (
    AuditEventType,
    CrossChainTransfer,
    GasStationTransaction,
    PaymasterOperation,
    PayrollItem,
)
from usdc_payroll.models.base import utcnow
from usdc_payroll.services.audit import record_audit
from usdc_payroll.services.state_machine import (
    ItemStateMachine,
    ItemStatus,
    OperationStateMachine,
    OperationStatus,
    StateMachine,
    TransferStateMachine,
    TransferStatus,
    compare_and_set_status,
    status_value,
)

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="

_MAX_CAS_ATTEMPTS = 3

_OPERATION_STATUS_MAP = {
    "complete": OperationStatus.COMPLETED,
    "completed": OperationStatus.COMPLETED,
    "confirmed": OperationStatus.COMPLETED,
    "success": OperationStatus.COMPLETED,
    "failed": OperationStatus.FAILED,
    "cancelled": OperationStatus.FAILED,
    "denied": OperationStatus.FAILED,
    "reverted": OperationStatus.FAILED,
    "pending": OperationStatus.PROCESSING,
    "initiated": OperationStatus.PROCESSING,
    "queued": OperationStatus.PROCESSING,
    "sent": OperationStatus.PROCESSING,
    "processing": OperationStatus.PROCESSING,
}


def sign_payload(raw_body: bytes, secret: str) -> str:
    """Signature header value for ``raw_body`` (used by tests and local tooling)."""
    digest = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_webhook_signature(raw_body: bytes, signature: str | None, secret: str | None) -> None:
    """Check an HMAC-SHA256 signature over the raw request body.

    Raises:
        ConfigurationError: no shared secret is configured.
        InvalidSignature: the signature is missing or does not match.
    """
    if not secret:
        raise ConfigurationError("Webhook secret is not configured")
    if not signature:
        raise InvalidSignature("Missing webhook signature")
    provided = signature.strip()
    if provided.lower().startswith(SIGNATURE_PREFIX):
        provided = provided[len(SIGNATURE_PREFIX):]
    expected = hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, provided.lower()):
        raise InvalidSignature()


def normalize_operation_status(status: str) -> OperationStatus | None:
    return _OPERATION_STATUS_MAP.get(status.strip().lower())


def normalize_payout_status(status: str) -> ItemStatus | None:
    """Map a payout status to the item status it implies (None for in-flight states)."""
    mapped = normalize_operation_status(status)
    if mapped is OperationStatus.COMPLETED:
        return ItemStatus.COMPLETED
    if mapped is OperationStatus.FAILED:
        return ItemStatus.FAILED
    return None


@dataclass
class ReconciliationResult:
    """Outcome of applying one notification."""

    reference: str
    matched: bool = False
    applied: bool = False
    previous_status: str | None = None
    new_status: str | None = None
    reason: str | None = None


class ReconciliationService:
    """Applies terminal and in-flight notifications idempotently.

    Shared by the webhook routes and the polling monitors, so whichever
    reports first wins and the other becomes a no-op.
    """

    def __init__(self, db: Database):
        self.db = db

    async def _apply(
        self,
        session: AsyncSession,
        model: Any,
        key: Any,
        reference: str,
        machine: type[StateMachine],
        target: str,
        values: dict[str, Any],
    ) -> tuple[ReconciliationResult, Any]:
        result = ReconciliationResult(reference=reference, new_status=status_value(target))
        for _ in range(_MAX_CAS_ATTEMPTS):
            record = await session.scalar(
                select(model).where(key == reference).execution_options(populate_existing=True)
            )
            if record is None:
                logger.info("No %s found for %s; acknowledging", model.__tablename__, reference)
                result.reason = "not_found"
                return result, None

            result.matched = True
            result.previous_status = record.status
            if record.status == status_value(target):
                result.reason = "duplicate"
                return result, record
            if not machine.can_transition(record.status, target):
                logger.info(
                    "Ignoring %s -> %s for %s %s (not a forward transition)",
                    record.status, status_value(target), model.__tablename__, reference,
                )
                result.reason = "stale"
                return result, record

            if await compare_and_set_status(session, model, record.id, machine, record.status, target, **values):
                result.applied = True
                return result, record
        result.reason = "contended"
        return result, None

    async def apply_payout_status(
        self,
        payout_id: str,
        status: str,
        *,
        transaction_hash: str | None = None,
        error_message: str | None = None,
    ) -> ReconciliationResult:
        """Settle a payroll item paid through the custodial payout path."""
        target = normalize_payout_status(status)
        if target is None:
            return ReconciliationResult(reference=payout_id, reason="in_flight")

        values: dict[str, Any]
        if target is ItemStatus.COMPLETED:
            values = {"transaction_hash": transaction_hash, "completed_at": utcnow(), "error_message": None}
        else:
            values = {"error_message": error_message or "Payout failed"}

        async with self.db.session() as session:
            result, item = await self._apply(
                session, PayrollItem, PayrollItem.payout_id, payout_id, ItemStateMachine, target, values
            )
            if result.applied:
                record_audit(
                    session,
                    AuditEventType.PAYOUT_STATUS_UPDATED,
                    "payroll_item",
                    item.id,
                    {"payout_id": payout_id, "from": result.previous_status, "to": result.new_status,
                     "transaction_hash": transaction_hash},
                    worker_id=item.worker_id,
                    payroll_run_id=item.payroll_run_id,
                    payroll_item_id=item.id,
                )
            elif result.reason == "duplicate" and transaction_hash and item.transaction_hash != transaction_hash:
                # Authoritative hash arriving after optimistic completion
                item.transaction_hash = transaction_hash
                result.applied = True
        return result

    async def apply_transfer_status(
        self,
        reference: str,
        status: str,
        *,
        transaction_hash: str | None = None,
        error_message: str | None = None,
    ) -> ReconciliationResult:
        """Apply a cross-chain transfer notice, matched by message hash or burn tx hash."""
        mapped = normalize_operation_status(status)
        if mapped is OperationStatus.COMPLETED:
            target = TransferStatus.COMPLETED
            values = {"mint_transaction_hash": transaction_hash, "completed_at": utcnow()}
        elif mapped is OperationStatus.FAILED:
            target = TransferStatus.FAILED
            values = {"error_message": error_message or "Transfer failed"}
        else:
            return ReconciliationResult(reference=reference, reason="in_flight")

        async with self.db.session() as session:
            key = CrossChainTransfer.message_hash
            exists = await session.scalar(select(CrossChainTransfer.id).where(key == reference))
            if exists is None:
                key = CrossChainTransfer.transaction_hash
            result, transfer = await self._apply(
                session, CrossChainTransfer, key, reference, TransferStateMachine, target, values
            )
            if result.applied:
                self._audit_transfer(session, transfer, result)
        return result

    async def apply_attestation(
        self, message_hash: str, attestation: str, message: str | None = None
    ) -> ReconciliationResult:
        """Record an issued attestation, moving the transfer to ATTESTED."""
        values: dict[str, Any] = {"attestation": attestation}
        if message:
            values["message_body"] = message
        async with self.db.session() as session:
            result, transfer = await self._apply(
                session,
                CrossChainTransfer,
                CrossChainTransfer.message_hash,
                message_hash,
                TransferStateMachine,
                TransferStatus.ATTESTED,
                values,
            )
            if result.applied:
                self._audit_transfer(session, transfer, result)
        return result

    @staticmethod
    def _audit_transfer(session: AsyncSession, transfer: CrossChainTransfer, result: ReconciliationResult) -> None:
        record_audit(
            session,
            AuditEventType.TRANSFER_STATUS_UPDATED,
            "cross_chain_transfer",
            transfer.id,
            {"reference": result.reference, "from": result.previous_status, "to": result.new_status},
            worker_id=transfer.worker_id,
        )

    async def apply_gas_station_status(
        self,
        operation_id: str,
        status: str,
        *,
        gas_used: str | None = None,
        transaction_hash: str | None = None,
        error_message: str | None = None,
    ) -> ReconciliationResult:
        """Apply a sponsored-transaction status change."""
        target = normalize_operation_status(status)
        if target is None:
            logger.warning("Unknown gas station status %r for %s", status, operation_id)
            return ReconciliationResult(reference=operation_id, reason="unknown_status")

        values = _operation_values(target, gas_used, transaction_hash, error_message)
        async with self.db.session() as session:
            result, operation = await self._apply(
                session,
                GasStationTransaction,
                GasStationTransaction.user_op_hash,
                operation_id,
                OperationStateMachine,
                target,
                values,
            )
            if result.applied:
                self._audit_operation(session, "gas_station_transaction", operation, result)
            if operation is not None and (result.applied or result.reason == "duplicate"):
                await self._settle_sponsored_items(
                    session,
                    operation_id,
                    target,
                    transaction_hash or operation.transaction_hash,
                    error_message or operation.error_message,
                )
        return result

    async def _settle_sponsored_items(
        self,
        session: AsyncSession,
        operation_id: str,
        target: OperationStatus,
        transaction_hash: str | None,
        error_message: str | None,
    ) -> None:
        """Carry a sponsored transaction's outcome to the payroll items it paid."""
        if not OperationStateMachine.is_terminal(target):
            return
        if target is OperationStatus.COMPLETED:
            item_target = ItemStatus.COMPLETED
            values: dict[str, Any] = {"completed_at": utcnow(), "error_message": None}
            if transaction_hash:
                values["transaction_hash"] = transaction_hash
        else:
            item_target = ItemStatus.FAILED
            values = {"error_message": error_message or "Sponsored transfer failed"}

        items = list(
            await session.scalars(
                select(PayrollItem).where(
                    PayrollItem.payout_id == operation_id,
                    PayrollItem.status == ItemStatus.SUBMITTED.value,
                )
            )
        )
        for item in items:
            moved = await compare_and_set_status(
                session, PayrollItem, item.id, ItemStateMachine, ItemStatus.SUBMITTED, item_target, **values
            )
            if not moved:
                continue
            logger.info("Payroll item %s %s via sponsored transaction %s", item.id, item_target.value, operation_id)
            record_audit(
                session,
                AuditEventType.PAYOUT_STATUS_UPDATED,
                "payroll_item",
                item.id,
                {"operation_id": operation_id, "from": ItemStatus.SUBMITTED.value, "to": item_target.value,
                 "transaction_hash": transaction_hash},
                worker_id=item.worker_id,
                payroll_run_id=item.payroll_run_id,
                payroll_item_id=item.id,
            )

    async def apply_paymaster_status(
        self,
        user_op_hash: str,
        status: str,
        *,
        gas_used: str | None = None,
        gas_fee_usdc: Decimal | None = None,
        transaction_hash: str | None = None,
        error_message: str | None = None,
    ) -> ReconciliationResult:
        """Apply a fee-abstracted user operation status change."""
        target = normalize_operation_status(status)
        if target is None:
            logger.warning("Unknown paymaster status %r for %s", status, user_op_hash)
            return ReconciliationResult(reference=user_op_hash, reason="unknown_status")

        values = _operation_values(target, gas_used, transaction_hash, error_message)
        if gas_fee_usdc is not None:
            values["gas_fee_usdc"] = gas_fee_usdc
        async with self.db.session() as session:
            result, operation = await self._apply(
                session,
                PaymasterOperation,
                PaymasterOperation.user_op_hash,
                user_op_hash,
                OperationStateMachine,
                target,
                values,
            )
            if result.applied:
                self._audit_operation(session, "paymaster_operation", operation, result)
        return result

    @staticmethod
    def _audit_operation(session: AsyncSession, entity_type: str, operation: Any, result: ReconciliationResult) -> None:
        record_audit(
            session,
            AuditEventType.OPERATION_STATUS_UPDATED,
            entity_type,
            operation.id,
            {"user_op_hash": result.reference, "from": result.previous_status, "to": result.new_status},
            worker_id=operation.worker_id,
        )


def _operation_values(
    target: OperationStatus,
    gas_used: str | None,
    transaction_hash: str | None,
    error_message: str | None,
) -> dict[str, Any]:
    values: dict[str, Any] = {}
    if gas_used is not None:
        values["gas_used"] = str(gas_used)
    if transaction_hash:
        values["transaction_hash"] = transaction_hash
    if target is OperationStatus.FAILED:
        values["error_message"] = error_message or "Operation failed"
    return values
