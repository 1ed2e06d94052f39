"""Payroll run engine.

Creates runs from validated worker rows and executes them: each item is
dispatched independently through exactly one payment path, and the run is
finalized from the item outcomes.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from usdc_payroll.amounts import format_amount, sum_amounts
from usdc_payroll.chains import SupportedChain
from usdc_payroll.config import Settings
from usdc_payroll.database import Database
from usdc_payroll.errors import (
    ConfigurationError,
    InvalidState,
    NoPaymentMethodConfigured,
    PayrollError,
    RunNotFound,
    ValidationError,
)
from usdc_payroll.models import AuditEventType, PayrollItem, PayrollRun, Worker
from usdc_payroll.models.base import utcnow
from usdc_payroll.providers.base import GatewayClients, idempotency_key
from usdc_payroll.services.audit import record_audit
from usdc_payroll.services.background import TaskSupervisor
from usdc_payroll.services.provisioning import ProvisioningService
from usdc_payroll.services.reconciliation import normalize_payout_status
from usdc_payroll.services.sponsorship import GasStationService
from usdc_payroll.services.state_machine import (
    ItemStateMachine,
    ItemStatus,
    RunStateMachine,
    RunStatus,
    compare_and_set_status,
)
from usdc_payroll.services.worker_rows import WorkerRow

logger = logging.getLogger(__name__)


def tracking_ref(item_id: UUID) -> str:
    """Payout tracking reference for an item; stable across retries."""
    return f"payroll-{item_id}"


@dataclass(frozen=True)
class DispatchOutcome:
    """What one payment path reported for an item."""

    status: ItemStatus
    payout_id: str | None = None
    transaction_hash: str | None = None
    error_message: str | None = None
    # Settles through the gas station monitor rather than a payout webhook
    sponsored: bool = False


@dataclass
class ExecutionSummary:
    """Result of executing a run."""

    run_id: UUID
    status: str = RunStatus.PROCESSING.value
    dispatched: int = 0
    failed: int = 0
    skipped: int = 0
    errors: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class RunPage:
    """One page of runs."""

    runs: list[PayrollRun]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class PayrollService:
    """Payroll run engine."""

    def __init__(
        self,
        db: Database,
        gateway: GatewayClients,
        settings: Settings,
        *,
        provisioning: ProvisioningService,
        gas_station: GasStationService,
        supervisor: TaskSupervisor,
    ):
        self.db = db
        self.gateway = gateway
        self.settings = settings
        self.provisioning = provisioning
        self.gas_station = gas_station
        self.supervisor = supervisor

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_run(self, admin_id: str, rows: Sequence[WorkerRow]) -> PayrollRun:
        """Create a PENDING run with one PENDING item per row.

        New workers are created (and provisioned, best-effort) before the run
        transaction; the run, its items and their audit records are written
        atomically.
        """
        if not admin_id:
            raise ValidationError("Admin id is required")
        if not rows:
            raise ValidationError("At least one worker is required")
        total = sum_amounts(row.amount for row in rows)

        worker_ids = await self._resolve_workers(rows)

        async with self.db.session() as session:
            run = PayrollRun(
                admin_id=admin_id,
                status=RunStatus.DRAFT.value,
                total_amount=total,
                total_workers=len(rows),
            )
            session.add(run)
            await session.flush()

            for row in rows:
                item = PayrollItem(
                    payroll_run_id=run.id,
                    worker_id=worker_ids[row.email],
                    amount=row.decimal_amount,
                    chain=row.chain.value,
                    status=ItemStatus.PENDING.value,
                )
                session.add(item)
                await session.flush()
                record_audit(
                    session,
                    AuditEventType.PAYROLL_ITEM_CREATED,
                    "payroll_item",
                    item.id,
                    {"amount": row.amount, "chain": row.chain.value, "email": row.email},
                    worker_id=item.worker_id,
                    payroll_run_id=run.id,
                    payroll_item_id=item.id,
                )

            RunStateMachine.validate_transition(run.status, RunStatus.PENDING)
            run.status = RunStatus.PENDING.value
            record_audit(
                session,
                AuditEventType.PAYROLL_RUN_CREATED,
                "payroll_run",
                run.id,
                {"total_amount": format_amount(total), "total_workers": len(rows), "admin_id": admin_id},
                payroll_run_id=run.id,
            )

        logger.info("Payroll run %s created: %d workers, %s USDC", run.id, len(rows), format_amount(total))
        return await self.get_run(run.id)

    async def _resolve_workers(self, rows: Sequence[WorkerRow]) -> dict[str, UUID]:
        """Map each row's email to a worker id, creating and provisioning new workers."""
        worker_ids: dict[str, UUID] = {}
        created: list[UUID] = []
        for row in rows:
            if row.email in worker_ids:
                continue
            worker_id, is_new = await self._get_or_create_worker(row)
            worker_ids[row.email] = worker_id
            if is_new:
                created.append(worker_id)

        for worker_id in created:
            await self.provisioning.provision_worker(worker_id)
        return worker_ids

    async def _get_or_create_worker(self, row: WorkerRow) -> tuple[UUID, bool]:
        async with self.db.session() as session:
            existing = await session.scalar(select(Worker.id).where(Worker.email == row.email))
            if existing is not None:
                return existing, False
        try:
            async with self.db.session() as session:
                worker = Worker(name=row.name, email=row.email)
                session.add(worker)
                await session.flush()
                logger.info("Created worker %s for %s", worker.id, row.email)
                return worker.id, True
        except IntegrityError:
            # Created concurrently by another batch
            async with self.db.session() as session:
                return await session.scalar(select(Worker.id).where(Worker.email == row.email)), False

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_run(self, run_id: UUID) -> PayrollRun:
        async with self.db.session() as session:
            run = await session.scalar(
                select(PayrollRun)
                .where(PayrollRun.id == run_id)
                .options(selectinload(PayrollRun.items).selectinload(PayrollItem.worker))
                .execution_options(populate_existing=True)
            )
        if run is None:
            raise RunNotFound(run_id)
        return run

    async def list_runs(self, admin_id: str, *, page: int = 1, limit: int = 10) -> RunPage:
        query = select(PayrollRun).where(PayrollRun.admin_id == admin_id)
        async with self.db.session() as session:
            total = await session.scalar(select(func.count()).select_from(query.subquery())) or 0
            runs = await session.scalars(
                query.options(selectinload(PayrollRun.items).selectinload(PayrollItem.worker))
                .order_by(PayrollRun.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return RunPage(runs=list(runs), total=total, page=page, limit=limit)

    # ------------------------------------------------------------------
    # Execute
    # ------------------------------------------------------------------

    async def execute_run(self, run_id: UUID) -> ExecutionSummary:
        """Claim and execute a run to completion."""
        await self.claim_run(run_id)
        return await self.dispatch_run(run_id)

    async def start_execution(self, run_id: UUID) -> None:
        """Claim a run now and dispatch it in the background."""
        await self.claim_run(run_id)
        self.supervisor.spawn(self.dispatch_run(run_id), name=f"payroll-run-{run_id}")

    async def claim_run(self, run_id: UUID) -> None:
        """Move a PENDING run to PROCESSING; only one caller can win.

        Raises:
            RunNotFound, InvalidState
        """
        async with self.db.session() as session:
            run = await session.get(PayrollRun, run_id)
            if run is None:
                raise RunNotFound(run_id)
            if run.status != RunStatus.PENDING:
                raise InvalidState(f"Payroll run is {run.status}; only PENDING runs can be executed")
            claimed = await compare_and_set_status(
                session, PayrollRun, run_id, RunStateMachine, RunStatus.PENDING, RunStatus.PROCESSING
            )
            if not claimed:
                raise InvalidState("Payroll run is already being executed")
            record_audit(
                session,
                AuditEventType.RUN_STATUS_CHANGED,
                "payroll_run",
                run_id,
                {"from": RunStatus.PENDING.value, "to": RunStatus.PROCESSING.value},
                payroll_run_id=run_id,
            )
        logger.info("Payroll run %s claimed for execution", run_id)

    async def dispatch_run(self, run_id: UUID) -> ExecutionSummary:
        """Dispatch every PENDING item of a PROCESSING run, then finalize it."""
        summary = ExecutionSummary(run_id=run_id)
        try:
            async with self.db.session() as session:
                item_ids = list(
                    await session.scalars(
                        select(PayrollItem.id)
                        .where(
                            PayrollItem.payroll_run_id == run_id,
                            PayrollItem.status == ItemStatus.PENDING.value,
                        )
                        .order_by(PayrollItem.created_at)
                    )
                )

            semaphore = asyncio.Semaphore(self.settings.dispatch_concurrency)

            async def guarded(item_id: UUID) -> DispatchOutcome | None:
                async with semaphore:
                    return await self._dispatch_item(item_id)

            outcomes = await asyncio.gather(
                *(guarded(item_id) for item_id in item_ids), return_exceptions=True
            )
            for item_id, outcome in zip(item_ids, outcomes):
                if isinstance(outcome, BaseException):
                    message = str(outcome) or type(outcome).__name__
                    logger.error("Dispatch of payroll item %s crashed: %s", item_id, message)
                    await self._fail_item(item_id, message)
                    summary.failed += 1
                    summary.errors[str(item_id)] = message
                elif outcome is None:
                    summary.skipped += 1
                elif ItemStateMachine.is_dispatched(outcome.status):
                    summary.dispatched += 1
                else:
                    summary.failed += 1
                    summary.errors[str(item_id)] = outcome.error_message or "unknown error"

            final = RunStatus.COMPLETED if summary.dispatched else RunStatus.FAILED
            await self._finish_run(run_id, final, summary)
            summary.status = final.value
        except Exception:
            logger.exception("Execution of payroll run %s crashed", run_id)
            await self._fail_run(run_id)
            raise

        logger.info(
            "Payroll run %s %s: %d dispatched, %d failed",
            run_id, summary.status, summary.dispatched, summary.failed,
        )
        return summary

    async def _finish_run(self, run_id: UUID, final: RunStatus, summary: ExecutionSummary) -> None:
        async with self.db.session() as session:
            moved = await compare_and_set_status(
                session,
                PayrollRun,
                run_id,
                RunStateMachine,
                RunStatus.PROCESSING,
                final,
                completed_at=utcnow(),
            )
            if not moved:
                raise InvalidState(f"Payroll run {run_id} left PROCESSING during execution")
            record_audit(
                session,
                AuditEventType.RUN_STATUS_CHANGED,
                "payroll_run",
                run_id,
                {"from": RunStatus.PROCESSING.value, "to": final.value,
                 "dispatched": summary.dispatched, "failed": summary.failed},
                payroll_run_id=run_id,
            )

    async def _fail_run(self, run_id: UUID) -> None:
        """Best-effort: mark a crashed run FAILED."""
        try:
            async with self.db.session() as session:
                await compare_and_set_status(
                    session,
                    PayrollRun,
                    run_id,
                    RunStateMachine,
                    RunStatus.PROCESSING,
                    RunStatus.FAILED,
                    completed_at=utcnow(),
                )
        except Exception as exc:
            logger.error("Could not mark payroll run %s FAILED: %s", run_id, exc)

    async def _dispatch_item(self, item_id: UUID) -> DispatchOutcome | None:
        """Claim one item and pay it. Item-level failures are recorded, never raised."""
        async with self.db.session() as session:
            item = await session.scalar(
                select(PayrollItem).where(PayrollItem.id == item_id).options(selectinload(PayrollItem.worker))
            )
            claimed = await compare_and_set_status(
                session, PayrollItem, item_id, ItemStateMachine, ItemStatus.PENDING, ItemStatus.PROCESSING
            )
        if not claimed:
            logger.info("Payroll item %s already claimed; skipping", item_id)
            return None

        try:
            outcome = await self._dispatch(item, item.worker)
        except PayrollError as exc:
            logger.warning("Payroll item %s failed: %s", item_id, exc.message)
            outcome = DispatchOutcome(status=ItemStatus.FAILED, error_message=exc.message)
        except Exception as exc:
            logger.exception("Payroll item %s failed unexpectedly", item_id)
            outcome = DispatchOutcome(status=ItemStatus.FAILED, error_message=str(exc) or type(exc).__name__)

        await self._record_outcome(item, outcome)
        if outcome.sponsored and outcome.status is ItemStatus.SUBMITTED:
            self.supervisor.spawn(
                self.gas_station.monitor_operation(outcome.payout_id),
                name=f"gas-station-{outcome.payout_id}",
            )
        return outcome

    async def _fail_item(self, item_id: UUID, message: str) -> None:
        """Best-effort: mark an item whose dispatch crashed FAILED."""
        try:
            async with self.db.session() as session:
                await compare_and_set_status(
                    session,
                    PayrollItem,
                    item_id,
                    ItemStateMachine,
                    ItemStatus.PROCESSING,
                    ItemStatus.FAILED,
                    error_message=message,
                )
        except Exception as exc:
            logger.error("Could not mark payroll item %s FAILED: %s", item_id, exc)

    async def _dispatch(self, item: PayrollItem, worker: Worker) -> DispatchOutcome:
        if worker.wallet_id:
            return await self._pay_via_wallet(item, worker)
        if worker.recipient_id:
            return await self._pay_via_payout(item, worker)
        raise NoPaymentMethodConfigured(worker.id)

    async def _pay_via_wallet(self, item: PayrollItem, worker: Worker) -> DispatchOutcome:
        """Sponsored USDC transfer from the treasury wallet to the worker's wallet.

        The item stays SUBMITTED until the transaction's monitor (or the gas
        station webhook) reports its outcome.
        """
        treasury = self.settings.treasury_wallet_id
        if not treasury:
            raise ConfigurationError("TREASURY_WALLET_ID is not configured")
        if not worker.wallet_address:
            raise InvalidState(f"Wallet of worker {worker.id} has no address on record")
        operation = await self.gas_station.create_gasless_transfer(
            worker_id=worker.id,
            wallet_id=treasury,
            chain=SupportedChain(item.chain),
            recipient_address=worker.wallet_address,
            amount=item.amount,
            request_key=tracking_ref(item.id),
            payroll_item_id=item.id,
        )
        return DispatchOutcome(
            status=ItemStatus.SUBMITTED,
            payout_id=operation.operation_id,
            transaction_hash=operation.transaction_hash,
            sponsored=True,
        )

    async def _pay_via_payout(self, item: PayrollItem, worker: Worker) -> DispatchOutcome:
        """Custodial payout; settles later through the payout webhook."""
        payout = await self.gateway.payments.create_payout(
            recipient_id=worker.recipient_id,
            amount=item.amount,
            chain=SupportedChain(item.chain),
            idempotency_key=idempotency_key("payout", item.id),
            tracking_ref=tracking_ref(item.id),
        )
        status = normalize_payout_status(payout.status) or ItemStatus.SUBMITTED
        return DispatchOutcome(
            status=status,
            payout_id=payout.payout_id,
            transaction_hash=payout.transaction_hash,
            error_message=payout.error_message if status is ItemStatus.FAILED else None,
        )

    async def _record_outcome(self, item: PayrollItem, outcome: DispatchOutcome) -> None:
        values = {
            "payout_id": outcome.payout_id,
            "transaction_hash": outcome.transaction_hash,
            "error_message": outcome.error_message,
        }
        if outcome.status is ItemStatus.COMPLETED:
            values["completed_at"] = utcnow()
        async with self.db.session() as session:
            await compare_and_set_status(
                session,
                PayrollItem,
                item.id,
                ItemStateMachine,
                ItemStatus.PROCESSING,
                outcome.status,
                **values,
            )
            record_audit(
                session,
                AuditEventType.PAYOUT_STATUS_UPDATED,
                "payroll_item",
                item.id,
                {"from": ItemStatus.PROCESSING.value, "to": outcome.status.value, **values},
                worker_id=item.worker_id,
                payroll_run_id=item.payroll_run_id,
                payroll_item_id=item.id,
            )
