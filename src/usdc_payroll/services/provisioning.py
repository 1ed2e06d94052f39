"""Gateway resource provisioning for workers.

Provisioning runs outside any ledger transaction. Each call is idempotent by
worker id (the upstream idempotency key is derived from it), so a failed
attempt is simply retried later by ``reprovision_missing``.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any
from uuid import UUID

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError

from usdc_payroll.chains import SupportedChain
from usdc_payroll.database import Database
from usdc_payroll.errors import WorkerNotFound
from usdc_payroll.models import AuditEventType, Worker
from usdc_payroll.providers.base import GatewayClients, idempotency_key
from usdc_payroll.services.audit import record_audit

logger = logging.getLogger(__name__)


@dataclass
class ProvisioningResult:
    """Outcome of provisioning one worker."""

    worker_id: UUID
    recipient_created: bool = False
    wallet_created: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class ProvisioningService:
    """Creates payout recipients and programmable wallets for workers."""

    def __init__(self, db: Database, gateway: GatewayClients):
        self.db = db
        self.gateway = gateway

    async def provision_worker(
        self,
        worker_id: UUID,
        chains: Sequence[SupportedChain] | None = None,
    ) -> ProvisioningResult:
        """Create whichever of recipient / wallet the worker is missing.

        Failures are logged and reported in the result; they never raise.
        """
        async with self.db.session() as session:
            worker = await session.get(Worker, worker_id)
            if worker is None:
                raise WorkerNotFound(worker_id)

        result = ProvisioningResult(worker_id=worker.id)

        if worker.recipient_id is None:
            try:
                recipient = await self.gateway.payments.create_recipient(
                    email=worker.email,
                    name=worker.name,
                    idempotency_key=idempotency_key("recipient", worker.id),
                )
            except Exception as exc:
                logger.warning("Recipient provisioning failed for worker %s: %s", worker.id, exc)
                result.errors.append(f"recipient: {exc}")
            else:
                result.recipient_created = await self._store(
                    worker.id, Worker.recipient_id, {"recipient_id": recipient.recipient_id}, result
                )

        if worker.wallet_id is None:
            try:
                wallet = await self.gateway.wallets.create_wallet(
                    reference=str(worker.id),
                    chains=list(chains or SupportedChain),
                    idempotency_key=idempotency_key("wallet", worker.id),
                )
            except Exception as exc:
                logger.warning("Wallet provisioning failed for worker %s: %s", worker.id, exc)
                result.errors.append(f"wallet: {exc}")
            else:
                result.wallet_created = await self._store(
                    worker.id,
                    Worker.wallet_id,
                    {"wallet_id": wallet.wallet_id, "wallet_address": wallet.address},
                    result,
                )

        return result

    async def _store(
        self,
        worker_id: UUID,
        column: Any,
        values: dict[str, Any],
        result: ProvisioningResult,
    ) -> bool:
        """Write provisioned identifiers unless another attempt already did."""
        try:
            async with self.db.session() as session:
                updated = await session.execute(
                    update(Worker)
                    .where(Worker.id == worker_id, column.is_(None))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if updated.rowcount != 1:
                    return False
                record_audit(
                    session,
                    AuditEventType.WORKER_PROVISIONED,
                    "worker",
                    worker_id,
                    values,
                    worker_id=worker_id,
                )
        except IntegrityError as exc:
            logger.error("Provisioned identifier conflicts for worker %s: %s", worker_id, exc)
            result.errors.append(f"conflict storing {', '.join(values)}")
            return False
        logger.info("Worker %s provisioned: %s", worker_id, values)
        return True

    async def reprovision_missing(self, *, limit: int = 100) -> list[ProvisioningResult]:
        """Retry provisioning for workers still lacking a recipient or wallet."""
        async with self.db.session() as session:
            worker_ids = list(
                await session.scalars(
                    select(Worker.id)
                    .where(or_(Worker.recipient_id.is_(None), Worker.wallet_id.is_(None)))
                    .order_by(Worker.created_at)
                    .limit(limit)
                )
            )

        results = []
        for worker_id in worker_ids:
            results.append(await self.provision_worker(worker_id))
        if results:
            logger.info(
                "Reprovisioned %d worker(s), %d still incomplete",
                len(results),
                sum(1 for r in results if not r.success),
            )
        return results
