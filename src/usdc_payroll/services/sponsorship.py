"""Sponsored (gasless) transactions through a gas station policy."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from usdc_payroll.amounts import to_minor_units
from usdc_payroll.calldata import ContractCall, erc20_transfer
from usdc_payroll.chains import DEFAULT_GAS_LIMITS, SupportedChain, get_chain
from usdc_payroll.config import Settings
from usdc_payroll.database import Database
from usdc_payroll.errors import OperationTimeout, ValidationError
from usdc_payroll.models import GasStationTransaction
from usdc_payroll.polling import poll_until
from usdc_payroll.providers.base import GatewayClients, Sponsorship, WalletTransaction, idempotency_key
from usdc_payroll.services.reconciliation import ReconciliationResult, ReconciliationService
from usdc_payroll.services.state_machine import OperationStateMachine, OperationStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SponsoredOperation:
    """A submitted sponsored transaction."""

    operation_id: str
    chain: SupportedChain
    status: str
    policy_id: str
    transaction_hash: str | None = None
    fee_usdc: Decimal = Decimal("0")


class GasStationService:
    """Submits contract calls whose network fee is paid by a sponsoring policy."""

    def __init__(
        self,
        db: Database,
        gateway: GatewayClients,
        reconciliation: ReconciliationService,
        settings: Settings,
    ):
        self.db = db
        self.gateway = gateway
        self.reconciliation = reconciliation
        self.settings = settings

    async def sponsor_transaction(
        self,
        *,
        worker_id: UUID,
        wallet_id: str,
        chain: SupportedChain,
        call: ContractCall,
        policy_id: str | None = None,
        request_key: str | None = None,
        payroll_item_id: UUID | None = None,
    ) -> SponsoredOperation:
        """Submit ``call`` from ``wallet_id`` under ``policy_id`` (or the default policy).

        ``request_key`` makes retries of the same logical request map to one
        upstream transaction and one ledger row. ``payroll_item_id`` marks a
        treasury payment made on behalf of a payroll item.
        """
        if call.gas_limit is not None and call.gas_limit > self.settings.max_gas_limit:
            raise ValidationError(
                f"Gas limit {call.gas_limit} exceeds sponsorship policy maximum {self.settings.max_gas_limit}"
            )
        policy = policy_id or self.settings.gas_policy_id
        tx = await self.gateway.wallets.execute(
            wallet_id=wallet_id,
            chain=chain,
            call=call,
            idempotency_key=idempotency_key("sponsor", request_key) if request_key else str(uuid4()),
            sponsorship=Sponsorship(policy_id=policy),
        )
        await self._record(worker_id, chain, policy, tx, payroll_item_id)
        logger.info("Sponsored transaction %s submitted on %s for worker %s", tx.transaction_id, chain.value, worker_id)
        return SponsoredOperation(
            operation_id=tx.transaction_id,
            chain=chain,
            status=OperationStatus.PENDING.value,
            policy_id=policy,
            transaction_hash=tx.transaction_hash,
        )

    async def _record(
        self,
        worker_id: UUID,
        chain: SupportedChain,
        policy: str,
        tx: WalletTransaction,
        payroll_item_id: UUID | None,
    ) -> None:
        try:
            async with self.db.session() as session:
                session.add(
                    GasStationTransaction(
                        worker_id=worker_id,
                        payroll_item_id=payroll_item_id,
                        chain=chain.value,
                        user_op_hash=tx.transaction_id,
                        policy_id=policy,
                        status=OperationStatus.PENDING.value,
                        transaction_hash=tx.transaction_hash,
                    )
                )
        except IntegrityError:
            # Same upstream transaction replayed through its idempotency key
            logger.info("Sponsored transaction %s already recorded", tx.transaction_id)

    async def create_gasless_transfer(
        self,
        *,
        worker_id: UUID,
        wallet_id: str,
        chain: SupportedChain,
        recipient_address: str,
        amount: Decimal,
        policy_id: str | None = None,
        request_key: str | None = None,
        payroll_item_id: UUID | None = None,
    ) -> SponsoredOperation:
        """Sponsored USDC ``transfer`` from ``wallet_id`` to ``recipient_address``."""
        call = ContractCall(
            to=get_chain(chain).usdc_address,
            data=erc20_transfer(recipient_address, to_minor_units(amount)),
            gas_limit=DEFAULT_GAS_LIMITS["transfer"],
        )
        return await self.sponsor_transaction(
            worker_id=worker_id,
            wallet_id=wallet_id,
            chain=chain,
            call=call,
            policy_id=policy_id,
            request_key=request_key,
            payroll_item_id=payroll_item_id,
        )

    async def get_operation(self, operation_id: str) -> GasStationTransaction | None:
        async with self.db.session() as session:
            return await session.scalar(
                select(GasStationTransaction).where(GasStationTransaction.user_op_hash == operation_id)
            )

    async def monitor_operation(
        self,
        operation_id: str,
        *,
        interval: float | None = None,
        max_attempts: int | None = None,
    ) -> ReconciliationResult:
        """Poll the wallet transaction until it settles, then reconcile it.

        Stops early if a webhook already recorded a terminal status. Payroll
        items paid by the transaction settle along with it.

        Raises:
            OperationTimeout: the transaction did not settle in time.
        """

        async def fetch() -> WalletTransaction | str | None:
            record = await self.get_operation(operation_id)
            if record is not None and OperationStateMachine.is_terminal(record.status):
                return record.status
            tx = await self.gateway.wallets.get_transaction(operation_id)
            return tx if tx.is_terminal else None

        outcome = await poll_until(
            fetch,
            subject=f"sponsored transaction {operation_id}",
            interval=self.settings.receipt_poll_interval if interval is None else interval,
            max_attempts=max_attempts or self.settings.receipt_max_attempts,
            timeout_error=OperationTimeout,
        )
        if isinstance(outcome, str):
            # Settled by a webhook; re-applying it reaches items recorded since
            return await self.reconciliation.apply_gas_station_status(operation_id, outcome)
        succeeded = outcome.state in WalletTransaction.TERMINAL_SUCCESS
        return await self.reconciliation.apply_gas_station_status(
            operation_id,
            "completed" if succeeded else "failed",
            gas_used=outcome.gas_used,
            transaction_hash=outcome.transaction_hash,
            error_message=outcome.error_message,
        )
