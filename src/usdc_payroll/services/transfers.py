"""Cross-chain transfer orchestration (burn on source, attest, mint on destination).

Each observed step is persisted as it happens:

    PENDING --burn submitted--> PENDING --attestation--> ATTESTED --mint--> COMPLETED

A failed burn marks the transfer FAILED. A failed mint leaves it ATTESTED
with the error recorded, because the funds are already burned and the mint
can be retried.

Providers that only return a transaction id for the burn leave the message
hash empty; monitoring then resolves it from the burn's on-chain hash.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from usdc_payroll.amounts import parse_amount, to_minor_units
from usdc_payroll.calldata import ContractCall, deposit_for_burn, erc20_approve, receive_message
from usdc_payroll.chains import DEFAULT_GAS_LIMITS, SupportedChain, get_chain
from usdc_payroll.config import Settings
from usdc_payroll.database import Database
from usdc_payroll.errors import (
    AttestationTimeout,
    GatewayError,
    InsufficientBalance,
    InvalidState,
    MessageAlreadyUsed,
    TransferNotFound,
    ValidationError,
    WorkerNotFound,
)
from usdc_payroll.models import AuditEventType, CrossChainTransfer, Worker
from usdc_payroll.models.base import utcnow
from usdc_payroll.polling import poll_until
from usdc_payroll.providers.base import (
    Attestation,
    BurnMessage,
    GatewayClients,
    Sponsorship,
    WalletTransaction,
    idempotency_key,
)
from usdc_payroll.services.audit import record_audit
from usdc_payroll.services.reconciliation import ReconciliationService
from usdc_payroll.services.state_machine import (
    TransferStateMachine,
    TransferStatus,
    compare_and_set_status,
)

logger = logging.getLogger(__name__)


class CrossChainTransferService:
    """Drives burn/attest/mint transfers for worker wallets."""

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

    def _sponsorship(self) -> Sponsorship:
        return Sponsorship(policy_id=self.settings.gas_policy_id)

    async def initiate_transfer(
        self,
        *,
        worker_id: UUID,
        source_chain: SupportedChain,
        destination_chain: SupportedChain,
        amount: Decimal | str,
        destination_address: str,
    ) -> CrossChainTransfer:
        """Check the balance, record the transfer, then approve and burn on the source chain.

        Raises:
            ValidationError: same source and destination chain, or bad amount.
            WorkerNotFound: unknown worker or worker without a wallet.
            InsufficientBalance: before anything is recorded or submitted.
            GatewayError: the burn could not be submitted (transfer marked FAILED).
        """
        if source_chain == destination_chain:
            raise ValidationError("Source and destination chains must differ")
        try:
            amount = parse_amount(amount)
        except ValueError as exc:
            raise ValidationError(str(exc)) from None

        async with self.db.session() as session:
            worker = await session.get(Worker, worker_id)
        if worker is None or not worker.wallet_id:
            raise WorkerNotFound(worker_id, "Worker or wallet not found")

        balance = await self.gateway.wallets.get_usdc_balance(worker.wallet_id, source_chain)
        if balance < amount:
            raise InsufficientBalance(balance, amount)

        async with self.db.session() as session:
            transfer = CrossChainTransfer(
                worker_id=worker.id,
                source_chain=source_chain.value,
                destination_chain=destination_chain.value,
                amount=amount,
                source_address=worker.wallet_address,
                destination_address=destination_address,
                status=TransferStatus.PENDING.value,
            )
            session.add(transfer)
            await session.flush()
            record_audit(
                session,
                AuditEventType.TRANSFER_STATUS_UPDATED,
                "cross_chain_transfer",
                transfer.id,
                {"to": TransferStatus.PENDING.value, "amount": amount,
                 "source_chain": source_chain.value, "destination_chain": destination_chain.value},
                worker_id=worker.id,
            )

        source = get_chain(source_chain)
        minor = to_minor_units(amount)
        try:
            await self.gateway.wallets.execute(
                wallet_id=worker.wallet_id,
                chain=source_chain,
                call=ContractCall(
                    to=source.usdc_address,
                    data=erc20_approve(source.token_messenger, minor),
                    gas_limit=DEFAULT_GAS_LIMITS["approve"],
                ),
                idempotency_key=idempotency_key("approve", transfer.id),
                sponsorship=self._sponsorship(),
            )
            burn = await self.gateway.wallets.execute(
                wallet_id=worker.wallet_id,
                chain=source_chain,
                call=ContractCall(
                    to=source.token_messenger,
                    data=deposit_for_burn(
                        minor,
                        get_chain(destination_chain).domain,
                        destination_address,
                        source.usdc_address,
                    ),
                    gas_limit=DEFAULT_GAS_LIMITS["burn"],
                ),
                idempotency_key=idempotency_key("burn", transfer.id),
                sponsorship=self._sponsorship(),
            )
        except GatewayError as exc:
            logger.warning("Burn failed for transfer %s: %s", transfer.id, exc)
            await self._fail(transfer.id, TransferStatus.PENDING, str(exc))
            raise

        async with self.db.session() as session:
            stored = await session.get(CrossChainTransfer, transfer.id)
            stored.burn_transaction_id = burn.transaction_id
            stored.transaction_hash = burn.transaction_hash
            stored.message_hash = burn.message_hash
        logger.info(
            "Transfer %s burned %s USDC on %s (message %s)",
            transfer.id, amount, source_chain.value, burn.message_hash,
        )
        return await self.get_transfer(transfer.id)

    async def _fail(self, transfer_id: UUID, current: TransferStatus, message: str) -> None:
        async with self.db.session() as session:
            await compare_and_set_status(
                session,
                CrossChainTransfer,
                transfer_id,
                TransferStateMachine,
                current,
                TransferStatus.FAILED,
                error_message=message,
            )

    async def get_transfer(self, transfer_id: UUID) -> CrossChainTransfer:
        async with self.db.session() as session:
            transfer = await session.get(CrossChainTransfer, transfer_id, populate_existing=True)
        if transfer is None:
            raise TransferNotFound(transfer_id)
        return transfer

    async def list_transfers(
        self, worker_id: UUID, *, page: int = 1, limit: int = 20
    ) -> tuple[list[CrossChainTransfer], int]:
        async with self.db.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(CrossChainTransfer).where(CrossChainTransfer.worker_id == worker_id)
            )
            transfers = await session.scalars(
                select(CrossChainTransfer)
                .where(CrossChainTransfer.worker_id == worker_id)
                .order_by(CrossChainTransfer.created_at.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            return list(transfers), total or 0

    async def get_attestation(self, message_hash: str) -> Attestation | None:
        """Current attestation, or None while it is still pending."""
        return await self.gateway.attestations.get_attestation(message_hash)

    async def is_message_used(self, chain: SupportedChain, message_hash: str) -> bool:
        """Advisory replay check; a failed lookup reads as "not used"."""
        try:
            return await self.gateway.chain.is_message_used(chain, message_hash)
        except GatewayError as exc:
            logger.warning("Could not check message %s on %s: %s", message_hash, chain.value, exc)
            return False

    async def monitor_transfer(
        self,
        transfer_id: UUID,
        *,
        interval: float | None = None,
        max_attempts: int | None = None,
    ) -> CrossChainTransfer:
        """Wait for the burn's attestation and record it.

        When the burn was submitted without a message hash, the burn's
        on-chain hash and the message it emitted are looked up first.

        Raises:
            InvalidState: the transfer has no burn to follow or already failed.
            AttestationTimeout: the attestation did not arrive; the transfer
                stays PENDING and monitoring can be restarted.
        """
        transfer = await self.get_transfer(transfer_id)
        if transfer.status in (TransferStatus.ATTESTED, TransferStatus.COMPLETED):
            return transfer
        if transfer.status == TransferStatus.FAILED:
            raise InvalidState(f"Transfer {transfer_id} has failed")
        if not transfer.message_hash:
            transfer = await self._locate_burn_message(transfer, interval=interval, max_attempts=max_attempts)
            if transfer.status != TransferStatus.PENDING:
                return transfer

        message_hash = transfer.message_hash

        async def fetch() -> Attestation | bool | None:
            current = await self.get_transfer(transfer_id)
            if current.status != TransferStatus.PENDING:
                return True
            return await self.get_attestation(message_hash)

        outcome = await poll_until(
            fetch,
            subject=f"attestation for {message_hash}",
            interval=self.settings.attestation_poll_interval if interval is None else interval,
            max_attempts=max_attempts or self.settings.attestation_max_attempts,
            timeout_error=AttestationTimeout,
        )
        if isinstance(outcome, Attestation):
            await self.reconciliation.apply_attestation(message_hash, outcome.attestation, outcome.message)
        return await self.get_transfer(transfer_id)

    async def _locate_burn_message(
        self,
        transfer: CrossChainTransfer,
        *,
        interval: float | None,
        max_attempts: int | None,
    ) -> CrossChainTransfer:
        """Resolve the burn's on-chain hash, then the message it emitted, and store both."""
        if not transfer.burn_transaction_id and not transfer.transaction_hash:
            raise InvalidState(f"Transfer {transfer.id} has no burn to follow")
        interval = self.settings.attestation_poll_interval if interval is None else interval
        max_attempts = max_attempts or self.settings.attestation_max_attempts

        transaction_hash = transfer.transaction_hash
        if not transaction_hash:
            burn_id = transfer.burn_transaction_id

            async def fetch_burn() -> WalletTransaction | None:
                tx = await self.gateway.wallets.get_transaction(burn_id)
                if tx.transaction_hash or tx.state in WalletTransaction.TERMINAL_FAILURE:
                    return tx
                return None

            burn = await poll_until(
                fetch_burn,
                subject=f"burn transaction {burn_id}",
                interval=interval,
                max_attempts=max_attempts,
                timeout_error=AttestationTimeout,
            )
            if burn.state in WalletTransaction.TERMINAL_FAILURE:
                logger.warning("Burn %s for transfer %s ended %s", burn_id, transfer.id, burn.state)
                await self._fail(transfer.id, TransferStatus.PENDING, burn.error_message or f"Burn {burn.state}")
                return await self.get_transfer(transfer.id)
            transaction_hash = burn.transaction_hash

        domain = get_chain(SupportedChain(transfer.source_chain)).domain

        async def fetch_message() -> BurnMessage | None:
            return await self.gateway.attestations.find_burn_message(domain, transaction_hash)

        message = await poll_until(
            fetch_message,
            subject=f"burn message for {transaction_hash}",
            interval=interval,
            max_attempts=max_attempts,
            timeout_error=AttestationTimeout,
        )
        async with self.db.session() as session:
            stored = await session.get(CrossChainTransfer, transfer.id)
            stored.transaction_hash = transaction_hash
            stored.message_hash = message.message_hash
            stored.message_body = message.message
        logger.info("Transfer %s emitted message %s", transfer.id, message.message_hash)
        return await self.get_transfer(transfer.id)

    async def complete_transfer(self, transfer_id: UUID) -> CrossChainTransfer:
        """Submit the mint on the destination chain.

        Already-consumed messages count as success, so calling this again
        after a crash or a duplicate attestation never double-mints or
        double-records.
        """
        transfer = await self.get_transfer(transfer_id)
        if transfer.status == TransferStatus.COMPLETED:
            return transfer
        if transfer.status != TransferStatus.ATTESTED or not transfer.attestation:
            raise InvalidState(f"Transfer {transfer_id} is {transfer.status}, expected ATTESTED")

        destination = SupportedChain(transfer.destination_chain)
        message_hash = transfer.message_hash
        if await self.is_message_used(destination, message_hash):
            logger.info("Message %s already received on %s", message_hash, destination.value)
            return await self._mark_completed(transfer, None)

        async with self.db.session() as session:
            worker = await session.get(Worker, transfer.worker_id)
        call = ContractCall(
            to=get_chain(destination).message_transmitter,
            data=receive_message(transfer.message_body or message_hash, transfer.attestation),
            gas_limit=DEFAULT_GAS_LIMITS["mint"],
        )
        try:
            mint = await self.gateway.wallets.execute(
                wallet_id=worker.wallet_id,
                chain=destination,
                call=call,
                idempotency_key=idempotency_key("mint", transfer.id),
                sponsorship=self._sponsorship(),
            )
        except MessageAlreadyUsed:
            logger.info("Mint for %s raced a previous submission; treating as received", message_hash)
            return await self._mark_completed(transfer, None)
        except GatewayError as exc:
            logger.warning("Mint failed for transfer %s: %s", transfer.id, exc)
            async with self.db.session() as session:
                stored = await session.get(CrossChainTransfer, transfer.id)
                stored.error_message = str(exc)
            raise
        return await self._mark_completed(transfer, mint.transaction_hash)

    async def _mark_completed(self, transfer: CrossChainTransfer, mint_hash: str | None) -> CrossChainTransfer:
        async with self.db.session() as session:
            moved = await compare_and_set_status(
                session,
                CrossChainTransfer,
                transfer.id,
                TransferStateMachine,
                TransferStatus.ATTESTED,
                TransferStatus.COMPLETED,
                mint_transaction_hash=mint_hash,
                completed_at=utcnow(),
                error_message=None,
            )
            if moved:
                record_audit(
                    session,
                    AuditEventType.TRANSFER_STATUS_UPDATED,
                    "cross_chain_transfer",
                    transfer.id,
                    {"from": TransferStatus.ATTESTED.value, "to": TransferStatus.COMPLETED.value,
                     "mint_transaction_hash": mint_hash},
                    worker_id=transfer.worker_id,
                )
        return await self.get_transfer(transfer.id)

    async def settle_transfer(
        self,
        transfer_id: UUID,
        *,
        interval: float | None = None,
        max_attempts: int | None = None,
    ) -> CrossChainTransfer:
        """Monitor the attestation, then mint. Runs as a background task after initiation."""
        transfer = await self.monitor_transfer(transfer_id, interval=interval, max_attempts=max_attempts)
        if transfer.status == TransferStatus.ATTESTED:
            transfer = await self.complete_transfer(transfer_id)
        return transfer
