"""Worker-facing queries: profile, wallet balances and transaction history."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from usdc_payroll.amounts import format_amount
from usdc_payroll.chains import SupportedChain
from usdc_payroll.database import Database
from usdc_payroll.errors import WorkerNotFound
from usdc_payroll.models import (
    CrossChainTransfer,
    GasStationTransaction,
    PaymasterOperation,
    PayrollItem,
    Worker,
)
from usdc_payroll.providers.base import GatewayClients

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChainBalance:
    chain: str
    balance: str
    symbol: str = "USDC"


@dataclass(frozen=True)
class WorkerBalances:
    worker_id: UUID
    wallet_id: str
    balances: list[ChainBalance]

    @property
    def total(self) -> str:
        return format_amount(sum((Decimal(b.balance) for b in self.balances), Decimal("0")))


@dataclass(frozen=True)
class TransactionEntry:
    """One row of a worker's merged transaction history."""

    id: str
    type: str  # payout / transfer / gasless / usdc_gas
    chain: str
    status: str
    created_at: datetime
    amount: str | None = None
    reference: str | None = None
    transaction_hash: str | None = None
    completed_at: datetime | None = None


@dataclass(frozen=True)
class TransactionPage:
    transactions: list[TransactionEntry]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


class WorkerService:
    """Read side of worker accounts."""

    def __init__(self, db: Database, gateway: GatewayClients):
        self.db = db
        self.gateway = gateway

    async def get_worker(self, worker_id: UUID) -> Worker:
        async with self.db.session() as session:
            worker = await session.get(Worker, worker_id)
        if worker is None:
            raise WorkerNotFound(worker_id)
        return worker

    async def require_wallet(self, worker_id: UUID) -> Worker:
        """The worker, provided it has a programmable wallet."""
        async with self.db.session() as session:
            worker = await session.get(Worker, worker_id)
        if worker is None or not worker.wallet_id:
            raise WorkerNotFound(worker_id, "Worker or wallet not found")
        return worker

    async def get_balances(self, worker_id: UUID) -> WorkerBalances:
        """USDC balance of the worker's wallet on every supported chain.

        A chain whose balance cannot be read reports "0" rather than failing
        the whole request.
        """
        worker = await self.require_wallet(worker_id)

        async def one(chain: SupportedChain) -> ChainBalance:
            try:
                amount = await self.gateway.wallets.get_usdc_balance(worker.wallet_id, chain)
            except Exception as exc:
                logger.warning("Failed to get %s balance for worker %s: %s", chain.value, worker_id, exc)
                return ChainBalance(chain=chain.value, balance="0")
            return ChainBalance(chain=chain.value, balance=format_amount(amount))

        balances = await asyncio.gather(*(one(chain) for chain in SupportedChain))
        return WorkerBalances(worker_id=worker.id, wallet_id=worker.wallet_id, balances=list(balances))

    async def list_transactions(self, worker_id: UUID, *, page: int = 1, limit: int = 10) -> TransactionPage:
        """Payroll payouts, transfers and fee-abstracted operations, newest first."""
        await self.get_worker(worker_id)
        scopes = (
            (PayrollItem, _from_item, [PayrollItem.worker_id == worker_id]),
            (CrossChainTransfer, _from_transfer, [CrossChainTransfer.worker_id == worker_id]),
            # Treasury-funded payroll payments are listed once, as the payroll item
            (
                GasStationTransaction,
                _from_sponsored,
                [GasStationTransaction.worker_id == worker_id, GasStationTransaction.payroll_item_id.is_(None)],
            ),
            (PaymasterOperation, _from_paymaster, [PaymasterOperation.worker_id == worker_id]),
        )
        # Any row on the requested page is among the newest page*limit of its own table
        window = page * limit
        entries: list[TransactionEntry] = []
        total = 0
        async with self.db.session() as session:
            for model, to_entry, conditions in scopes:
                rows = await session.scalars(
                    select(model).where(*conditions).order_by(model.created_at.desc()).limit(window)
                )
                entries.extend(to_entry(row) for row in rows)
                total += await session.scalar(select(func.count()).select_from(model).where(*conditions)) or 0

        entries.sort(key=lambda e: e.created_at, reverse=True)
        start = (page - 1) * limit
        return TransactionPage(transactions=entries[start:start + limit], total=total, page=page, limit=limit)


def _from_item(item: PayrollItem) -> TransactionEntry:
    return TransactionEntry(
        id=str(item.id),
        type="payout",
        amount=format_amount(item.amount),
        chain=item.chain,
        status=item.status.lower(),
        reference=item.payout_id,
        transaction_hash=item.transaction_hash,
        created_at=item.created_at,
        completed_at=item.completed_at,
    )


def _from_transfer(transfer: CrossChainTransfer) -> TransactionEntry:
    return TransactionEntry(
        id=str(transfer.id),
        type="transfer",
        amount=format_amount(transfer.amount),
        chain=transfer.destination_chain,
        status=transfer.status.lower(),
        reference=transfer.message_hash,
        transaction_hash=transfer.mint_transaction_hash or transfer.transaction_hash,
        created_at=transfer.created_at,
        completed_at=transfer.completed_at,
    )


def _from_sponsored(op: GasStationTransaction) -> TransactionEntry:
    return TransactionEntry(
        id=str(op.id),
        type="gasless",
        chain=op.chain,
        status=op.status.lower(),
        reference=op.user_op_hash,
        transaction_hash=op.transaction_hash,
        created_at=op.created_at,
    )


def _from_paymaster(op: PaymasterOperation) -> TransactionEntry:
    return TransactionEntry(
        id=str(op.id),
        type="usdc_gas",
        amount=format_amount(op.gas_fee_usdc) if op.gas_fee_usdc is not None else None,
        chain=op.chain,
        status=op.status.lower(),
        reference=op.user_op_hash,
        transaction_hash=op.transaction_hash,
        created_at=op.created_at,
    )
