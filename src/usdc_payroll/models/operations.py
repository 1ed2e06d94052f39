"""Fee-abstracted transaction records (sponsored and USDC-paid)."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from usdc_payroll.models.base import Base, TimestampMixin

OPERATION_STATUS_CHECK = "status IN ('PENDING', 'PROCESSING', 'COMPLETED', 'FAILED')"


class GasStationTransaction(Base, TimestampMixin):
    """A sponsored (gasless) transaction submitted through a gas policy."""

    __tablename__ = "gas_station_transactions"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    worker_id: Mapped[UUID] = mapped_column(
        ForeignKey("workers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Set when the treasury paid a payroll item; worker_id is then the payee
    payroll_item_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_items.id", ondelete="SET NULL"),
        index=True,
    )
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    # Provider-issued operation id, the reconciliation key
    user_op_hash: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    policy_id: Mapped[str | None] = mapped_column(String(128))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    gas_used: Mapped[str | None] = mapped_column(String(40))
    transaction_hash: Mapped[str | None] = mapped_column(String(128))
    error_message: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint(OPERATION_STATUS_CHECK, name="gas_station_transaction_status_check"),
    )


class PaymasterOperation(Base, TimestampMixin):
    """An ERC-4337 user operation whose fee is paid in USDC."""

    __tablename__ = "paymaster_operations"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    worker_id: Mapped[UUID] = mapped_column(
        ForeignKey("workers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    user_op_hash: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    gas_used: Mapped[str | None] = mapped_column(String(40))
    gas_fee_usdc: Mapped[Decimal | None] = mapped_column()
    transaction_hash: Mapped[str | None] = mapped_column(String(128))
    error_message: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint(OPERATION_STATUS_CHECK, name="paymaster_operation_status_check"),
    )
