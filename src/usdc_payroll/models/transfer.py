"""Cross-chain transfer model."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from usdc_payroll.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from usdc_payroll.models.worker import Worker


class CrossChainTransfer(Base, TimestampMixin):
    """Worker-initiated burn/attest/mint move of USDC between chains."""

    __tablename__ = "cross_chain_transfers"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    worker_id: Mapped[UUID] = mapped_column(
        ForeignKey("workers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    source_chain: Mapped[str] = mapped_column(String(20), nullable=False)
    destination_chain: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    source_address: Mapped[str | None] = mapped_column(String(64))
    destination_address: Mapped[str] = mapped_column(String(64), nullable=False)
    # Join key between burn, attestation and mint
    message_hash: Mapped[str | None] = mapped_column(String(80), unique=True)
    message_body: Mapped[str | None] = mapped_column(Text)
    attestation: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    # Provider id of the burn, known before its on-chain hash
    burn_transaction_id: Mapped[str | None] = mapped_column(String(128))
    transaction_hash: Mapped[str | None] = mapped_column(String(128))
    mint_transaction_hash: Mapped[str | None] = mapped_column(String(128))
    error_message: Mapped[str | None] = mapped_column(Text)
    completed_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'ATTESTED', 'COMPLETED', 'FAILED')",
            name="cross_chain_transfer_status_check",
        ),
        CheckConstraint(
            "source_chain <> destination_chain",
            name="cross_chain_transfer_chains_check",
        ),
    )

    worker: Mapped[Worker] = relationship(back_populates="transfers")
