"""Payroll run and item models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from usdc_payroll.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from usdc_payroll.models.worker import Worker


class PayrollRun(Base, TimestampMixin):
    """A batch of worker payments submitted together."""

    __tablename__ = "payroll_runs"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    admin_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="DRAFT")
    # Snapshot taken at creation, never recomputed
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    total_workers: Mapped[int] = mapped_column(nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        CheckConstraint(
            "status IN ('DRAFT', 'PENDING', 'PROCESSING', 'COMPLETED', 'FAILED')",
            name="payroll_run_status_check",
        ),
        CheckConstraint("total_workers > 0", name="payroll_run_workers_check"),
    )

    items: Mapped[list[PayrollItem]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="PayrollItem.created_at",
    )


class PayrollItem(Base, TimestampMixin):
    """One worker's payment within a run."""

    __tablename__ = "payroll_items"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    payroll_run_id: Mapped[UUID] = mapped_column(
        ForeignKey("payroll_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    worker_id: Mapped[UUID] = mapped_column(
        ForeignKey("workers.id", ondelete="RESTRICT"),
        nullable=False,
    )
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    chain: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    payout_id: Mapped[str | None] = mapped_column(String(128), index=True)
    transaction_hash: Mapped[str | None] = mapped_column(String(128))
    error_message: Mapped[str | None] = mapped_column(Text)
    completed_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'PROCESSING', 'SUBMITTED', 'COMPLETED', 'FAILED')",
            name="payroll_item_status_check",
        ),
        Index("ix_payroll_items_run_status", "payroll_run_id", "status"),
    )

    run: Mapped[PayrollRun] = relationship(back_populates="items")
    worker: Mapped[Worker] = relationship(back_populates="payroll_items")
