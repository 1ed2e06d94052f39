"""Append-only audit log."""

from __future__ import annotations

from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from usdc_payroll.models.base import Base, TimestampMixin


class AuditEventType(str, Enum):
    PAYROLL_RUN_CREATED = "PAYROLL_RUN_CREATED"
    PAYROLL_ITEM_CREATED = "PAYROLL_ITEM_CREATED"
    RUN_STATUS_CHANGED = "RUN_STATUS_CHANGED"
    PAYOUT_STATUS_UPDATED = "PAYOUT_STATUS_UPDATED"
    TRANSFER_STATUS_UPDATED = "TRANSFER_STATUS_UPDATED"
    OPERATION_STATUS_UPDATED = "OPERATION_STATUS_UPDATED"
    WORKER_PROVISIONED = "WORKER_PROVISIONED"


class AuditLog(Base, TimestampMixin):
    """Domain event record. Links are nullable so history outlives entities."""

    __tablename__ = "audit_logs"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    worker_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("workers.id", ondelete="SET NULL"),
    )
    payroll_run_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_runs.id", ondelete="SET NULL"),
    )
    payroll_item_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("payroll_items.id", ondelete="SET NULL"),
    )
