"""Worker model."""

from __future__ import annotations

from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from usdc_payroll.models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from usdc_payroll.models.payroll import PayrollItem
    from usdc_payroll.models.transfer import CrossChainTransfer


class Worker(Base, TimestampMixin):
    """A payee. Created on first appearance in an uploaded batch."""

    __tablename__ = "workers"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    # Gateway resources, filled in by provisioning
    recipient_id: Mapped[str | None] = mapped_column(String(128), unique=True)
    wallet_id: Mapped[str | None] = mapped_column(String(128), unique=True)
    wallet_address: Mapped[str | None] = mapped_column(String(64))

    payroll_items: Mapped[list[PayrollItem]] = relationship(back_populates="worker")
    transfers: Mapped[list[CrossChainTransfer]] = relationship(back_populates="worker")

    @property
    def has_payment_method(self) -> bool:
        return bool(self.wallet_id or self.recipient_id)
