"""ORM models for the ledger store."""

from usdc_payroll.models.audit import AuditEventType, AuditLog
from usdc_payroll.models.base import Base, TimestampMixin, UsdcAmount
from usdc_payroll.models.operations import GasStationTransaction, PaymasterOperation
from usdc_payroll.models.payroll import PayrollItem, PayrollRun
from usdc_payroll.models.transfer import CrossChainTransfer
from usdc_payroll.models.worker import Worker

__all__ = [
    "AuditEventType",
    "AuditLog",
    "Base",
    "CrossChainTransfer",
    "GasStationTransaction",
    "PaymasterOperation",
    "PayrollItem",
    "PayrollRun",
    "TimestampMixin",
    "UsdcAmount",
    "Worker",
]
