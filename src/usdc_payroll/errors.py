"""Exception hierarchy shared by services and the HTTP layer.

Every error carries a stable ``code`` and the HTTP ``status_code`` it maps to,
so route handlers never translate exceptions by hand.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class PayrollError(Exception):
    """Base class for all domain errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        code: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    @property
    def public_message(self) -> str:
        """Message safe to return to API clients."""
        return self.message


class ValidationError(PayrollError):
    """Input rejected before any state was written."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, details: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.details = details or []


class NotFoundError(PayrollError):
    code = "NOT_FOUND"
    status_code = 404


class RunNotFound(NotFoundError):
    code = "PAYROLL_RUN_NOT_FOUND"

    def __init__(self, run_id: Any):
        super().__init__(f"Payroll run {run_id} not found")
        self.run_id = run_id


class WorkerNotFound(NotFoundError):
    code = "WORKER_NOT_FOUND"

    def __init__(self, worker_id: Any, message: str | None = None):
        super().__init__(message or f"Worker {worker_id} not found")
        self.worker_id = worker_id


class TransferNotFound(NotFoundError):
    code = "TRANSFER_NOT_FOUND"

    def __init__(self, transfer_id: Any):
        super().__init__(f"Cross-chain transfer {transfer_id} not found")
        self.transfer_id = transfer_id


class InvalidState(PayrollError):
    """Operation not allowed in the entity's current status."""

    code = "INVALID_STATE"
    status_code = 400


class InvalidTransitionError(InvalidState):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class NoPaymentMethodConfigured(PayrollError):
    code = "NO_PAYMENT_METHOD"
    status_code = 400

    def __init__(self, worker_id: Any):
        super().__init__(f"Worker {worker_id} has no wallet or payout recipient configured")
        self.worker_id = worker_id


class InsufficientBalance(PayrollError):
    code = "INSUFFICIENT_BALANCE"
    status_code = 400

    def __init__(self, available: Decimal, required: Decimal):
        super().__init__(f"Insufficient balance: {available} USDC available, {required} USDC required")
        self.available = available
        self.required = required


class FeeExceedsMaximum(PayrollError):
    code = "FEE_EXCEEDS_MAXIMUM"
    status_code = 400

    def __init__(self, fee: Decimal, maximum: Decimal):
        super().__init__(f"Estimated fee {fee} USDC exceeds maximum {maximum} USDC")
        self.fee = fee
        self.maximum = maximum


class InvalidSignature(PayrollError):
    code = "INVALID_SIGNATURE"
    status_code = 401

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message)


class GatewayError(PayrollError):
    """An upstream gateway, chain or bundler call failed.

    ``message`` keeps the upstream detail for logs and item failure reasons;
    API clients only ever see ``public_message``.
    """

    code = "GATEWAY_ERROR"
    status_code = 502

    def __init__(self, message: str, *, upstream_status: int | None = None, retryable: bool = True):
        super().__init__(message)
        self.upstream_status = upstream_status
        self.retryable = retryable

    @property
    def public_message(self) -> str:
        return "Payment provider request failed"


class MessageAlreadyUsed(GatewayError):
    """The destination chain already consumed this cross-chain message."""

    def __init__(self, message_hash: str):
        super().__init__(f"Message {message_hash} already received", retryable=False)
        self.message_hash = message_hash


class PollTimeout(PayrollError):
    code = "TIMEOUT"
    status_code = 504

    def __init__(self, subject: str, attempts: int):
        super().__init__(f"Timed out waiting for {subject} after {attempts} attempts")
        self.subject = subject
        self.attempts = attempts


class AttestationTimeout(PollTimeout):
    code = "ATTESTATION_TIMEOUT"


class OperationTimeout(PollTimeout):
    code = "OPERATION_TIMEOUT"


class ConfigurationError(PayrollError):
    code = "CONFIGURATION_ERROR"
    status_code = 500
