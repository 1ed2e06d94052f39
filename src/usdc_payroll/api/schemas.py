"""Pydantic schemas for API request/response models.

JSON field names are camelCase; every success body is wrapped in
``{"success": true, "data": ..., "message": ...}``.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Generic, Literal, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator
from pydantic.alias_generators import to_camel

from usdc_payroll.amounts import AMOUNT_PATTERN, format_amount, is_valid_amount
from usdc_payroll.chains import SupportedChain
from usdc_payroll.services.worker_rows import WorkerRow

T = TypeVar("T")

# Decimal rendered as an exact display string ("15.75", "16.00")
Amount = Annotated[Decimal, PlainSerializer(format_amount, return_type=str)]


class CamelModel(BaseModel):
    """Base schema with camelCase aliases."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ============================================================================
# Envelopes
# ============================================================================


class ApiResponse(BaseModel, Generic[T]):
    """Success envelope."""

    success: bool = True
    data: T
    message: str | None = None


class ErrorBody(CamelModel):
    message: str
    code: str
    status_code: int
    details: list[dict[str, Any]] | None = None


class ErrorResponse(BaseModel):
    """Error envelope."""

    error: ErrorBody


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


# ============================================================================
# Payroll schemas
# ============================================================================


class CreatePayrollRunRequest(CamelModel):
    """Schema for creating a payroll run."""

    workers: list[WorkerRow] = Field(min_length=1)


class BatchSummaryResponse(CamelModel):
    total_workers: int
    total_amount: Amount
    chains: list[str]


class UploadResponse(CamelModel):
    """Parsed CSV rows and their summary."""

    workers: list[WorkerRow]
    summary: BatchSummaryResponse


class PayrollItemResponse(CamelModel):
    """Schema for a payroll item."""

    id: UUID
    worker_id: UUID
    worker_name: str | None = None
    worker_email: str | None = None
    amount: Amount
    chain: str
    status: str
    payout_id: str | None = None
    transaction_hash: str | None = None
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class PayrollRunResponse(CamelModel):
    """Schema for a payroll run with its items."""

    id: UUID
    admin_id: str
    status: str
    total_amount: Amount
    total_workers: int
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    items: list[PayrollItemResponse] = []


class PayrollRunSummary(CamelModel):
    """Schema for a payroll run in a listing."""

    id: UUID
    admin_id: str
    status: str
    total_amount: Amount
    total_workers: int
    created_at: datetime
    completed_at: datetime | None = None
    status_counts: dict[str, int] = {}


class PayrollRunListResponse(CamelModel):
    runs: list[PayrollRunSummary]
    pagination: Pagination


class ExecuteRunResponse(CamelModel):
    payroll_run_id: UUID
    status: Literal["processing"] = "processing"


# ============================================================================
# Worker schemas
# ============================================================================


class WorkerResponse(CamelModel):
    """Schema for worker details."""

    id: UUID
    name: str
    email: str
    recipient_id: str | None = None
    wallet_id: str | None = None
    wallet_address: str | None = None
    created_at: datetime
    updated_at: datetime


class ChainBalanceResponse(CamelModel):
    chain: str
    balance: str
    symbol: str


class BalanceResponse(CamelModel):
    worker_id: UUID
    wallet_id: str
    balances: list[ChainBalanceResponse]
    total: str


class TransferRequest(CamelModel):
    """Schema for initiating a cross-chain transfer."""

    amount: str
    destination_chain: SupportedChain
    destination_address: str = Field(pattern=r"^0x[0-9a-fA-F]{40}$")
    source_chain: SupportedChain = SupportedChain.ETHEREUM

    @field_validator("amount")
    @classmethod
    def check_amount(cls, value: str) -> str:
        if not is_valid_amount(value):
            raise ValueError("Amount must be a positive decimal with at most 6 decimal places")
        return value

    @field_validator("destination_chain", "source_chain", mode="before")
    @classmethod
    def lower_chain(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class TransferResponse(CamelModel):
    """Schema for a cross-chain transfer."""

    id: UUID
    worker_id: UUID
    source_chain: str
    destination_chain: str
    amount: Amount
    source_address: str | None = None
    destination_address: str
    message_hash: str | None = None
    status: str
    transaction_hash: str | None = None
    mint_transaction_hash: str | None = None
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class TransferListResponse(CamelModel):
    transfers: list[TransferResponse]
    pagination: Pagination


class TransactionEntryResponse(CamelModel):
    id: str
    type: str
    amount: str | None = None
    chain: str
    status: str
    reference: str | None = None
    transaction_hash: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class TransactionListResponse(CamelModel):
    transactions: list[TransactionEntryResponse]
    pagination: Pagination


# ============================================================================
# Fee abstraction schemas
# ============================================================================


class ContractCallRequest(CamelModel):
    """A contract call to submit from the worker's wallet."""

    chain: SupportedChain
    to: str = Field(pattern=r"^0x[0-9a-fA-F]{40}$")
    data: str = Field(pattern=r"^0x([0-9a-fA-F]{2})*$")
    value: int = Field(default=0, ge=0)
    gas_limit: int | None = Field(default=None, gt=0)

    @field_validator("chain", mode="before")
    @classmethod
    def lower_chain(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class GaslessTransactionRequest(ContractCallRequest):
    policy_id: str | None = None


class UsdcGasTransactionRequest(ContractCallRequest):
    max_gas_fee_usdc: str | None = Field(default=None, alias="maxGasFeeUSDC")

    @field_validator("max_gas_fee_usdc")
    @classmethod
    def check_max_fee(cls, value: str | None) -> str | None:
        if value is not None and not is_valid_amount(value):
            raise ValueError("maxGasFeeUSDC must be a positive decimal")
        return value


class GaslessTransactionResponse(CamelModel):
    transaction_id: str
    chain: str
    policy_id: str
    status: str
    transaction_hash: str | None = None


class UsdcGasTransactionResponse(CamelModel):
    user_op_hash: str
    chain: str
    gas_fee_in_usdc: Amount = Field(alias="gasFeeInUSDC")
    status: str


class FeeQuoteResponse(CamelModel):
    chain: str
    gas_limit: int
    max_fee_per_gas: str
    native_cost: str
    native_price_usd: str
    fee_usdc: Amount = Field(alias="feeUSDC")


# ============================================================================
# Webhook schemas
# ============================================================================


class CircleEvent(CamelModel):
    """Payments provider notification envelope."""

    event_type: str
    data: dict[str, Any]


class PayoutEventData(CamelModel):
    id: str
    status: str | None = None
    transaction_hash: str | None = None
    error_message: str | None = None


class TransferEventData(CamelModel):
    id: str
    transaction_hash: str | None = None
    error_message: str | None = None


class AttestationEvent(CamelModel):
    message_hash: str
    status: str
    attestation: str | None = None
    message: str | None = None


class GasStationEvent(CamelModel):
    transaction_id: str
    status: str
    gas_used: str | int | None = None
    transaction_hash: str | None = None
    error_message: str | None = None


class PaymasterEvent(CamelModel):
    user_op_hash: str
    status: str
    gas_used: str | int | None = None
    gas_fee_in_usdc: str | None = Field(default=None, alias="gasFeeInUSDC")
    transaction_hash: str | None = None
    error_message: str | None = None

    @field_validator("gas_fee_in_usdc")
    @classmethod
    def check_fee(cls, value: str | None) -> str | None:
        if value is not None and not AMOUNT_PATTERN.match(value):
            raise ValueError("gasFeeInUSDC must be a decimal amount")
        return value


class WebhookAck(CamelModel):
    received: bool = True
    applied: bool = False
    reason: str | None = None
