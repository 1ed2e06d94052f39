"""Worker API endpoints: balances, transfers and fee-abstracted transactions."""

import math
from decimal import Decimal
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Path, Query

from usdc_payroll.api.dependencies import ServicesDep
from usdc_payroll.api.schemas import (
    ApiResponse,
    BalanceResponse,
    ChainBalanceResponse,
    ContractCallRequest,
    ErrorResponse,
    FeeQuoteResponse,
    GaslessTransactionRequest,
    GaslessTransactionResponse,
    Pagination,
    TransactionEntryResponse,
    TransactionListResponse,
    TransferListResponse,
    TransferRequest,
    TransferResponse,
    UsdcGasTransactionRequest,
    UsdcGasTransactionResponse,
    WorkerResponse,
)
from usdc_payroll.calldata import ContractCall
from usdc_payroll.errors import TransferNotFound

router = APIRouter(prefix="/workers", tags=["workers"])

WorkerPath = Annotated[UUID, Path()]


def to_contract_call(payload: ContractCallRequest) -> ContractCall:
    return ContractCall(to=payload.to, data=payload.data, value=payload.value, gas_limit=payload.gas_limit)


@router.get(
    "/{worker_id}",
    response_model=ApiResponse[WorkerResponse],
    responses={404: {"model": ErrorResponse}},
)
async def get_worker(services: ServicesDep, worker_id: WorkerPath) -> ApiResponse[WorkerResponse]:
    """Get worker details."""
    worker = await services.workers.get_worker(worker_id)
    return ApiResponse(data=WorkerResponse.model_validate(worker))


@router.get(
    "/{worker_id}/balance",
    response_model=ApiResponse[BalanceResponse],
    responses={404: {"model": ErrorResponse}},
)
async def get_balance(services: ServicesDep, worker_id: WorkerPath) -> ApiResponse[BalanceResponse]:
    """USDC balance of the worker's wallet on every supported chain."""
    result = await services.workers.get_balances(worker_id)
    return ApiResponse(
        data=BalanceResponse(
            worker_id=result.worker_id,
            wallet_id=result.wallet_id,
            balances=[ChainBalanceResponse.model_validate(b) for b in result.balances],
            total=result.total,
        )
    )


# ============================================================================
# Cross-chain transfers
# ============================================================================


@router.post(
    "/{worker_id}/transfer",
    response_model=ApiResponse[TransferResponse],
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def initiate_transfer(
    services: ServicesDep,
    worker_id: WorkerPath,
    payload: TransferRequest,
) -> ApiResponse[TransferResponse]:
    """Burn on the source chain; attestation and mint continue in the background."""
    transfer = await services.transfers.initiate_transfer(
        worker_id=worker_id,
        source_chain=payload.source_chain,
        destination_chain=payload.destination_chain,
        amount=payload.amount,
        destination_address=payload.destination_address,
    )
    services.supervisor.spawn(
        services.transfers.settle_transfer(transfer.id),
        name=f"settle-transfer-{transfer.id}",
    )
    return ApiResponse(data=TransferResponse.model_validate(transfer), message="Cross-chain transfer initiated")


@router.get(
    "/{worker_id}/transfers",
    response_model=ApiResponse[TransferListResponse],
)
async def list_transfers(
    services: ServicesDep,
    worker_id: WorkerPath,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> ApiResponse[TransferListResponse]:
    """Transfer history, newest first."""
    transfers, total = await services.transfers.list_transfers(worker_id, page=page, limit=limit)
    return ApiResponse(
        data=TransferListResponse(
            transfers=[TransferResponse.model_validate(t) for t in transfers],
            pagination=Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit)),
        )
    )


@router.post(
    "/{worker_id}/transfers/{transfer_id}/complete",
    response_model=ApiResponse[TransferResponse],
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def complete_transfer(
    services: ServicesDep,
    worker_id: WorkerPath,
    transfer_id: Annotated[UUID, Path()],
) -> ApiResponse[TransferResponse]:
    """Submit (or retry) the mint for an attested transfer."""
    transfer = await services.transfers.get_transfer(transfer_id)
    if transfer.worker_id != worker_id:
        raise TransferNotFound(transfer_id)
    transfer = await services.transfers.complete_transfer(transfer_id)
    return ApiResponse(data=TransferResponse.model_validate(transfer), message="Cross-chain transfer completed")


@router.get(
    "/{worker_id}/transactions",
    response_model=ApiResponse[TransactionListResponse],
    responses={404: {"model": ErrorResponse}},
)
async def list_transactions(
    services: ServicesDep,
    worker_id: WorkerPath,
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> ApiResponse[TransactionListResponse]:
    """Payouts, transfers and fee-abstracted operations, newest first."""
    result = await services.workers.list_transactions(worker_id, page=page, limit=limit)
    return ApiResponse(
        data=TransactionListResponse(
            transactions=[TransactionEntryResponse.model_validate(e) for e in result.transactions],
            pagination=Pagination(page=result.page, limit=result.limit, total=result.total, pages=result.pages),
        )
    )


# ============================================================================
# Fee abstraction
# ============================================================================


@router.post(
    "/{worker_id}/gasless-transaction",
    response_model=ApiResponse[GaslessTransactionResponse],
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def gasless_transaction(
    services: ServicesDep,
    worker_id: WorkerPath,
    payload: GaslessTransactionRequest,
) -> ApiResponse[GaslessTransactionResponse]:
    """Submit a contract call whose gas is paid by the sponsoring policy."""
    worker = await services.workers.require_wallet(worker_id)
    operation = await services.gas_station.sponsor_transaction(
        worker_id=worker.id,
        wallet_id=worker.wallet_id,
        chain=payload.chain,
        call=to_contract_call(payload),
        policy_id=payload.policy_id,
    )
    services.supervisor.spawn(
        services.gas_station.monitor_operation(operation.operation_id),
        name=f"monitor-sponsored-{operation.operation_id}",
    )
    return ApiResponse(
        data=GaslessTransactionResponse(
            transaction_id=operation.operation_id,
            chain=operation.chain.value,
            policy_id=operation.policy_id,
            status=operation.status.lower(),
            transaction_hash=operation.transaction_hash,
        ),
        message="Gasless transaction executed",
    )


@router.post(
    "/{worker_id}/usdc-gas-transaction",
    response_model=ApiResponse[UsdcGasTransactionResponse],
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def usdc_gas_transaction(
    services: ServicesDep,
    worker_id: WorkerPath,
    payload: UsdcGasTransactionRequest,
) -> ApiResponse[UsdcGasTransactionResponse]:
    """Submit a user operation whose gas is paid from the worker's USDC."""
    worker = await services.workers.require_wallet(worker_id)
    operation = await services.paymaster.create_fee_abstracted_operation(
        worker_id=worker.id,
        wallet_address=worker.wallet_address,
        chain=payload.chain,
        call=to_contract_call(payload),
        max_fee_usdc=Decimal(payload.max_gas_fee_usdc) if payload.max_gas_fee_usdc else None,
    )
    services.supervisor.spawn(
        services.paymaster.monitor_operation(operation.user_op_hash, operation.chain),
        name=f"monitor-userop-{operation.user_op_hash}",
    )
    return ApiResponse(
        data=UsdcGasTransactionResponse(
            user_op_hash=operation.user_op_hash,
            chain=operation.chain.value,
            gas_fee_in_usdc=operation.fee_usdc,
            status=operation.status.lower(),
        ),
        message="Transaction with USDC gas payment executed",
    )


@router.post(
    "/{worker_id}/fee-quote",
    response_model=ApiResponse[FeeQuoteResponse],
    responses={404: {"model": ErrorResponse}},
)
async def fee_quote(
    services: ServicesDep,
    worker_id: WorkerPath,
    payload: ContractCallRequest,
) -> ApiResponse[FeeQuoteResponse]:
    """USDC price of the network fee for a call, without submitting it."""
    worker = await services.workers.require_wallet(worker_id)
    quote = await services.paymaster.quote_fee(payload.chain, to_contract_call(payload), worker.wallet_address)
    return ApiResponse(
        data=FeeQuoteResponse(
            chain=quote.chain.value,
            gas_limit=quote.gas.gas_limit,
            max_fee_per_gas=str(quote.gas.max_fee_per_gas),
            native_cost=format(quote.native_cost, "f"),
            native_price_usd=format(quote.native_price_usd, "f"),
            fee_usdc=quote.fee_usdc,
        )
    )
