"""Fee-abstracted operations: the network fee is paid from the sender's USDC.

Flow: estimate gas, price the gas in USDC (native cost x reference price x
(1 + slippage), rounded up to the smallest unit), refuse if that exceeds the
caller's ceiling, then build a permit for the paymaster to pull the fee and
submit the user operation to a bundler.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from usdc_payroll.amounts import parse_amount, quantize_up, to_minor_units
from usdc_payroll.calldata import ContractCall, encode_address, encode_uint
from usdc_payroll.chains import (
    ENTRY_POINT_ADDRESS,
    PRE_VERIFICATION_GAS,
    VERIFICATION_GAS_LIMIT,
    SupportedChain,
    get_chain,
)
from usdc_payroll.config import Settings
from usdc_payroll.database import Database
from usdc_payroll.errors import ConfigurationError, FeeExceedsMaximum, OperationTimeout
from usdc_payroll.models import PaymasterOperation
from usdc_payroll.polling import poll_until
from usdc_payroll.providers.base import GasEstimate, GatewayClients, UserOperationReceipt
from usdc_payroll.services.reconciliation import ReconciliationResult, ReconciliationService
from usdc_payroll.services.state_machine import OperationStateMachine, OperationStatus

logger = logging.getLogger(__name__)

WEI_DECIMALS = 18
PERMIT_VALIDITY_SECONDS = 3600


@dataclass(frozen=True)
class FeeQuote:
    """USDC price of the network fee for one call."""

    chain: SupportedChain
    gas: GasEstimate
    native_cost: Decimal
    native_price_usd: Decimal
    fee_usdc: Decimal


@dataclass(frozen=True)
class PermitAuthorization:
    """EIP-2612 permit letting the paymaster pull the fee; signed by the wallet provider."""

    owner: str
    spender: str
    value: int
    nonce: int
    deadline: int

    def typed_data(self, chain: SupportedChain) -> dict[str, Any]:
        config = get_chain(chain)
        return {
            "types": {
                "Permit": [
                    {"name": "owner", "type": "address"},
                    {"name": "spender", "type": "address"},
                    {"name": "value", "type": "uint256"},
                    {"name": "nonce", "type": "uint256"},
                    {"name": "deadline", "type": "uint256"},
                ],
            },
            "primaryType": "Permit",
            "domain": {
                "name": "USDC",
                "version": "2",
                "chainId": config.chain_id,
                "verifyingContract": config.usdc_address,
            },
            "message": {
                "owner": self.owner,
                "spender": self.spender,
                "value": str(self.value),
                "nonce": str(self.nonce),
                "deadline": str(self.deadline),
            },
        }


@dataclass(frozen=True)
class FeeAbstractedOperation:
    """A submitted user operation and the fee it will cost."""

    user_op_hash: str
    chain: SupportedChain
    status: str
    fee_usdc: Decimal
    permit: PermitAuthorization


class PaymasterService:
    """Builds and submits user operations whose gas is paid in USDC."""

    def __init__(
        self,
        db: Database,
        gateway: GatewayClients,
        reconciliation: ReconciliationService,
        settings: Settings,
    ):
        self.db = db
        self.gateway = gateway
        self.reconciliation = reconciliation
        self.settings = settings
        self.slippage = Decimal(settings.fee_slippage)

    async def calculate_usdc_fee(self, chain: SupportedChain, gas: GasEstimate) -> tuple[Decimal, Decimal, Decimal]:
        """Return (native cost, native price, USDC fee) for a gas estimate."""
        native_cost = Decimal(gas.max_cost_wei).scaleb(-WEI_DECIMALS)
        price = await self.gateway.prices.native_price_usd(chain)
        fee = quantize_up(native_cost * price * (1 + self.slippage))
        return native_cost, price, fee

    async def quote_fee(self, chain: SupportedChain, call: ContractCall, sender: str) -> FeeQuote:
        gas = await self.gateway.chain.estimate_gas(chain, call, sender)
        native_cost, price, fee = await self.calculate_usdc_fee(chain, gas)
        return FeeQuote(chain=chain, gas=gas, native_cost=native_cost, native_price_usd=price, fee_usdc=fee)

    async def create_fee_abstracted_operation(
        self,
        *,
        worker_id: UUID,
        wallet_address: str,
        chain: SupportedChain,
        call: ContractCall,
        max_fee_usdc: Decimal | str | None = None,
    ) -> FeeAbstractedOperation:
        """Quote, check the ceiling, then submit.

        Raises:
            FeeExceedsMaximum: before anything is submitted or recorded.
        """
        paymaster = self.settings.paymaster_address
        if not paymaster:
            raise ConfigurationError("PAYMASTER_ADDRESS is not configured")
        maximum = parse_amount(max_fee_usdc if max_fee_usdc is not None else self.settings.max_fee_usdc)

        quote = await self.quote_fee(chain, call, wallet_address)
        if quote.fee_usdc > maximum:
            logger.info("Rejecting operation on %s: fee %s USDC over maximum %s", chain.value, quote.fee_usdc, maximum)
            raise FeeExceedsMaximum(quote.fee_usdc, maximum)

        permit = PermitAuthorization(
            owner=wallet_address,
            spender=paymaster,
            value=to_minor_units(quote.fee_usdc),
            nonce=await self.gateway.chain.get_permit_nonce(chain, wallet_address),
            deadline=int(time.time()) + PERMIT_VALIDITY_SECONDS,
        )
        user_operation = self._build_user_operation(
            sender=wallet_address,
            nonce=await self.gateway.chain.get_nonce(chain, wallet_address),
            call=call,
            gas=quote.gas,
            paymaster=paymaster,
            chain=chain,
            permit=permit,
        )
        user_op_hash = await self.gateway.bundler.send_user_operation(chain, user_operation, ENTRY_POINT_ADDRESS)

        try:
            async with self.db.session() as session:
                session.add(
                    PaymasterOperation(
                        worker_id=worker_id,
                        chain=chain.value,
                        user_op_hash=user_op_hash,
                        status=OperationStatus.PENDING.value,
                        gas_fee_usdc=quote.fee_usdc,
                    )
                )
        except IntegrityError:
            logger.info("User operation %s already recorded", user_op_hash)

        logger.info(
            "User operation %s submitted on %s (fee %s USDC) for worker %s",
            user_op_hash, chain.value, quote.fee_usdc, worker_id,
        )
        return FeeAbstractedOperation(
            user_op_hash=user_op_hash,
            chain=chain,
            status=OperationStatus.PENDING.value,
            fee_usdc=quote.fee_usdc,
            permit=permit,
        )

    @staticmethod
    def _build_user_operation(
        *,
        sender: str,
        nonce: int,
        call: ContractCall,
        gas: GasEstimate,
        paymaster: str,
        chain: SupportedChain,
        permit: PermitAuthorization,
    ) -> dict[str, Any]:
        # paymasterAndData: paymaster | token | permit amount | permit deadline
        paymaster_data = (
            paymaster
            + encode_address(get_chain(chain).usdc_address)
            + encode_uint(permit.value)
            + encode_uint(permit.deadline)
        )
        return {
            "sender": sender,
            "nonce": hex(nonce),
            "initCode": "0x",
            "callData": call.data,
            "callGasLimit": hex(gas.gas_limit),
            "verificationGasLimit": hex(VERIFICATION_GAS_LIMIT),
            "preVerificationGas": hex(PRE_VERIFICATION_GAS),
            "maxFeePerGas": hex(gas.max_fee_per_gas),
            "maxPriorityFeePerGas": hex(gas.max_priority_fee_per_gas),
            "paymasterAndData": paymaster_data,
            "signature": "0x",
        }

    async def get_operation(self, user_op_hash: str) -> PaymasterOperation | None:
        async with self.db.session() as session:
            return await session.scalar(
                select(PaymasterOperation).where(PaymasterOperation.user_op_hash == user_op_hash)
            )

    async def monitor_operation(
        self,
        user_op_hash: str,
        chain: SupportedChain,
        *,
        interval: float | None = None,
        max_attempts: int | None = None,
    ) -> ReconciliationResult:
        """Poll the bundler for a receipt and reconcile it.

        Raises:
            OperationTimeout: no receipt within the allowed attempts; the
                record stays PENDING.
        """

        async def fetch() -> UserOperationReceipt | str | None:
            record = await self.get_operation(user_op_hash)
            if record is not None and OperationStateMachine.is_terminal(record.status):
                return record.status
            return await self.gateway.bundler.get_user_operation_receipt(chain, user_op_hash)

        outcome = await poll_until(
            fetch,
            subject=f"user operation {user_op_hash}",
            interval=self.settings.receipt_poll_interval if interval is None else interval,
            max_attempts=max_attempts or self.settings.receipt_max_attempts,
            timeout_error=OperationTimeout,
        )
        if isinstance(outcome, str):
            return ReconciliationResult(reference=user_op_hash, matched=True, previous_status=outcome, reason="duplicate")
        return await self.reconciliation.apply_paymaster_status(
            user_op_hash,
            "completed" if outcome.success else "failed",
            gas_used=outcome.gas_used,
            transaction_hash=outcome.transaction_hash,
            error_message=outcome.reason,
        )
