"""In-memory gateway for local development and testing.

Implements every collaborator protocol in ``providers.base``. Upstream
behaviour that tests need to drive (attestations arriving, transactions
settling, calls failing) is exposed through ``simulate_*`` and ``fail_on``.
"""

from __future__ import annotations

import hashlib
import uuid
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from usdc_payroll.amounts import from_minor_units
from usdc_payroll.calldata import (
    SELECTOR_DEPOSIT_FOR_BURN,
    SELECTOR_RECEIVE_MESSAGE,
    SELECTOR_TRANSFER,
    ContractCall,
)
from usdc_payroll.chains import CHAINS, SupportedChain
from usdc_payroll.errors import GatewayError, MessageAlreadyUsed
from usdc_payroll.providers.base import (
    Attestation,
    BurnMessage,
    GasEstimate,
    GatewayCall,
    GatewayClients,
    PayoutResult,
    RecipientResult,
    Sponsorship,
    UserOperationReceipt,
    WalletResult,
    WalletTransaction,
)


def _hex_digest(*parts: Any) -> str:
    return "0x" + hashlib.sha256(":".join(str(p) for p in parts).encode()).hexdigest()


class StubGateway:
    """Stub provider for development.

    In production these calls go to the payments provider's recipient,
    payout, wallet and attestation APIs, an EVM RPC node and an ERC-4337
    bundler.
    """

    provider_name = "stub"

    def __init__(
        self,
        *,
        initial_balance: Decimal = Decimal("0"),
        auto_attest: bool = False,
        auto_confirm: bool = False,
        gas_estimate: GasEstimate | None = None,
    ):
        """Initialize stub provider.

        Args:
            initial_balance: USDC balance every new wallet starts with on every chain.
            auto_attest: If True, burn messages are attested immediately.
            auto_confirm: If True, wallet transactions report COMPLETE on
                their first status lookup.
            gas_estimate: Estimate returned for every call.
        """
        self.initial_balance = initial_balance
        self.auto_attest = auto_attest
        self.auto_confirm = auto_confirm
        self.gas_estimate = gas_estimate or GasEstimate(
            gas_limit=100_000,
            max_fee_per_gas=30 * 10**9,
            max_priority_fee_per_gas=10**9,
        )
        self.prices = {chain: config.native_price_usd for chain, config in CHAINS.items()}
        self.calls: list[GatewayCall] = []
        self._failures: list[tuple[str, Callable[[dict[str, Any]], bool], Exception | None]] = []
        self._recipients: dict[str, RecipientResult] = {}
        self._payouts: dict[str, PayoutResult] = {}
        self._wallets: dict[str, dict[str, Any]] = {}
        self._transactions: dict[str, WalletTransaction] = {}
        self._messages: dict[str, str] = {}
        self._attestations: dict[str, Attestation] = {}
        self._used_messages: set[str] = set()
        self._user_ops: dict[str, dict[str, Any]] = {}
        self._receipts: dict[str, UserOperationReceipt] = {}
        self._idempotent: dict[tuple[str, str], Any] = {}

    def clients(self) -> GatewayClients:
        """Wire this stub in as every collaborator."""
        return GatewayClients(
            payments=self,
            wallets=self,
            attestations=self,
            chain=self,
            bundler=self,
            prices=self,
        )

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def fail_on(
        self,
        method: str,
        when: Callable[[dict[str, Any]], bool] | None = None,
        error: Exception | None = None,
    ) -> None:
        """Make ``method`` raise (a GatewayError by default) when ``when(args)`` holds."""
        self._failures.append((method, when or (lambda args: True), error))

    def clear_failures(self) -> None:
        self._failures.clear()

    def calls_to(self, method: str) -> list[GatewayCall]:
        return [c for c in self.calls if c.method == method]

    def set_balance(self, wallet_id: str, chain: SupportedChain, amount: Decimal) -> None:
        self._wallets[wallet_id]["balances"][chain] = amount

    def simulate_attestation(self, message_hash: str) -> Attestation:
        """Issue the attestation for a burn message."""
        message = self._messages.get(message_hash, "0x" + message_hash[2:] * 2)
        attestation = Attestation(
            message_hash=message_hash,
            attestation=_hex_digest("attestation", message_hash),
            message=message,
        )
        self._attestations[message_hash] = attestation
        return attestation

    def simulate_message_used(self, message_hash: str) -> None:
        self._used_messages.add(message_hash)

    def simulate_transaction_state(
        self, transaction_id: str, state: str, transaction_hash: str | None = None
    ) -> WalletTransaction:
        current = self._transactions[transaction_id]
        updated = WalletTransaction(
            transaction_id=transaction_id,
            state=state,
            transaction_hash=transaction_hash or current.transaction_hash or _hex_digest("tx", transaction_id),
            message_hash=current.message_hash,
            gas_used="21000" if state in WalletTransaction.TERMINAL_SUCCESS else None,
            error_message="reverted" if state in WalletTransaction.TERMINAL_FAILURE else None,
        )
        self._transactions[transaction_id] = updated
        return updated

    def simulate_payout_status(
        self, payout_id: str, status: str, transaction_hash: str | None = None
    ) -> PayoutResult:
        updated = PayoutResult(payout_id=payout_id, status=status, transaction_hash=transaction_hash)
        self._payouts[payout_id] = updated
        return updated

    def simulate_receipt(self, user_op_hash: str, success: bool = True) -> UserOperationReceipt:
        receipt = UserOperationReceipt(
            user_op_hash=user_op_hash,
            success=success,
            transaction_hash=_hex_digest("userop-tx", user_op_hash),
            gas_used="85000",
            reason=None if success else "execution reverted",
        )
        self._receipts[user_op_hash] = receipt
        return receipt

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record(self, method: str, **args: Any) -> None:
        self.calls.append(GatewayCall(method=method, args=args))
        for name, when, error in self._failures:
            if name == method and when(args):
                raise error or GatewayError(f"Stub failure in {method}", upstream_status=500)

    def _replay(self, method: str, key: str) -> Any:
        return self._idempotent.get((method, key))

    # ------------------------------------------------------------------
    # PaymentGateway
    # ------------------------------------------------------------------

    async def create_recipient(self, *, email: str, name: str, idempotency_key: str) -> RecipientResult:
        self._record("create_recipient", email=email, name=name)
        if (existing := self._replay("create_recipient", idempotency_key)) is not None:
            return existing
        result = RecipientResult(recipient_id=f"rcp_{uuid.uuid4().hex[:16]}")
        self._recipients[result.recipient_id] = result
        self._idempotent[("create_recipient", idempotency_key)] = result
        return result

    async def create_payout(
        self,
        *,
        recipient_id: str,
        amount: Decimal,
        chain: SupportedChain,
        idempotency_key: str,
        tracking_ref: str,
    ) -> PayoutResult:
        self._record(
            "create_payout",
            recipient_id=recipient_id,
            amount=amount,
            chain=chain,
            tracking_ref=tracking_ref,
        )
        if (existing := self._replay("create_payout", idempotency_key)) is not None:
            return existing
        if recipient_id not in self._recipients:
            raise GatewayError(f"Unknown recipient {recipient_id}", upstream_status=404, retryable=False)
        result = PayoutResult(payout_id=f"pay_{uuid.uuid4().hex[:16]}", status="pending")
        self._payouts[result.payout_id] = result
        self._idempotent[("create_payout", idempotency_key)] = result
        return result

    async def get_payout(self, payout_id: str) -> PayoutResult:
        self._record("get_payout", payout_id=payout_id)
        if payout_id not in self._payouts:
            raise GatewayError(f"Unknown payout {payout_id}", upstream_status=404, retryable=False)
        return self._payouts[payout_id]

    # ------------------------------------------------------------------
    # WalletGateway
    # ------------------------------------------------------------------

    async def create_wallet(
        self, *, reference: str, chains: list[SupportedChain], idempotency_key: str
    ) -> WalletResult:
        self._record("create_wallet", reference=reference, chains=list(chains))
        if (existing := self._replay("create_wallet", idempotency_key)) is not None:
            return existing
        wallet_id = f"wlt_{uuid.uuid4().hex[:16]}"
        result = WalletResult(
            wallet_id=wallet_id,
            address="0x" + hashlib.sha256(wallet_id.encode()).hexdigest()[:40],
            chains=tuple(chains),
        )
        self._wallets[wallet_id] = {
            "address": result.address,
            "balances": {chain: self.initial_balance for chain in SupportedChain},
        }
        self._idempotent[("create_wallet", idempotency_key)] = result
        return result

    async def get_usdc_balance(self, wallet_id: str, chain: SupportedChain) -> Decimal:
        self._record("get_usdc_balance", wallet_id=wallet_id, chain=chain)
        wallet = self._wallets.get(wallet_id)
        if wallet is None:
            return self.initial_balance
        return wallet["balances"].get(chain, Decimal("0"))

    async def execute(
        self,
        *,
        wallet_id: str,
        chain: SupportedChain,
        call: ContractCall,
        idempotency_key: str,
        sponsorship: Sponsorship | None = None,
    ) -> WalletTransaction:
        self._record(
            "execute",
            wallet_id=wallet_id,
            chain=chain,
            call=call,
            sponsorship=sponsorship,
        )
        if (existing := self._replay("execute", idempotency_key)) is not None:
            return existing

        selector = call.data[2:10]
        transaction_id = f"tx_{uuid.uuid4().hex[:16]}"
        message_hash = None
        if selector == SELECTOR_DEPOSIT_FOR_BURN:
            amount = from_minor_units(int(call.data[10:74], 16))
            wallet = self._wallets.get(wallet_id)
            if wallet is not None:
                wallet["balances"][chain] = wallet["balances"].get(chain, Decimal("0")) - amount
            message_hash = _hex_digest("message", transaction_id)
            self._messages[message_hash] = "0x" + hashlib.sha256(call.data.encode()).hexdigest() * 4
            if self.auto_attest:
                self.simulate_attestation(message_hash)
        elif selector == SELECTOR_RECEIVE_MESSAGE:
            message_hash = self._message_for_mint(call.data)
            if message_hash in self._used_messages:
                raise MessageAlreadyUsed(message_hash)
            self._used_messages.add(message_hash)
        elif selector == SELECTOR_TRANSFER:
            amount = from_minor_units(int(call.data[74:138], 16))
            wallet = self._wallets.get(wallet_id)
            if wallet is not None:
                wallet["balances"][chain] = wallet["balances"].get(chain, Decimal("0")) - amount

        result = WalletTransaction(
            transaction_id=transaction_id,
            state="INITIATED",
            transaction_hash=_hex_digest("tx", transaction_id),
            message_hash=message_hash,
        )
        self._transactions[transaction_id] = result
        self._idempotent[("execute", idempotency_key)] = result
        return result

    def _message_for_mint(self, data: str) -> str:
        for message_hash, attestation in self._attestations.items():
            if attestation.message[2:] in data:
                return message_hash
        return _hex_digest("unknown-message", data)

    async def get_transaction(self, transaction_id: str) -> WalletTransaction:
        self._record("get_transaction", transaction_id=transaction_id)
        if transaction_id not in self._transactions:
            raise GatewayError(f"Unknown transaction {transaction_id}", upstream_status=404, retryable=False)
        if self.auto_confirm and not self._transactions[transaction_id].is_terminal:
            return self.simulate_transaction_state(transaction_id, "COMPLETE")
        return self._transactions[transaction_id]

    # ------------------------------------------------------------------
    # AttestationService
    # ------------------------------------------------------------------

    async def get_attestation(self, message_hash: str) -> Attestation | None:
        self._record("get_attestation", message_hash=message_hash)
        return self._attestations.get(message_hash)

    async def find_burn_message(self, source_domain: int, transaction_hash: str) -> BurnMessage | None:
        self._record("find_burn_message", source_domain=source_domain, transaction_hash=transaction_hash)
        for tx in self._transactions.values():
            if tx.transaction_hash == transaction_hash and tx.message_hash in self._messages:
                attestation = self._attestations.get(tx.message_hash)
                return BurnMessage(
                    message_hash=tx.message_hash,
                    message=self._messages[tx.message_hash],
                    attestation=attestation.attestation if attestation else None,
                )
        return None

    # ------------------------------------------------------------------
    # ChainReader
    # ------------------------------------------------------------------

    async def is_message_used(self, chain: SupportedChain, message_hash: str) -> bool:
        self._record("is_message_used", chain=chain, message_hash=message_hash)
        return message_hash in self._used_messages

    async def estimate_gas(self, chain: SupportedChain, call: ContractCall, sender: str) -> GasEstimate:
        self._record("estimate_gas", chain=chain, call=call, sender=sender)
        return self.gas_estimate

    async def get_nonce(self, chain: SupportedChain, address: str) -> int:
        self._record("get_nonce", chain=chain, address=address)
        return sum(1 for op in self._user_ops.values() if op["sender"] == address)

    async def get_permit_nonce(self, chain: SupportedChain, owner: str) -> int:
        self._record("get_permit_nonce", chain=chain, owner=owner)
        return 0

    # ------------------------------------------------------------------
    # Bundler
    # ------------------------------------------------------------------

    async def send_user_operation(
        self, chain: SupportedChain, user_operation: dict[str, Any], entry_point: str
    ) -> str:
        self._record("send_user_operation", chain=chain, user_operation=user_operation, entry_point=entry_point)
        user_op_hash = _hex_digest("userop", chain.value, user_operation["sender"], user_operation["nonce"], len(self._user_ops))
        self._user_ops[user_op_hash] = user_operation
        return user_op_hash

    async def get_user_operation_receipt(
        self, chain: SupportedChain, user_op_hash: str
    ) -> UserOperationReceipt | None:
        self._record("get_user_operation_receipt", chain=chain, user_op_hash=user_op_hash)
        return self._receipts.get(user_op_hash)

    # ------------------------------------------------------------------
    # PriceOracle
    # ------------------------------------------------------------------

    async def native_price_usd(self, chain: SupportedChain) -> Decimal:
        return self.prices[chain]
