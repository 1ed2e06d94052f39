"""Protocols and result types for the external payment gateway collaborators.

Services depend only on these protocols. ``stub.StubGateway`` implements all
of them in memory for development and tests; ``circle`` and ``evm`` hold the
HTTP adapters used in deployed environments.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

from usdc_payroll.calldata import ContractCall
from usdc_payroll.chains import SupportedChain

IDEMPOTENCY_NAMESPACE = uuid.UUID("5b1f6c1e-0d3c-4b8e-9a55-6a1c2f0e7d41")


def idempotency_key(kind: str, reference: Any) -> str:
    """Deterministic idempotency key, so a retried call maps to the same upstream request."""
    return str(uuid.uuid5(IDEMPOTENCY_NAMESPACE, f"{kind}:{reference}"))


@dataclass(frozen=True)
class RecipientResult:
    """A custodial payee registered with the gateway."""

    recipient_id: str
    status: str = "active"


@dataclass(frozen=True)
class PayoutResult:
    """Result of requesting (or looking up) a payout."""

    payout_id: str
    status: str  # pending/complete/failed
    transaction_hash: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class WalletResult:
    """A programmable (smart contract) wallet."""

    wallet_id: str
    address: str
    chains: tuple[SupportedChain, ...] = ()


@dataclass(frozen=True)
class Sponsorship:
    """Gas sponsorship request attached to a wallet transaction."""

    policy_id: str = "default"


@dataclass(frozen=True)
class WalletTransaction:
    """A contract execution submitted through a programmable wallet."""

    transaction_id: str
    state: str  # INITIATED/QUEUED/SENT/CONFIRMED/COMPLETE/FAILED/CANCELLED
    transaction_hash: str | None = None
    message_hash: str | None = None
    gas_used: str | None = None
    error_message: str | None = None

    TERMINAL_SUCCESS = ("COMPLETE", "CONFIRMED")
    TERMINAL_FAILURE = ("FAILED", "CANCELLED", "DENIED")

    @property
    def is_terminal(self) -> bool:
        return self.state in self.TERMINAL_SUCCESS or self.state in self.TERMINAL_FAILURE


@dataclass(frozen=True)
class Attestation:
    """Attestation payload for a burn message, once issued."""

    message_hash: str
    attestation: str
    message: str


@dataclass(frozen=True)
class BurnMessage:
    """A burn message located by its source transaction."""

    message_hash: str
    message: str
    attestation: str | None = None


@dataclass(frozen=True)
class GasEstimate:
    """Gas parameters for a call, denominated in native-token wei."""

    gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int

    @property
    def max_cost_wei(self) -> int:
        return self.gas_limit * self.max_fee_per_gas


@dataclass(frozen=True)
class UserOperationReceipt:
    """Bundler receipt for a user operation."""

    user_op_hash: str
    success: bool
    transaction_hash: str | None = None
    gas_used: str | None = None
    reason: str | None = None


@dataclass
class GatewayCall:
    """A call observed by the stub gateway (for assertions in tests)."""

    method: str
    args: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    """Custodial recipients and payouts."""

    async def create_recipient(
        self, *, email: str, name: str, idempotency_key: str
    ) -> RecipientResult:
        ...

    async def create_payout(
        self,
        *,
        recipient_id: str,
        amount: Decimal,
        chain: SupportedChain,
        idempotency_key: str,
        tracking_ref: str,
    ) -> PayoutResult:
        """Request a payout to the recipient's registered address on ``chain``."""
        ...

    async def get_payout(self, payout_id: str) -> PayoutResult:
        ...


class WalletGateway(Protocol):
    """Programmable wallets: creation, balances, contract execution."""

    async def create_wallet(
        self, *, reference: str, chains: list[SupportedChain], idempotency_key: str
    ) -> WalletResult:
        ...

    async def get_usdc_balance(self, wallet_id: str, chain: SupportedChain) -> Decimal:
        ...

    async def execute(
        self,
        *,
        wallet_id: str,
        chain: SupportedChain,
        call: ContractCall,
        idempotency_key: str,
        sponsorship: Sponsorship | None = None,
    ) -> WalletTransaction:
        """Submit a contract call from ``wallet_id``; signing happens provider-side."""
        ...

    async def get_transaction(self, transaction_id: str) -> WalletTransaction:
        ...


class AttestationService(Protocol):
    """Issues attestations for burn messages."""

    async def get_attestation(self, message_hash: str) -> Attestation | None:
        """Return the attestation, or None while it is still pending."""
        ...

    async def find_burn_message(self, source_domain: int, transaction_hash: str) -> BurnMessage | None:
        """Locate the message emitted by a burn transaction, or None until it is indexed."""
        ...


class ChainReader(Protocol):
    """Read-only chain access."""

    async def is_message_used(self, chain: SupportedChain, message_hash: str) -> bool:
        ...

    async def estimate_gas(self, chain: SupportedChain, call: ContractCall, sender: str) -> GasEstimate:
        ...

    async def get_nonce(self, chain: SupportedChain, address: str) -> int:
        ...

    async def get_permit_nonce(self, chain: SupportedChain, owner: str) -> int:
        """EIP-2612 nonce of ``owner`` on the chain's USDC contract."""
        ...


class Bundler(Protocol):
    """ERC-4337 bundler."""

    async def send_user_operation(
        self, chain: SupportedChain, user_operation: dict[str, Any], entry_point: str
    ) -> str:
        ...

    async def get_user_operation_receipt(
        self, chain: SupportedChain, user_op_hash: str
    ) -> UserOperationReceipt | None:
        ...


class PriceOracle(Protocol):
    """Native-token / USD reference prices."""

    async def native_price_usd(self, chain: SupportedChain) -> Decimal:
        ...


@dataclass(frozen=True)
class GatewayClients:
    """The set of collaborators the services are wired with."""

    payments: PaymentGateway
    wallets: WalletGateway
    attestations: AttestationService
    chain: ChainReader
    bundler: Bundler
    prices: PriceOracle

    async def aclose(self) -> None:
        """Close any collaborator that holds network resources."""
        seen: set[int] = set()
        for client in (self.payments, self.wallets, self.attestations, self.chain, self.bundler, self.prices):
            close = getattr(client, "aclose", None)
            if close is None or id(client) in seen:
                continue
            seen.add(id(client))
            await close()
