"""Supported chains and their USDC / cross-chain contract deployments (testnets)."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum


class SupportedChain(str, Enum):
    """Chains a worker can be paid on."""

    ETHEREUM = "ethereum"
    ARBITRUM = "arbitrum"
    BASE = "base"
    AVALANCHE = "avalanche"
    POLYGON = "polygon"

    @classmethod
    def parse(cls, value: str) -> SupportedChain:
        """Case-insensitive lookup, raising ValueError for unknown chains."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            supported = ", ".join(c.value for c in cls)
            raise ValueError(f"Unsupported chain {value!r}; expected one of: {supported}") from None


@dataclass(frozen=True)
class ChainConfig:
    """Static deployment data for one chain."""

    chain: SupportedChain
    chain_id: int
    domain: int
    native_symbol: str
    wallet_code: str
    payout_code: str
    usdc_address: str
    token_messenger: str
    message_transmitter: str
    native_price_usd: Decimal


ENTRY_POINT_ADDRESS = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"

_TOKEN_MESSENGER = "0x9f3B8679c73C2Fef8b59B4f3444d4e156fb70AA5"

CHAINS: dict[SupportedChain, ChainConfig] = {
    SupportedChain.ETHEREUM: ChainConfig(
        chain=SupportedChain.ETHEREUM,
        chain_id=11155111,
        domain=0,
        native_symbol="ETH",
        wallet_code="ETH-SEPOLIA",
        payout_code="ETH",
        usdc_address="0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
        token_messenger=_TOKEN_MESSENGER,
        message_transmitter="0x7865fAfC2db2093669d92c0F33AeEF291086BEFD",
        native_price_usd=Decimal("2500"),
    ),
    SupportedChain.ARBITRUM: ChainConfig(
        chain=SupportedChain.ARBITRUM,
        chain_id=421614,
        domain=3,
        native_symbol="ETH",
        wallet_code="ARB-SEPOLIA",
        payout_code="ARB",
        usdc_address="0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d",
        token_messenger=_TOKEN_MESSENGER,
        message_transmitter="0xaCF1ceeF35caAc005e15888dDb8A3515C41B4872",
        native_price_usd=Decimal("2500"),
    ),
    SupportedChain.BASE: ChainConfig(
        chain=SupportedChain.BASE,
        chain_id=84532,
        domain=6,
        native_symbol="ETH",
        wallet_code="BASE-SEPOLIA",
        payout_code="BASE",
        usdc_address="0x036CbD53842c5426634e7929541eC2318f3dCF7e",
        token_messenger=_TOKEN_MESSENGER,
        message_transmitter="0x7865fAfC2db2093669d92c0F33AeEF291086BEFD",
        native_price_usd=Decimal("2500"),
    ),
    SupportedChain.AVALANCHE: ChainConfig(
        chain=SupportedChain.AVALANCHE,
        chain_id=43113,
        domain=1,
        native_symbol="AVAX",
        wallet_code="AVAX-FUJI",
        payout_code="AVAX",
        usdc_address="0x5425890298aed601595a70AB815c96711a31Bc65",
        token_messenger="0xa9fB1b3009DCb79E2fe346c16a604B8Fa8aE0a79",
        message_transmitter="0xa9fB1b3009DCb79E2fe346c16a604B8Fa8aE0a79",
        native_price_usd=Decimal("25"),
    ),
    SupportedChain.POLYGON: ChainConfig(
        chain=SupportedChain.POLYGON,
        chain_id=80002,
        domain=7,
        native_symbol="MATIC",
        wallet_code="MATIC-AMOY",
        payout_code="MATIC",
        usdc_address="0x41e94eb019c0762f9bfcf9fb1e58725bfb0e7582",
        token_messenger=_TOKEN_MESSENGER,
        message_transmitter="0xe09A679F56207EF33F5b9d8fb4499Ec00792eA73",
        native_price_usd=Decimal("0.8"),
    ),
}

# Gas limits used when the caller does not supply one.
DEFAULT_GAS_LIMITS = {
    "transfer": 100_000,
    "approve": 50_000,
    "burn": 150_000,
    "mint": 150_000,
}

VERIFICATION_GAS_LIMIT = 150_000
PRE_VERIFICATION_GAS = 21_000


def get_chain(chain: SupportedChain | str) -> ChainConfig:
    """Look up deployment data for a chain name or enum member."""
    if not isinstance(chain, SupportedChain):
        chain = SupportedChain.parse(chain)
    return CHAINS[chain]


def chain_by_wallet_code(code: str) -> SupportedChain | None:
    """Map a wallet-API blockchain code (e.g. ``BASE-SEPOLIA``) back to a chain."""
    for config in CHAINS.values():
        if config.wallet_code == code:
            return config.chain
    return None
