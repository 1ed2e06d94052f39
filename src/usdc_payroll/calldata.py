"""Call-data builders for the handful of contract calls the service makes.

Only fixed selectors and static 32-byte words are produced here, plus the two
``bytes`` arguments of ``receiveMessage``. Signing and general ABI work stay
with the wallet and bundler providers.
"""

from __future__ import annotations

from dataclasses import dataclass

SELECTOR_TRANSFER = "a9059cbb"  # transfer(address,uint256)
SELECTOR_APPROVE = "095ea7b3"  # approve(address,uint256)
SELECTOR_BALANCE_OF = "70a08231"  # balanceOf(address)
SELECTOR_NONCES = "7ecebe00"  # nonces(address)
SELECTOR_DEPOSIT_FOR_BURN = "6fd3504e"  # depositForBurn(uint256,uint32,bytes32,address)
SELECTOR_RECEIVE_MESSAGE = "57ecfd28"  # receiveMessage(bytes,bytes)
SELECTOR_USED_NONCES = "feb61724"  # usedNonces(bytes32)


@dataclass(frozen=True)
class ContractCall:
    """A contract invocation handed to a wallet, bundler or RPC provider."""

    to: str
    data: str
    value: int = 0
    gas_limit: int | None = None


def _strip_hex(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value


def encode_uint(value: int) -> str:
    if value < 0 or value >= 2**256:
        raise ValueError(f"uint256 out of range: {value}")
    return format(value, "064x")


def encode_address(address: str) -> str:
    raw = _strip_hex(address).lower()
    if len(raw) != 40:
        raise ValueError(f"Invalid address: {address!r}")
    int(raw, 16)
    return raw.rjust(64, "0")


def encode_bytes32(value: str) -> str:
    raw = _strip_hex(value).lower()
    if len(raw) > 64:
        raise ValueError(f"Value does not fit in bytes32: {value!r}")
    int(raw or "0", 16)
    return raw.rjust(64, "0")


def _encode_dynamic_bytes(value: str) -> str:
    raw = _strip_hex(value).lower()
    if len(raw) % 2:
        raise ValueError("Hex byte string must have an even length")
    padded_len = -(-len(raw) // 64) * 64
    return encode_uint(len(raw) // 2) + raw.ljust(padded_len, "0")


def erc20_transfer(to: str, amount_minor: int) -> str:
    return "0x" + SELECTOR_TRANSFER + encode_address(to) + encode_uint(amount_minor)


def erc20_approve(spender: str, amount_minor: int) -> str:
    return "0x" + SELECTOR_APPROVE + encode_address(spender) + encode_uint(amount_minor)


def erc20_balance_of(owner: str) -> str:
    return "0x" + SELECTOR_BALANCE_OF + encode_address(owner)


def erc20_nonces(owner: str) -> str:
    return "0x" + SELECTOR_NONCES + encode_address(owner)


def deposit_for_burn(amount_minor: int, destination_domain: int, mint_recipient: str, burn_token: str) -> str:
    """Burn step of a cross-chain transfer; the recipient is left-padded to bytes32."""
    return (
        "0x"
        + SELECTOR_DEPOSIT_FOR_BURN
        + encode_uint(amount_minor)
        + encode_uint(destination_domain)
        + encode_address(mint_recipient)
        + encode_address(burn_token)
    )


def receive_message(message: str, attestation: str) -> str:
    """Mint step: ``receiveMessage(bytes message, bytes attestation)``."""
    message_part = _encode_dynamic_bytes(message)
    head = encode_uint(64) + encode_uint(64 + len(message_part) // 2)
    return "0x" + SELECTOR_RECEIVE_MESSAGE + head + message_part + _encode_dynamic_bytes(attestation)


def used_nonces(nonce_hash: str) -> str:
    return "0x" + SELECTOR_USED_NONCES + encode_bytes32(nonce_hash)


def decode_uint(result: str) -> int:
    """Decode a single uint256 word returned by ``eth_call``."""
    raw = _strip_hex(result)
    return int(raw[:64] or "0", 16)
