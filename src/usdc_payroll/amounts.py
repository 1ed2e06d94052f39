"""Exact USDC amount handling.

USDC has 6 decimals. Amounts travel as decimal strings at the API boundary,
as ``Decimal`` inside the service, and as integer minor units when talking to
chains and gateways. Floats are never involved.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from decimal import ROUND_UP, Decimal, InvalidOperation

USDC_DECIMALS = 6
MINOR_UNITS_PER_USDC = 10**USDC_DECIMALS
QUANTUM = Decimal(1).scaleb(-USDC_DECIMALS)

AMOUNT_PATTERN = re.compile(r"^\d+(\.\d{1,6})?$")


def is_valid_amount(value: str) -> bool:
    """True for a strictly positive decimal string with at most 6 fraction digits."""
    if not isinstance(value, str) or not AMOUNT_PATTERN.match(value):
        return False
    return Decimal(value) > 0


def parse_amount(value: str | Decimal) -> Decimal:
    """Parse an amount, raising ValueError for malformed or non-positive input."""
    if isinstance(value, Decimal):
        if not value.is_finite() or value <= 0:
            raise ValueError(f"Invalid USDC amount: {value}")
        if value != value.quantize(QUANTUM):
            raise ValueError(f"USDC amount has more than {USDC_DECIMALS} decimals: {value}")
        return value
    if not is_valid_amount(value):
        raise ValueError(f"Invalid USDC amount: {value!r}")
    return Decimal(value)


def sum_amounts(values: Iterable[str | Decimal]) -> Decimal:
    """Sum amounts exactly."""
    total = Decimal(0)
    for value in values:
        total += parse_amount(value)
    return total


def to_minor_units(amount: str | Decimal) -> int:
    """Convert a display amount to integer minor units (1 USDC = 1_000_000)."""
    value = Decimal(amount) if isinstance(amount, str) else amount
    try:
        scaled = value.scaleb(USDC_DECIMALS)
        minor = int(scaled)
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid USDC amount: {amount!r}") from None
    if minor != scaled:
        raise ValueError(f"USDC amount has more than {USDC_DECIMALS} decimals: {amount}")
    return minor


def from_minor_units(minor: int) -> Decimal:
    """Convert integer minor units back to a display amount."""
    return Decimal(minor).scaleb(-USDC_DECIMALS)


def quantize_up(value: Decimal) -> Decimal:
    """Round up to the smallest USDC unit (used for fees, never for payouts)."""
    return value.quantize(QUANTUM, rounding=ROUND_UP)


def format_amount(value: Decimal | str) -> str:
    """Render an amount with trailing zeros trimmed, keeping two fraction digits.

    >>> format_amount(Decimal("15.750000"))
    '15.75'
    >>> format_amount(Decimal("16"))
    '16.00'
    """
    value = Decimal(value)
    text = format(value.quantize(QUANTUM), "f")
    whole, _, fraction = text.partition(".")
    fraction = fraction.rstrip("0")
    if len(fraction) < 2:
        fraction = fraction.ljust(2, "0")
    return f"{whole}.{fraction}"
