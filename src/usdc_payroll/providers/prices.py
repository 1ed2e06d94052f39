"""Reference native-token prices."""

from __future__ import annotations

from decimal import Decimal

from usdc_payroll.chains import CHAINS, SupportedChain


class StaticPriceOracle:
    """Fixed USD prices per chain, defaulting to the chain table's reference price."""

    def __init__(self, overrides: dict[SupportedChain, Decimal] | None = None):
        self._prices = {chain: config.native_price_usd for chain, config in CHAINS.items()}
        if overrides:
            self._prices.update(overrides)

    async def native_price_usd(self, chain: SupportedChain) -> Decimal:
        return self._prices[chain]
