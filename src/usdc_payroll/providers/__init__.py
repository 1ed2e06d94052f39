"""External gateway collaborators."""

from __future__ import annotations

import logging

from usdc_payroll.config import Settings
from usdc_payroll.errors import ConfigurationError
from usdc_payroll.providers.base import GatewayClients, idempotency_key
from usdc_payroll.providers.circle import AttestationClient, CircleClient
from usdc_payroll.providers.evm import BundlerClient, JsonRpcTransport, RpcChainReader
from usdc_payroll.providers.prices import StaticPriceOracle
from usdc_payroll.providers.stub import StubGateway
from usdc_payroll.throttle import RateLimiter

logger = logging.getLogger(__name__)

__all__ = [
    "GatewayClients",
    "StubGateway",
    "build_gateway_clients",
    "idempotency_key",
]


def build_gateway_clients(settings: Settings) -> GatewayClients:
    """Construct the collaborators selected by ``settings.gateway_backend``."""
    if settings.gateway_backend == "stub":
        logger.warning("Using the in-memory stub gateway; no real payments will be made")
        return StubGateway(auto_confirm=True).clients()

    if not settings.circle_api_key:
        raise ConfigurationError("CIRCLE_API_KEY is required for the circle gateway backend")

    # One limiter for every call to the provider, across all clients
    limiter = RateLimiter(settings.gateway_rate_limit, period=1.0)
    circle = CircleClient(
        settings.circle_api_key,
        environment=settings.circle_environment,
        entity_secret_ciphertext=settings.entity_secret_ciphertext,
        wallet_set_id=settings.wallet_set_id,
        rate_limiter=limiter,
    )
    return GatewayClients(
        payments=circle,
        wallets=circle,
        attestations=AttestationClient(environment=settings.circle_environment, rate_limiter=limiter),
        chain=RpcChainReader(JsonRpcTransport(settings.rpc_urls, label="RPC")),
        bundler=BundlerClient(JsonRpcTransport(settings.bundler_urls, label="Bundler")),
        prices=StaticPriceOracle(),
    )
