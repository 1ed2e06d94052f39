"""JSON-RPC adapters for EVM nodes and ERC-4337 bundlers."""

from __future__ import annotations

import itertools
import logging
from typing import Any

import httpx

from usdc_payroll.calldata import ContractCall, decode_uint, erc20_nonces, used_nonces
from usdc_payroll.chains import SupportedChain, get_chain
from usdc_payroll.errors import ConfigurationError, GatewayError
from usdc_payroll.providers.base import GasEstimate, UserOperationReceipt
from usdc_payroll.throttle import RateLimiter

logger = logging.getLogger(__name__)


class JsonRpcTransport:
    """Minimal JSON-RPC 2.0 over httpx, one endpoint per chain."""

    def __init__(
        self,
        urls: dict[str, str],
        *,
        label: str,
        rate_limiter: RateLimiter | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.urls = {k.lower(): v for k, v in urls.items()}
        self.label = label
        self._limiter = rate_limiter
        self._http = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self._ids = itertools.count(1)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    def _url(self, chain: SupportedChain) -> str:
        url = self.urls.get(chain.value)
        if not url:
            raise ConfigurationError(f"No {self.label} URL configured for {chain.value}")
        return url

    async def call(self, chain: SupportedChain, method: str, params: list[Any]) -> Any:
        if self._limiter is not None:
            await self._limiter.acquire()
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = await self._http.post(self._url(chain), json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("%s %s on %s failed: %s", self.label, method, chain.value, exc)
            raise GatewayError(f"{self.label} {method} failed: {exc}") from exc
        body = response.json()
        if body.get("error"):
            error = body["error"]
            raise GatewayError(
                f"{self.label} {method} error {error.get('code')}: {error.get('message')}",
                retryable=False,
            )
        return body.get("result")


class RpcChainReader:
    """Chain reads through a node's JSON-RPC endpoint."""

    def __init__(self, transport: JsonRpcTransport):
        self.transport = transport

    async def aclose(self) -> None:
        await self.transport.aclose()

    async def is_message_used(self, chain: SupportedChain, message_hash: str) -> bool:
        config = get_chain(chain)
        result = await self.transport.call(
            chain,
            "eth_call",
            [{"to": config.message_transmitter, "data": used_nonces(message_hash)}, "latest"],
        )
        return decode_uint(result or "0x0") != 0

    async def estimate_gas(self, chain: SupportedChain, call: ContractCall, sender: str) -> GasEstimate:
        tx = {"from": sender, "to": call.to, "data": call.data, "value": hex(call.value)}
        gas = int(await self.transport.call(chain, "eth_estimateGas", [tx]), 16)
        gas_price = int(await self.transport.call(chain, "eth_gasPrice", []), 16)
        priority = int(await self.transport.call(chain, "eth_maxPriorityFeePerGas", []), 16)
        return GasEstimate(
            gas_limit=max(gas, call.gas_limit or 0),
            max_fee_per_gas=gas_price,
            max_priority_fee_per_gas=priority,
        )

    async def get_nonce(self, chain: SupportedChain, address: str) -> int:
        return int(await self.transport.call(chain, "eth_getTransactionCount", [address, "pending"]), 16)

    async def get_permit_nonce(self, chain: SupportedChain, owner: str) -> int:
        config = get_chain(chain)
        result = await self.transport.call(
            chain,
            "eth_call",
            [{"to": config.usdc_address, "data": erc20_nonces(owner)}, "latest"],
        )
        return decode_uint(result or "0x0")


class BundlerClient:
    """ERC-4337 bundler JSON-RPC."""

    def __init__(self, transport: JsonRpcTransport):
        self.transport = transport

    async def aclose(self) -> None:
        await self.transport.aclose()

    async def send_user_operation(
        self, chain: SupportedChain, user_operation: dict[str, Any], entry_point: str
    ) -> str:
        return await self.transport.call(chain, "eth_sendUserOperation", [user_operation, entry_point])

    async def get_user_operation_receipt(
        self, chain: SupportedChain, user_op_hash: str
    ) -> UserOperationReceipt | None:
        result = await self.transport.call(chain, "eth_getUserOperationReceipt", [user_op_hash])
        if not result:
            return None
        receipt = result.get("receipt") or {}
        actual_gas = result.get("actualGasUsed")
        return UserOperationReceipt(
            user_op_hash=user_op_hash,
            success=bool(result.get("success")),
            transaction_hash=receipt.get("transactionHash"),
            gas_used=str(int(actual_gas, 16)) if isinstance(actual_gas, str) else actual_gas,
            reason=result.get("reason"),
        )
