"""httpx adapters for the payments provider's REST APIs.

``CircleClient`` covers recipients, payouts and programmable wallets;
``AttestationClient`` polls the attestation service for burn messages.
Every request passes through a shared ``RateLimiter``.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

import httpx

from usdc_payroll.calldata import ContractCall
from usdc_payroll.chains import SupportedChain, chain_by_wallet_code, get_chain
from usdc_payroll.errors import GatewayError
from usdc_payroll.providers.base import (
    Attestation,
    BurnMessage,
    PayoutResult,
    RecipientResult,
    Sponsorship,
    WalletResult,
    WalletTransaction,
)
from usdc_payroll.throttle import RateLimiter

logger = logging.getLogger(__name__)

API_BASE_URLS = {
    "sandbox": "https://api-sandbox.circle.com",
    "production": "https://api.circle.com",
}
ATTESTATION_BASE_URLS = {
    "sandbox": "https://iris-api-sandbox.circle.com",
    "production": "https://iris-api.circle.com",
}


class _JsonApi:
    """Shared request plumbing: auth, throttling and error mapping."""

    name = "provider"

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        rate_limiter: RateLimiter | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._http = http_client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)
        self._owns_client = http_client is None
        self._limiter = rate_limiter

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._limiter is not None:
            await self._limiter.acquire()
        try:
            return await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("%s request %s %s failed: %s", self.name, method, path, exc)
            raise GatewayError(f"{self.name} request {method} {path} failed: {exc}") from exc

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._send(method, path, **kwargs)
        if response.status_code >= 400:
            logger.warning(
                "%s %s %s returned %s: %s",
                self.name, method, path, response.status_code, response.text[:500],
            )
            raise GatewayError(
                f"{self.name} {method} {path} returned {response.status_code}",
                upstream_status=response.status_code,
                retryable=response.status_code == 429 or response.status_code >= 500,
            )
        body = response.json()
        data = body.get("data", body) if isinstance(body, dict) else body
        if not isinstance(data, dict):
            raise GatewayError(f"{self.name} {method} {path} returned an unexpected body")
        return data


class CircleClient(_JsonApi):
    """Recipients, payouts and developer-controlled wallets."""

    name = "Circle"

    def __init__(
        self,
        api_key: str,
        *,
        environment: str = "sandbox",
        entity_secret_ciphertext: str | None = None,
        wallet_set_id: str | None = None,
        rate_limiter: RateLimiter | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(
            API_BASE_URLS[environment],
            api_key=api_key,
            rate_limiter=rate_limiter,
            http_client=http_client,
        )
        self.entity_secret_ciphertext = entity_secret_ciphertext
        self.wallet_set_id = wallet_set_id

    # Payments ---------------------------------------------------------

    async def create_recipient(self, *, email: str, name: str, idempotency_key: str) -> RecipientResult:
        data = await self._request(
            "POST",
            "/v1/recipients",
            json={"idempotencyKey": idempotency_key, "email": email, "metadata": {"name": name}},
        )
        logger.info("Recipient %s created for %s", data["id"], email)
        return RecipientResult(recipient_id=data["id"], status=data.get("status", "active"))

    async def create_payout(
        self,
        *,
        recipient_id: str,
        amount: Decimal,
        chain: SupportedChain,
        idempotency_key: str,
        tracking_ref: str,
    ) -> PayoutResult:
        data = await self._request(
            "POST",
            "/v1/payouts",
            json={
                "idempotencyKey": idempotency_key,
                "destination": {"type": "address_book", "id": recipient_id},
                "amount": {"amount": str(amount), "currency": "USD"},
                "toAmount": {"currency": "USD"},
                "chain": get_chain(chain).payout_code,
                "trackingRef": tracking_ref,
            },
        )
        return _payout_result(data)

    async def get_payout(self, payout_id: str) -> PayoutResult:
        return _payout_result(await self._request("GET", f"/v1/payouts/{payout_id}"))

    # Wallets ----------------------------------------------------------

    async def create_wallet(
        self, *, reference: str, chains: list[SupportedChain], idempotency_key: str
    ) -> WalletResult:
        data = await self._request(
            "POST",
            "/v1/w3s/developer/wallets",
            json={
                "idempotencyKey": idempotency_key,
                "accountType": "SCA",
                "blockchains": [get_chain(c).wallet_code for c in chains],
                "walletSetId": self.wallet_set_id,
                "entitySecretCiphertext": self.entity_secret_ciphertext,
                "metadata": [{"name": "payroll-worker", "refId": reference}],
            },
        )
        wallets = data.get("wallets") or [data]
        first = wallets[0]
        return WalletResult(
            wallet_id=first["id"],
            address=first["address"],
            chains=tuple(
                c for c in (chain_by_wallet_code(w.get("blockchain", "")) for w in wallets) if c is not None
            ),
        )

    async def get_usdc_balance(self, wallet_id: str, chain: SupportedChain) -> Decimal:
        config = get_chain(chain)
        data = await self._request(
            "GET",
            f"/v1/w3s/wallets/{wallet_id}/balances",
            params={"blockchain": config.wallet_code, "tokenAddress": config.usdc_address},
        )
        for balance in data.get("tokenBalances", []):
            token = balance.get("token", {})
            if token.get("symbol") == "USDC" or token.get("tokenAddress", "").lower() == config.usdc_address.lower():
                return Decimal(balance["amount"])
        return Decimal("0")

    async def execute(
        self,
        *,
        wallet_id: str,
        chain: SupportedChain,
        call: ContractCall,
        idempotency_key: str,
        sponsorship: Sponsorship | None = None,
    ) -> WalletTransaction:
        body: dict[str, Any] = {
            "idempotencyKey": idempotency_key,
            "walletId": wallet_id,
            "contractAddress": call.to,
            "callData": call.data,
            "amount": str(call.value) if call.value else None,
            "entitySecretCiphertext": self.entity_secret_ciphertext,
            "feeLevel": "MEDIUM",
        }
        if call.gas_limit:
            body["gasLimit"] = str(call.gas_limit)
        if sponsorship is not None:
            body["gasSponsorship"] = {"enabled": True, "policyId": sponsorship.policy_id}
        data = await self._request(
            "POST",
            "/v1/w3s/developer/transactions/contractExecution",
            json={k: v for k, v in body.items() if v is not None},
        )
        return _wallet_transaction(data)

    async def get_transaction(self, transaction_id: str) -> WalletTransaction:
        data = await self._request("GET", f"/v1/w3s/transactions/{transaction_id}")
        return _wallet_transaction(data.get("transaction", data))


class AttestationClient(_JsonApi):
    """Attestation lookups for burn messages."""

    name = "Attestation service"

    def __init__(
        self,
        *,
        environment: str = "sandbox",
        rate_limiter: RateLimiter | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(
            ATTESTATION_BASE_URLS[environment],
            rate_limiter=rate_limiter,
            http_client=http_client,
        )

    async def _lookup(self, path: str, **kwargs: Any) -> dict[str, Any] | None:
        """GET ``path``; None when the service has nothing indexed yet."""
        response = await self._send("GET", path, **kwargs)
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise GatewayError(
                f"{self.name} returned {response.status_code}",
                upstream_status=response.status_code,
                retryable=response.status_code == 429 or response.status_code >= 500,
            )
        return response.json()

    async def get_attestation(self, message_hash: str) -> Attestation | None:
        body = await self._lookup(f"/v2/messages/{message_hash}")
        if body is None:
            return None
        entries = body.get("messages") or [body]
        entry = entries[0] if entries else {}
        attestation = entry.get("attestation")
        if not attestation or attestation == "PENDING" or entry.get("status") == "pending_confirmations":
            return None
        return Attestation(
            message_hash=message_hash,
            attestation=attestation,
            message=entry.get("message", ""),
        )

    async def find_burn_message(self, source_domain: int, transaction_hash: str) -> BurnMessage | None:
        body = await self._lookup(f"/v2/messages/{source_domain}", params={"transactionHash": transaction_hash})
        entries = (body or {}).get("messages") or []
        if not entries or not entries[0].get("message"):
            return None
        entry = entries[0]
        # The nonce identifies the message when no hash is reported
        message_hash = entry.get("messageHash") or entry.get("eventNonce")
        if not message_hash:
            return None
        attestation = entry.get("attestation")
        return BurnMessage(
            message_hash=message_hash,
            message=entry["message"],
            attestation=None if attestation in (None, "PENDING") else attestation,
        )


def _payout_result(data: dict[str, Any]) -> PayoutResult:
    return PayoutResult(
        payout_id=data["id"],
        status=data.get("status", "pending"),
        transaction_hash=data.get("transactionHash"),
        error_message=data.get("errorCode"),
    )


def _wallet_transaction(data: dict[str, Any]) -> WalletTransaction:
    return WalletTransaction(
        transaction_id=data["id"],
        state=data.get("state", "INITIATED"),
        transaction_hash=data.get("txHash"),
        gas_used=data.get("gasUsed"),
        error_message=data.get("errorReason"),
    )
