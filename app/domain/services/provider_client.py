"""
Provider API Client

Thin httpx wrapper around the blockchain data provider (Helius-compatible
REST API). Every call first takes a token from the rate limiter and then
runs through the provider's circuit breaker with bounded retries.

Error mapping:
- timeout / transport error / 5xx / 429  -> TransientUpstreamError (retried)
- body mentioning "webhook limit"        -> ProviderQuotaExceededError
- other 4xx                              -> ProviderRequestError
"""
from __future__ import annotations

from typing import Any

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.exceptions import (
    ProviderQuotaExceededError,
    ProviderRequestError,
    RateLimitedError,
    TransientUpstreamError,
)
from app.core.logging import get_logger
from app.core.rate_limiter import RateLimiter

logger = get_logger(__name__)

_QUOTA_MARKER = "webhook limit"
_NO_CONTENT = object()


class ProviderClient:
    """Webhook management and history fetches against the provider"""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        rate_limiter: RateLimiter,
        circuit_breaker: CircuitBreaker,
        rate_limit_key: str = "provider-api",
        timeout_seconds: float = 30.0,
        webhook_type: str = "enhanced",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.rate_limiter = rate_limiter
        self.circuit_breaker = circuit_breaker
        self.rate_limit_key = rate_limit_key
        self.timeout_seconds = timeout_seconds
        self.webhook_type = webhook_type
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
        )

    async def _send(
        self,
        operation: str,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        allow_404: bool = False,
    ) -> Any:
        query = dict(params or {})
        query["api-key"] = self._api_key
        try:
            async with self._client() as client:
                response = await client.request(method, path, params=query, json=json)
        except httpx.TimeoutException as exc:
            raise TransientUpstreamError(f"{operation} timed out after {self.timeout_seconds}s") from exc
        except httpx.TransportError as exc:
            raise TransientUpstreamError(f"{operation} transport error ({type(exc).__name__})") from exc

        if response.status_code == 404 and allow_404:
            return _NO_CONTENT
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientUpstreamError(
                f"{operation} returned status {response.status_code}",
                upstream_status=response.status_code,
            )
        if response.status_code >= 400:
            body = response.text or ""
            if _QUOTA_MARKER in body.lower():
                raise ProviderQuotaExceededError(upstream_status=response.status_code)
            raise ProviderRequestError.from_response(operation, response)

        if not response.content:
            return None
        return response.json()

    async def _request(self, operation: str, method: str, path: str, **kwargs) -> Any:
        if not self.rate_limiter.acquire(self.rate_limit_key):
            retry_after = self.rate_limiter.retry_after(self.rate_limit_key)
            logger.warning(
                "Provider call deferred by rate limiter",
                extra_data={"operation": operation, "retry_after_seconds": retry_after},
            )
            raise RateLimitedError(self.rate_limit_key, retry_after)

        logger.debug(
            "Provider request",
            extra_data={"operation": operation, "method": method, "path": path},
        )
        return await self.circuit_breaker.execute_with_retry(
            self._send, operation, method, path, **kwargs
        )

    async def create_webhook(
        self,
        *,
        callback_url: str,
        secret: str,
        account_addresses: list[str],
        transaction_types: list[str],
    ) -> str:
        """Register a webhook; returns the provider webhook id"""
        data = await self._request(
            "create_webhook",
            "POST",
            "/v0/webhooks",
            json={
                "webhookURL": callback_url,
                "transactionTypes": transaction_types,
                "accountAddresses": account_addresses,
                "webhookType": self.webhook_type,
                "authHeader": secret,
            },
        )
        webhook_id = (data or {}).get("webhookID") or (data or {}).get("webhookId")
        if not webhook_id:
            raise ProviderRequestError("create_webhook response has no webhook id")
        return str(webhook_id)

    async def list_webhooks(self) -> list[dict[str, Any]]:
        data = await self._request("list_webhooks", "GET", "/v0/webhooks")
        if isinstance(data, dict):
            data = data.get("webhooks") or []
        return [w for w in (data or []) if isinstance(w, dict)]

    async def delete_webhook(self, provider_webhook_id: str) -> bool:
        """Delete a webhook; False when the provider no longer knows it (404)"""
        result = await self._request(
            "delete_webhook", "DELETE", f"/v0/webhooks/{provider_webhook_id}", allow_404=True
        )
        return result is not _NO_CONTENT

    async def fetch_transactions(
        self,
        address: str,
        *,
        limit: int = 100,
        before: str | None = None,
    ) -> list[dict[str, Any]]:
        """Historical transactions for an address or program id, newest first"""
        params: dict[str, Any] = {"limit": limit}
        if before:
            params["before"] = before
        data = await self._request(
            "fetch_transactions", "GET", f"/v0/addresses/{address}/transactions", params=params
        )
        return [t for t in (data or []) if isinstance(t, dict)]


def webhook_id_of(remote: dict[str, Any]) -> str | None:
    value = remote.get("webhookID") or remote.get("webhookId")
    return str(value) if value else None
