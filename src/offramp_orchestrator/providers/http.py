"""Shared async HTTP client for settlement provider APIs."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from ..exceptions import ProviderError
from ..logging import mask_sensitive_data

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)


def extract_provider_message(response: httpx.Response) -> str:
    """Best-effort extraction of the provider's own error wording."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or response.reason_phrase
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
        data = body.get("data")
        if isinstance(data, dict) and isinstance(data.get("message"), str):
            return data["message"]
    return response.reason_phrase


class ProviderHTTPClient:
    """
    Authenticated JSON client for one provider.

    Reads (``retry=True``) are retried on 429/5xx and on any httpx transport
    error with exponential backoff. Writes such as order creation are sent
    exactly once: the providers do not guarantee server-side idempotency.
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        headers: dict[str, str],
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._provider = provider
        self._base_url = base_url.rstrip("/")
        self._headers = {"Content-Type": "application/json", **headers}
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._owns_client = client is None
        self._http = client or httpx.AsyncClient(timeout=timeout)

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        retry: bool = False,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            ProviderError: on non-2xx responses (provider message preserved)
                or transport failures once retries are exhausted
        """
        attempts = self._max_retries + 1 if retry else 1
        url = f"{self._base_url}{path}"
        for attempt in range(attempts):
            last = attempt == attempts - 1
            try:
                resp = await self._http.request(
                    method, url, json=json, params=params, headers=self._headers,
                )
            except httpx.TransportError as e:
                cause = str(e) or type(e).__name__
                if not last:
                    await self._backoff(method, path, attempt, cause)
                    continue
                raise ProviderError(
                    f"{self._provider} {method} {path} failed: {cause}",
                    provider=self._provider,
                ) from e

            if resp.status_code >= 400:
                if resp.status_code in RETRYABLE_STATUS_CODES and not last:
                    await self._backoff(method, path, attempt, f"HTTP {resp.status_code}")
                    continue
                message = extract_provider_message(resp)
                try:
                    body = resp.json()
                except ValueError:
                    body = None
                logger.warning(
                    "%s %s %s returned %s: %s",
                    self._provider, method, path, resp.status_code, mask_sensitive_data(message),
                )
                raise ProviderError(
                    message,
                    provider=self._provider,
                    status_code=resp.status_code,
                    response_body=body,
                )

            try:
                return resp.json()
            except ValueError as e:
                raise ProviderError(
                    f"{self._provider} returned a non-JSON body for {method} {path}",
                    provider=self._provider,
                    status_code=resp.status_code,
                ) from e
        raise AssertionError("unreachable")

    async def _backoff(self, method: str, path: str, attempt: int, cause: str) -> None:
        delay = self._retry_delay * (2 ** attempt)
        logger.warning(
            "%s %s %s failed (%s), retrying in %.1fs (attempt %d/%d)",
            self._provider, method, path, cause, delay, attempt + 1, self._max_retries,
        )
        await asyncio.sleep(delay)

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()
