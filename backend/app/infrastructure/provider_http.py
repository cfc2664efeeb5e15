"""Resilient Provider HTTP Client — wraps httpx.AsyncClient with a hard deadline and backoff.

Invariants:
    - Every call is bounded by the caller-supplied timeout (asyncio.wait_for around all attempts)
    - Connection errors and 5xx: retried with exponential backoff and jitter, within the deadline
    - 4xx: immediate failure, no retry
    - All failures mapped to TransientError (core/errors.py); a deadline overrun raises
      ProviderTimeout so status polling can report "inconclusive" rather than "failed"

Design Decisions:
    - Wrapper over raw client: gateways build requests, this module owns retry policy
    - ±25% jitter on backoff: prevents thundering herd when a provider recovers
    - Client injectable: tests pass an httpx.AsyncClient over httpx.MockTransport
"""

import asyncio
import logging
import random

import httpx

from app.core.errors import ErrorCategory, TransientError

logger = logging.getLogger(__name__)


class ProviderTimeout(TransientError):
    """The provider did not answer within the caller's deadline."""
    def __init__(self, timeout: float):
        super().__init__(
            f"Provider did not respond within {timeout}s",
            "PROVIDER_TIMEOUT", ErrorCategory.TIMEOUT,
        )
        self.timeout = timeout


class ProviderHttpClient:
    """Outbound HTTP to payment providers with retry, backoff, and a hard deadline."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        max_retries: int = 2,
        base_delay_ms: int = 200,
        max_delay_ms: int = 2_000,
    ):
        self.client = client or httpx.AsyncClient()
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms

    async def request(
        self,
        method: str,
        url: str,
        *,
        timeout: float,
        params: dict | None = None,
        data: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Send with retries; the whole exchange must finish within `timeout` seconds."""
        try:
            return await asyncio.wait_for(
                self._request_with_retry(
                    method, url, timeout=timeout,
                    params=params, data=data, headers=headers,
                ),
                timeout,
            )
        except asyncio.TimeoutError:
            raise ProviderTimeout(timeout)

    async def _request_with_retry(
        self, method: str, url: str, *, timeout: float, **kwargs,
    ) -> httpx.Response:
        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(
                    method, url, timeout=timeout, **kwargs,
                )
            except httpx.TimeoutException:
                raise ProviderTimeout(timeout)
            except httpx.TransportError as e:
                await self._backoff_or_raise(e, attempt)
                continue

            if response.status_code >= 500:
                await self._backoff_or_raise(
                    httpx.HTTPStatusError(
                        f"Provider returned {response.status_code}",
                        request=response.request, response=response,
                    ),
                    attempt,
                )
                continue
            if response.status_code >= 400:
                raise TransientError(
                    f"Provider rejected request with HTTP {response.status_code}",
                    "PROVIDER_CLIENT_ERROR",
                )
            return response

        # unreachable: the final attempt either returns or raises
        raise TransientError("Provider retries exhausted", "PROVIDER_UNAVAILABLE")

    async def _backoff_or_raise(self, error: Exception, attempt: int) -> None:
        if attempt >= self.max_retries:
            raise TransientError(
                f"Provider unavailable after {attempt + 1} attempts: {error}",
                "PROVIDER_UNAVAILABLE",
            )
        delay = self._calculate_backoff(attempt)
        logger.warning(
            f"Provider call failed, retrying in {delay:.0f}ms: {error}",
            extra={"attempt": attempt + 1},
        )
        await asyncio.sleep(delay / 1000)

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff with ±25% jitter, capped at max_delay_ms."""
        delay = min(self.base_delay_ms * (2 ** attempt), self.max_delay_ms)
        return delay * random.uniform(0.75, 1.25)

    async def aclose(self) -> None:
        await self.client.aclose()
