"""Base JSON-RPC client for the burnloop network layer.

Provides:
- Rate limiting (token bucket)
- Automatic retry with exponential backoff on retryable failures
- Timeout handling
- RPC fallback chain rotation
- Structured error handling (APIError.retryable drives retries)
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from burnloop.errors import BurnloopError

log = logging.getLogger("burnloop.clients")


@dataclass
class RateLimiter:
    """Token bucket refilled at `rate` requests/s, holding at most `burst` tokens."""

    rate: float
    burst: float | None = None
    _level: float = field(init=False)
    _stamp: float = field(init=False)

    def __post_init__(self) -> None:
        if self.burst is None:
            self.burst = self.rate
        self._level = self.burst
        self._stamp = time.monotonic()

    def delay(self) -> float:
        """Take a token if one is available; otherwise seconds until one is."""
        now = time.monotonic()
        self._level = min(self.burst, self._level + (now - self._stamp) * self.rate)
        self._stamp = now
        if self._level < 1.0:
            return (1.0 - self._level) / self.rate
        self._level -= 1.0
        return 0.0

    async def wait(self) -> None:
        while (pause := self.delay()) > 0:
            await asyncio.sleep(pause)


class APIError(BurnloopError):
    """Structured RPC/HTTP error."""

    def __init__(self, message: str, status_code: int = 0, provider: str = "", retryable: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.provider = provider
        self.retryable = retryable


# JSON-RPC error codes worth another attempt (node behind, slot skipped, etc.)
RETRYABLE_RPC_CODES = {-32004, -32005, -32007, -32014, -32016}


class BaseClient:
    """JSON-RPC over HTTP with retry and rate limiting.

    Usage:
        client = BaseClient(base_url="https://api.devnet.solana.com", provider_name="devnet")
        slot = await client.call("getSlot", [{"commitment": "confirmed"}])
    """

    def __init__(
        self,
        base_url: str,
        headers: dict[str, str] | None = None,
        rate_limit: float = 10.0,
        timeout: float = 10.0,
        max_retries: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 30.0,
        backoff_multiplier: float = 2.0,
        provider_name: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url
        self.provider_name = provider_name
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.backoff_multiplier = backoff_multiplier
        self._rate_limiter = RateLimiter(rate=rate_limit)
        self._ids = itertools.count(1)
        self._client = httpx.AsyncClient(
            headers={"Content-Type": "application/json", **(headers or {})},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        """Execute one JSON-RPC request and return its `result`."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        last_error: APIError | None = None
        delay = self.backoff_base

        for attempt in range(self.max_retries + 1):
            await self._rate_limiter.wait()
            try:
                response = await self._client.post(self.base_url, json=payload)
                return self._parse(method, response)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = APIError(
                    f"Connection error to {self.provider_name}: {type(e).__name__}: {e}",
                    provider=self.provider_name,
                    retryable=True,
                )
            except APIError as e:
                last_error = e
                if not e.retryable:
                    raise

            if attempt < self.max_retries:
                log.debug("%s %s failed (attempt %d): %s", self.provider_name, method, attempt + 1, last_error)
                await asyncio.sleep(min(delay, self.backoff_max))
                delay *= self.backoff_multiplier

        raise last_error or APIError(f"{method} failed after {self.max_retries} retries")

    def _parse(self, method: str, response: httpx.Response) -> Any:
        if response.status_code == 429:
            raise APIError(
                f"Rate limited by {self.provider_name} (429)",
                status_code=429,
                provider=self.provider_name,
                retryable=True,
            )
        if response.status_code >= 500:
            raise APIError(
                f"Server error from {self.provider_name}: {response.status_code}",
                status_code=response.status_code,
                provider=self.provider_name,
                retryable=True,
            )
        if response.status_code >= 400:
            raise APIError(
                f"Client error from {self.provider_name}: {response.status_code} {response.text[:200]}",
                status_code=response.status_code,
                provider=self.provider_name,
                retryable=False,
            )

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise APIError(
                f"Malformed {method} response from {self.provider_name}: {response.text[:200]}",
                status_code=response.status_code,
                provider=self.provider_name,
                retryable=True,
            )
        error = body.get("error")
        if error:
            if not isinstance(error, dict):
                error = {"message": error}
            code = error.get("code", 0)
            raise APIError(
                f"{method} error from {self.provider_name}: {error.get('message', error)}",
                status_code=code,
                provider=self.provider_name,
                retryable=code in RETRYABLE_RPC_CODES,
            )
        return body.get("result")


class RPCFallbackClient:
    """RPC client with automatic fallback chain rotation.

    Tries the primary endpoint first, then each fallback in order.
    """

    def __init__(self, endpoints: list[dict[str, Any]]):
        self._clients: list[BaseClient] = [
            BaseClient(
                base_url=ep["url"],
                rate_limit=ep.get("rate_limit", 10.0),
                timeout=ep.get("timeout_seconds", 10.0),
                provider_name=ep.get("provider", "unknown"),
                max_retries=ep.get("max_retries", 1),
                backoff_base=ep.get("backoff_base", 0.5),
                transport=ep.get("transport"),
            )
            for ep in endpoints
        ]

    async def call(self, method: str, params: list[Any] | None = None) -> Any:
        """Try each endpoint in order. Return the first success."""
        errors: list[str] = []
        last: APIError | None = None
        for client in self._clients:
            try:
                return await client.call(method, params)
            except APIError as e:
                errors.append(f"{client.provider_name}: {e}")
                last = e
                if not e.retryable:
                    raise

        raise APIError(
            f"All RPC endpoints failed: {'; '.join(errors)}",
            provider="rpc_fallback",
            retryable=last.retryable if last else False,
        )

    async def close(self) -> None:
        for client in self._clients:
            await client.close()
