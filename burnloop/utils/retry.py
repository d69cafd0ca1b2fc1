"""Retry and backoff utilities for ledger reads."""
from __future__ import annotations

from functools import wraps
from typing import Any, Callable, TypeVar

import aiohttp
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from burnloop.clients.base import APIError


F = TypeVar('F', bound=Callable[..., Any])


def is_retryable_exception(exc: BaseException) -> bool:
    """Network-level failures and APIErrors flagged retryable."""
    if isinstance(exc, APIError):
        return exc.retryable
    return isinstance(exc, (aiohttp.ClientError, ConnectionError, TimeoutError))


def with_retry(attempts: int = 3, max_wait: float = 10.0) -> Callable[[F], F]:
    """Decorator for async functions that read from the ledger.

    Retries transient errors with exponential backoff; permanent errors
    (bad address, malformed request) propagate on the first attempt.
    """
    def decorator(func: F) -> F:
        @retry(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=1, min=1, max=max_wait),
            retry=retry_if_exception(is_retryable_exception),
            reraise=True,
        )
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            return await func(*args, **kwargs)

        return wrapper  # type: ignore

    return decorator
