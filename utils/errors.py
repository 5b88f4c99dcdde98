"""Error taxonomy shared by the cache, dispatcher and scheduler."""

from __future__ import annotations

import asyncio
from typing import Any

import aiohttp


class ProviderError(Exception):
    """Base class for failures raised while talking to an upstream provider."""

    def __init__(self, message: str = "", *, provider: str = "", status: int = 0) -> None:
        super().__init__(message)
        self.provider = str(provider or "")
        self.status = int(status or 0)


class TransientProviderError(ProviderError):
    """Timeout, 5xx or connection failure. Retried by the dispatcher."""


class RateLimitedError(TransientProviderError):
    """Upstream answered with an explicit rate-limit signal (HTTP 429)."""

    def __init__(
        self,
        message: str = "",
        *,
        provider: str = "",
        status: int = 429,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, provider=provider, status=status)
        self.retry_after = retry_after


class PermanentRequestError(ProviderError):
    """Malformed input or a non-retryable 4xx. Never retried."""


class UnresolvedKeyError(ProviderError):
    """A batched upstream call returned no value for this key."""

    def __init__(self, key: Any, message: str = "") -> None:
        super().__init__(message or f"unresolved key: {key!r}")
        self.key = key


class CircuitOpenError(RuntimeError):
    """A cycle was skipped because the breaker is open."""

    def __init__(self, cooldown_remaining: float) -> None:
        super().__init__(f"circuit breaker open, cooldown_remaining={cooldown_remaining:.1f}s")
        self.cooldown_remaining = max(0.0, float(cooldown_remaining))


class DispatcherClosedError(RuntimeError):
    """The dispatcher was closed while the request was still queued."""


def classify_error(exc: BaseException) -> ProviderError:
    """Map an arbitrary exception onto the provider taxonomy."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return TransientProviderError(f"timeout: {exc}")
    if isinstance(exc, (aiohttp.ClientConnectionError, aiohttp.ServerTimeoutError)):
        return TransientProviderError(f"connection_error: {exc}")
    if isinstance(exc, aiohttp.ClientResponseError):
        status = int(exc.status or 0)
        if status == 429:
            return RateLimitedError(str(exc), status=status)
        if 500 <= status <= 599:
            return TransientProviderError(str(exc), status=status)
        return PermanentRequestError(str(exc), status=status)
    return PermanentRequestError(f"{type(exc).__name__}: {exc}")


def is_transient(exc: BaseException) -> bool:
    return isinstance(classify_error(exc), TransientProviderError)
