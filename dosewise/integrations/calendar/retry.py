"""Retry policy table and the single retry driver used for provider calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

from dosewise.integrations.calendar.base import ErrorKind, ProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

DEFAULT_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class RetryPolicy:
    """How to react to one kind of provider failure.

    Backoff before attempt n+1 is backoff_seconds * n.
    """

    retry: bool
    backoff_seconds: float
    abort_siblings: bool


RETRY_POLICIES: dict[ErrorKind, RetryPolicy] = {
    ErrorKind.RATE_LIMITED: RetryPolicy(retry=True, backoff_seconds=2.0, abort_siblings=False),
    ErrorKind.PROVIDER_UNAVAILABLE: RetryPolicy(retry=True, backoff_seconds=1.0, abort_siblings=False),
    ErrorKind.TIMEOUT: RetryPolicy(retry=True, backoff_seconds=1.0, abort_siblings=False),
    ErrorKind.UNKNOWN: RetryPolicy(retry=True, backoff_seconds=1.0, abort_siblings=False),
    ErrorKind.AUTH_EXPIRED: RetryPolicy(retry=False, backoff_seconds=0.0, abort_siblings=True),
    ErrorKind.NOT_FOUND: RetryPolicy(retry=False, backoff_seconds=0.0, abort_siblings=False),
}


def classify(exc: BaseException) -> ErrorKind:
    """Map an exception raised by a provider call to an ErrorKind."""
    if isinstance(exc, ProviderError):
        return exc.kind
    if isinstance(exc, TimeoutError):
        return ErrorKind.TIMEOUT
    return ErrorKind.UNKNOWN


@dataclass(frozen=True)
class RetryResult(Generic[T]):
    """Outcome of call_with_retry; exactly one of value/error is meaningful."""

    value: T | None
    error: BaseException | None
    kind: ErrorKind | None
    attempts: int

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def abort_siblings(self) -> bool:
        return self.kind is not None and RETRY_POLICIES[self.kind].abort_siblings


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    timeout: float | None = None,
    sleep: Sleep = asyncio.sleep,
    label: str = "provider call",
) -> RetryResult[T]:
    """Run fn with per-attempt timeout, retrying according to RETRY_POLICIES.

    Never raises for provider failures or timeouts; the final failure is
    returned in the result. Other exceptions (programming errors) propagate.
    """
    attempts = 0
    while True:
        attempts += 1
        try:
            if timeout is None:
                value = await fn()
            else:
                async with asyncio.timeout(timeout):
                    value = await fn()
            return RetryResult(value=value, error=None, kind=None, attempts=attempts)
        except (ProviderError, TimeoutError) as exc:
            kind = classify(exc)
            policy = RETRY_POLICIES[kind]
            logger.warning("%s failed (attempt %d/%d, %s): %s", label, attempts, max_attempts, kind, exc)
            if not policy.retry or attempts >= max_attempts:
                return RetryResult(value=None, error=exc, kind=kind, attempts=attempts)
            await sleep(policy.backoff_seconds * attempts)

