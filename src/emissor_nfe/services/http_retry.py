"""Bounded retries for calls to the tax authority."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

import requests.exceptions

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RetryableHTTPError(requests.exceptions.HTTPError):
    """An HTTP answer whose status the active policy treats as "try again later"."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConnectFailure(requests.exceptions.ConnectionError):
    """The connection was never established, so no request bytes were sent."""


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay: float
    max_delay: float
    backoff_factor: float
    jitter: float
    retryable_exceptions: tuple[type[Exception], ...]
    retryable_status_codes: frozenset[int] = field(default_factory=frozenset)
    name: str = "autorizador"

    def should_retry(self, exc: Exception) -> bool:
        if not isinstance(exc, self.retryable_exceptions):
            return False
        if isinstance(exc, RetryableHTTPError) and exc.status_code is not None:
            return exc.status_code in self.retryable_status_codes
        return True


# Submission retries only refused connections and explicit "come back later"
# statuses; anything else may have reached the authority.
AUTHORITY_SUBMIT = RetryPolicy(
    max_attempts=3,
    base_delay=1.0,
    max_delay=10.0,
    backoff_factor=2.0,
    jitter=0.25,
    retryable_exceptions=(ConnectFailure, RetryableHTTPError),
    retryable_status_codes=frozenset({429, 503}),
    name="envio",
)

AUTHORITY_READ = RetryPolicy(
    max_attempts=4,
    base_delay=1.0,
    max_delay=15.0,
    backoff_factor=2.0,
    jitter=0.25,
    retryable_exceptions=(
        requests.exceptions.ConnectionError,
        requests.exceptions.Timeout,
        RetryableHTTPError,
    ),
    retryable_status_codes=frozenset({429, 502, 503, 504}),
    name="consulta",
)


def _calc_delay(attempt: int, policy: RetryPolicy) -> float:
    """Backoff before retry number *attempt* + 1 (0-indexed), capped and jittered."""
    delay = min(policy.base_delay * policy.backoff_factor**attempt, policy.max_delay)
    if policy.jitter:
        spread = delay * policy.jitter
        delay = random.uniform(delay - spread, delay + spread)
    return max(0.0, delay)


def retry_call(
    func: Callable[[], T],
    policy: RetryPolicy,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
) -> T:
    """Call *func* until it succeeds or *policy* gives up; the last error propagates."""
    attempt = 0
    while True:
        try:
            return func()
        except Exception as exc:
            attempt += 1
            if not policy.should_retry(exc):
                raise
            if attempt >= policy.max_attempts:
                logger.warning("%s: giving up after %d attempts (%s)", policy.name, attempt, exc)
                raise
            delay = _calc_delay(attempt - 1, policy)
            logger.warning(
                "%s: attempt %d/%d failed with %s, retrying in %.1fs",
                policy.name,
                attempt,
                policy.max_attempts,
                type(exc).__name__,
                delay,
            )
            sleep_func(delay)
