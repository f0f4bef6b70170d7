"""Rate limiters deciding how long a failed work item waits before retrying.

The default limiter combines two policies and uses the longest delay:

- per-item exponential backoff: ``base * 2 ** failures``, capped
- an overall token bucket shared by all items, so a burst of failures
  cannot hammer the API server

Retries are unbounded; only the delay is bounded.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Hashable
from typing import Protocol

from .config import (
    DEFAULT_OVERALL_BURST,
    DEFAULT_OVERALL_QPS,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
)


class RateLimiter(Protocol):
    """Decides the delay of the next retry of an item."""

    def when(self, item: Hashable) -> float:
        """Record a failure of ``item`` and return the seconds to wait."""
        ...

    def forget(self, item: Hashable) -> None:
        """Drop all failure history of ``item``."""
        ...

    def num_requeues(self, item: Hashable) -> int:
        """Number of failures recorded for ``item`` since it was last forgotten."""
        ...


class ItemExponentialFailureRateLimiter:
    """Per-item exponential backoff: base * 2**failures, capped at max_delay."""

    def __init__(
        self,
        base_delay: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
        max_delay: float = DEFAULT_RETRY_MAX_DELAY_SECONDS,
    ) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be positive")
        if max_delay < base_delay:
            raise ValueError("max_delay must not be lower than base_delay")
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exp = self._failures.get(item, 0)
            self._failures[item] = exp + 1

        # Avoid float overflow for items that keep failing
        if exp > 62:
            return self._max_delay
        return min(self._base_delay * (2**exp), self._max_delay)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket: ``qps`` tokens per second, up to ``burst`` stored.

    Every call reserves one token; the returned delay is how long until that
    token is available. Items are not tracked individually.
    """

    def __init__(
        self,
        qps: float = DEFAULT_OVERALL_QPS,
        burst: int = DEFAULT_OVERALL_BURST,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self._qps = qps
        self._burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(self._burst, self._tokens + (now - self._last) * self._qps)
            self._last = now
            self._tokens -= 1
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self._qps

    def forget(self, item: Hashable) -> None:
        pass

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """Combines limiters by taking the longest delay and the highest requeue count."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self._limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self._limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self._limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self._limiters)


def default_controller_rate_limiter(
    base_delay: float = DEFAULT_RETRY_BASE_DELAY_SECONDS,
    max_delay: float = DEFAULT_RETRY_MAX_DELAY_SECONDS,
) -> RateLimiter:
    """Build the limiter used by the controller's retry queue."""
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(base_delay, max_delay),
        BucketRateLimiter(DEFAULT_OVERALL_QPS, DEFAULT_OVERALL_BURST),
    )
