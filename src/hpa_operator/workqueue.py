"""Deduplicating, rate-limited work queue for reconciliation keys.

Guarantees:
- A key is pending at most once, however many times it is added.
- A key is processed by at most one worker at a time. Adding a key that
  is being processed marks it dirty; it is queued again when the worker
  calls ``done()``, so no change is lost and no work runs concurrently.
- ``get()`` releases blocked callers with ``shutting_down=True`` only once
  the queue has been shut down and drained.

The queue lives on one asyncio event loop. ``add``/``done``/``forget`` are
plain methods and must be called from the loop thread (other threads use
``loop.call_soon_threadsafe``).
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Hashable

from .ratelimit import RateLimiter, default_controller_rate_limiter

logger = logging.getLogger(__name__)


class WorkQueue:
    """FIFO of unique keys with processing/dirty tracking."""

    def __init__(self, name: str = "workqueue") -> None:
        self._name = name
        self._queue: deque[Hashable] = deque()
        # Keys that need processing (pending, or re-added while processing)
        self._dirty: set[Hashable] = set()
        # Keys currently handed out by get()
        self._processing: set[Hashable] = set()
        self._shutting_down = False
        self._wakeup = asyncio.Event()

    @property
    def name(self) -> str:
        return self._name

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def __len__(self) -> int:
        return len(self._queue)

    def add(self, item: Hashable) -> None:
        """Mark ``item`` as needing processing."""
        if self._shutting_down:
            logger.debug("Queue is shutting down, dropping add", extra={"queue": self._name})
            return
        if item in self._dirty:
            return

        self._dirty.add(item)
        if item in self._processing:
            # Re-queued by done()
            return

        self._queue.append(item)
        self._wakeup.set()

    async def get(self) -> tuple[Hashable | None, bool]:
        """Wait for the next key.

        Returns:
            Tuple of (key, shutting_down). When shutting_down is True the key
            is None and the caller must stop.
        """
        while not self._queue and not self._shutting_down:
            self._wakeup.clear()
            await self._wakeup.wait()

        if not self._queue:
            return None, True

        item = self._queue.popleft()
        self._processing.add(item)
        self._dirty.discard(item)
        return item, False

    def done(self, item: Hashable) -> None:
        """Release ``item`` after processing; must be called once per get()."""
        self._processing.discard(item)
        if item in self._dirty:
            self._queue.append(item)
            self._wakeup.set()

    def is_processing(self, item: Hashable) -> bool:
        return item in self._processing

    def shut_down(self) -> None:
        """Stop accepting new keys and release blocked get() callers once drained."""
        if self._shutting_down:
            return
        logger.info(
            "Shutting down work queue",
            extra={"queue": self._name, "pending": len(self._queue)},
        )
        self._shutting_down = True
        self._wakeup.set()


class RateLimitingQueue(WorkQueue):
    """WorkQueue with delayed adds and per-key retry backoff."""

    def __init__(self, rate_limiter: RateLimiter | None = None, name: str = "workqueue") -> None:
        super().__init__(name)
        self._rate_limiter = rate_limiter or default_controller_rate_limiter()
        # Keys waiting for their delay to elapse -> (ready_at, timer)
        self._waiting: dict[Hashable, tuple[float, asyncio.TimerHandle]] = {}

    def add_after(self, item: Hashable, delay: float) -> None:
        """Add ``item`` once ``delay`` seconds have elapsed.

        If the key is already waiting, the earlier deadline wins.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return

        loop = asyncio.get_running_loop()
        ready_at = loop.time() + delay
        waiting = self._waiting.get(item)
        if waiting is not None:
            if waiting[0] <= ready_at:
                return
            waiting[1].cancel()

        timer = loop.call_later(delay, self._ready, item)
        self._waiting[item] = (ready_at, timer)

    def _ready(self, item: Hashable) -> None:
        self._waiting.pop(item, None)
        self.add(item)

    def add_rate_limited(self, item: Hashable) -> None:
        """Add ``item`` after the rate limiter's backoff delay."""
        self.add_after(item, self._rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        """Clear the backoff history of ``item``; call after a success."""
        self._rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self._rate_limiter.num_requeues(item)

    @property
    def waiting(self) -> int:
        """Number of keys waiting for a delayed add."""
        return len(self._waiting)

    def shut_down(self) -> None:
        for _, timer in self._waiting.values():
            timer.cancel()
        self._waiting.clear()
        super().shut_down()
