"""Worker pool draining the retry queue into the reconciler.

Each worker repeatedly takes a key, reconciles it and releases it. A
failure the reconciler did not classify is contained at the worker
boundary: it is logged (and optionally alerted), the key's backoff is
cleared, and the worker moves on to the next key.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from .cache import Informer, wait_for_cache_sync
from .config import Config
from .notify import WebhookNotifier
from .reconciler import Reconciler, ReconcileOutcome, ReconcileResult
from .workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)

WORKER_RESTART_DELAY_SECONDS = 1.0


class CacheSyncError(Exception):
    """Raised when the caches do not sync within the startup timeout."""

    pass


class Controller:
    """Runs the reconcile workers for one retry queue."""

    def __init__(
        self,
        config: Config,
        queue: RateLimitingQueue,
        reconciler: Reconciler,
        informers: Iterable[Informer[Any]] = (),
        notifier: WebhookNotifier | None = None,
    ) -> None:
        self._config = config
        self._queue = queue
        self._reconciler = reconciler
        self._informers = list(informers)
        self._notifier = notifier

    @property
    def queue(self) -> RateLimitingQueue:
        return self._queue

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Start informers and workers, then block until ``shutdown_event`` is set.

        A shutdown requested while the caches are still syncing returns
        without starting any worker.

        Raises:
            CacheSyncError: If the caches do not sync in time.
        """
        loop = asyncio.get_running_loop()
        logger.info("Starting controller", extra={"workers": self._config.workers})

        for informer in self._informers:
            informer.start(loop)

        workers: list[asyncio.Task[None]] = []
        try:
            logger.info("Waiting for informer caches to sync")
            synced = await wait_for_cache_sync(
                self._informers, self._config.cache_sync_timeout_seconds, shutdown_event
            )
            if shutdown_event.is_set():
                logger.info("Shutdown requested before caches synced")
                return
            if not synced:
                raise CacheSyncError(
                    f"Caches did not sync within {self._config.cache_sync_timeout_seconds}s"
                )

            workers = [
                loop.create_task(self._run_worker(index), name=f"worker-{index}")
                for index in range(self._config.workers)
            ]
            logger.info("Started workers", extra={"workers": len(workers)})

            await shutdown_event.wait()
            logger.info("Shutting down workers")
        finally:
            # No new notifications once shutdown starts
            for informer in self._informers:
                informer.stop()
            self._queue.shut_down()

        await asyncio.gather(*workers)
        if self._notifier is not None:
            await self._notifier.drain()
        logger.info("Controller stopped")

    async def _run_worker(self, index: int) -> None:
        while True:
            try:
                while await self.process_next_work_item():
                    pass
                return
            except Exception as e:
                logger.exception(
                    "Worker failed, restarting", extra={"worker": index, "error": str(e)}
                )
                await asyncio.sleep(WORKER_RESTART_DELAY_SECONDS)

    async def process_next_work_item(self) -> bool:
        """Process one key. Returns False once the queue is shut down and drained."""
        key, shutting_down = await self._queue.get()
        if shutting_down:
            return False

        try:
            logger.info("Start processing", extra={"key": key})
            result = await self._reconciler.reconcile(key)
            self._handle_result(key, result)
        except Exception as e:
            logger.exception(
                "Unexpected error while reconciling", extra={"key": key, "error": str(e)}
            )
            self._queue.forget(key)
            self._alert(f"hpa-operator: unexpected error while reconciling {key}: {e}")
        finally:
            self._queue.done(key)

        return True

    def _handle_result(self, key: Any, result: ReconcileResult) -> None:
        match result.outcome:
            case ReconcileOutcome.SUCCESS | ReconcileOutcome.DROPPED:
                self._queue.forget(key)
                logger.info(
                    "Finished processing",
                    extra={
                        "key": key,
                        "outcome": result.outcome.value,
                        "action": result.action.value if result.action else None,
                        "reason": result.reason,
                        "duration_seconds": result.duration_seconds,
                    },
                )
            case ReconcileOutcome.RETRY:
                self._queue.add_rate_limited(key)
                failures = self._queue.num_requeues(key)
                logger.warning(
                    "Reconciliation failed, requeued",
                    extra={
                        "key": key,
                        "reason": result.reason,
                        "failures": failures,
                        "error": str(result.error) if result.error else None,
                    },
                )
                if failures == self._config.notify_after_failures:
                    self._alert(
                        f"hpa-operator: {key} failed {failures} times in a row "
                        f"({result.reason}): {result.error}"
                    )

    def _alert(self, message: str) -> None:
        if self._notifier is not None:
            self._notifier.notify(message)
