"""Tests for the worker pool and its recovery boundary."""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from k8s_mock import FakeAutoscalerApi, autoscaler_lister, make_workload, workload_lister

from hpa_operator.config import Config
from hpa_operator.controller import CacheSyncError, Controller
from hpa_operator.ratelimit import ItemExponentialFailureRateLimiter
from hpa_operator.reconciler import Reconciler
from hpa_operator.templates import TemplateResolver
from hpa_operator.workqueue import RateLimitingQueue

TEMPLATE = "hpa.apixio.com/template"


def _controller(
    config: Config,
    *workloads,
    api: FakeAutoscalerApi | None = None,
    notifier=None,
    informers=(),
) -> tuple[Controller, FakeAutoscalerApi]:
    api = api or FakeAutoscalerApi()
    reconciler = Reconciler(
        config,
        workload_lister(*workloads),
        autoscaler_lister(),
        api,
        TemplateResolver(config.templates_dir),
    )
    queue = RateLimitingQueue(ItemExponentialFailureRateLimiter(base_delay=0.001, max_delay=0.01))
    controller = Controller(config, queue, reconciler, informers=informers, notifier=notifier)
    return controller, api


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout=timeout)


class TestProcessNextWorkItem:
    @pytest.mark.asyncio
    async def test_success_forgets_and_releases(self, config: Config) -> None:
        workload = make_workload(annotations={TEMPLATE: "cpu70"})
        controller, api = _controller(config, workload)
        controller.queue.add("default/web")

        assert await controller.process_next_work_item() is True

        assert "default/web" in api.objects
        assert controller.queue.num_requeues("default/web") == 0
        assert not controller.queue.is_processing("default/web")
        assert len(controller.queue) == 0

    @pytest.mark.asyncio
    async def test_failure_requeued_with_backoff(self, config: Config) -> None:
        workload = make_workload(annotations={TEMPLATE: "cpu70"})
        controller, api = _controller(config, workload, api=FakeAutoscalerApi(fail_times=1))
        controller.queue.add("default/web")

        await controller.process_next_work_item()

        assert controller.queue.num_requeues("default/web") == 1
        assert not controller.queue.is_processing("default/web")

        # The delayed re-add comes back and succeeds
        assert await asyncio.wait_for(controller.process_next_work_item(), timeout=1) is True
        assert "default/web" in api.objects
        assert controller.queue.num_requeues("default/web") == 0

    @pytest.mark.asyncio
    async def test_dropped_key_not_requeued(self, config: Config) -> None:
        controller, api = _controller(config)
        controller.queue.add("default/gone")

        await controller.process_next_work_item()
        await asyncio.sleep(0.02)

        assert len(controller.queue) == 0
        assert controller.queue.waiting == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, config: Config) -> None:
        controller, _ = _controller(config)
        controller._reconciler.reconcile = AsyncMock(side_effect=RuntimeError("boom"))
        controller.queue.add("default/web")

        assert await controller.process_next_work_item() is True

        assert not controller.queue.is_processing("default/web")
        assert controller.queue.waiting == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_alerts(self, config: Config) -> None:
        notifier = MagicMock()
        controller, _ = _controller(config, notifier=notifier)
        controller._reconciler.reconcile = AsyncMock(side_effect=RuntimeError("boom"))
        controller.queue.add("default/web")

        await controller.process_next_work_item()

        notifier.notify.assert_called_once()
        assert "boom" in notifier.notify.call_args.args[0]

    @pytest.mark.asyncio
    async def test_alert_after_repeated_failures(self, templates_dir: Path) -> None:
        config = Config(templates_dir=templates_dir, notify_after_failures=2)
        notifier = MagicMock()
        workload = make_workload(annotations={TEMPLATE: "cpu70"})
        controller, _ = _controller(
            config, workload, api=FakeAutoscalerApi(fail_times=5), notifier=notifier
        )
        controller.queue.add("default/web")

        await controller.process_next_work_item()
        notifier.notify.assert_not_called()

        await asyncio.wait_for(controller.process_next_work_item(), timeout=1)
        notifier.notify.assert_called_once()
        assert "failed 2 times" in notifier.notify.call_args.args[0]

    @pytest.mark.asyncio
    async def test_returns_false_after_shutdown(self, config: Config) -> None:
        controller, _ = _controller(config)
        controller.queue.shut_down()

        assert await controller.process_next_work_item() is False


class FakeInformer:
    def __init__(self, synced: bool = True) -> None:
        self.synced = synced
        self.started = False
        self.stopped = False

    def start(self, loop) -> None:
        self.started = True

    def stop(self) -> None:
        self.stopped = True

    def has_synced(self) -> bool:
        return self.synced


class TestRun:
    @pytest.mark.asyncio
    async def test_workers_process_until_shutdown(self, templates_dir: Path) -> None:
        config = Config(templates_dir=templates_dir, workers=3)
        workloads = [
            make_workload(name=f"app-{i}", annotations={TEMPLATE: "cpu70"}) for i in range(6)
        ]
        informer = FakeInformer()
        controller, api = _controller(config, *workloads, informers=[informer])
        shutdown = asyncio.Event()

        runner = asyncio.create_task(controller.run(shutdown))
        for workload in workloads:
            controller.queue.add(workload.key)
        await _wait_for(lambda: len(api.objects) == 6)

        shutdown.set()
        await asyncio.wait_for(runner, timeout=2)

        assert informer.started and informer.stopped
        assert controller.queue.shutting_down
        assert sorted(api.objects) == sorted(w.key for w in workloads)

    @pytest.mark.asyncio
    async def test_cache_sync_timeout(self, templates_dir: Path) -> None:
        config = Config(templates_dir=templates_dir, cache_sync_timeout_seconds=1)
        informer = FakeInformer(synced=False)
        controller, _ = _controller(config, informers=[informer])

        with pytest.raises(CacheSyncError):
            await controller.run(asyncio.Event())

        assert informer.stopped
        assert controller.queue.shutting_down

    @pytest.mark.asyncio
    async def test_shutdown_during_cache_sync(self, templates_dir: Path) -> None:
        """A shutdown signal ends the startup barrier without a sync error."""
        config = Config(templates_dir=templates_dir, cache_sync_timeout_seconds=30)
        informer = FakeInformer(synced=False)
        controller, api = _controller(config, informers=[informer])
        shutdown = asyncio.Event()
        shutdown.set()

        await asyncio.wait_for(controller.run(shutdown), timeout=2)

        assert informer.stopped
        assert controller.queue.shutting_down
        assert api.calls == []
