"""Tests for stores, keys and informer event handling."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest
from k8s_mock import deployment_manifest

from hpa_operator.cache import (
    Informer,
    Lister,
    MalformedKeyError,
    Store,
    object_key,
    split_key,
    wait_for_cache_sync,
)
from hpa_operator.events import Added, Deleted, Updated
from hpa_operator.kube import decode_autoscaler_meta, decode_workload
from hpa_operator.models import Workload


class TestKeys:
    def test_round_trip(self) -> None:
        assert split_key(object_key("default", "web")) == ("default", "web")

    def test_cluster_scoped(self) -> None:
        assert object_key("", "web") == "web"
        assert split_key("web") == ("", "web")

    @pytest.mark.parametrize("key", ["", "a/b/c", "default/", "/"])
    def test_malformed(self, key: str) -> None:
        with pytest.raises(MalformedKeyError):
            split_key(key)

    def test_non_string(self) -> None:
        with pytest.raises(MalformedKeyError):
            split_key(("default", "web"))  # type: ignore[arg-type]


class TestStore:
    def test_put_get_delete(self) -> None:
        store: Store[str] = Store()

        assert store.put("default/a", "one") is None
        assert store.put("default/a", "two") == "one"
        assert store.get("default/a") == "two"
        assert store.delete("default/a") == "two"
        assert store.get("default/a") is None

    def test_replace(self) -> None:
        store: Store[str] = Store()
        store.put("default/a", "one")

        previous = store.replace({"default/b": "two"})

        assert previous == {"default/a": "one"}
        assert store.keys() == ["default/b"]
        assert len(store) == 1

    def test_lister(self) -> None:
        store: Store[str] = Store()
        store.put("shop/api", "x")
        lister = Lister(store)

        assert lister.get("shop", "api") == "x"
        assert lister.exists("shop", "api")
        assert not lister.exists("shop", "web")
        assert lister.list() == ["x"]


def _list_result(*manifests: dict[str, Any], resource_version: str = "10") -> SimpleNamespace:
    return SimpleNamespace(
        items=list(manifests),
        metadata=SimpleNamespace(resource_version=resource_version),
    )


def _informer(list_func) -> tuple[Informer[Workload], list]:
    api_client = MagicMock()
    api_client.sanitize_for_serialization.side_effect = lambda obj: obj
    informer: Informer[Workload] = Informer(
        "deployments", list_func, decode_workload, lambda w: w.key, api_client
    )
    events: list = []
    informer.add_event_handler(events.append)
    return informer, events


class TestInformer:
    def test_initial_list_emits_added_and_syncs(self) -> None:
        informer, events = _informer(
            lambda: _list_result(deployment_manifest("a"), deployment_manifest("b"))
        )

        assert not informer.has_synced()
        resource_version = informer.list_and_replace()

        assert resource_version == "10"
        assert informer.has_synced()
        assert [type(e) for e in events] == [Added, Added]
        assert informer.lister().get("default", "a") is not None

    def test_relist_emits_differences(self) -> None:
        results = [
            _list_result(deployment_manifest("a"), deployment_manifest("b")),
            _list_result(deployment_manifest("b"), deployment_manifest("c")),
        ]
        informer, events = _informer(lambda: results.pop(0))
        informer.list_and_replace()
        events.clear()

        informer.list_and_replace()

        def describe(event) -> tuple[str, str]:
            obj = event.new if isinstance(event, Updated) else event.obj
            return type(event).__name__, obj.name

        assert {describe(e) for e in events} == {
            ("Updated", "b"),
            ("Added", "c"),
            ("Deleted", "a"),
        }
        assert informer.lister().get("default", "a") is None

    def test_watch_events_update_store(self) -> None:
        informer, events = _informer(lambda: _list_result())
        informer.list_and_replace()

        informer.apply_watch_event("ADDED", deployment_manifest("web"))
        informer.apply_watch_event(
            "MODIFIED",
            deployment_manifest("web", annotations={"hpa.apixio.com/template": "cpu70"}),
        )
        informer.apply_watch_event("DELETED", deployment_manifest("web"))

        assert isinstance(events[0], Added)
        assert isinstance(events[1], Updated)
        assert events[1].old.annotations == {}
        assert events[1].new.annotations == {"hpa.apixio.com/template": "cpu70"}
        assert isinstance(events[2], Deleted)
        assert informer.lister().get("default", "web") is None

    def test_watch_event_returns_resource_version(self) -> None:
        informer, _ = _informer(lambda: _list_result())
        manifest = deployment_manifest("web")
        manifest["metadata"]["resourceVersion"] = "55"

        assert informer.apply_watch_event("ADDED", manifest) == "55"
        bookmark = {"metadata": {"resourceVersion": "60"}}
        assert informer.apply_watch_event("BOOKMARK", bookmark) == "60"

    def test_undecodable_object_skipped(self) -> None:
        informer, events = _informer(lambda: _list_result({"metadata": {"namespace": "x"}}))

        informer.list_and_replace()

        assert events == []
        assert informer.has_synced()

    def test_no_events_after_stop(self) -> None:
        informer, events = _informer(lambda: _list_result())
        informer.stop()

        informer.apply_watch_event("ADDED", deployment_manifest("web"))

        assert events == []

    def test_autoscaler_decoder(self) -> None:
        meta = decode_autoscaler_meta(
            {"metadata": {"name": "web", "namespace": "default", "resourceVersion": "9"}}
        )

        assert meta.key == "default/web"
        assert meta.resource_version == "9"


class TestWaitForCacheSync:
    @pytest.mark.asyncio
    async def test_synced(self) -> None:
        informer = SimpleNamespace(has_synced=lambda: True)

        assert await wait_for_cache_sync([informer], timeout_seconds=1) is True

    @pytest.mark.asyncio
    async def test_becomes_synced(self) -> None:
        state = {"synced": False}
        informer = SimpleNamespace(has_synced=lambda: state["synced"])

        async def flip() -> None:
            await asyncio.sleep(0.05)
            state["synced"] = True

        flipper = asyncio.create_task(flip())
        assert await wait_for_cache_sync([informer], timeout_seconds=1) is True
        await flipper

    @pytest.mark.asyncio
    async def test_timeout(self) -> None:
        informer = SimpleNamespace(has_synced=lambda: False)

        assert await wait_for_cache_sync([informer], timeout_seconds=0.2) is False

    @pytest.mark.asyncio
    async def test_stop_event_ends_wait(self) -> None:
        informer = SimpleNamespace(has_synced=lambda: False)
        stop = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, stop.set)

        synced = await asyncio.wait_for(
            wait_for_cache_sync([informer], timeout_seconds=30, stop_event=stop), timeout=2
        )

        assert synced is False
