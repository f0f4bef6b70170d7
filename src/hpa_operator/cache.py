"""Read-through caches fed by list+watch.

An Informer lists a resource once, then watches it from the listed
resourceVersion, keeping an in-memory Store current and emitting typed
events. Listers give the reconciler lock-protected, read-only access to
the stores. Informers run in daemon threads because the Kubernetes
client's watch is blocking; events are handed to the asyncio loop with
``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any, Generic, TypeVar

from kubernetes import watch
from kubernetes.client import ApiClient
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from .events import Added, CacheEvent, Deleted, Updated

logger = logging.getLogger(__name__)

T = TypeVar("T")

# HTTP status returned when a watch resourceVersion is too old
HTTP_GONE = 410

MAX_WATCH_RETRY_DELAY_SECONDS = 30.0
CACHE_SYNC_POLL_SECONDS = 0.1


class MalformedKeyError(ValueError):
    """Raised when a queue key cannot be split into namespace and name."""

    pass


def object_key(namespace: str, name: str) -> str:
    """Build the ``namespace/name`` key used by caches and the work queue."""
    return f"{namespace}/{name}" if namespace else name


def split_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key. A bare ``name`` has an empty namespace.

    Raises:
        MalformedKeyError: If the key has more than one ``/`` or an empty name.
    """
    if not isinstance(key, str):
        raise MalformedKeyError(f"Key must be a string: {key!r}")
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and parts[1]:
        return parts[0], parts[1]
    raise MalformedKeyError(f"Unexpected key format: {key!r}")


class Store(Generic[T]):
    """Thread-safe map of key -> decoded object."""

    def __init__(self) -> None:
        self._items: dict[str, T] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> T | None:
        with self._lock:
            return self._items.get(key)

    def list(self) -> list[T]:
        with self._lock:
            return list(self._items.values())

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._items)

    def put(self, key: str, obj: T) -> T | None:
        """Store ``obj`` and return the previous value."""
        with self._lock:
            old = self._items.get(key)
            self._items[key] = obj
            return old

    def delete(self, key: str) -> T | None:
        with self._lock:
            return self._items.pop(key, None)

    def replace(self, items: dict[str, T]) -> dict[str, T]:
        """Swap the whole content and return the previous content."""
        with self._lock:
            old = self._items
            self._items = dict(items)
            return old

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class Lister(Generic[T]):
    """Read-only view over a Store addressed by namespace and name."""

    def __init__(self, store: Store[T]) -> None:
        self._store = store

    def get(self, namespace: str, name: str) -> T | None:
        return self._store.get(object_key(namespace, name))

    def exists(self, namespace: str, name: str) -> bool:
        return self.get(namespace, name) is not None

    def list(self) -> list[T]:
        return self._store.list()


class Informer(Generic[T]):
    """Keeps a Store in sync with one resource type and emits change events.

    Args:
        name: Name used in log records.
        list_func: Kubernetes client list function (e.g.
            ``AppsV1Api.list_deployment_for_all_namespaces``).
        decode: Turns an API manifest dict into a model.
        key_func: Computes the store key of a decoded model.
        api_client: Used to serialize listed objects to manifest dicts.
        resync_period_seconds: Server-side timeout of each watch request. After
            it expires the watch resumes from the last seen resourceVersion;
            the store is relisted only on 410 Gone or a failed list/watch.
    """

    def __init__(
        self,
        name: str,
        list_func: Callable[..., Any],
        decode: Callable[[dict[str, Any]], T],
        key_func: Callable[[T], str],
        api_client: ApiClient,
        resync_period_seconds: int = 30,
    ) -> None:
        self._name = name
        self._list_func = list_func
        self._decode = decode
        self._key_func = key_func
        self._api_client = api_client
        self._resync_period_seconds = resync_period_seconds

        self._store: Store[T] = Store()
        self._handlers: list[Callable[[CacheEvent[T]], Any]] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._synced = threading.Event()
        self._stop = threading.Event()
        self._watch: watch.Watch | None = None
        self._thread: threading.Thread | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def store(self) -> Store[T]:
        return self._store

    def lister(self) -> Lister[T]:
        return Lister(self._store)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def add_event_handler(self, handler: Callable[[CacheEvent[T]], Any]) -> None:
        self._handlers.append(handler)

    def start(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Start list+watch in a daemon thread; events are delivered on ``loop``."""
        if self._thread is not None:
            raise RuntimeError(f"Informer {self._name} already started")
        self._loop = loop
        self._thread = threading.Thread(
            target=self._run, name=f"informer-{self._name}", daemon=True
        )
        self._thread.start()
        logger.info("Started informer", extra={"informer": self._name})

    def stop(self) -> None:
        """Stop watching; no events are emitted afterwards."""
        self._stop.set()
        if self._watch is not None:
            self._watch.stop()
        logger.info("Stopped informer", extra={"informer": self._name})

    def _emit(self, event: CacheEvent[T]) -> None:
        if self._stop.is_set():
            return
        for handler in self._handlers:
            if self._loop is not None:
                self._loop.call_soon_threadsafe(handler, event)
            else:
                handler(event)

    def _decode_or_none(self, manifest: dict[str, Any]) -> T | None:
        try:
            return self._decode(manifest)
        except ValidationError as e:
            metadata = manifest.get("metadata") or {}
            logger.warning(
                "Skipping object that can not be decoded",
                extra={
                    "informer": self._name,
                    "namespace": metadata.get("namespace"),
                    "name": metadata.get("name"),
                    "error": str(e),
                },
            )
            return None

    def list_and_replace(self) -> str | None:
        """List all objects, replace the store and emit the differences.

        Returns:
            The list resourceVersion to start watching from.
        """
        result = self._list_func()
        manifests: Iterable[dict[str, Any]] = (
            self._api_client.sanitize_for_serialization(item) for item in result.items
        )

        items: dict[str, T] = {}
        for manifest in manifests:
            obj = self._decode_or_none(manifest)
            if obj is not None:
                items[self._key_func(obj)] = obj

        previous = self._store.replace(items)
        for key, obj in items.items():
            old = previous.get(key)
            self._emit(Added(obj) if old is None else Updated(old, obj))
        for key, old in previous.items():
            if key not in items:
                self._emit(Deleted(old))

        self._synced.set()
        resource_version = result.metadata.resource_version if result.metadata else None
        logger.info(
            "Listed objects",
            extra={
                "informer": self._name,
                "count": len(items),
                "resource_version": resource_version,
            },
        )
        return resource_version

    def apply_watch_event(self, event_type: str, manifest: dict[str, Any]) -> str | None:
        """Apply one watch event to the store.

        Returns:
            The resourceVersion carried by the event, if any.
        """
        metadata = manifest.get("metadata") or {}
        resource_version = metadata.get("resourceVersion")

        if event_type == "BOOKMARK":
            return resource_version

        obj = self._decode_or_none(manifest)
        if obj is None:
            return resource_version
        key = self._key_func(obj)

        match event_type:
            case "ADDED" | "MODIFIED":
                old = self._store.put(key, obj)
                self._emit(Added(obj) if old is None else Updated(old, obj))
            case "DELETED":
                old = self._store.delete(key)
                self._emit(Deleted(old if old is not None else obj))
            case _:
                logger.warning(
                    "Unknown watch event type",
                    extra={"informer": self._name, "event_type": event_type},
                )
        return resource_version

    def _watch_from(self, resource_version: str | None) -> str | None:
        self._watch = watch.Watch()
        for event in self._watch.stream(
            self._list_func,
            resource_version=resource_version,
            timeout_seconds=self._resync_period_seconds,
            allow_watch_bookmarks=True,
        ):
            if self._stop.is_set():
                break
            raw = event.get("raw_object") or {}
            if event.get("type") == "ERROR":
                if raw.get("code") == HTTP_GONE:
                    raise ApiException(status=HTTP_GONE, reason="Gone")
                raise ApiException(status=raw.get("code"), reason=raw.get("message"))
            resource_version = (
                self.apply_watch_event(event.get("type", ""), raw) or resource_version
            )
        return resource_version

    def _run(self) -> None:
        failures = 0
        resource_version: str | None = None
        need_list = True

        while not self._stop.is_set():
            try:
                if need_list:
                    resource_version = self.list_and_replace()
                    need_list = False
                resource_version = self._watch_from(resource_version)
                failures = 0
            except ApiException as e:
                need_list = True
                if e.status == HTTP_GONE:
                    logger.info(
                        "Watch expired, relisting", extra={"informer": self._name}
                    )
                    continue
                failures += 1
                self._wait_before_retry(failures, e)
            except Exception as e:
                # Keep the cache alive across transport failures
                need_list = True
                failures += 1
                self._wait_before_retry(failures, e)

    def _wait_before_retry(self, failures: int, error: Exception) -> None:
        delay = min(2 ** (failures - 1), MAX_WATCH_RETRY_DELAY_SECONDS)
        logger.warning(
            "List/watch failed, retrying",
            extra={
                "informer": self._name,
                "attempt": failures,
                "wait_seconds": delay,
                "error": str(error),
            },
        )
        self._stop.wait(delay)


async def wait_for_cache_sync(
    informers: Iterable[Informer[Any]],
    timeout_seconds: float,
    stop_event: asyncio.Event | None = None,
) -> bool:
    """Wait until every informer has completed its first list.

    Gives up early once ``stop_event`` is set.

    Returns:
        True if all caches synced before the timeout or the stop.
    """
    informers = list(informers)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout_seconds
    while not all(informer.has_synced() for informer in informers):
        if stop_event is not None and stop_event.is_set():
            return False
        if loop.time() >= deadline:
            return False
        await asyncio.sleep(CACHE_SYNC_POLL_SECONDS)
    return True
