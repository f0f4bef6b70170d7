"""Typed change notifications and the filter that turns them into work.

Informers emit ``Added``/``Updated``/``Deleted`` events carrying decoded
models. The ChangeFilter decides which Workload changes need
reconciliation and enqueues their keys; it never talks to the API.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Generic, TypeVar

from .config import Config
from .models import Workload
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Added(Generic[T]):
    obj: T


@dataclass(frozen=True)
class Updated(Generic[T]):
    old: T
    new: T


@dataclass(frozen=True)
class Deleted(Generic[T]):
    obj: T


CacheEvent = Added[T] | Updated[T] | Deleted[T]


class ChangeFilter:
    """Decides which Workload notifications are worth reconciling.

    Both handlers are idempotent: redelivered notifications at most
    re-add a key the queue already deduplicates.
    """

    def __init__(self, config: Config, queue: WorkQueue) -> None:
        self._ignored_namespaces = config.ignored_namespaces
        self._template_annotation = config.template_annotation
        self._queue = queue

    def handle(self, event: CacheEvent[Workload]) -> bool:
        """Dispatch an informer event. Returns True if a key was enqueued."""
        match event:
            case Added(obj=workload):
                return self.on_added(workload)
            case Updated(old=old, new=new):
                return self.on_updated(old, new)
            case Deleted(obj=workload):
                # The autoscaler is removed by owner-reference cascade
                logger.debug("Workload deleted, nothing to do", extra={"key": workload.key})
                return False
        return False

    def on_added(self, workload: Workload) -> bool:
        if workload.namespace in self._ignored_namespaces:
            logger.debug("Workload in ignored namespace", extra={"key": workload.key})
            return False

        if not workload.annotations.get(self._template_annotation):
            logger.debug("Workload has no template annotation", extra={"key": workload.key})
            return False

        logger.info("Workload added, enqueueing", extra={"key": workload.key})
        self._queue.add(workload.key)
        return True

    def on_updated(self, old: Workload, new: Workload) -> bool:
        if new.namespace in self._ignored_namespaces:
            return False

        old_templates = old.annotations.get(self._template_annotation, "")
        new_templates = new.annotations.get(self._template_annotation, "")

        if old_templates == new_templates:
            return False

        if not new_templates:
            # Removal of the derived autoscaler is not supported; it is
            # garbage collected together with the workload.
            logger.warning(
                "Template annotation removed, autoscaler left in place",
                extra={"key": new.key, "previous_templates": old_templates},
            )
            return False

        logger.info(
            "Template annotation changed, enqueueing",
            extra={"key": new.key, "templates": new_templates},
        )
        self._queue.add(new.key)
        return True
