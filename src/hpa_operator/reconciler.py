"""Reconciliation of one Workload into its HorizontalPodAutoscaler.

For a ``namespace/name`` key the reconciler:
1. Loads the Workload from the read-through cache (absent -> dropped)
2. Optionally waits for the Workload to be ready (not ready -> retry)
3. Resolves min/max replicas from annotations, falling back to defaults
4. Resolves metric templates, skipping the ones that fail
5. Creates the autoscaler, or updates it if the cache already holds one

Outcomes:
- SUCCESS: the API accepted the mutation; the caller forgets the key
- DROPPED: nothing to do or misconfiguration; never retried
- RETRY: transient failure; the caller re-adds the key with backoff
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Protocol

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from .cache import Lister, MalformedKeyError, split_key
from .config import DEFAULT_MAX_REPLICAS, DEFAULT_MIN_REPLICAS, Config
from .models import (
    MAX_REPLICAS_VALUE,
    DerivedAutoscaler,
    ObjectMeta,
    ScaleTargetRef,
    Workload,
)
from .templates import TemplateResolver, split_template_names

logger = logging.getLogger(__name__)

# Optional plus sign followed by ASCII digits only
_REPLICA_COUNT_PATTERN = re.compile(r"\+?[0-9]+")


class WorkloadNotReadyError(Exception):
    """Raised when a Workload has fewer ready replicas than desired."""

    pass


class ReconcileOutcome(str, Enum):
    """How a reconciliation ended, and therefore what the queue does next."""

    SUCCESS = "success"
    DROPPED = "dropped"
    RETRY = "retry"


class MutationAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"


class AutoscalerMutator(Protocol):
    """The mutation API the reconciler writes through."""

    def create(self, autoscaler: DerivedAutoscaler) -> None: ...

    def update(self, autoscaler: DerivedAutoscaler) -> None: ...


@dataclass
class ReconcileResult:
    """Result of reconciling a single key."""

    key: str
    outcome: ReconcileOutcome = ReconcileOutcome.SUCCESS
    action: MutationAction | None = None
    autoscaler: DerivedAutoscaler | None = None
    reason: str | None = None
    error: Exception | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.outcome is ReconcileOutcome.SUCCESS


def parse_positive_int(value: str | None, default: int) -> int:
    """Parse a replica-count annotation.

    Empty, non-numeric, zero, negative and out-of-range values all yield
    ``default``; this never raises.
    """
    if value is None:
        return default
    value = value.strip()
    if not _REPLICA_COUNT_PATTERN.fullmatch(value):
        return default
    parsed = int(value, 10)
    if parsed <= 0 or parsed > MAX_REPLICAS_VALUE:
        return default
    return parsed


def replica_bounds(workload: Workload, config: Config) -> tuple[int, int]:
    """Resolve (min, max) replicas from the Workload's annotations."""
    annotations = workload.annotations
    min_replicas = parse_positive_int(
        annotations.get(config.min_replicas_annotation), DEFAULT_MIN_REPLICAS
    )
    max_replicas = parse_positive_int(
        annotations.get(config.max_replicas_annotation), DEFAULT_MAX_REPLICAS
    )
    return min_replicas, max_replicas


def compose_autoscaler(
    workload: Workload, config: Config, templates: TemplateResolver
) -> DerivedAutoscaler | None:
    """Build the autoscaler a Workload asks for.

    Templates that fail to resolve are skipped. Returns None when none of
    them resolves, since an autoscaler without metrics is never created.
    """
    min_replicas, max_replicas = replica_bounds(workload, config)

    names = split_template_names(workload.annotations.get(config.template_annotation))
    metrics = templates.resolve_all(names)
    if not metrics:
        logger.error(
            "No metric template could be loaded, ignoring workload",
            extra={"key": workload.key, "templates": names},
        )
        return None

    if min_replicas > max_replicas:
        # The API server rejects this; surfaced through the retry path
        logger.warning(
            "Minimum replicas exceed maximum replicas",
            extra={
                "key": workload.key,
                "min_replicas": min_replicas,
                "max_replicas": max_replicas,
            },
        )

    return DerivedAutoscaler(
        namespace=workload.namespace,
        name=workload.name,
        scale_target_ref=ScaleTargetRef(
            api_version=workload.api_version,
            kind=workload.kind,
            name=workload.name,
        ),
        min_replicas=min_replicas,
        max_replicas=max_replicas,
        metrics=metrics,
        owner_references=list(workload.owner_references),
    )


class Reconciler:
    """Derives and applies the autoscaler of a Workload."""

    def __init__(
        self,
        config: Config,
        workloads: Lister[Workload],
        autoscalers: Lister[ObjectMeta],
        api: AutoscalerMutator,
        templates: TemplateResolver,
    ) -> None:
        self._config = config
        self._workloads = workloads
        self._autoscalers = autoscalers
        self._api = api
        self._templates = templates

    def replica_bounds(self, workload: Workload) -> tuple[int, int]:
        return replica_bounds(workload, self._config)

    def compose(self, workload: Workload) -> DerivedAutoscaler | None:
        """Build the desired autoscaler, or None if no metric template resolves."""
        return compose_autoscaler(workload, self._config, self._templates)

    async def reconcile(self, key: str) -> ReconcileResult:
        """Reconcile the Workload identified by ``key``."""
        result = ReconcileResult(key=key)
        try:
            await self._reconcile(key, result)
        finally:
            result.end_time = datetime.now(UTC)
        return result

    async def _reconcile(self, key: str, result: ReconcileResult) -> None:
        try:
            namespace, name = split_key(key)
        except MalformedKeyError as e:
            logger.error("Malformed key, ignoring", extra={"key": key, "error": str(e)})
            result.outcome = ReconcileOutcome.DROPPED
            result.reason = "malformed key"
            return

        workload = self._workloads.get(namespace, name)
        if workload is None:
            logger.info("Workload no longer exists, ignoring", extra={"key": key})
            result.outcome = ReconcileOutcome.DROPPED
            result.reason = "workload not found"
            return

        if self._config.require_ready and not workload.is_ready:
            result.outcome = ReconcileOutcome.RETRY
            result.reason = "workload not ready"
            result.error = WorkloadNotReadyError(
                f"Workload {key} has {workload.ready_replicas}/{workload.replicas} ready replicas"
            )
            logger.info(
                "Workload not ready, retrying later",
                extra={
                    "key": key,
                    "ready_replicas": workload.ready_replicas,
                    "replicas": workload.replicas,
                },
            )
            return

        loop = asyncio.get_running_loop()
        desired = await loop.run_in_executor(None, self.compose, workload)
        if desired is None:
            result.outcome = ReconcileOutcome.DROPPED
            result.reason = "no metric templates"
            return

        existing = self._autoscalers.get(namespace, name)
        if existing is not None:
            desired = desired.with_resource_version(existing.resource_version)
            action = MutationAction.UPDATE
            mutate = self._api.update
        else:
            action = MutationAction.CREATE
            mutate = self._api.create

        result.action = action
        result.autoscaler = desired

        try:
            await loop.run_in_executor(None, mutate, desired)
        except (ApiException, HTTPError, OSError) as e:
            result.outcome = ReconcileOutcome.RETRY
            result.error = e
            result.reason = f"{action.value} failed"
            logger.error(
                "Can not apply autoscaler",
                extra={
                    "key": key,
                    "action": action.value,
                    "status": getattr(e, "status", None),
                    "error": str(e),
                },
            )
            return

        logger.info(
            "Applied autoscaler",
            extra={
                "key": key,
                "action": action.value,
                "min_replicas": desired.min_replicas,
                "max_replicas": desired.max_replicas,
                "metrics": len(desired.metrics),
            },
        )
