"""Fake autoscaling API with in-memory state and error injection."""

from __future__ import annotations

import threading
from dataclasses import dataclass

from kubernetes.client.rest import ApiException

from hpa_operator.models import DerivedAutoscaler


@dataclass(frozen=True)
class ApiCall:
    """One recorded mutation call."""

    action: str
    key: str
    autoscaler: DerivedAutoscaler


class FakeAutoscalerApi:
    """Records create/update calls and keeps the resulting objects.

    Args:
        fail_times: Number of upcoming calls that raise ApiException.
        status: HTTP status of injected failures.
    """

    def __init__(self, fail_times: int = 0, status: int = 500) -> None:
        self.fail_times = fail_times
        self.status = status
        self.calls: list[ApiCall] = []
        self.objects: dict[str, DerivedAutoscaler] = {}
        self._lock = threading.Lock()

    @property
    def created(self) -> dict[str, DerivedAutoscaler]:
        return {c.key: c.autoscaler for c in self.calls if c.action == "create"}

    @property
    def updated(self) -> dict[str, DerivedAutoscaler]:
        return {c.key: c.autoscaler for c in self.calls if c.action == "update"}

    def _record(self, action: str, autoscaler: DerivedAutoscaler) -> None:
        with self._lock:
            self.calls.append(ApiCall(action, autoscaler.key, autoscaler))
            if self.fail_times > 0:
                self.fail_times -= 1
                raise ApiException(status=self.status, reason="Injected failure")

    def create(self, autoscaler: DerivedAutoscaler) -> None:
        self._record("create", autoscaler)
        if autoscaler.key in self.objects:
            raise ApiException(status=409, reason="AlreadyExists")
        self.objects[autoscaler.key] = autoscaler

    def update(self, autoscaler: DerivedAutoscaler) -> None:
        self._record("update", autoscaler)
        if autoscaler.key not in self.objects:
            raise ApiException(status=404, reason="NotFound")
        self.objects[autoscaler.key] = autoscaler
