"""In-memory Kubernetes fakes for testing the operator without a cluster.

Usage:
    from k8s_mock import FakeAutoscalerApi, make_workload, workload_lister

    api = FakeAutoscalerApi()
    reconciler = Reconciler(config, workload_lister(w), autoscaler_lister(), api, resolver)
    await reconciler.reconcile("default/web")

    assert api.created["default/web"].min_replicas == 1
"""

from .api import ApiCall, FakeAutoscalerApi
from .objects import (
    autoscaler_lister,
    deployment_manifest,
    make_workload,
    workload_lister,
)

__all__ = [
    "ApiCall",
    "FakeAutoscalerApi",
    "autoscaler_lister",
    "deployment_manifest",
    "make_workload",
    "workload_lister",
]
