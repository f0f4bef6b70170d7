"""Kubernetes API client construction and the autoscaler mutation API."""

from __future__ import annotations

import logging
from typing import Any

from kubernetes import client
from kubernetes import config as k8s_config
from kubernetes.config.config_exception import ConfigException

from .config import Config
from .models import DerivedAutoscaler, ObjectMeta, Workload

logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """Raised when no usable cluster credentials can be loaded."""

    pass


def build_api_client(config: Config) -> client.ApiClient:
    """Create an ApiClient from the configured kubeconfig or the in-cluster account.

    Order: explicit K8S_CONFIG file, in-cluster service account, default
    kubeconfig. K8S_MASTER overrides the API server URL in every case.

    Raises:
        CredentialError: If no configuration can be loaded.
    """
    configuration = client.Configuration()
    try:
        if config.kubeconfig is not None:
            k8s_config.load_kube_config(
                config_file=str(config.kubeconfig), client_configuration=configuration
            )
            source = str(config.kubeconfig)
        else:
            try:
                k8s_config.load_incluster_config(client_configuration=configuration)
                source = "in-cluster"
            except ConfigException:
                k8s_config.load_kube_config(client_configuration=configuration)
                source = "default kubeconfig"
    except (ConfigException, OSError) as e:
        raise CredentialError(f"Failed to load Kubernetes configuration: {e}") from e

    if config.master_url:
        configuration.host = config.master_url

    logger.info(
        "Loaded Kubernetes configuration",
        extra={"source": source, "host": configuration.host},
    )
    return client.ApiClient(configuration)


def decode_workload(manifest: dict[str, Any]) -> Workload:
    return Workload.from_manifest(manifest)


def decode_autoscaler_meta(manifest: dict[str, Any]) -> ObjectMeta:
    return ObjectMeta.model_validate(manifest.get("metadata") or {})


class AutoscalerApi:
    """Create/update of HorizontalPodAutoscalers, addressed by namespace and name.

    Both calls are safe to retry: create fails with a conflict if the
    object already exists, update replaces the whole spec.
    """

    def __init__(self, api: client.AutoscalingV2Api) -> None:
        self._api = api

    @classmethod
    def from_api_client(cls, api_client: client.ApiClient) -> AutoscalerApi:
        return cls(client.AutoscalingV2Api(api_client))

    def create(self, autoscaler: DerivedAutoscaler) -> None:
        self._api.create_namespaced_horizontal_pod_autoscaler(
            namespace=autoscaler.namespace,
            body=autoscaler.to_manifest(),
        )

    def update(self, autoscaler: DerivedAutoscaler) -> None:
        self._api.replace_namespaced_horizontal_pod_autoscaler(
            name=autoscaler.name,
            namespace=autoscaler.namespace,
            body=autoscaler.to_manifest(),
        )
