"""Pydantic models for the objects the operator reads and writes.

These models provide:
1. Type-safe decoding of Kubernetes manifests (camelCase wire names)
2. Validation at the boundary (an autoscaler never carries zero metrics)
3. Clean transformation back to API manifests
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

AUTOSCALER_API_VERSION = "autoscaling/v2"
AUTOSCALER_KIND = "HorizontalPodAutoscaler"

# Upper bound of the int32 replica fields in the autoscaling API
MAX_REPLICAS_VALUE = 2**31 - 1

# Metric source type -> name of the block holding its definition
METRIC_SOURCE_FIELDS: dict[str, str] = {
    "Resource": "resource",
    "Pods": "pods",
    "Object": "object",
    "External": "external",
    "ContainerResource": "containerResource",
}


# =============================================================================
# Object metadata
# =============================================================================


class OwnerReference(BaseModel):
    """Back-link used by the garbage collector to cascade deletion."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    api_version: str = Field(alias="apiVersion")
    kind: str
    name: str
    uid: str
    controller: bool | None = None
    block_owner_deletion: bool | None = Field(None, alias="blockOwnerDeletion")


class ObjectMeta(BaseModel):
    """Subset of Kubernetes object metadata the operator relies on."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Annotated[str, Field(min_length=1)]
    namespace: str = "default"
    uid: str | None = None
    resource_version: str | None = Field(None, alias="resourceVersion")
    annotations: dict[str, str] = Field(default_factory=dict)
    owner_references: list[OwnerReference] = Field(
        default_factory=list, alias="ownerReferences"
    )

    # The API nulls empty collections
    @field_validator("annotations", mode="before")
    @classmethod
    def null_annotations(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("owner_references", mode="before")
    @classmethod
    def null_owner_references(cls, v: Any) -> Any:
        return [] if v is None else v

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


# =============================================================================
# Workload
# =============================================================================


class Workload(BaseModel):
    """A Deployment as seen by the operator.

    Only the fields needed to derive an autoscaler are decoded; the model
    is frozen so the annotation mapping cannot be mutated in flight.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    api_version: str = Field("apps/v1", alias="apiVersion")
    kind: str = "Deployment"
    metadata: ObjectMeta
    replicas: int = 1
    ready_replicas: int = Field(0, alias="readyReplicas")

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any]) -> Workload:
        """Decode a Deployment manifest (as returned by the API) into a Workload."""
        spec = manifest.get("spec") or {}
        status = manifest.get("status") or {}
        replicas = spec.get("replicas")
        return cls.model_validate(
            {
                "apiVersion": manifest.get("apiVersion") or "apps/v1",
                "kind": manifest.get("kind") or "Deployment",
                "metadata": manifest.get("metadata") or {},
                "replicas": 1 if replicas is None else replicas,
                "readyReplicas": status.get("readyReplicas") or 0,
            }
        )

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def annotations(self) -> dict[str, str]:
        return self.metadata.annotations

    @property
    def owner_references(self) -> list[OwnerReference]:
        return self.metadata.owner_references

    @property
    def key(self) -> str:
        return self.metadata.key

    @property
    def is_ready(self) -> bool:
        """True when every desired replica reports ready."""
        return self.ready_replicas >= self.replicas


# =============================================================================
# Autoscaler
# =============================================================================


class MetricSpec(BaseModel):
    """One entry of an autoscaler's metrics list.

    The source block (resource, pods, ...) is kept as opaque data so
    templates can use any field the API server understands.
    """

    model_config = ConfigDict(extra="allow")

    type: str

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in METRIC_SOURCE_FIELDS:
            raise ValueError(f"type must be one of {list(METRIC_SOURCE_FIELDS)}")
        return v

    @model_validator(mode="after")
    def validate_source(self) -> MetricSpec:
        source_field = METRIC_SOURCE_FIELDS[self.type]
        source = (self.model_extra or {}).get(source_field)
        if not isinstance(source, dict) or not source:
            raise ValueError(f"metric of type {self.type} requires a '{source_field}' mapping")
        return self

    def to_manifest(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class ScaleTargetRef(BaseModel):
    """Cross-version reference to the scaled workload."""

    model_config = ConfigDict(populate_by_name=True)

    api_version: str = Field(alias="apiVersion")
    kind: str
    name: str


class DerivedAutoscaler(BaseModel):
    """The HorizontalPodAutoscaler derived from a Workload's annotations."""

    model_config = ConfigDict(populate_by_name=True)

    namespace: str
    name: Annotated[str, Field(min_length=1)]
    scale_target_ref: ScaleTargetRef
    min_replicas: Annotated[int, Field(ge=1, le=MAX_REPLICAS_VALUE)]
    max_replicas: Annotated[int, Field(ge=1, le=MAX_REPLICAS_VALUE)]
    metrics: Annotated[list[MetricSpec], Field(min_length=1)]
    owner_references: list[OwnerReference] = Field(default_factory=list)
    resource_version: str | None = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name

    def with_resource_version(self, resource_version: str | None) -> DerivedAutoscaler:
        return self.model_copy(update={"resource_version": resource_version})

    def to_manifest(self) -> dict[str, Any]:
        """Convert to an autoscaling/v2 HorizontalPodAutoscaler manifest."""
        metadata: dict[str, Any] = {"name": self.name, "namespace": self.namespace}
        if self.owner_references:
            metadata["ownerReferences"] = [
                ref.model_dump(by_alias=True, exclude_none=True) for ref in self.owner_references
            ]
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version

        return {
            "apiVersion": AUTOSCALER_API_VERSION,
            "kind": AUTOSCALER_KIND,
            "metadata": metadata,
            "spec": {
                "scaleTargetRef": self.scale_target_ref.model_dump(by_alias=True),
                "minReplicas": self.min_replicas,
                "maxReplicas": self.max_replicas,
                "metrics": [metric.to_manifest() for metric in self.metrics],
            },
        }
