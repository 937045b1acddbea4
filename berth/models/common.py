"""Shared model pieces: base model, object metadata, conditions, kinds."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class BerthModel(BaseModel):
    """Base for every object model.

    JSON field names are camelCase so Kubernetes payloads validate directly;
    Python code uses the snake_case attribute names. Unknown fields are
    dropped, so the slim models accept full API objects.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json(self) -> dict:
        """Serialize with API field names, omitting unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Kind(str, Enum):
    """Object kinds known to the repository."""

    # Custom resources
    ENGINE_IMAGE = "EngineImage"
    NODE = "Node"
    INSTANCE_MANAGER = "InstanceManager"
    VOLUME = "Volume"
    ENGINE = "Engine"
    REPLICA = "Replica"

    # Native platform objects
    POD = "Pod"
    KUBE_NODE = "KubeNode"
    DAEMON_SET = "DaemonSet"
    PERSISTENT_VOLUME = "PersistentVolume"
    PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"
    VOLUME_ATTACHMENT = "VolumeAttachment"


class OwnerReference(BerthModel):
    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""
    controller: bool | None = None


class ObjectMeta(BerthModel):
    name: str = ""
    namespace: str | None = None
    uid: str | None = None
    resource_version: str | None = None
    labels: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    owner_references: list[OwnerReference] = Field(default_factory=list)
    creation_timestamp: datetime | None = None
    deletion_timestamp: datetime | None = None


class Resource(BerthModel):
    """An object stored in the repository."""

    KIND: ClassVar[Kind]

    metadata: ObjectMeta = Field(default_factory=ObjectMeta)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str | None:
        return self.metadata.namespace

    @property
    def key(self) -> str:
        """Repository key: ``namespace/name`` for namespaced native objects."""
        return object_key(self.metadata.name, self.metadata.namespace, self.KIND)

    @property
    def is_deleting(self) -> bool:
        return self.metadata.deletion_timestamp is not None


# Namespaced native kinds are keyed by namespace/name; custom resources live in
# the controller namespace and cluster-scoped kinds have no namespace.
NAMESPACED_KEY_KINDS = frozenset({Kind.POD, Kind.PERSISTENT_VOLUME_CLAIM})


def object_key(name: str, namespace: str | None, kind: Kind) -> str:
    if kind in NAMESPACED_KEY_KINDS and namespace:
        return f"{namespace}/{name}"
    return name


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(BerthModel):
    """A typed status condition.

    lastTransitionTime moves only when ``status`` changes; lastProbeTime is
    refreshed on every evaluation.
    """

    type: str
    status: ConditionStatus = ConditionStatus.UNKNOWN
    reason: str = ""
    message: str = ""
    last_probe_time: datetime | None = None
    last_transition_time: datetime | None = None
