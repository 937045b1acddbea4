"""Slim read models of native Kubernetes objects.

Only the fields the controllers look at are declared; full API payloads
validate into them because unknown fields are ignored.
"""

from __future__ import annotations

from enum import Enum
from typing import ClassVar

from pydantic import Field

from berth.models.common import BerthModel, Kind, ObjectMeta, Resource


class PodPhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


class PersistentVolumePhase(str, Enum):
    PENDING = "Pending"
    AVAILABLE = "Available"
    BOUND = "Bound"
    RELEASED = "Released"
    FAILED = "Failed"


MOUNT_PROPAGATION_BIDIRECTIONAL = "Bidirectional"


# ---- Pod ----


class VolumeMount(BerthModel):
    name: str
    mount_path: str
    mount_propagation: str | None = None


class Container(BerthModel):
    name: str
    image: str = ""
    command: list[str] | None = None
    args: list[str] | None = None
    volume_mounts: list[VolumeMount] = Field(default_factory=list)


class ClaimSource(BerthModel):
    claim_name: str
    read_only: bool | None = None


class HostPathSource(BerthModel):
    path: str
    type: str | None = None


class PodVolume(BerthModel):
    name: str
    persistent_volume_claim: ClaimSource | None = None
    host_path: HostPathSource | None = None


class PodSpec(BerthModel):
    node_name: str | None = None
    service_account_name: str | None = None
    containers: list[Container] = Field(default_factory=list)
    volumes: list[PodVolume] = Field(default_factory=list)


class PodStatus(BerthModel):
    phase: PodPhase | None = None


class Pod(Resource):
    KIND: ClassVar[Kind] = Kind.POD

    spec: PodSpec = Field(default_factory=PodSpec)
    status: PodStatus = Field(default_factory=PodStatus)

    def claim_names(self) -> list[str]:
        return [
            v.persistent_volume_claim.claim_name
            for v in self.spec.volumes
            if v.persistent_volume_claim is not None
        ]


# ---- Node ----


class KubeNodeCondition(BerthModel):
    type: str
    status: str
    reason: str | None = None
    message: str | None = None


class KubeNodeStatus(BerthModel):
    conditions: list[KubeNodeCondition] = Field(default_factory=list)


class KubeNode(Resource):
    KIND: ClassVar[Kind] = Kind.KUBE_NODE

    status: KubeNodeStatus = Field(default_factory=KubeNodeStatus)


# ---- DaemonSet ----


class LabelSelector(BerthModel):
    match_labels: dict[str, str] = Field(default_factory=dict)


class PodTemplateSpec(BerthModel):
    metadata: ObjectMeta = Field(default_factory=ObjectMeta)
    spec: PodSpec = Field(default_factory=PodSpec)


class DaemonSetSpec(BerthModel):
    selector: LabelSelector = Field(default_factory=LabelSelector)
    template: PodTemplateSpec = Field(default_factory=PodTemplateSpec)


class DaemonSetStatus(BerthModel):
    desired_number_scheduled: int = 0
    number_available: int = 0
    number_ready: int = 0


class DaemonSet(Resource):
    KIND: ClassVar[Kind] = Kind.DAEMON_SET

    spec: DaemonSetSpec = Field(default_factory=DaemonSetSpec)
    status: DaemonSetStatus = Field(default_factory=DaemonSetStatus)


# ---- Storage ----


class ObjectReference(BerthModel):
    name: str = ""
    namespace: str | None = None


class CSISource(BerthModel):
    driver: str
    volume_handle: str
    fs_type: str | None = None


class PersistentVolumeSpec(BerthModel):
    capacity: dict[str, str] = Field(default_factory=dict)
    claim_ref: ObjectReference | None = None
    csi: CSISource | None = None
    storage_class_name: str | None = None


class PersistentVolumeStatus(BerthModel):
    phase: PersistentVolumePhase | None = None


class PersistentVolume(Resource):
    KIND: ClassVar[Kind] = Kind.PERSISTENT_VOLUME

    spec: PersistentVolumeSpec = Field(default_factory=PersistentVolumeSpec)
    status: PersistentVolumeStatus = Field(default_factory=PersistentVolumeStatus)


class PersistentVolumeClaimSpec(BerthModel):
    volume_name: str | None = None
    storage_class_name: str | None = None


class PersistentVolumeClaimStatus(BerthModel):
    phase: str | None = None


class PersistentVolumeClaim(Resource):
    KIND: ClassVar[Kind] = Kind.PERSISTENT_VOLUME_CLAIM

    spec: PersistentVolumeClaimSpec = Field(default_factory=PersistentVolumeClaimSpec)
    status: PersistentVolumeClaimStatus = Field(default_factory=PersistentVolumeClaimStatus)


class VolumeAttachmentSource(BerthModel):
    persistent_volume_name: str | None = None


class VolumeAttachmentSpec(BerthModel):
    attacher: str = ""
    node_name: str = ""
    source: VolumeAttachmentSource = Field(default_factory=VolumeAttachmentSource)


class VolumeAttachmentStatus(BerthModel):
    attached: bool = False


class VolumeAttachment(Resource):
    KIND: ClassVar[Kind] = Kind.VOLUME_ATTACHMENT

    spec: VolumeAttachmentSpec = Field(default_factory=VolumeAttachmentSpec)
    status: VolumeAttachmentStatus = Field(default_factory=VolumeAttachmentStatus)
