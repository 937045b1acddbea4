"""Storage node custom resource."""

from __future__ import annotations

from enum import Enum
from typing import ClassVar

from pydantic import Field

from berth.models.common import BerthModel, Condition, ConditionStatus, Kind, Resource


class NodeConditionType(str, Enum):
    READY = "Ready"
    MOUNT_PROPAGATION = "MountPropagation"
    SYNCED = "Synced"


class NodeConditionReason(str, Enum):
    MANAGER_POD_DOWN = "ManagerPodDown"
    KUBERNETES_NODE_DOWN = "KubernetesNodeDown"
    KUBERNETES_NODE_NOT_READY = "KubernetesNodeNotReady"
    KUBERNETES_NODE_PRESSURE = "KubernetesNodePressure"
    NO_MOUNT_PROPAGATION_SUPPORT = "NoMountPropagationSupport"
    SYNC_FAILED = "SyncFailed"


class DiskConditionType(str, Enum):
    READY = "Ready"
    SCHEDULABLE = "Schedulable"


class DiskConditionReason(str, Enum):
    DISK_PRESSURE = "DiskPressure"
    DISK_FILESYSTEM_CHANGED = "DiskFilesystemChanged"
    DISK_PROBE_FAILED = "DiskProbeFailed"


class DiskSpec(BerthModel):
    path: str
    allow_scheduling: bool = True
    storage_reserved: int = 0


class DiskStatus(BerthModel):
    storage_maximum: int = 0
    storage_available: int = 0
    storage_scheduled: int = 0
    conditions: dict[DiskConditionType, Condition] = Field(default_factory=dict)
    scheduled_replica: dict[str, int] = Field(default_factory=dict)


class NodeSpec(BerthModel):
    # Keyed by disk ID, which is the filesystem ID the disk was registered with
    disks: dict[str, DiskSpec] = Field(default_factory=dict)


class NodeStatus(BerthModel):
    conditions: dict[NodeConditionType, Condition] = Field(default_factory=dict)
    disk_status: dict[str, DiskStatus] = Field(default_factory=dict)


class Node(Resource):
    KIND: ClassVar[Kind] = Kind.NODE

    spec: NodeSpec = Field(default_factory=NodeSpec)
    status: NodeStatus = Field(default_factory=NodeStatus)

    @property
    def is_ready(self) -> bool:
        cond = self.status.conditions.get(NodeConditionType.READY)
        return cond is not None and cond.status == ConditionStatus.TRUE

    @property
    def is_down(self) -> bool:
        """Ready=False because the platform node is gone or not ready."""
        cond = self.status.conditions.get(NodeConditionType.READY)
        return (
            cond is not None
            and cond.status == ConditionStatus.FALSE
            and cond.reason
            in (
                NodeConditionReason.KUBERNETES_NODE_DOWN,
                NodeConditionReason.KUBERNETES_NODE_NOT_READY,
            )
        )
