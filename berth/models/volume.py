"""Volume, engine and replica custom resources.

Berth reads these for reference counting and capacity accounting; only
``Volume.status.kubernetesStatus`` is written here.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar

from pydantic import Field

from berth.models.common import BerthModel, Kind, Resource


class VolumeState(str, Enum):
    CREATING = "creating"
    ATTACHED = "attached"
    DETACHED = "detached"
    ATTACHING = "attaching"
    DETACHING = "detaching"
    DELETING = "deleting"


class WorkloadStatus(BerthModel):
    pod_name: str = ""
    pod_status: str = ""
    workload_name: str = ""
    workload_type: str = ""


class KubernetesStatus(BerthModel):
    pv_name: str = ""
    pv_status: str = ""

    namespace: str = ""
    pvc_name: str = ""
    last_pvc_ref_at: datetime | None = Field(default=None, alias="lastPVCRefAt")

    workloads_status: list[WorkloadStatus] = Field(default_factory=list)
    last_pod_ref_at: datetime | None = None


class VolumeSpec(BerthModel):
    size: int = 0
    number_of_replicas: int = 3
    engine_image: str = ""


class VolumeStatus(BerthModel):
    state: VolumeState | None = None
    current_image: str = ""
    current_node_id: str = Field(default="", alias="currentNodeID")
    kubernetes_status: KubernetesStatus = Field(default_factory=KubernetesStatus)


class Volume(Resource):
    KIND: ClassVar[Kind] = Kind.VOLUME

    spec: VolumeSpec = Field(default_factory=VolumeSpec)
    status: VolumeStatus = Field(default_factory=VolumeStatus)


class EngineSpec(BerthModel):
    volume_name: str = ""
    engine_image: str = ""
    node_id: str = Field(default="", alias="nodeID")


class EngineStatus(BerthModel):
    current_state: str = ""
    current_image: str = ""
    instance_manager_name: str = ""


class Engine(Resource):
    KIND: ClassVar[Kind] = Kind.ENGINE

    spec: EngineSpec = Field(default_factory=EngineSpec)
    status: EngineStatus = Field(default_factory=EngineStatus)


class ReplicaSpec(BerthModel):
    volume_name: str = ""
    volume_size: int = 0
    engine_image: str = ""
    node_id: str = Field(default="", alias="nodeID")
    disk_id: str = Field(default="", alias="diskID")
    active: bool = True


class ReplicaStatus(BerthModel):
    current_state: str = ""


class Replica(Resource):
    KIND: ClassVar[Kind] = Kind.REPLICA

    spec: ReplicaSpec = Field(default_factory=ReplicaSpec)
    status: ReplicaStatus = Field(default_factory=ReplicaStatus)
