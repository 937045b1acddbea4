"""Fake implementations and object builders for testing.

These fakes allow unit tests to run without a cluster, real disks or engine
binaries.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from berth.config import ControllerConfig, EngineImageConfig, NodeConfig
from berth.errors import ProbeError
from berth.events import EventRecorder, EventType
from berth.models import (
    DaemonSet,
    DiskSpec,
    Engine,
    EngineImage,
    EngineImageSpec,
    EngineImageStatus,
    EngineVersionDetails,
    KubeNode,
    Node,
    NodeSpec,
    ObjectMeta,
    OwnerReference,
    PersistentVolume,
    PersistentVolumeClaim,
    Pod,
    Replica,
    Resource,
    Volume,
    VolumeAttachment,
)
from berth.models.kube import (
    ClaimSource,
    Container,
    CSISource,
    DaemonSetStatus,
    KubeNodeCondition,
    KubeNodeStatus,
    ObjectReference,
    PersistentVolumeClaimSpec,
    PersistentVolumeClaimStatus,
    PersistentVolumeSpec,
    PersistentVolumeStatus,
    PodSpec,
    PodStatus,
    PodVolume,
    VolumeAttachmentSource,
    VolumeAttachmentSpec,
    VolumeMount,
)
from berth.models.volume import EngineSpec, EngineStatus, ReplicaSpec, VolumeSpec, VolumeStatus
from berth.probes import DiskInfo, DiskProbe, EngineVersionProbe

NAMESPACE = "berth-system"
TEST_NODE_1 = "test-node-name-1"
TEST_NODE_2 = "test-node-name-2"
TEST_OWNER_ID = TEST_NODE_1

TEST_ENGINE_IMAGE = "berthio/berth-engine:latest"
TEST_UPGRADED_IMAGE = "berthio/berth-engine:upgraded"
TEST_DEFAULT_IMAGE = "berthio/berth-engine:v1.0.0"

TEST_DISK_ID_1 = "fsid"
TEST_DISK_ID_2 = "fsid-2"
TEST_DISK_PATH = "/var/lib/berth/"

TEST_VOLUME = "test-volume"
TEST_PV = "pvc-test"
TEST_PVC = "test-pvc"
TEST_POD_NAMESPACE = "default"
TEST_CSI_DRIVER = "driver.berth.io"
MANAGER_POD_LABELS = {"app": "berth-manager"}

FIXED_NOW = datetime(2026, 10, 1, 12, 0, 0, tzinfo=UTC)


class FakeClock:
    """Controllable clock; starts at FIXED_NOW."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@dataclass
class RecordedEvent:
    kind: str
    name: str
    type: EventType
    reason: str
    message: str


class RecordingEventRecorder(EventRecorder):
    """Keeps every event for assertions."""

    def __init__(self) -> None:
        self.events: list[RecordedEvent] = []

    def event(self, obj: Resource, type: EventType, reason: str, message: str) -> None:
        self.events.append(
            RecordedEvent(
                kind=obj.KIND.value,
                name=obj.name,
                type=type,
                reason=reason,
                message=message,
            )
        )

    def reasons(self) -> list[str]:
        return [e.reason for e in self.events]


class FakeDiskProbe(DiskProbe):
    """Returns canned DiskInfo per path; records calls.

    Unknown paths report a zero-capacity disk whose filesystem ID is
    TEST_DISK_ID_1.
    """

    def __init__(self) -> None:
        self.infos: dict[str, DiskInfo] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []

    def set_info(
        self,
        path: str,
        filesystem_id: str = TEST_DISK_ID_1,
        maximum: int = 0,
        available: int = 0,
    ) -> None:
        self.infos[path] = DiskInfo(
            filesystem_id=filesystem_id,
            storage_maximum=maximum,
            storage_available=available,
            path=path,
        )

    def set_error(self, path: str, error: Exception | None = None) -> None:
        self.errors[path] = error or ProbeError(f"cannot stat {path}")

    async def probe(self, path: str) -> DiskInfo:
        self.calls.append(path)
        if path in self.errors:
            raise self.errors[path]
        return self.infos.get(path) or DiskInfo(
            filesystem_id=TEST_DISK_ID_1, storage_maximum=0, storage_available=0, path=path
        )


def compatible_version_details() -> EngineVersionDetails:
    return EngineVersionDetails(
        version="v1.0.0",
        git_commit="deadbeef",
        build_date="2026-01-01T00:00:00Z",
        cli_api_version=3,
        cli_api_min_version=3,
        controller_api_version=3,
        controller_api_min_version=3,
        data_format_version=1,
        data_format_min_version=1,
    )


class FakeEngineVersionProbe(EngineVersionProbe):
    """Returns canned version details per image; records calls."""

    def __init__(self, details: EngineVersionDetails | None = None) -> None:
        self.details = details or compatible_version_details()
        self.error: Exception | None = None
        self.calls: list[str] = []

    async def fetch(self, image: str) -> EngineVersionDetails:
        self.calls.append(image)
        if self.error is not None:
            raise self.error
        return self.details.model_copy(deep=True)


# ---- Config ----


def controller_config(**overrides) -> ControllerConfig:
    values = dict(
        controller_id=TEST_OWNER_ID,
        namespace=NAMESPACE,
        workers=1,
        resync_seconds=3600,
        max_retries=3,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
        probe_timeout_seconds=1.0,
        csi_driver=TEST_CSI_DRIVER,
    )
    values.update(overrides)
    return ControllerConfig(**values)


def engine_image_config(**overrides) -> EngineImageConfig:
    values = dict(default_image=TEST_DEFAULT_IMAGE, expiry_grace_seconds=3600)
    values.update(overrides)
    return EngineImageConfig(**values)


def node_config(**overrides) -> NodeConfig:
    return NodeConfig(**overrides)


# ---- Object builders ----


def new_node(
    name: str,
    disks: dict[str, DiskSpec] | None = None,
) -> Node:
    return Node(
        metadata=ObjectMeta(name=name, namespace=NAMESPACE),
        spec=NodeSpec(disks=disks or {}),
    )


def new_disk(path: str = TEST_DISK_PATH, allow_scheduling: bool = True, reserved: int = 0) -> DiskSpec:
    return DiskSpec(path=path, allow_scheduling=allow_scheduling, storage_reserved=reserved)


def new_kube_node(name: str, ready: bool = True, **conditions: str) -> KubeNode:
    """Build a Kubernetes node; extra kwargs set condition type -> status."""
    conds = [
        KubeNodeCondition(
            type="Ready",
            status="True" if ready else "False",
            reason="KubeletReady" if ready else "KubeletNotReady",
        )
    ]
    for ctype, status in conditions.items():
        conds.append(KubeNodeCondition(type=ctype, status=status, message=f"{ctype} test"))
    return KubeNode(
        metadata=ObjectMeta(name=name),
        status=KubeNodeStatus(conditions=conds),
    )


def new_manager_pod(
    node_name: str,
    phase: str = "Running",
    bidirectional: bool = True,
) -> Pod:
    return Pod(
        metadata=ObjectMeta(
            name=f"berth-manager-{node_name}",
            namespace=NAMESPACE,
            labels=dict(MANAGER_POD_LABELS),
        ),
        spec=PodSpec(
            node_name=node_name,
            containers=[
                Container(
                    name="berth-manager",
                    image="berthio/berth-manager:latest",
                    volume_mounts=[
                        VolumeMount(
                            name="varlib",
                            mount_path="/var/lib/berth/",
                            mount_propagation="Bidirectional" if bidirectional else None,
                        )
                    ],
                )
            ],
        ),
        status=PodStatus(phase=phase),
    )


def new_engine_image(
    image: str = TEST_ENGINE_IMAGE,
    owner_id: str = TEST_OWNER_ID,
    state: str = "ready",
    ref_count: int = 0,
    no_ref_since: datetime | None = None,
    details: EngineVersionDetails | None = None,
) -> EngineImage:
    from berth.naming import engine_image_name

    return EngineImage(
        metadata=ObjectMeta(name=engine_image_name(image), namespace=NAMESPACE, uid="ei-uid"),
        spec=EngineImageSpec(image=image),
        status=EngineImageStatus(
            state=state,
            ref_count=ref_count,
            no_ref_since=no_ref_since,
            owner_id=owner_id,
            engine_version_details=details or compatible_version_details(),
        ),
    )


def new_daemon_set(
    image: str = TEST_ENGINE_IMAGE,
    available: int = 1,
    labels: dict[str, str] | None = None,
) -> DaemonSet:
    from berth.naming import daemon_workload_name, engine_image_name

    return DaemonSet(
        metadata=ObjectMeta(
            name=daemon_workload_name(image),
            namespace=NAMESPACE,
            labels=labels
            if labels is not None
            else {
                "berth.io/component": "engine-image",
                "berth.io/engine-image": engine_image_name(image),
                "berth.io/version": "v1",
            },
        ),
        status=DaemonSetStatus(
            desired_number_scheduled=available,
            number_available=available,
            number_ready=available,
        ),
    )


def new_volume(
    name: str = TEST_VOLUME,
    image: str = TEST_ENGINE_IMAGE,
    current_image: str | None = None,
    state: str = "detached",
) -> Volume:
    return Volume(
        metadata=ObjectMeta(name=name, namespace=NAMESPACE),
        spec=VolumeSpec(size=1 << 30, number_of_replicas=2, engine_image=image),
        status=VolumeStatus(
            state=state,
            current_image=image if current_image is None else current_image,
        ),
    )


def new_engine(
    volume_name: str = TEST_VOLUME,
    image: str = TEST_ENGINE_IMAGE,
    instance_manager_name: str = "",
) -> Engine:
    return Engine(
        metadata=ObjectMeta(name=f"{volume_name}-e-0", namespace=NAMESPACE),
        spec=EngineSpec(volume_name=volume_name, engine_image=image, node_id=TEST_NODE_1),
        status=EngineStatus(
            current_state="running",
            current_image=image,
            instance_manager_name=instance_manager_name,
        ),
    )


def new_replica(
    name: str,
    node_id: str = TEST_NODE_1,
    disk_id: str = TEST_DISK_ID_1,
    size: int = 1 << 30,
    active: bool = True,
) -> Replica:
    return Replica(
        metadata=ObjectMeta(name=name, namespace=NAMESPACE),
        spec=ReplicaSpec(
            volume_name=TEST_VOLUME,
            volume_size=size,
            engine_image=TEST_ENGINE_IMAGE,
            node_id=node_id,
            disk_id=disk_id,
            active=active,
        ),
    )


def new_pv(
    name: str = TEST_PV,
    volume_name: str = TEST_VOLUME,
    phase: str = "Bound",
    claim: str | None = TEST_PVC,
    driver: str = TEST_CSI_DRIVER,
) -> PersistentVolume:
    return PersistentVolume(
        metadata=ObjectMeta(name=name),
        spec=PersistentVolumeSpec(
            capacity={"storage": "1Gi"},
            claim_ref=ObjectReference(name=claim, namespace=TEST_POD_NAMESPACE) if claim else None,
            csi=CSISource(driver=driver, volume_handle=volume_name),
        ),
        status=PersistentVolumeStatus(phase=phase),
    )


def new_pvc(name: str = TEST_PVC, pv_name: str = TEST_PV, phase: str = "Bound") -> PersistentVolumeClaim:
    return PersistentVolumeClaim(
        metadata=ObjectMeta(name=name, namespace=TEST_POD_NAMESPACE),
        spec=PersistentVolumeClaimSpec(volume_name=pv_name),
        status=PersistentVolumeClaimStatus(phase=phase),
    )


def new_workload_pod(
    name: str,
    claim: str = TEST_PVC,
    node_name: str | None = TEST_NODE_1,
    phase: str = "Running",
    owner: tuple[str, str] | None = ("StatefulSet", "test-statefulset"),
    deleting: bool = False,
) -> Pod:
    refs = []
    if owner is not None:
        refs.append(OwnerReference(api_version="apps/v1", kind=owner[0], name=owner[1], controller=True))
    return Pod(
        metadata=ObjectMeta(
            name=name,
            namespace=TEST_POD_NAMESPACE,
            owner_references=refs,
            deletion_timestamp=FIXED_NOW if deleting else None,
        ),
        spec=PodSpec(
            node_name=node_name,
            volumes=[PodVolume(name="data", persistent_volume_claim=ClaimSource(claim_name=claim))],
        ),
        status=PodStatus(phase=phase),
    )


def new_volume_attachment(
    name: str = "csi-test-attachment",
    pv_name: str = TEST_PV,
    node_name: str = TEST_NODE_1,
) -> VolumeAttachment:
    return VolumeAttachment(
        metadata=ObjectMeta(name=name),
        spec=VolumeAttachmentSpec(
            attacher=TEST_CSI_DRIVER,
            node_name=node_name,
            source=VolumeAttachmentSource(persistent_volume_name=pv_name),
        ),
    )
