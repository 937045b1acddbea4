"""Object models (custom resources and slim native Kubernetes objects)."""

from berth.models.common import (
    BerthModel,
    Condition,
    ConditionStatus,
    Kind,
    ObjectMeta,
    OwnerReference,
    Resource,
    object_key,
)
from berth.models.engine_image import (
    EngineImage,
    EngineImageConditionReason,
    EngineImageConditionType,
    EngineImageSpec,
    EngineImageState,
    EngineImageStatus,
    EngineVersionDetails,
)
from berth.models.instance_manager import (
    InstanceManager,
    InstanceManagerSpec,
    InstanceManagerState,
    InstanceManagerStatus,
    InstanceManagerType,
)
from berth.models.kube import (
    DaemonSet,
    KubeNode,
    PersistentVolume,
    PersistentVolumeClaim,
    Pod,
    VolumeAttachment,
)
from berth.models.node import (
    DiskConditionReason,
    DiskConditionType,
    DiskSpec,
    DiskStatus,
    Node,
    NodeConditionReason,
    NodeConditionType,
    NodeSpec,
    NodeStatus,
)
from berth.models.volume import (
    Engine,
    KubernetesStatus,
    Replica,
    Volume,
    WorkloadStatus,
)

MODELS: dict[Kind, type[Resource]] = {
    Kind.ENGINE_IMAGE: EngineImage,
    Kind.NODE: Node,
    Kind.INSTANCE_MANAGER: InstanceManager,
    Kind.VOLUME: Volume,
    Kind.ENGINE: Engine,
    Kind.REPLICA: Replica,
    Kind.POD: Pod,
    Kind.KUBE_NODE: KubeNode,
    Kind.DAEMON_SET: DaemonSet,
    Kind.PERSISTENT_VOLUME: PersistentVolume,
    Kind.PERSISTENT_VOLUME_CLAIM: PersistentVolumeClaim,
    Kind.VOLUME_ATTACHMENT: VolumeAttachment,
}

__all__ = [
    "MODELS",
    "BerthModel",
    "Condition",
    "ConditionStatus",
    "DaemonSet",
    "DiskConditionReason",
    "DiskConditionType",
    "DiskSpec",
    "DiskStatus",
    "Engine",
    "EngineImage",
    "EngineImageConditionReason",
    "EngineImageConditionType",
    "EngineImageSpec",
    "EngineImageState",
    "EngineImageStatus",
    "EngineVersionDetails",
    "InstanceManager",
    "InstanceManagerSpec",
    "InstanceManagerState",
    "InstanceManagerStatus",
    "InstanceManagerType",
    "Kind",
    "KubeNode",
    "KubernetesStatus",
    "Node",
    "NodeConditionReason",
    "NodeConditionType",
    "NodeSpec",
    "NodeStatus",
    "ObjectMeta",
    "OwnerReference",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "Pod",
    "Replica",
    "Resource",
    "Volume",
    "VolumeAttachment",
    "WorkloadStatus",
    "object_key",
]
