"""Secondary indexes used by the controllers."""

from __future__ import annotations

from berth.datastore.base import Repository
from berth.models import InstanceManager, Kind, Pod, Replica, VolumeAttachment

REPLICA_BY_NODE = "replica-by-node"
INSTANCE_MANAGER_BY_IMAGE = "instance-manager-by-image"
POD_BY_NODE = "pod-by-node"
POD_BY_CLAIM = "pod-by-claim"
VOLUME_ATTACHMENT_BY_PV = "volume-attachment-by-pv"
VOLUME_ATTACHMENT_BY_NODE = "volume-attachment-by-node"


def replica_node(replica: Replica) -> list[str]:
    return [replica.spec.node_id] if replica.spec.node_id else []


def instance_manager_image(im: InstanceManager) -> list[str]:
    return [im.spec.image]


def pod_node(pod: Pod) -> list[str]:
    return [pod.spec.node_name] if pod.spec.node_name else []


def pod_claims(pod: Pod) -> list[str]:
    """Index pods by ``namespace/claim`` for every claim they mount."""
    return [claim_key(pod.namespace or "", claim) for claim in pod.claim_names()]


def claim_key(namespace: str, claim: str) -> str:
    return f"{namespace}/{claim}"


def attachment_pv(va: VolumeAttachment) -> list[str]:
    pv = va.spec.source.persistent_volume_name
    return [pv] if pv else []


def attachment_node(va: VolumeAttachment) -> list[str]:
    return [va.spec.node_name] if va.spec.node_name else []


def register_replica_indexes(repo: Repository) -> None:
    repo.add_index(Kind.REPLICA, REPLICA_BY_NODE, replica_node)


def register_instance_manager_indexes(repo: Repository) -> None:
    repo.add_index(Kind.INSTANCE_MANAGER, INSTANCE_MANAGER_BY_IMAGE, instance_manager_image)


def register_pod_indexes(repo: Repository) -> None:
    repo.add_index(Kind.POD, POD_BY_NODE, pod_node)
    repo.add_index(Kind.POD, POD_BY_CLAIM, pod_claims)


def register_attachment_indexes(repo: Repository) -> None:
    repo.add_index(Kind.VOLUME_ATTACHMENT, VOLUME_ATTACHMENT_BY_PV, attachment_pv)
    repo.add_index(Kind.VOLUME_ATTACHMENT, VOLUME_ATTACHMENT_BY_NODE, attachment_node)
