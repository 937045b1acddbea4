"""Kubernetes controller: workload status and disaster recovery.

Keyed by PersistentVolume name. For each PV provisioned by our CSI driver it
mirrors the PV, its claim and the pods mounting the claim into the volume's
``status.kubernetesStatus``, stamping the last-reference timestamps when
references go away. It also deletes VolumeAttachments pinned to a node that
is down, so the workload can be attached elsewhere.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from berth.controllers.base import BaseController
from berth.datastore.base import ChangeEvent
from berth.datastore.indexes import (
    POD_BY_CLAIM,
    VOLUME_ATTACHMENT_BY_NODE,
    VOLUME_ATTACHMENT_BY_PV,
    claim_key,
    register_attachment_indexes,
    register_pod_indexes,
)
from berth.errors import NotFoundError
from berth.events import EventRecorder, EventType
from berth.models import (
    KubernetesStatus,
    Kind,
    Node,
    PersistentVolume,
    PersistentVolumeClaim,
    Pod,
    Volume,
    VolumeAttachment,
    WorkloadStatus,
)
from berth.models.kube import PersistentVolumePhase
from berth.utils.datetime import Clock, utcnow

if TYPE_CHECKING:
    from berth.config import ControllerConfig
    from berth.datastore import Repository


@dataclass(frozen=True)
class WorkloadRef:
    kind: str
    name: str


def workload_owner(pod: Pod) -> WorkloadRef | None:
    """The workload controlling ``pod``, from its owner references."""
    refs = pod.metadata.owner_references
    if not refs:
        return None
    ref = next((r for r in refs if r.controller), refs[0])
    return WorkloadRef(kind=ref.kind, name=ref.name)


def workload_status(pod: Pod) -> WorkloadStatus:
    owner = workload_owner(pod)
    return WorkloadStatus(
        pod_name=pod.name,
        pod_status=pod.status.phase.value if pod.status.phase else "",
        workload_name=owner.name if owner else "",
        workload_type=owner.kind if owner else "",
    )


class KubernetesController(BaseController):
    name = "kubernetes"
    kind = Kind.PERSISTENT_VOLUME

    def __init__(
        self,
        repository: "Repository",
        config: "ControllerConfig",
        events: EventRecorder | None = None,
        now: Clock = utcnow,
    ) -> None:
        # PV name -> volume name, so a deleted PV can still be resolved
        self._pv_volumes: dict[str, str] = {}
        super().__init__(repository, config, events=events, now=now)

    def register_indexes(self) -> None:
        register_pod_indexes(self._repo)
        register_attachment_indexes(self._repo)

    def watch(self) -> None:
        self._repo.subscribe(Kind.PERSISTENT_VOLUME, self._on_pv_change)
        self._repo.subscribe(Kind.PERSISTENT_VOLUME_CLAIM, self._on_claim_change)
        self._repo.subscribe(Kind.POD, self._on_pod_change)
        self._repo.subscribe(Kind.VOLUME_ATTACHMENT, self._on_attachment_change)
        self._repo.subscribe(Kind.NODE, self._on_node_change)

    async def _on_pv_change(self, event: ChangeEvent) -> None:
        self.enqueue(event.obj.name)

    async def _on_claim_change(self, event: ChangeEvent) -> None:
        self.enqueue(event.obj.spec.volume_name)

    async def _on_pod_change(self, event: ChangeEvent) -> None:
        pod: Pod = event.obj
        for claim in pod.claim_names():
            try:
                pvc: PersistentVolumeClaim = await self._repo.get(
                    Kind.PERSISTENT_VOLUME_CLAIM, claim_key(pod.namespace or "", claim)
                )
            except NotFoundError:
                continue
            self.enqueue(pvc.spec.volume_name)

    async def _on_attachment_change(self, event: ChangeEvent) -> None:
        self.enqueue(event.obj.spec.source.persistent_volume_name)

    async def _on_node_change(self, event: ChangeEvent) -> None:
        for va in await self._repo.list_by_index(
            Kind.VOLUME_ATTACHMENT, VOLUME_ATTACHMENT_BY_NODE, event.obj.name
        ):
            self.enqueue(va.spec.source.persistent_volume_name)

    async def list_keys(self) -> list[str]:
        keys = {pv.name for pv in await self._repo.list(Kind.PERSISTENT_VOLUME)}
        # PVs deleted while nobody was watching
        keys.update(self._pv_volumes)
        return sorted(keys)

    # ---- Sync ----

    async def sync(self, key: str) -> None:
        try:
            pv: PersistentVolume | None = await self._repo.get(Kind.PERSISTENT_VOLUME, key)
        except NotFoundError:
            pv = None

        if pv is not None and not self._is_ours(pv):
            return

        if pv is None or pv.is_deleting:
            volume_name = self._pv_volumes.get(key)
            if volume_name is None and pv is not None:
                volume_name = pv.spec.csi.volume_handle
            if volume_name is not None:
                await self._on_pv_gone(volume_name)
            if pv is None:
                self._pv_volumes.pop(key, None)
            return

        volume_name = pv.spec.csi.volume_handle
        self._pv_volumes[key] = volume_name

        try:
            volume: Volume = await self._repo.get(Kind.VOLUME, volume_name)
        except NotFoundError:
            self._log.debug("kubernetes.sync.volume_missing", pv=key, volume=volume_name)
            return

        now = self._now()
        ks = volume.status.kubernetes_status.model_copy(deep=True)
        claim, pods = await self._sync_claim_and_pods(pv, ks, now)

        if ks != volume.status.kubernetes_status:
            volume.status.kubernetes_status = ks
            await self._repo.update_status(volume)
            self._log.debug("kubernetes.status.updated", pv=key, volume=volume_name)

        await self._recover_attachments(pv, claim, pods)

    def _is_ours(self, pv: PersistentVolume) -> bool:
        return pv.spec.csi is not None and pv.spec.csi.driver == self._config.csi_driver

    async def _on_pv_gone(self, volume_name: str) -> None:
        try:
            volume: Volume = await self._repo.get(Kind.VOLUME, volume_name)
        except NotFoundError:
            return

        now = self._now()
        ks = volume.status.kubernetes_status.model_copy(deep=True)
        ks.pv_name = ""
        ks.pv_status = ""
        if ks.pvc_name and ks.last_pvc_ref_at is None:
            ks.last_pvc_ref_at = now
        if ks.workloads_status and ks.last_pod_ref_at is None:
            ks.last_pod_ref_at = now

        if ks != volume.status.kubernetes_status:
            volume.status.kubernetes_status = ks
            await self._repo.update_status(volume)
            self._log.info("kubernetes.pv.gone", volume=volume_name)

    async def _sync_claim_and_pods(
        self, pv: PersistentVolume, ks: KubernetesStatus, now: datetime
    ) -> tuple[PersistentVolumeClaim | None, list[Pod]]:
        """Record PV, claim and workloads into ``ks``.

        Returns the claim object (if cached) and every pod mounting the claim,
        including terminating ones.
        """
        ks.pv_name = pv.name
        ks.pv_status = pv.status.phase.value if pv.status.phase else ""

        ref = pv.spec.claim_ref
        if pv.status.phase != PersistentVolumePhase.BOUND or ref is None or not ref.name:
            if ks.pvc_name:
                if ks.last_pvc_ref_at is None:
                    ks.last_pvc_ref_at = now
            else:
                ks.namespace = ""
            self._sync_workloads(ks, [], now)
            return None, []

        namespace = ref.namespace or ""
        ks.namespace = namespace
        ks.pvc_name = ref.name
        ks.last_pvc_ref_at = None

        try:
            claim: PersistentVolumeClaim | None = await self._repo.get(
                Kind.PERSISTENT_VOLUME_CLAIM, claim_key(namespace, ref.name)
            )
        except NotFoundError:
            claim = None

        pods = await self._repo.list_by_index(
            Kind.POD, POD_BY_CLAIM, claim_key(namespace, ref.name)
        )
        self._sync_workloads(ks, [p for p in pods if not p.is_deleting], now)
        return claim, pods

    def _sync_workloads(self, ks: KubernetesStatus, live: list[Pod], now: datetime) -> None:
        if not live:
            if ks.workloads_status and ks.last_pod_ref_at is None:
                ks.last_pod_ref_at = now
            return

        current = sorted((workload_status(p) for p in live), key=lambda w: w.pod_name)
        recorded = {w.pod_name for w in ks.workloads_status}
        names = {w.pod_name for w in current}

        if recorded - names:
            if ks.last_pod_ref_at is None:
                ks.last_pod_ref_at = now
        elif names - recorded:
            ks.last_pod_ref_at = None

        ks.workloads_status = current

    # ---- Disaster recovery ----

    async def _recover_attachments(
        self,
        pv: PersistentVolume,
        claim: PersistentVolumeClaim | None,
        pods: list[Pod],
    ) -> None:
        if claim is None or claim.status.phase != PersistentVolumePhase.BOUND.value:
            return

        attachments = await self._repo.list_by_index(
            Kind.VOLUME_ATTACHMENT, VOLUME_ATTACHMENT_BY_PV, pv.name
        )
        for va in attachments:
            await self._recover_attachment(pv, va, pods)

    async def _recover_attachment(
        self, pv: PersistentVolume, va: VolumeAttachment, pods: list[Pod]
    ) -> None:
        node_name = va.spec.node_name
        try:
            node: Node = await self._repo.get(Kind.NODE, node_name)
        except NotFoundError:
            return
        if not node.is_down:
            return

        blocking = [
            p.name for p in pods if p.is_deleting or p.spec.node_name == node_name
        ]
        if blocking:
            self._log.info(
                "kubernetes.attachment.retained",
                pv=pv.name,
                attachment=va.name,
                node=node_name,
                pods=blocking,
            )
            return

        try:
            await self._repo.delete(Kind.VOLUME_ATTACHMENT, va.name)
        except NotFoundError:
            return
        self._log.info(
            "kubernetes.attachment.deleted",
            pv=pv.name,
            attachment=va.name,
            node=node_name,
        )
        self._events.event(
            pv,
            EventType.NORMAL,
            "AttachmentRecovered",
            f"Deleted volume attachment {va.name} on down node {node_name}",
        )
