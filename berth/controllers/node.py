"""Node controller.

Keeps each storage node's conditions and per-disk status current:

- Ready, for every node, from the manager pod and the Kubernetes node
- MountPropagation, for this manager's own node only
- disk capacity, identity and schedulability, for this manager's own node
  only (the probe is local)
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING

from berth.controllers.base import BaseController, is_status_only
from berth.controllers.conditions import get_condition, set_condition
from berth.datastore.base import ChangeEvent
from berth.datastore.indexes import (
    POD_BY_NODE,
    REPLICA_BY_NODE,
    register_pod_indexes,
    register_replica_indexes,
)
from berth.errors import NotFoundError, ProbeError
from berth.events import EventRecorder, EventType
from berth.models import (
    ConditionStatus,
    DiskConditionReason,
    DiskConditionType,
    DiskSpec,
    DiskStatus,
    Kind,
    KubeNode,
    Node,
    NodeConditionReason,
    NodeConditionType,
    NodeStatus,
    Pod,
    Replica,
)
from berth.models.kube import MOUNT_PROPAGATION_BIDIRECTIONAL, PodPhase
from berth.utils.datetime import Clock, utcnow

if TYPE_CHECKING:
    from berth.config import ControllerConfig, NodeConfig
    from berth.datastore import Repository
    from berth.probes import DiskProbe

# Kubernetes node conditions that mean trouble when True
KUBE_PRESSURE_CONDITIONS = (
    "DiskPressure",
    "MemoryPressure",
    "PIDPressure",
    "OutOfDisk",
    "NetworkUnavailable",
)


class NodeController(BaseController):
    name = "node"
    kind = Kind.NODE

    def __init__(
        self,
        repository: "Repository",
        config: "ControllerConfig",
        node_config: "NodeConfig",
        disk_probe: "DiskProbe",
        events: EventRecorder | None = None,
        now: Clock = utcnow,
    ) -> None:
        self._node_config = node_config
        self._disk_probe = disk_probe
        self._manager_selector = config.manager_pod_selector()
        super().__init__(repository, config, events=events, now=now)

    def register_indexes(self) -> None:
        register_replica_indexes(self._repo)
        register_pod_indexes(self._repo)

    def watch(self) -> None:
        self._repo.subscribe(Kind.NODE, self._on_node_change)
        self._repo.subscribe(Kind.KUBE_NODE, self._on_kube_node_change)
        self._repo.subscribe(Kind.POD, self._on_pod_change)
        self._repo.subscribe(Kind.REPLICA, self._on_replica_change)

    async def _on_node_change(self, event: ChangeEvent) -> None:
        # Status-only updates are this controller's own writes
        if is_status_only(event):
            return
        self.enqueue(event.obj.name)

    async def _on_kube_node_change(self, event: ChangeEvent) -> None:
        self.enqueue(event.obj.name)

    async def _on_pod_change(self, event: ChangeEvent) -> None:
        pod: Pod = event.obj
        if self._is_manager_pod(pod):
            self.enqueue(pod.spec.node_name)

    async def _on_replica_change(self, event: ChangeEvent) -> None:
        replica: Replica = event.obj
        self.enqueue(replica.spec.node_id)
        if event.old is not None:
            self.enqueue(event.old.spec.node_id)

    async def list_keys(self) -> list[str]:
        return [node.name for node in await self._repo.list(Kind.NODE)]

    async def sync(self, key: str) -> None:
        try:
            node: Node = await self._repo.get(Kind.NODE, key)
        except NotFoundError:
            self._log.debug("node.sync.gone", node=key)
            return
        if node.is_deleting:
            return

        now = self._now()
        status = node.status.model_copy(deep=True)
        status.conditions.pop(NodeConditionType.SYNCED, None)

        manager_pod = await self._get_manager_pod(key)
        kube_node = await self._get_kube_node(key)
        self._update_ready(key, status, manager_pod, kube_node, now)

        if key == self._controller_id:
            self._update_mount_propagation(status, manager_pod, now)
            await self._update_disks(node, status, now)

        if status == node.status:
            return

        self._record_transitions(node, status)
        node.status = status
        await self._repo.update_status(node)
        self._log.debug("node.status.updated", node=key)

    async def mark_sync_failed(self, obj: Node, message: str) -> None:
        set_condition(
            obj.status.conditions,
            NodeConditionType.SYNCED,
            ConditionStatus.FALSE,
            NodeConditionReason.SYNC_FAILED,
            message,
            self._now(),
        )
        await self._repo.update_status(obj)

    # ---- Ready ----

    def _is_manager_pod(self, pod: Pod) -> bool:
        if pod.namespace != self._config.namespace:
            return False
        labels = pod.metadata.labels
        return all(labels.get(k) == v for k, v in self._manager_selector.items())

    async def _get_manager_pod(self, node_name: str) -> Pod | None:
        pods = [
            pod
            for pod in await self._repo.list_by_index(Kind.POD, POD_BY_NODE, node_name)
            if self._is_manager_pod(pod)
        ]
        for pod in pods:
            if pod.status.phase == PodPhase.RUNNING:
                return pod
        return pods[0] if pods else None

    async def _get_kube_node(self, node_name: str) -> KubeNode | None:
        try:
            return await self._repo.get(Kind.KUBE_NODE, node_name)
        except NotFoundError:
            return None

    def _update_ready(
        self,
        node_name: str,
        status: NodeStatus,
        manager_pod: Pod | None,
        kube_node: KubeNode | None,
        now: datetime,
    ) -> None:
        conditions = status.conditions
        ready = NodeConditionType.READY

        if manager_pod is None or manager_pod.status.phase != PodPhase.RUNNING:
            set_condition(
                conditions,
                ready,
                ConditionStatus.FALSE,
                NodeConditionReason.MANAGER_POD_DOWN,
                f"Manager pod on node {node_name} is down or missing",
                now,
            )
            return

        if kube_node is None:
            set_condition(
                conditions,
                ready,
                ConditionStatus.FALSE,
                NodeConditionReason.KUBERNETES_NODE_DOWN,
                f"Kubernetes node {node_name} has been removed from the cluster",
                now,
            )
            return

        reason: NodeConditionReason | None = None
        message = ""
        for cond in kube_node.status.conditions:
            if cond.type == "Ready" and cond.status != "True":
                reason = NodeConditionReason.KUBERNETES_NODE_NOT_READY
                message = (
                    f"Kubernetes node {node_name} not ready: "
                    f"{cond.reason or cond.status}"
                )
            elif cond.type in KUBE_PRESSURE_CONDITIONS and cond.status == "True":
                reason = NodeConditionReason.KUBERNETES_NODE_PRESSURE
                message = f"Kubernetes node {node_name} has {cond.type}"
                if cond.message:
                    message = f"{message}: {cond.message}"

        if reason is None:
            set_condition(conditions, ready, ConditionStatus.TRUE, now=now)
        else:
            set_condition(conditions, ready, ConditionStatus.FALSE, reason, message, now)

    def _update_mount_propagation(
        self, status: NodeStatus, manager_pod: Pod | None, now: datetime
    ) -> None:
        supported = manager_pod is not None and any(
            mount.mount_propagation == MOUNT_PROPAGATION_BIDIRECTIONAL
            for container in manager_pod.spec.containers
            for mount in container.volume_mounts
        )
        if supported:
            set_condition(
                status.conditions,
                NodeConditionType.MOUNT_PROPAGATION,
                ConditionStatus.TRUE,
                now=now,
            )
        else:
            set_condition(
                status.conditions,
                NodeConditionType.MOUNT_PROPAGATION,
                ConditionStatus.FALSE,
                NodeConditionReason.NO_MOUNT_PROPAGATION_SUPPORT,
                "The manager pod has no bidirectional mount propagation",
                now,
            )

    # ---- Disks ----

    async def _update_disks(self, node: Node, status: NodeStatus, now: datetime) -> None:
        for disk_id in list(status.disk_status):
            if disk_id not in node.spec.disks:
                del status.disk_status[disk_id]

        replicas = [
            r
            for r in await self._repo.list_by_index(Kind.REPLICA, REPLICA_BY_NODE, node.name)
            if r.spec.active and not r.is_deleting
        ]

        for disk_id, disk in node.spec.disks.items():
            disk_status = status.disk_status.setdefault(disk_id, DiskStatus())

            scheduled = {
                r.name: r.spec.volume_size
                for r in replicas
                if r.spec.disk_id == disk_id
            }
            disk_status.scheduled_replica = scheduled
            disk_status.storage_scheduled = sum(scheduled.values())

            await self._probe_disk(node.name, disk_id, disk, disk_status, now)

    async def _probe_disk(
        self,
        node_name: str,
        disk_id: str,
        disk: DiskSpec,
        disk_status: DiskStatus,
        now: datetime,
    ) -> None:
        conditions = disk_status.conditions
        timeout = self._config.probe_timeout_seconds
        try:
            info = await asyncio.wait_for(self._disk_probe.probe(disk.path), timeout=timeout)
        except (ProbeError, TimeoutError) as e:
            message = e.message if isinstance(e, ProbeError) else f"probe timed out after {timeout}s"
            self._log.warning(
                "node.disk.probe_failed",
                node=node_name,
                disk=disk_id,
                path=disk.path,
                error=message,
            )
            for ctype in (DiskConditionType.READY, DiskConditionType.SCHEDULABLE):
                set_condition(
                    conditions,
                    ctype,
                    ConditionStatus.UNKNOWN,
                    DiskConditionReason.DISK_PROBE_FAILED,
                    message,
                    now,
                )
            return

        fs_changed = info.filesystem_id != disk_id
        if fs_changed:
            # Capacity belongs to a filesystem this disk does not own
            disk_status.storage_maximum = 0
            disk_status.storage_available = 0
            set_condition(
                conditions,
                DiskConditionType.READY,
                ConditionStatus.FALSE,
                DiskConditionReason.DISK_FILESYSTEM_CHANGED,
                f"Disk {disk_id} at {disk.path} now holds filesystem {info.filesystem_id}",
                now,
            )
        else:
            disk_status.storage_maximum = info.storage_maximum
            disk_status.storage_available = info.storage_available
            set_condition(conditions, DiskConditionType.READY, ConditionStatus.TRUE, now=now)

        self._update_schedulable(disk_id, disk, disk_status, fs_changed, now)

    def _update_schedulable(
        self,
        disk_id: str,
        disk: DiskSpec,
        disk_status: DiskStatus,
        fs_changed: bool,
        now: datetime,
    ) -> None:
        pct = self._node_config.minimal_available_percentage
        free = disk_status.storage_available - disk.storage_reserved - disk_status.storage_scheduled
        conditions = disk_status.conditions
        schedulable = DiskConditionType.SCHEDULABLE

        if not disk.allow_scheduling:
            set_condition(
                conditions,
                schedulable,
                ConditionStatus.FALSE,
                DiskConditionReason.DISK_PRESSURE,
                f"Scheduling is disabled on disk {disk_id}",
                now,
            )
        elif fs_changed:
            set_condition(
                conditions,
                schedulable,
                ConditionStatus.FALSE,
                DiskConditionReason.DISK_FILESYSTEM_CHANGED,
                f"Disk {disk_id} must be re-registered before scheduling",
                now,
            )
        elif free * 100 <= disk_status.storage_maximum * pct:
            set_condition(
                conditions,
                schedulable,
                ConditionStatus.FALSE,
                DiskConditionReason.DISK_PRESSURE,
                f"Disk {disk_id} ({disk.path}) has {free} bytes free for scheduling, "
                f"at or below {pct}% of {disk_status.storage_maximum}",
                now,
            )
        else:
            set_condition(conditions, schedulable, ConditionStatus.TRUE, now=now)

    # ---- Events ----

    def _record_transitions(self, node: Node, status: NodeStatus) -> None:
        old = get_condition(node.status.conditions, NodeConditionType.READY)
        new = get_condition(status.conditions, NodeConditionType.READY)
        if old.status != new.status:
            self._log.info(
                "node.ready.changed",
                node=node.name,
                old=old.status.value,
                new=new.status.value,
                reason=new.reason,
            )
            if new.status == ConditionStatus.FALSE:
                self._events.event(node, EventType.WARNING, new.reason, new.message)

        for disk_id, disk_status in status.disk_status.items():
            old_disk = node.status.disk_status.get(disk_id)
            old_ready = get_condition(
                old_disk.conditions if old_disk else {}, DiskConditionType.READY
            )
            new_ready = get_condition(disk_status.conditions, DiskConditionType.READY)
            if (
                new_ready.reason == DiskConditionReason.DISK_FILESYSTEM_CHANGED
                and old_ready.reason != new_ready.reason
            ):
                self._events.event(node, EventType.WARNING, new_ready.reason, new_ready.message)
