"""Engine image controller.

Drives each EngineImage through its lifecycle::

    deploying -> ready          daemon workload available, version compatible,
                                every required instance manager running
    deploying -> incompatible   version ranges do not overlap (terminal)
    ready     -> deploying      workload or an instance manager regressed

and keeps its reference count, expiring unreferenced non-default images after
a grace window. Exactly one manager instance (the owner) reconciles an image;
ownership moves when the owner's node stops being Ready.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING

from berth.controllers.base import BaseController, is_status_only
from berth.controllers.conditions import get_condition, set_condition
from berth.datastore.base import ChangeEvent
from berth.datastore.indexes import (
    INSTANCE_MANAGER_BY_IMAGE,
    register_instance_manager_indexes,
)
from berth.errors import AlreadyExistsError, NotFoundError, ProbeError, ValidationError
from berth.events import EventRecorder, EventType
from berth.models import (
    ConditionStatus,
    DaemonSet,
    EngineImage,
    EngineImageConditionReason,
    EngineImageConditionType,
    EngineImageSpec,
    EngineImageState,
    EngineImageStatus,
    InstanceManager,
    InstanceManagerSpec,
    InstanceManagerState,
    InstanceManagerType,
    Kind,
    Node,
    ObjectMeta,
    OwnerReference,
)
from berth.models.kube import (
    Container,
    DaemonSetSpec,
    HostPathSource,
    LabelSelector,
    PodSpec,
    PodTemplateSpec,
    PodVolume,
    VolumeMount,
)
from berth.naming import (
    daemon_workload_name,
    engine_binary_directory,
    engine_image_name,
    instance_manager_name,
    validate_image_reference,
)
from berth.probes.engine import VersionRange, is_compatible
from berth.utils.datetime import Clock, seconds_since, utcnow

if TYPE_CHECKING:
    from berth.config import ControllerConfig, EngineImageConfig, K8sConfig
    from berth.datastore import Repository
    from berth.probes import EngineVersionProbe

# Label scheme of daemon workloads created before the prefixed labels
DEPRECATED_DAEMON_LABELS = {"longhorn": "engine-image"}

DAEMON_LABEL_VERSION = "v1"

BINARY_MOUNT_PATH = "/data/"


class EngineImageController(BaseController):
    name = "engine_image"
    kind = Kind.ENGINE_IMAGE

    def __init__(
        self,
        repository: "Repository",
        config: "ControllerConfig",
        engine_image_config: "EngineImageConfig",
        version_probe: "EngineVersionProbe",
        k8s_config: "K8sConfig | None" = None,
        events: EventRecorder | None = None,
        now: Clock = utcnow,
    ) -> None:
        self._ei_config = engine_image_config
        self._version_probe = version_probe
        self._expected_range = VersionRange(
            min_version=engine_image_config.cli_api_min_version,
            max_version=engine_image_config.cli_api_version,
        )
        self._owner_api_version = (
            f"{k8s_config.group}/{k8s_config.version}" if k8s_config else "berth.io/v1beta1"
        )
        super().__init__(repository, config, events=events, now=now)

    def register_indexes(self) -> None:
        register_instance_manager_indexes(self._repo)

    def watch(self) -> None:
        self._repo.subscribe(Kind.ENGINE_IMAGE, self._on_engine_image_change)
        self._repo.subscribe(Kind.DAEMON_SET, self._on_daemon_set_change)
        self._repo.subscribe(Kind.INSTANCE_MANAGER, self._on_instance_manager_change)
        for kind in (Kind.NODE, Kind.VOLUME, Kind.ENGINE):
            self._repo.subscribe(kind, self._on_reference_change)

    async def _on_engine_image_change(self, event: ChangeEvent) -> None:
        # Status-only updates are this controller's own writes
        if is_status_only(event):
            return
        self.enqueue(event.obj.name)

    async def _on_daemon_set_change(self, event: ChangeEvent) -> None:
        self.enqueue(event.obj.metadata.labels.get(self._label("engine-image")))

    async def _on_instance_manager_change(self, event: ChangeEvent) -> None:
        self.enqueue(engine_image_name(event.obj.spec.image))

    async def _on_reference_change(self, event: ChangeEvent) -> None:
        await self.enqueue_all()

    async def list_keys(self) -> list[str]:
        return [ei.name for ei in await self._repo.list(Kind.ENGINE_IMAGE)]

    # ---- Default image ----

    async def ensure_default_engine_image(self) -> EngineImage | None:
        """Create the EngineImage of the configured default image if missing.

        Returns the created object, or None when it already existed.
        """
        image = self._ei_config.default_image
        name = engine_image_name(image)
        try:
            await self._repo.get(Kind.ENGINE_IMAGE, name)
            return None
        except NotFoundError:
            pass

        ei = EngineImage(
            metadata=ObjectMeta(name=name, namespace=self._config.namespace),
            spec=EngineImageSpec(image=image),
            status=EngineImageStatus(owner_id=self._controller_id, no_ref_since=self._now()),
        )
        try:
            created = await self._repo.create(ei)
        except AlreadyExistsError:
            return None
        self._log.info("engine_image.default.created", engine_image=name, image=image)
        return created

    # ---- Sync ----

    async def sync(self, key: str) -> None:
        try:
            ei: EngineImage = await self._repo.get(Kind.ENGINE_IMAGE, key)
        except NotFoundError:
            self._log.debug("engine_image.sync.gone", engine_image=key)
            return

        if not await self._is_responsible(ei):
            return

        if ei.status.owner_id != self._controller_id:
            previous = ei.status.owner_id
            ei.status.owner_id = self._controller_id
            ei = await self._repo.update_status(ei)
            self._log.info(
                "engine_image.owner.claimed",
                engine_image=key,
                previous_owner=previous or None,
            )

        if ei.is_deleting:
            await self._cleanup(ei)
            return

        now = self._now()
        status = ei.status.model_copy(deep=True)
        status.conditions.pop(EngineImageConditionType.SYNCED, None)

        status.ref_count = await self._count_references(ei.spec.image)
        if status.ref_count == 0:
            if status.no_ref_since is None:
                status.no_ref_since = now
        else:
            status.no_ref_since = None

        if self._is_expired(ei, status, now):
            await self._expire(ei)
            return

        try:
            validate_image_reference(ei.spec.image)
        except ValidationError as e:
            previous = get_condition(status.conditions, EngineImageConditionType.READY)
            self._set_state(
                ei,
                status,
                EngineImageState.DEPLOYING,
                EngineImageConditionReason.INVALID_IMAGE_REFERENCE,
                e.message,
                now,
            )
            await self._write_status(ei, status)
            if previous.reason != EngineImageConditionReason.INVALID_IMAGE_REFERENCE:
                self._events.event(ei, EventType.WARNING, "InvalidImageReference", e.message)
            return

        await self._sync_deployment(ei, status, now)
        await self._write_status(ei, status)

    async def mark_sync_failed(self, obj: EngineImage, message: str) -> None:
        set_condition(
            obj.status.conditions,
            EngineImageConditionType.SYNCED,
            ConditionStatus.FALSE,
            EngineImageConditionReason.SYNC_FAILED,
            message,
            self._now(),
        )
        await self._repo.update_status(obj)

    async def _is_responsible(self, ei: EngineImage) -> bool:
        owner = ei.status.owner_id
        if not owner or owner == self._controller_id:
            return True
        try:
            node: Node = await self._repo.get(Kind.NODE, owner)
        except NotFoundError:
            return True
        return not node.is_ready

    async def _write_status(self, ei: EngineImage, status: EngineImageStatus) -> None:
        if status == ei.status:
            return
        ei.status = status
        await self._repo.update_status(ei)

    def _set_state(
        self,
        ei: EngineImage,
        status: EngineImageStatus,
        state: EngineImageState,
        reason: str,
        message: str,
        now: datetime,
    ) -> None:
        ready = state == EngineImageState.READY
        set_condition(
            status.conditions,
            EngineImageConditionType.READY,
            ConditionStatus.TRUE if ready else ConditionStatus.FALSE,
            "" if ready else reason,
            message,
            now,
        )
        if status.state != state:
            self._log.info(
                "engine_image.state.changed",
                engine_image=ei.name,
                old=status.state.value,
                new=state.value,
                reason=reason or None,
            )
            status.state = state

    # ---- Reference counting & expiry ----

    async def _count_references(self, image: str) -> int:
        """Distinct volumes using ``image``.

        A volume counts when its spec or current image is ``image``, or when
        one of its engines still runs in one of this image's instance
        managers (mid live-upgrade).
        """
        managers = {
            im.name
            for im in await self._repo.list_by_index(
                Kind.INSTANCE_MANAGER, INSTANCE_MANAGER_BY_IMAGE, image
            )
        }

        volumes: set[str] = set()
        for volume in await self._repo.list(Kind.VOLUME):
            if volume.spec.engine_image == image or volume.status.current_image == image:
                volumes.add(volume.name)

        for engine in await self._repo.list(Kind.ENGINE):
            if (
                engine.spec.engine_image == image
                or engine.status.current_image == image
                or engine.status.instance_manager_name in managers
            ):
                volumes.add(engine.spec.volume_name or engine.name)

        return len(volumes)

    def _is_expired(self, ei: EngineImage, status: EngineImageStatus, now: datetime) -> bool:
        if ei.spec.image == self._ei_config.default_image:
            return False
        if status.ref_count != 0 or status.no_ref_since is None:
            return False
        return seconds_since(status.no_ref_since, now) > self._ei_config.expiry_grace_seconds

    async def _expire(self, ei: EngineImage) -> None:
        self._log.info(
            "engine_image.expired",
            engine_image=ei.name,
            image=ei.spec.image,
            no_ref_since=ei.status.no_ref_since.isoformat() if ei.status.no_ref_since else None,
        )
        await self._cleanup(ei)
        await self._delete_ignoring_missing(Kind.ENGINE_IMAGE, ei.name)
        self._events.event(
            ei,
            EventType.NORMAL,
            "Expired",
            f"Engine image {ei.spec.image} was unreferenced for more than "
            f"{self._ei_config.expiry_grace_seconds}s",
        )

    async def _cleanup(self, ei: EngineImage) -> None:
        await self._delete_instance_managers(ei)
        await self._delete_ignoring_missing(Kind.DAEMON_SET, daemon_workload_name(ei.spec.image))

    async def _delete_ignoring_missing(self, kind: Kind, key: str) -> None:
        try:
            await self._repo.delete(kind, key)
        except NotFoundError:
            pass

    # ---- Deployment ----

    def _label(self, key: str) -> str:
        return f"{self._config.label_prefix}/{key}"

    def _daemon_labels(self, ei: EngineImage) -> dict[str, str]:
        return {
            self._label("component"): "engine-image",
            self._label("engine-image"): ei.name,
            self._label("version"): DAEMON_LABEL_VERSION,
        }

    def _is_deprecated(self, ds: DaemonSet, ei: EngineImage) -> bool:
        labels = ds.metadata.labels
        if all(labels.get(k) == v for k, v in DEPRECATED_DAEMON_LABELS.items()):
            return True
        return any(labels.get(k) != v for k, v in self._daemon_labels(ei).items())

    async def _sync_deployment(
        self, ei: EngineImage, status: EngineImageStatus, now: datetime
    ) -> None:
        ds_name = daemon_workload_name(ei.spec.image)
        try:
            ds: DaemonSet | None = await self._repo.get(Kind.DAEMON_SET, ds_name)
        except NotFoundError:
            ds = None

        if status.state == EngineImageState.INCOMPATIBLE:
            await self._delete_instance_managers(ei)
            return

        if ds is not None and self._is_deprecated(ds, ei):
            self._log.info(
                "engine_image.daemon_set.deprecated",
                engine_image=ei.name,
                daemon_set=ds_name,
                labels=ds.metadata.labels,
            )
            await self._delete_ignoring_missing(Kind.DAEMON_SET, ds_name)
            ds = None

        if ds is None:
            await self._create_daemon_set(ei)
            self._set_state(
                ei,
                status,
                EngineImageState.DEPLOYING,
                EngineImageConditionReason.DAEMON_SET_NOT_READY,
                f"Daemon set {ds_name} created",
                now,
            )
            return

        if ds.status.number_available < 1:
            self._set_state(
                ei,
                status,
                EngineImageState.DEPLOYING,
                EngineImageConditionReason.DAEMON_SET_NOT_READY,
                f"Daemon set {ds_name} has no available pods",
                now,
            )
            return

        if status.engine_version_details is None:
            timeout = self._config.probe_timeout_seconds
            try:
                status.engine_version_details = await asyncio.wait_for(
                    self._version_probe.fetch(ei.spec.image), timeout=timeout
                )
            except (ProbeError, TimeoutError) as e:
                message = e.message if isinstance(e, ProbeError) else f"timed out after {timeout}s"
                self._log.warning(
                    "engine_image.version.unavailable",
                    engine_image=ei.name,
                    error=message,
                )
                self._set_state(
                    ei,
                    status,
                    EngineImageState.DEPLOYING,
                    EngineImageConditionReason.BINARY_UNAVAILABLE,
                    message,
                    now,
                )
                return

        details = status.engine_version_details
        if not is_compatible(details, self._expected_range):
            message = (
                f"Engine CLI API {details.cli_api_min_version}..{details.cli_api_version} "
                f"does not overlap {self._expected_range.min_version}.."
                f"{self._expected_range.max_version}"
            )
            self._set_state(
                ei,
                status,
                EngineImageState.INCOMPATIBLE,
                EngineImageConditionReason.INCOMPATIBLE_VERSION,
                message,
                now,
            )
            self._events.event(ei, EventType.WARNING, "Incompatible", message)
            await self._delete_instance_managers(ei)
            return

        pending = await self._sync_instance_managers(ei)
        if pending:
            self._set_state(
                ei,
                status,
                EngineImageState.DEPLOYING,
                EngineImageConditionReason.INSTANCE_MANAGER_NOT_RUNNING,
                f"Instance managers not running: {', '.join(pending)}",
                now,
            )
            return

        was_ready = get_condition(status.conditions, EngineImageConditionType.READY)
        self._set_state(ei, status, EngineImageState.READY, "", "", now)
        if was_ready.status != ConditionStatus.TRUE:
            self._events.event(
                ei, EventType.NORMAL, "Ready", f"Engine image {ei.spec.image} is ready"
            )

    def _owner_reference(self, ei: EngineImage) -> OwnerReference:
        return OwnerReference(
            api_version=self._owner_api_version,
            kind=Kind.ENGINE_IMAGE.value,
            name=ei.name,
            uid=ei.metadata.uid or "",
            controller=True,
        )

    async def _create_daemon_set(self, ei: EngineImage) -> None:
        labels = self._daemon_labels(ei)
        name = daemon_workload_name(ei.spec.image)
        binary_dir = f"{self._ei_config.binary_root}/{engine_binary_directory(ei.spec.image)}"

        ds = DaemonSet(
            metadata=ObjectMeta(
                name=name,
                namespace=self._config.namespace,
                labels=labels,
                owner_references=[self._owner_reference(ei)],
            ),
            spec=DaemonSetSpec(
                selector=LabelSelector(match_labels=labels),
                template=PodTemplateSpec(
                    metadata=ObjectMeta(name=name, labels=labels),
                    spec=PodSpec(
                        service_account_name=self._ei_config.service_account,
                        containers=[
                            Container(
                                name=name,
                                image=ei.spec.image,
                                command=["/bin/bash"],
                                args=[
                                    "-c",
                                    f"cp /usr/local/bin/longhorn* {BINARY_MOUNT_PATH} && "
                                    "echo installed && "
                                    f"trap 'rm {BINARY_MOUNT_PATH}longhorn* && echo cleaned up' EXIT && "
                                    "sleep infinity",
                                ],
                                volume_mounts=[
                                    VolumeMount(name="data", mount_path=BINARY_MOUNT_PATH)
                                ],
                            )
                        ],
                        volumes=[PodVolume(name="data", host_path=HostPathSource(path=binary_dir))],
                    ),
                ),
            ),
        )
        try:
            await self._repo.create(ds)
        except AlreadyExistsError:
            # Deletion of a deprecated workload may still be in progress
            self._log.info("engine_image.daemon_set.exists", daemon_set=name)
            return
        self._log.info("engine_image.daemon_set.created", engine_image=ei.name, daemon_set=name)

    # ---- Instance managers ----

    async def _sync_instance_managers(self, ei: EngineImage) -> list[str]:
        """Ensure each node has its instance managers; return those not running."""
        image = ei.spec.image
        existing = {
            im.name: im
            for im in await self._repo.list_by_index(
                Kind.INSTANCE_MANAGER, INSTANCE_MANAGER_BY_IMAGE, image
            )
        }

        pending: list[str] = []
        for node in await self._repo.list(Kind.NODE):
            if node.is_deleting:
                continue

            roles = [InstanceManagerType.ENGINE]
            replica_name = instance_manager_name(image, InstanceManagerType.REPLICA, node.name)
            if node.spec.disks:
                roles.append(InstanceManagerType.REPLICA)
            elif replica_name in existing:
                await self._delete_ignoring_missing(Kind.INSTANCE_MANAGER, replica_name)
                self._log.info(
                    "engine_image.instance_manager.removed",
                    instance_manager=replica_name,
                    node=node.name,
                    reason="no_disks",
                )

            for role in roles:
                name = instance_manager_name(image, role, node.name)
                im = existing.get(name)
                if im is None:
                    im = await self._create_instance_manager(ei, role, node.name, name)
                if im is None or im.status.current_state != InstanceManagerState.RUNNING:
                    pending.append(name)

        return pending

    async def _create_instance_manager(
        self,
        ei: EngineImage,
        role: InstanceManagerType,
        node_name: str,
        name: str,
    ) -> InstanceManager | None:
        im = InstanceManager(
            metadata=ObjectMeta(
                name=name,
                namespace=self._config.namespace,
                labels={
                    self._label("component"): "instance-manager",
                    self._label("instance-manager-type"): role.value,
                    self._label("engine-image"): ei.name,
                    self._label("node"): node_name,
                },
                owner_references=[self._owner_reference(ei)],
            ),
            spec=InstanceManagerSpec(
                image=ei.spec.image,
                node_id=node_name,
                type=role,
                engine_image=ei.name,
            ),
        )
        try:
            created = await self._repo.create(im)
        except AlreadyExistsError:
            return None
        self._log.info(
            "engine_image.instance_manager.created",
            engine_image=ei.name,
            instance_manager=name,
            node=node_name,
            type=role.value,
        )
        return created

    async def _delete_instance_managers(self, ei: EngineImage) -> None:
        for im in await self._repo.list_by_index(
            Kind.INSTANCE_MANAGER, INSTANCE_MANAGER_BY_IMAGE, ei.spec.image
        ):
            await self._delete_ignoring_missing(Kind.INSTANCE_MANAGER, im.name)
            self._log.info(
                "engine_image.instance_manager.removed",
                instance_manager=im.name,
                engine_image=ei.name,
            )
