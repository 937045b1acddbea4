"""Controller manager and its FastAPI lifespan integration."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import structlog

from berth.controllers.base import BaseController
from berth.controllers.engine_image import EngineImageController
from berth.controllers.kubernetes import KubernetesController
from berth.controllers.node import NodeController
from berth.datastore import Repository, create_repository
from berth.events import EventRecorder, LoggingEventRecorder
from berth.probes import BinaryVersionProbe, StatvfsDiskProbe
from berth.utils.datetime import Clock, utcnow

if TYPE_CHECKING:
    from berth.config import Settings
    from berth.probes import DiskProbe, EngineVersionProbe

logger = structlog.get_logger()


class ControllerManager:
    """Owns the repository and every controller.

    Responsibilities:
    - Build controllers and wire repository changes to their queues
    - Ensure the default engine image exists
    - Run controller workers and the periodic resync loop

    Usage:
        manager = ControllerManager(settings)
        await manager.start()
        ...
        await manager.stop()
    """

    def __init__(
        self,
        settings: "Settings",
        repository: Repository | None = None,
        disk_probe: "DiskProbe | None" = None,
        version_probe: "EngineVersionProbe | None" = None,
        events: EventRecorder | None = None,
        now: Clock = utcnow,
    ) -> None:
        self._settings = settings
        self._repo = repository or create_repository(settings)
        events = events or LoggingEventRecorder()
        controller_config = settings.controller

        self.node_controller = NodeController(
            self._repo,
            controller_config,
            settings.node,
            disk_probe or StatvfsDiskProbe(),
            events=events,
            now=now,
        )
        self.engine_image_controller = EngineImageController(
            self._repo,
            controller_config,
            settings.engine_image,
            version_probe
            or BinaryVersionProbe(
                settings.engine_image.binary_root,
                timeout=controller_config.probe_timeout_seconds,
            ),
            k8s_config=settings.k8s,
            events=events,
            now=now,
        )
        self.kubernetes_controller = KubernetesController(
            self._repo, controller_config, events=events, now=now
        )
        self.controllers: list[BaseController] = [
            self.node_controller,
            self.engine_image_controller,
            self.kubernetes_controller,
        ]

        self._log = logger.bind(service="controller_manager")
        self._watching = False
        self._running = False
        self._task: asyncio.Task | None = None
        self._resync_lock = asyncio.Lock()

    @property
    def repository(self) -> Repository:
        return self._repo

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def controller_id(self) -> str:
        return self._settings.controller.get_controller_id()

    async def start(self) -> None:
        if self._running:
            self._log.warning("manager.already_running")
            return

        await self._repo.start()
        if not self._watching:
            for controller in self.controllers:
                controller.watch()
            self._watching = True

        await self.resync()

        for controller in self.controllers:
            await controller.start(self._settings.controller.workers)

        self._running = True
        self._task = asyncio.create_task(self._resync_loop())
        self._log.info(
            "manager.started",
            controller_id=self.controller_id,
            backend=self._settings.backend,
            resync_seconds=self._settings.controller.resync_seconds,
        )

    async def stop(self) -> None:
        if not self._running:
            return

        self._log.info("manager.stopping")
        self._running = False

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        for controller in self.controllers:
            await controller.stop()
        await self._repo.stop()

        self._log.info("manager.stopped")

    async def resync(self) -> dict[str, int]:
        """Ensure the default engine image and enqueue every key.

        Returns the number of keys enqueued per controller.
        """
        async with self._resync_lock:
            await self.engine_image_controller.ensure_default_engine_image()
            counts = {c.name: await c.enqueue_all() for c in self.controllers}
        self._log.debug("manager.resync", **counts)
        return counts

    def status(self) -> dict[str, Any]:
        return {
            "controller_id": self.controller_id,
            "backend": self._settings.backend,
            "running": self._running,
            "controllers": {
                c.name: {"running": c.is_running, "queue_depth": len(c.queue)}
                for c in self.controllers
            },
        }

    async def _resync_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._settings.controller.resync_seconds)
            except asyncio.CancelledError:
                break
            try:
                await self.resync()
            except Exception as e:
                self._log.exception("manager.resync.failed", error=str(e))


# Global manager instance
_manager: ControllerManager | None = None


async def init_manager(settings: "Settings") -> ControllerManager:
    """Create and start the controller manager.

    Called during FastAPI lifespan startup. A failed start is logged and the
    manager is kept so the admin API can report it and retry resync.
    """
    global _manager

    _manager = ControllerManager(settings)
    try:
        await _manager.start()
    except Exception as e:
        logger.exception("manager.start.failed", error=str(e))
    return _manager


async def shutdown_manager() -> None:
    """Stop the controller manager gracefully."""
    global _manager

    if _manager is not None:
        await _manager.stop()
        _manager = None


def get_manager() -> ControllerManager | None:
    """Get the current manager instance (for API handlers and tests)."""
    return _manager


def set_manager(manager: ControllerManager | None) -> None:
    global _manager
    _manager = manager
