"""Controller driver: work queue, workers and failure handling.

Every controller is a ``sync(key)`` function plus the wiring that turns
repository changes into keys. The driver owns everything else:

- de-duplicated keys; a key is never synced by two workers at once
- a key re-added while being synced is synced again afterwards
- NotFoundError: the object is gone, nothing to do
- ConflictError: stale read, retry at once
- ValidationError: cannot succeed until the object changes, drop
- anything else: exponential backoff, dropped after max_retries; a dropped
  key is reported with a SyncFailed event and, for kinds that carry
  conditions, a persistent Synced=False condition
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import structlog

from berth.datastore.base import ChangeEvent, ChangeType
from berth.errors import BerthError, ConflictError, NotFoundError, ValidationError
from berth.events import EventRecorder, EventType, LoggingEventRecorder
from berth.models import Kind, Resource
from berth.utils.datetime import Clock, utcnow

if TYPE_CHECKING:
    from berth.config import ControllerConfig
    from berth.datastore import Repository

logger = structlog.get_logger()

SYNC_FAILED_REASON = "SyncFailed"


class WorkQueue:
    """De-duplicating asyncio key queue with per-key backoff."""

    def __init__(self, backoff_base: float = 0.5, backoff_max: float = 60.0) -> None:
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max

        self._queue: asyncio.Queue[str] = asyncio.Queue()
        # Keys waiting to be synced (queued, or re-added while processing)
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._retries: dict[str, int] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._dirty)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: str) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            # Picked up again by done()
            return
        self._queue.put_nowait(key)

    async def get(self) -> str:
        """Wait for the next key and mark it as processing."""
        key = await self._queue.get()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def done(self, key: str) -> None:
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.put_nowait(key)

    def backoff(self, key: str) -> float:
        retries = self._retries.get(key, 0)
        return min(self._backoff_base * (2**retries), self._backoff_max)

    def add_rate_limited(self, key: str) -> float:
        """Re-add ``key`` after its backoff delay; returns the delay."""
        if self._shutting_down:
            return 0.0
        delay = self.backoff(key)
        self._retries[key] = self._retries.get(key, 0) + 1

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire, key)
        return delay

    def _fire(self, key: str) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def num_requeues(self, key: str) -> int:
        return self._retries.get(key, 0)

    def forget(self, key: str) -> None:
        self._retries.pop(key, None)

    def shutdown(self) -> None:
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()


def is_status_only(event: ChangeEvent) -> bool:
    """Whether a modification left spec and deletion state untouched."""
    old = event.old
    return (
        event.type == ChangeType.MODIFIED
        and old is not None
        and old.spec == event.obj.spec
        and old.metadata.deletion_timestamp == event.obj.metadata.deletion_timestamp
    )


class BaseController(ABC):
    """Base class for reconciliation controllers.

    Subclasses implement:
    - ``sync(key)``: one idempotent pass for one key
    - ``list_keys()``: every key, for periodic resync
    - ``watch()``: subscribe to repository changes and enqueue keys
    """

    name: str = "controller"
    kind: Kind

    def __init__(
        self,
        repository: "Repository",
        config: "ControllerConfig",
        events: EventRecorder | None = None,
        now: Clock = utcnow,
    ) -> None:
        self._repo = repository
        self._config = config
        self._events = events or LoggingEventRecorder()
        self._now = now
        self._controller_id = config.get_controller_id()
        self._queue = WorkQueue(
            backoff_base=config.backoff_base_seconds,
            backoff_max=config.backoff_max_seconds,
        )
        self._log = logger.bind(controller=self.name)

        self._running = False
        self._workers: list[asyncio.Task] = []

        self.register_indexes()

    @property
    def controller_id(self) -> str:
        return self._controller_id

    @property
    def queue(self) -> WorkQueue:
        return self._queue

    @property
    def is_running(self) -> bool:
        return self._running

    def register_indexes(self) -> None:
        """Register repository indexes that ``sync`` relies on."""

    def watch(self) -> None:
        """Subscribe to repository changes."""

    @abstractmethod
    async def sync(self, key: str) -> None:
        ...

    @abstractmethod
    async def list_keys(self) -> list[str]:
        ...

    def enqueue(self, key: str | None) -> None:
        if key:
            self._queue.add(key)

    async def enqueue_all(self) -> int:
        keys = await self.list_keys()
        for key in keys:
            self.enqueue(key)
        return len(keys)

    # ---- Driver ----

    async def process_next(self) -> None:
        """Take one key from the queue and sync it."""
        key = await self._queue.get()
        try:
            await self._process(key)
        finally:
            self._queue.done(key)

    async def _process(self, key: str) -> None:
        try:
            await self.sync(key)
        except NotFoundError as e:
            self._log.debug("controller.sync.not_found", key=key, error=e.message)
            self._queue.forget(key)
        except ConflictError as e:
            self._log.debug("controller.sync.conflict", key=key, error=e.message)
            self._queue.add(key)
        except ValidationError as e:
            self._log.warning("controller.sync.invalid", key=key, error=e.message)
            self._queue.forget(key)
        except Exception as e:
            retries = self._queue.num_requeues(key)
            if retries < self._config.max_retries:
                delay = self._queue.add_rate_limited(key)
                self._log.warning(
                    "controller.sync.retry",
                    key=key,
                    retries=retries + 1,
                    delay_seconds=delay,
                    error=str(e),
                )
                return
            self._log.exception(
                "controller.sync.dropped",
                key=key,
                retries=retries,
                error=str(e),
            )
            self._queue.forget(key)
            await self._record_drop(key, e)
        else:
            self._queue.forget(key)

    async def _record_drop(self, key: str, error: Exception) -> None:
        try:
            obj = await self._repo.get(self.kind, key)
        except NotFoundError:
            return
        message = f"{self.name} gave up after {self._config.max_retries} retries: {error}"
        self._events.event(obj, EventType.WARNING, SYNC_FAILED_REASON, message)
        try:
            await self.mark_sync_failed(obj, message)
        except BerthError as e:
            # The next resync retries the key anyway
            self._log.warning("controller.sync_failed.not_recorded", key=key, error=e.message)

    async def mark_sync_failed(self, obj: Resource, message: str) -> None:
        """Persist a dropped sync on ``obj``; kinds without conditions skip it."""

    async def start(self, workers: int | None = None) -> None:
        """Start worker tasks; call stop() to shut down."""
        if self._running:
            self._log.warning("controller.already_running")
            return

        count = workers or self._config.workers
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"{self.name}-worker-{i}")
            for i in range(count)
        ]
        self._log.info("controller.started", workers=count)

    async def stop(self) -> None:
        """Stop workers; an in-flight sync is cancelled."""
        if not self._running:
            return

        self._log.info("controller.stopping")
        self._running = False
        self._queue.shutdown()

        for task in self._workers:
            task.cancel()
        for task in self._workers:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers = []

        self._log.info("controller.stopped")

    async def _worker(self, index: int) -> None:
        while self._running:
            try:
                await self.process_next()
            except Exception as e:
                self._log.exception("controller.worker.error", worker=index, error=str(e))
