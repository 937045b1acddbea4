"""In-process object store.

Serves as the complete backend for the memory mode and tests, and as the
informer cache behind KubernetesRepository.
"""

from __future__ import annotations

import asyncio
import itertools
import uuid
from collections import defaultdict

import structlog

from berth.datastore.base import (
    ChangeEvent,
    ChangeHandler,
    ChangeType,
    IndexFunc,
    Repository,
    T,
)
from berth.errors import AlreadyExistsError, ConflictError, NotFoundError
from berth.models import Kind, Resource
from berth.utils.datetime import Clock, utcnow

logger = structlog.get_logger()


def _matches(obj: Resource, selector: dict[str, str] | None) -> bool:
    if not selector:
        return True
    labels = obj.metadata.labels
    return all(labels.get(k) == v for k, v in selector.items())


class InMemoryRepository(Repository):
    """Concurrency-safe indexed object store with resource versions.

    Every stored object and every returned object is a deep copy, so callers
    may mutate what they read. Change handlers run after the mutation is
    committed and outside the store lock.
    """

    def __init__(self, now: Clock = utcnow) -> None:
        self._now = now
        self._objects: dict[Kind, dict[str, Resource]] = defaultdict(dict)
        self._indexers: dict[Kind, dict[str, IndexFunc]] = defaultdict(dict)
        # kind -> index name -> value -> keys
        self._indices: dict[Kind, dict[str, dict[str, set[str]]]] = defaultdict(
            lambda: defaultdict(lambda: defaultdict(set))
        )
        self._handlers: dict[Kind, list[ChangeHandler]] = defaultdict(list)
        self._versions = itertools.count(1)
        self._lock = asyncio.Lock()
        self._log = logger.bind(repository="memory")

    # ---- Reads ----

    async def get(self, kind: Kind, key: str) -> Resource:
        obj = self._objects[kind].get(key)
        if obj is None:
            raise NotFoundError(
                f"{kind.value} {key} not found",
                details={"kind": kind.value, "key": key},
            )
        return obj.model_copy(deep=True)

    async def list(
        self, kind: Kind, selector: dict[str, str] | None = None
    ) -> list[Resource]:
        return [
            obj.model_copy(deep=True)
            for _, obj in sorted(self._objects[kind].items())
            if _matches(obj, selector)
        ]

    async def list_by_index(self, kind: Kind, index: str, value: str) -> list[Resource]:
        if index not in self._indexers[kind]:
            raise KeyError(f"index {index!r} is not registered for {kind.value}")
        keys = self._indices[kind][index].get(value, set())
        objects = self._objects[kind]
        return [objects[k].model_copy(deep=True) for k in sorted(keys) if k in objects]

    def keys(self, kind: Kind) -> list[str]:
        return sorted(self._objects[kind])

    # ---- Writes ----

    async def create(self, obj: T) -> T:
        kind = obj.KIND
        async with self._lock:
            key = obj.key
            if key in self._objects[kind]:
                raise AlreadyExistsError(
                    f"{kind.value} {key} already exists",
                    details={"kind": kind.value, "key": key},
                )
            stored = obj.model_copy(deep=True)
            stored.metadata.resource_version = str(next(self._versions))
            stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
            if stored.metadata.creation_timestamp is None:
                stored.metadata.creation_timestamp = self._now()
            self._store(kind, key, stored)

        await self._notify(ChangeEvent(kind=kind, type=ChangeType.ADDED, obj=stored))
        return stored.model_copy(deep=True)

    async def update(self, obj: T) -> T:
        return await self._replace(obj)

    async def update_status(self, obj: T) -> T:
        return await self._replace(obj, status_only=True)

    async def _replace(self, obj: T, status_only: bool = False) -> T:
        kind = obj.KIND
        async with self._lock:
            key = obj.key
            current = self._objects[kind].get(key)
            if current is None:
                raise NotFoundError(
                    f"{kind.value} {key} not found",
                    details={"kind": kind.value, "key": key},
                )
            if (
                obj.metadata.resource_version is not None
                and obj.metadata.resource_version != current.metadata.resource_version
            ):
                raise ConflictError(
                    f"{kind.value} {key} was modified concurrently",
                    details={
                        "kind": kind.value,
                        "key": key,
                        "expected": obj.metadata.resource_version,
                        "actual": current.metadata.resource_version,
                    },
                )

            if status_only and hasattr(current, "status"):
                stored = current.model_copy(deep=True)
                stored.status = obj.status.model_copy(deep=True)
            else:
                stored = obj.model_copy(deep=True)
                stored.metadata.uid = current.metadata.uid
                stored.metadata.creation_timestamp = current.metadata.creation_timestamp
            stored.metadata.resource_version = str(next(self._versions))
            self._store(kind, key, stored)

        await self._notify(
            ChangeEvent(kind=kind, type=ChangeType.MODIFIED, obj=stored, old=current)
        )
        return stored.model_copy(deep=True)

    async def delete(self, kind: Kind, key: str) -> None:
        async with self._lock:
            current = self._objects[kind].get(key)
            if current is None:
                raise NotFoundError(
                    f"{kind.value} {key} not found",
                    details={"kind": kind.value, "key": key},
                )
            self._remove(kind, key)

        await self._notify(ChangeEvent(kind=kind, type=ChangeType.DELETED, obj=current))

    # ---- Cache maintenance (used by remote backends) ----

    async def observe(self, obj: Resource) -> None:
        """Store an object as returned by the server, keeping its version."""
        kind = obj.KIND
        async with self._lock:
            key = obj.key
            old = self._objects[kind].get(key)
            stored = obj.model_copy(deep=True)
            self._store(kind, key, stored)

        change = ChangeType.ADDED if old is None else ChangeType.MODIFIED
        await self._notify(ChangeEvent(kind=kind, type=change, obj=stored, old=old))

    async def forget(self, kind: Kind, key: str) -> None:
        """Drop an object the server reported as deleted."""
        async with self._lock:
            old = self._objects[kind].get(key)
            if old is None:
                return
            self._remove(kind, key)

        await self._notify(ChangeEvent(kind=kind, type=ChangeType.DELETED, obj=old))

    async def replace(self, kind: Kind, objects: list[Resource]) -> None:
        """Make the cached set of ``kind`` exactly ``objects`` (a relist).

        Objects whose resourceVersion is unchanged produce no event.
        """
        events: list[ChangeEvent] = []
        async with self._lock:
            incoming = {obj.key: obj for obj in objects}
            for key, old in list(self._objects[kind].items()):
                if key not in incoming:
                    self._remove(kind, key)
                    events.append(ChangeEvent(kind=kind, type=ChangeType.DELETED, obj=old))
            for key, obj in incoming.items():
                old = self._objects[kind].get(key)
                if old is not None and (
                    old.metadata.resource_version == obj.metadata.resource_version
                ):
                    continue
                stored = obj.model_copy(deep=True)
                self._store(kind, key, stored)
                change = ChangeType.ADDED if old is None else ChangeType.MODIFIED
                events.append(ChangeEvent(kind=kind, type=change, obj=stored, old=old))

        for event in events:
            await self._notify(event)

    # ---- Indexing & subscriptions ----

    def add_index(self, kind: Kind, name: str, func: IndexFunc) -> None:
        if name in self._indexers[kind]:
            return
        self._indexers[kind][name] = func
        index = self._indices[kind][name]
        for key, obj in self._objects[kind].items():
            for value in func(obj):
                index[value].add(key)

    def subscribe(self, kind: Kind, handler: ChangeHandler) -> None:
        self._handlers[kind].append(handler)

    def _store(self, kind: Kind, key: str, obj: Resource) -> None:
        if key in self._objects[kind]:
            self._unindex(kind, key)
        self._objects[kind][key] = obj
        for name, func in self._indexers[kind].items():
            index = self._indices[kind][name]
            for value in func(obj):
                index[value].add(key)

    def _remove(self, kind: Kind, key: str) -> None:
        self._unindex(kind, key)
        del self._objects[kind][key]

    def _unindex(self, kind: Kind, key: str) -> None:
        obj = self._objects[kind][key]
        for name, func in self._indexers[kind].items():
            index = self._indices[kind][name]
            for value in func(obj):
                keys = index.get(value)
                if keys is None:
                    continue
                keys.discard(key)
                if not keys:
                    del index[value]

    async def _notify(self, event: ChangeEvent) -> None:
        for handler in self._handlers[event.kind]:
            try:
                await handler(event)
            except Exception as e:
                self._log.exception(
                    "repository.handler.failed",
                    kind=event.kind.value,
                    key=event.obj.key,
                    error=str(e),
                )
