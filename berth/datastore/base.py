"""Repository interface.

All controllers read and write cluster objects through a Repository. Reads
return private copies; writes are compare-and-write on resourceVersion and
raise ConflictError when the caller's copy is stale.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

from berth.models import Kind, Resource

T = TypeVar("T", bound=Resource)


class ChangeType(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass
class ChangeEvent:
    """A committed change to one object."""

    kind: Kind
    type: ChangeType
    obj: Resource
    old: Resource | None = None


ChangeHandler = Callable[[ChangeEvent], Awaitable[None]]
IndexFunc = Callable[[Resource], Iterable[str]]


class Repository(ABC):
    """Abstract object store."""

    @abstractmethod
    async def get(self, kind: Kind, key: str) -> Resource:
        """Get one object.

        Raises:
            NotFoundError: If no object is stored under ``key``
        """
        ...

    @abstractmethod
    async def list(
        self, kind: Kind, selector: dict[str, str] | None = None
    ) -> list[Resource]:
        """List objects whose labels contain every pair in ``selector``."""
        ...

    @abstractmethod
    async def list_by_index(self, kind: Kind, index: str, value: str) -> list[Resource]:
        """List objects an index maps to ``value``."""
        ...

    @abstractmethod
    async def create(self, obj: T) -> T:
        """Create an object.

        Raises:
            AlreadyExistsError: If the key is taken
        """
        ...

    @abstractmethod
    async def update(self, obj: T) -> T:
        """Replace an object (spec and metadata).

        Raises:
            NotFoundError: If the object is gone
            ConflictError: If ``obj.metadata.resource_version`` is stale
        """
        ...

    @abstractmethod
    async def update_status(self, obj: T) -> T:
        """Replace an object's status; same failure modes as update()."""
        ...

    @abstractmethod
    async def delete(self, kind: Kind, key: str) -> None:
        """Delete an object.

        Raises:
            NotFoundError: If the object is already gone
        """
        ...

    @abstractmethod
    def add_index(self, kind: Kind, name: str, func: IndexFunc) -> None:
        """Register a secondary index; idempotent per (kind, name)."""
        ...

    @abstractmethod
    def subscribe(self, kind: Kind, handler: ChangeHandler) -> None:
        """Call ``handler`` after every committed change of ``kind``."""
        ...

    async def start(self) -> None:
        """Begin serving (initial sync for remote backends)."""

    async def stop(self) -> None:
        """Stop background work and release connections."""
