"""Object repository backends."""

from __future__ import annotations

from typing import TYPE_CHECKING

from berth.datastore.base import ChangeEvent, ChangeHandler, ChangeType, Repository
from berth.datastore.memory import InMemoryRepository

if TYPE_CHECKING:
    from berth.config import Settings


def create_repository(settings: "Settings") -> Repository:
    """Build the repository selected by ``settings.backend``."""
    if settings.backend == "memory":
        return InMemoryRepository()
    elif settings.backend == "k8s":
        from berth.datastore.k8s import KubernetesRepository

        return KubernetesRepository(settings.k8s, namespace=settings.controller.namespace)
    else:
        raise ValueError(f"Unsupported backend: {settings.backend}")


__all__ = [
    "ChangeEvent",
    "ChangeHandler",
    "ChangeType",
    "InMemoryRepository",
    "Repository",
    "create_repository",
]
