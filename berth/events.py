"""Operator-visible events emitted by the controllers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

import structlog

from berth.models import Resource

logger = structlog.get_logger()


class EventType(str, Enum):
    NORMAL = "Normal"
    WARNING = "Warning"


class EventRecorder(ABC):
    """Sink for events about objects."""

    @abstractmethod
    def event(self, obj: Resource, type: EventType, reason: str, message: str) -> None:
        ...


class LoggingEventRecorder(EventRecorder):
    """Records events as structured log lines."""

    def __init__(self, component: str = "berth-manager") -> None:
        self._log = logger.bind(component=component)

    def event(self, obj: Resource, type: EventType, reason: str, message: str) -> None:
        log = self._log.warning if type == EventType.WARNING else self._log.info
        log(
            "event.recorded",
            kind=obj.KIND.value,
            name=obj.name,
            type=type.value,
            reason=reason,
            message=message,
        )
