"""Condition map helpers."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TypeVar

from berth.models import Condition, ConditionStatus

K = TypeVar("K", bound=str)


def get_condition(conditions: dict[K, Condition], ctype: K) -> Condition:
    """Return the condition of ``ctype``, or an Unknown placeholder."""
    cond = conditions.get(ctype)
    if cond is None:
        return Condition(type=_value(ctype), status=ConditionStatus.UNKNOWN)
    return cond


def set_condition(
    conditions: dict[K, Condition],
    ctype: K,
    status: ConditionStatus,
    reason: str = "",
    message: str = "",
    now: datetime | None = None,
) -> Condition:
    """Write a condition in place.

    lastProbeTime is always ``now``; lastTransitionTime is kept unless the
    status value changes (or was never set).
    """
    existing = conditions.get(ctype)
    transition = now
    if (
        existing is not None
        and existing.status == status
        and existing.last_transition_time is not None
    ):
        transition = existing.last_transition_time

    cond = Condition(
        type=_value(ctype),
        status=status,
        reason=_value(reason),
        message=message,
        last_probe_time=now,
        last_transition_time=transition,
    )
    conditions[ctype] = cond
    return cond


def _value(v: str) -> str:
    return v.value if isinstance(v, Enum) else v
