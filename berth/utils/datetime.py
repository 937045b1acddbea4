"""Datetime helpers.

Provides UTC timestamp helpers without using deprecated ``datetime.utcnow()``.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Return current UTC time as a timezone-aware datetime.

    Kubernetes serializes timestamps with a ``Z`` suffix, so every timestamp
    kept on resource status is aware. Comparing aware and naive values raises,
    which keeps clock mix-ups loud.
    """
    return datetime.now(UTC)


def seconds_since(ts: datetime, now: datetime) -> float:
    """Elapsed seconds between ``ts`` and ``now`` (naive values are read as UTC)."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return (now - ts).total_seconds()
