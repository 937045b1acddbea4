"""Unit tests for condition map helpers."""

from __future__ import annotations

from datetime import timedelta

from berth.controllers.conditions import get_condition, set_condition
from berth.models import ConditionStatus, NodeConditionReason, NodeConditionType
from tests.fakes import FIXED_NOW


def test_missing_condition_is_unknown():
    cond = get_condition({}, NodeConditionType.READY)

    assert cond.type == "Ready"
    assert cond.status == ConditionStatus.UNKNOWN
    assert cond.last_transition_time is None


def test_transition_time_changes_only_with_status():
    conditions = {}
    later = FIXED_NOW + timedelta(minutes=5)

    set_condition(conditions, NodeConditionType.READY, ConditionStatus.TRUE, now=FIXED_NOW)
    set_condition(conditions, NodeConditionType.READY, ConditionStatus.TRUE, now=later)
    cond = conditions[NodeConditionType.READY]
    assert cond.last_transition_time == FIXED_NOW
    assert cond.last_probe_time == later

    flipped = FIXED_NOW + timedelta(minutes=10)
    set_condition(
        conditions,
        NodeConditionType.READY,
        ConditionStatus.FALSE,
        NodeConditionReason.MANAGER_POD_DOWN,
        "down",
        flipped,
    )
    cond = conditions[NodeConditionType.READY]
    assert cond.last_transition_time == flipped
    assert cond.reason == "ManagerPodDown"
    assert type(cond.reason) is str
    assert cond.message == "down"
