"""Tests for EscalationStateMachine levels and repeat policy."""

from __future__ import annotations

from datetime import timedelta

import pytest

from lonelycare.escalation import EscalationStateMachine
from lonelycare.models import AlertLevel, SubjectStatus


@pytest.fixture()
def machine() -> EscalationStateMachine:
    return EscalationStateMachine()


@pytest.fixture()
def status(t0) -> SubjectStatus:
    return SubjectStatus(subject_id="friend-1", last_activity_at=t0)


@pytest.mark.parametrize("elapsed, expected", [
    (timedelta(minutes=29), AlertLevel.NORMAL),
    (timedelta(minutes=31), AlertLevel.CAUTION),
    (timedelta(minutes=61), AlertLevel.WARNING),
    (timedelta(hours=2, minutes=1), AlertLevel.DANGER),
    (timedelta(hours=71), AlertLevel.DANGER),
    (timedelta(hours=72, minutes=1), AlertLevel.EMERGENCY),
])
def test_evaluate_thresholds(machine, status, t0, elapsed, expected):
    assert machine.evaluate(status, t0 + elapsed) == expected


def test_evaluate_negative_elapsed_is_normal(machine, status, t0):
    assert machine.evaluate(status, t0 - timedelta(hours=5)) == AlertLevel.NORMAL


def test_reset_on_activity_from_emergency(machine, status, t0):
    now = t0 + timedelta(hours=73)
    machine.refresh(status, now)
    machine.mark_notified(status, AlertLevel.EMERGENCY, now)
    machine.mark_notified(status, AlertLevel.DANGER, now)
    assert status.alert_level == AlertLevel.EMERGENCY

    assert machine.observe_activity(status, now)

    assert status.last_activity_at == now
    assert status.alert_level == AlertLevel.NORMAL
    assert status.last_notified_at == {}
    assert machine.evaluate(status, now) == AlertLevel.NORMAL


def test_stale_activity_is_ignored(machine, status, t0):
    assert not machine.observe_activity(status, t0 - timedelta(minutes=1))
    assert not machine.observe_activity(status, t0)
    assert status.last_activity_at == t0


def test_normal_is_never_due(machine, status, t0):
    assert not machine.is_notification_due(status, AlertLevel.NORMAL, t0)


def test_warning_is_due_once_per_escalation(machine, status, t0):
    now = t0 + timedelta(minutes=61)
    assert machine.is_notification_due(status, AlertLevel.WARNING, now)
    machine.mark_notified(status, AlertLevel.WARNING, now)

    for hours in (1, 6, 24, 500):
        assert not machine.is_notification_due(status, AlertLevel.WARNING, now + timedelta(hours=hours))

    # fresh escalation after a reset
    machine.observe_activity(status, now + timedelta(hours=1))
    later = now + timedelta(hours=2, minutes=2)
    assert machine.is_notification_due(status, AlertLevel.WARNING, later)


def test_danger_repeats_every_six_hours(machine, status, t0):
    entry = t0 + timedelta(hours=2, minutes=1)
    assert machine.is_notification_due(status, AlertLevel.DANGER, entry)
    machine.mark_notified(status, AlertLevel.DANGER, entry)

    assert not machine.is_notification_due(status, AlertLevel.DANGER, entry + timedelta(minutes=1))
    assert not machine.is_notification_due(status, AlertLevel.DANGER, entry + timedelta(hours=5, minutes=59))
    assert machine.is_notification_due(status, AlertLevel.DANGER, entry + timedelta(hours=6))

    machine.mark_notified(status, AlertLevel.DANGER, entry + timedelta(hours=6))
    assert not machine.is_notification_due(status, AlertLevel.DANGER, entry + timedelta(hours=11))
    assert machine.is_notification_due(status, AlertLevel.DANGER, entry + timedelta(hours=12))


def test_emergency_uses_its_own_interval(t0, status):
    machine = EscalationStateMachine(repeat_intervals={
        AlertLevel.CAUTION: timedelta(0),
        AlertLevel.WARNING: timedelta(0),
        AlertLevel.DANGER: timedelta(hours=6),
        AlertLevel.EMERGENCY: timedelta(hours=1),
    })
    entry = t0 + timedelta(hours=73)
    machine.mark_notified(status, AlertLevel.EMERGENCY, entry)
    assert not machine.is_notification_due(status, AlertLevel.EMERGENCY, entry + timedelta(minutes=59))
    assert machine.is_notification_due(status, AlertLevel.EMERGENCY, entry + timedelta(hours=1))


def test_notified_in_future_is_not_due(machine, status, t0):
    machine.mark_notified(status, AlertLevel.DANGER, t0 + timedelta(hours=10))
    assert not machine.is_notification_due(status, AlertLevel.DANGER, t0 + timedelta(hours=3))


def test_refresh_escalates(machine, status, t0):
    assert machine.refresh(status, t0 + timedelta(minutes=45)) == AlertLevel.CAUTION
    assert machine.refresh(status, t0 + timedelta(hours=3)) == AlertLevel.DANGER
    assert status.alert_level == AlertLevel.DANGER


def test_refresh_does_not_deescalate_on_backward_clock(machine, status, t0):
    machine.refresh(status, t0 + timedelta(hours=3))
    assert machine.refresh(status, t0 + timedelta(minutes=10)) == AlertLevel.DANGER
    assert status.alert_level == AlertLevel.DANGER
