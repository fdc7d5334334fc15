"""
Tests for Dose State Machine
"""

import pytest
from datetime import datetime, timedelta
from types import SimpleNamespace

from exceptions import InvalidTransitionError
from models import DoseStatus
from services.dose_state_machine import Actor, DoseStateMachine


SCHEDULED = datetime(2024, 6, 3, 8, 0)


@pytest.fixture
def machine():
    return DoseStateMachine(grace_minutes=30, snooze_minutes=10, on_time_window_minutes=30, early_window_minutes=5)


def row(status, snoozed_until=None):
    return SimpleNamespace(status=status, snoozed_until=snoozed_until)


class TestTimingClassification:

    @pytest.mark.unit
    @pytest.mark.parametrize("offset,on_time,early", [
        (-30, True, True),
        (-8, True, True),
        (5, True, True),
        (6, True, False),
        (30, True, False),
        (31, False, False),
        (-31, False, False),
    ])
    def test_windows(self, machine, offset, on_time, early):
        timing = machine.classify_timing(SCHEDULED, SCHEDULED + timedelta(minutes=offset))

        assert timing.on_time is on_time
        assert timing.early is early
        assert timing.minutes_from_schedule == offset


class TestUserTransitions:

    @pytest.mark.unit
    def test_taken_from_absent_row(self, machine):
        plan = machine.plan(None, "taken", Actor.USER, SCHEDULED, SCHEDULED + timedelta(minutes=2))

        assert not plan.noop
        assert plan.values == {"was_on_time": True, "was_early": True}
        assert plan.timing.on_time

    @pytest.mark.unit
    def test_snooze_sets_resume_instant(self, machine):
        now = SCHEDULED + timedelta(minutes=1)

        plan = machine.plan(row("pending"), "snoozed", Actor.USER, SCHEDULED, now)

        assert plan.values == {"snoozed_until": now + timedelta(minutes=10), "was_snoozed": True}

    @pytest.mark.unit
    def test_snoozed_can_be_taken(self, machine):
        plan = machine.plan(row("snoozed", SCHEDULED + timedelta(minutes=10)), "taken", Actor.USER, SCHEDULED, SCHEDULED + timedelta(minutes=4))

        assert plan.target == DoseStatus.TAKEN.value

    @pytest.mark.unit
    def test_same_terminal_status_is_noop(self, machine):
        plan = machine.plan(row("taken"), "taken", Actor.USER, SCHEDULED, SCHEDULED)

        assert plan.noop

    @pytest.mark.unit
    @pytest.mark.parametrize("current,target", [
        ("taken", "skipped"),
        ("skipped", "taken"),
        ("missed", "taken"),
        ("taken", "snoozed"),
    ])
    def test_terminal_rows_reject_other_targets(self, machine, current, target):
        with pytest.raises(InvalidTransitionError):
            machine.plan(row(current), target, Actor.USER, SCHEDULED, SCHEDULED + timedelta(hours=1))

    @pytest.mark.unit
    def test_cannot_return_to_pending(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.plan(row("snoozed"), "pending", Actor.USER, SCHEDULED, SCHEDULED)

    @pytest.mark.unit
    def test_unknown_status(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.plan(row("pending"), "forgotten", Actor.USER, SCHEDULED, SCHEDULED)


class TestMissedTransition:

    @pytest.mark.unit
    def test_users_cannot_mark_missed(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.plan(row("pending"), "missed", Actor.USER, SCHEDULED, SCHEDULED + timedelta(hours=1))

    @pytest.mark.unit
    def test_grace_period_must_elapse(self, machine):
        with pytest.raises(InvalidTransitionError):
            machine.plan(row("pending"), "missed", Actor.SYSTEM, SCHEDULED, SCHEDULED + timedelta(minutes=30))

        plan = machine.plan(row("pending"), "missed", Actor.SYSTEM, SCHEDULED, SCHEDULED + timedelta(minutes=31))
        assert plan.target == DoseStatus.MISSED.value

    @pytest.mark.unit
    def test_active_snooze_blocks_missed(self, machine):
        now = SCHEDULED + timedelta(minutes=40)

        with pytest.raises(InvalidTransitionError):
            machine.plan(row("snoozed", now + timedelta(minutes=5)), "missed", Actor.SYSTEM, SCHEDULED, now)

        plan = machine.plan(row("snoozed", now - timedelta(minutes=1)), "missed", Actor.SYSTEM, SCHEDULED, now)
        assert not plan.noop

    @pytest.mark.unit
    def test_effective_status(self, machine):
        now = SCHEDULED + timedelta(minutes=20)

        assert machine.effective_status(None, now) == "pending"
        assert machine.effective_status(row("snoozed", now - timedelta(minutes=1)), now) == "pending"
        assert machine.effective_status(row("snoozed", now + timedelta(minutes=1)), now) == "snoozed"
        assert machine.effective_status(row("taken"), now) == "taken"
