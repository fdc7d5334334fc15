"""
Tests for Reminder Engine
At-most-once pre-dose reminders
"""

import asyncio

import pytest
from datetime import datetime, timedelta

from models import DispatchKind, DoseStatus
from services.dispatch_receipts import DispatchLeg, DispatchReceiptStore, dispatch_receipts, user_recipient
from services.dose_ledger import dose_ledger
from tools.scheduler import ObligationKey


MONDAY_8AM = datetime(2024, 6, 3, 8, 0)
USER = 1


@pytest.fixture
def key(morning_schedule):
    return ObligationKey(morning_schedule.id, MONDAY_8AM)


class TestReminderWindow:

    @pytest.mark.database
    @pytest.mark.parametrize("minutes_before,expected", [(16, 0), (15, 1), (10, 1), (5, 1), (4, 0)])
    def test_window_bounds_are_inclusive(self, session_factory, services, morning_schedule, minutes_before, expected):
        with session_factory() as session:
            candidates = services.reminders.find_candidates(session, MONDAY_8AM - timedelta(minutes=minutes_before))

        assert len(candidates) == expected

    @pytest.mark.asyncio
    async def test_taken_dose_gets_no_reminder(self, services, transport, key):
        await services.adherence.record_dose_action(key, "taken", MONDAY_8AM - timedelta(minutes=20))

        report = await services.reminders.run_reminder_sweep(MONDAY_8AM - timedelta(minutes=10))

        assert report.examined == 0
        assert transport.pushes == []

    @pytest.mark.asyncio
    async def test_inactive_schedule_is_ignored(self, db_session, services, transport, morning_schedule):
        morning_schedule.is_active = False
        db_session.commit()

        report = await services.reminders.run_reminder_sweep(MONDAY_8AM - timedelta(minutes=10))

        assert report.examined == 0


class TestReminderDelivery:

    @pytest.mark.asyncio
    async def test_sends_once(self, session_factory, services, transport, key):
        first = await services.reminders.run_reminder_sweep(MONDAY_8AM - timedelta(minutes=10))
        second = await services.reminders.run_reminder_sweep(MONDAY_8AM - timedelta(minutes=8))
        third = await services.reminders.run_reminder_sweep(MONDAY_8AM - timedelta(minutes=5))

        assert first.succeeded == 1
        assert second.skipped == 1
        assert third.skipped == 1
        assert len(transport.pushes) == 1

        push = transport.pushes[0]
        assert push["title"] == "🌅 Time for Metformin"
        assert push["metadata"]["type"] == "dose_reminder"
        assert push["metadata"]["scheduled_dose_id"] == key.scheduled_dose_id

        with session_factory() as session:
            assert dose_ledger.get(session, key).status == DoseStatus.PENDING.value
            receipt = dispatch_receipts.get(session, key, DispatchKind.REMINDER.value, user_recipient(USER))
            assert receipt.status == "sent"
            assert receipt.attempts == 1

    @pytest.mark.asyncio
    async def test_failed_send_is_retried_while_window_open(self, session_factory, services, transport, key):
        transport.failing.add(USER)
        failed = await services.reminders.run_reminder_sweep(MONDAY_8AM - timedelta(minutes=10))

        transport.failing.clear()
        retried = await services.reminders.run_reminder_sweep(MONDAY_8AM - timedelta(minutes=7))

        assert failed.failed == 1
        assert retried.succeeded == 1
        assert len(transport.pushes) == 1
        with session_factory() as session:
            receipt = dispatch_receipts.get(session, key, DispatchKind.REMINDER.value, user_recipient(USER))
            assert receipt.attempts == 2

    @pytest.mark.asyncio
    async def test_transport_exception_does_not_abort_sweep(self, db_session, services, transport, morning_schedule, evening_schedule):
        calls = []
        original = transport.send
        morning_id, evening_id = morning_schedule.id, evening_schedule.id

        async def flaky_send(user_id, title, body, metadata=None):
            calls.append(metadata["scheduled_dose_id"])
            if metadata["scheduled_dose_id"] == morning_id:
                raise RuntimeError("gateway timeout")
            return await original(user_id, title, body, metadata)

        transport.send = flaky_send
        evening_schedule.scheduled_time = "08:00"
        db_session.commit()

        with_both = await services.reminders.run_reminder_sweep(MONDAY_8AM - timedelta(minutes=10))

        assert sorted(calls) == sorted([morning_id, evening_id])
        assert with_both.failed == 1
        assert with_both.succeeded == 1

    @pytest.mark.asyncio
    async def test_abandoned_claim_is_taken_over(self, session_factory, services, transport, key):
        leg_now = MONDAY_8AM - timedelta(minutes=15)
        with session_factory() as session:
            leg = DispatchLeg(kind=DispatchKind.REMINDER.value, recipient=user_recipient(USER), user_id=USER)
            assert dispatch_receipts.claim(session, key, leg, leg_now)
            session.commit()

        # Claim is younger than the timeout: another sweep owns it
        owned = await services.reminders.run_reminder_sweep(MONDAY_8AM - timedelta(minutes=12))
        assert owned.skipped == 1

        services.reminders.receipts = DispatchReceiptStore(claim_timeout_seconds=60)
        taken_over = await services.reminders.run_reminder_sweep(MONDAY_8AM - timedelta(minutes=12))
        assert taken_over.succeeded == 1
        assert len(transport.pushes) == 1


class TestReminderConcurrency:

    @pytest.mark.asyncio
    async def test_dose_taken_while_reminder_in_flight(self, session_factory, services, transport, key):
        original = transport.send

        async def send_while_user_takes_dose(user_id, title, body, metadata=None):
            await services.adherence.record_dose_action(key, "taken", MONDAY_8AM - timedelta(minutes=9))
            return await original(user_id, title, body, metadata)

        transport.send = send_while_user_takes_dose

        report = await services.reminders.run_reminder_sweep(MONDAY_8AM - timedelta(minutes=10))

        assert report.succeeded == 1
        with session_factory() as session:
            assert dose_ledger.get(session, key).status == DoseStatus.TAKEN.value
            receipt = dispatch_receipts.get(session, key, DispatchKind.REMINDER.value, user_recipient(USER))
            assert receipt.status == "sent"

    @pytest.mark.asyncio
    async def test_overlapping_sweeps_send_one_reminder(self, services, transport, key):
        original = transport.send

        async def slow_send(user_id, title, body, metadata=None):
            await asyncio.sleep(0.01)
            return await original(user_id, title, body, metadata)

        transport.send = slow_send

        first, second = await asyncio.gather(
            services.reminders.run_reminder_sweep(MONDAY_8AM - timedelta(minutes=10)),
            services.reminders.run_reminder_sweep(MONDAY_8AM - timedelta(minutes=10)),
        )

        assert len(transport.pushes) == 1
        assert first.succeeded + second.succeeded == 1
        assert first.skipped + second.skipped == 1
