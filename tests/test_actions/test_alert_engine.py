"""
Tests for Alert Engine
Missed-dose detection, per-leg fan-out and independent leg retries
"""

import pytest
from datetime import datetime, date, timedelta

from sqlalchemy import select

from models import DispatchKind, DispatchReceipt, DoseStatus
from services.dose_ledger import dose_ledger
from tools.scheduler import ObligationKey


MONDAY_8AM = datetime(2024, 6, 3, 8, 0)
USER = 1


@pytest.fixture
def key(morning_schedule):
    return ObligationKey(morning_schedule.id, MONDAY_8AM)


def status_of(session_factory, key):
    with session_factory() as session:
        row = dose_ledger.get(session, key)
        return row.status if row else None


def receipts(session_factory, kind=None):
    with session_factory() as session:
        stmt = select(DispatchReceipt).order_by(DispatchReceipt.id)
        if kind:
            stmt = stmt.where(DispatchReceipt.kind == kind)
        return list(session.execute(stmt).scalars())


def missed_alerts(transport, user_id):
    return [p for p in transport.pushes_to(user_id) if p["metadata"]["type"] != "dose_reminder"]


# =============================================================================
# Detection
# =============================================================================

class TestMissedDetection:

    @pytest.mark.asyncio
    async def test_grace_boundary(self, session_factory, services, key):
        early = await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(minutes=29))
        assert early.succeeded == 0
        assert status_of(session_factory, key) != DoseStatus.MISSED.value

        late = await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(minutes=31))
        assert late.succeeded == 1
        assert status_of(session_factory, key) == DoseStatus.MISSED.value

    @pytest.mark.asyncio
    async def test_unobserved_obligation_is_materialized(self, services, key):
        report = await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(minutes=40))

        assert report.counters["materialized"] == 1
        assert report.succeeded == 1

    @pytest.mark.asyncio
    async def test_outside_lookback_is_ignored(self, session_factory, services, key):
        report = await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(hours=3))

        assert report.examined == 0
        assert status_of(session_factory, key) is None

    @pytest.mark.asyncio
    async def test_taken_and_skipped_doses_are_left_alone(self, session_factory, services, transport, key):
        await services.adherence.record_dose_action(key, "skipped", MONDAY_8AM + timedelta(minutes=5))

        report = await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(minutes=45))

        assert report.examined == 0
        assert status_of(session_factory, key) == DoseStatus.SKIPPED.value
        assert transport.pushes == []

    @pytest.mark.asyncio
    async def test_active_snooze_defers_missed(self, session_factory, services, key):
        await services.adherence.record_dose_action(key, "snoozed", MONDAY_8AM + timedelta(minutes=25))

        deferred = await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(minutes=31))
        assert deferred.succeeded == 0
        assert status_of(session_factory, key) == DoseStatus.SNOOZED.value

        expired = await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(minutes=36))
        assert expired.succeeded == 1
        assert status_of(session_factory, key) == DoseStatus.MISSED.value

    @pytest.mark.asyncio
    async def test_missed_dose_resets_streak(self, session_factory, services, morning_schedule, key):
        sunday = ObligationKey(morning_schedule.id, MONDAY_8AM - timedelta(days=1))
        await services.adherence.record_dose_action(sunday, "taken", sunday.scheduled_for)

        await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(minutes=31))

        with session_factory() as session:
            streak = services.adherence.get_streak(session, USER)
            assert streak.current_streak == 0
            assert streak.longest_streak == 1

    @pytest.mark.asyncio
    async def test_shield_keeps_streak(self, session_factory, services, morning_schedule, key):
        sunday = ObligationKey(morning_schedule.id, MONDAY_8AM - timedelta(days=1))
        await services.adherence.record_dose_action(sunday, "taken", sunday.scheduled_for)
        with session_factory() as session:
            account = services.economy.load_account(session, USER)
            services.economy.grant_shield(account, 24, MONDAY_8AM)
            session.commit()

        await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(minutes=31))

        with session_factory() as session:
            assert services.adherence.get_streak(session, USER).current_streak == 1


# =============================================================================
# Alert fan-out
# =============================================================================

class TestAlertFanOut:

    @pytest.mark.asyncio
    async def test_user_caregivers_and_sms(self, services, transport, key, caregiver, sms_contact):
        report = await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(minutes=31))

        assert report.counters["legs_sent"] == 3
        assert len(missed_alerts(transport, USER)) == 1
        assert missed_alerts(transport, USER)[0]["metadata"]["type"] == "missed_dose"

        caregiver_alert = transport.pushes_to(caregiver)
        assert len(caregiver_alert) == 1
        assert caregiver_alert[0]["title"] == "🚨 Maria Missed a Dose"
        assert transport.pushes_to(8) == []

        assert len(transport.sms) == 1
        assert transport.sms[0]["to"] == sms_contact.phone

    @pytest.mark.asyncio
    async def test_alerts_at_most_once(self, services, transport, key, caregiver):
        await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(minutes=31))
        again = await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(minutes=36))
        later = await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(minutes=90))

        assert again.examined == 0
        assert later.counters.get("legs_sent", 0) == 0
        assert len(transport.pushes) == 2

    @pytest.mark.asyncio
    async def test_only_failed_leg_is_retried(self, session_factory, services, transport, key, caregiver):
        transport.failing.add(caregiver)
        first = await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(minutes=31))

        assert first.counters["legs_sent"] == 1
        assert first.counters["legs_failed"] == 1
        assert status_of(session_factory, key) == DoseStatus.MISSED.value

        transport.failing.clear()
        second = await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(minutes=36))

        assert second.counters["legs_sent"] == 1
        assert len(missed_alerts(transport, USER)) == 1
        assert len(transport.pushes_to(caregiver)) == 1

        caregiver_receipt = receipts(session_factory, DispatchKind.MISSED_CAREGIVER.value)[0]
        assert caregiver_receipt.status == "sent"
        assert caregiver_receipt.attempts == 2

    @pytest.mark.asyncio
    async def test_leg_gives_up_after_max_attempts(self, session_factory, services, transport, key, caregiver):
        transport.failing.add(caregiver)

        for minutes in range(31, 60, 5):
            await services.missed.run_missed_dose_sweep(MONDAY_8AM + timedelta(minutes=minutes))

        caregiver_receipt = receipts(session_factory, DispatchKind.MISSED_CAREGIVER.value)[0]
        assert caregiver_receipt.status == "failed"
        assert caregiver_receipt.attempts == services.missed.max_attempts
        assert caregiver_receipt.last_error == "device unreachable"


# =============================================================================
# Day-long scenario
# =============================================================================

class TestDoseDay:

    @pytest.mark.asyncio
    async def test_reminder_early_dose_then_missed_next_day(self, session_factory, services, transport, morning_schedule, caregiver):
        # Monday: reminder at 07:50, dose taken early at 07:52
        reminders = await services.reminders.run_reminder_sweep(datetime(2024, 6, 3, 7, 50))
        assert reminders.succeeded == 1

        monday = ObligationKey(morning_schedule.id, MONDAY_8AM)
        result = await services.adherence.record_dose_action(monday, "taken", datetime(2024, 6, 3, 7, 52))
        assert result.timing.early and result.timing.on_time

        # Tuesday: no action; sweeps run every five minutes until 10:30
        tick = datetime(2024, 6, 4, 7, 50)
        marked_at = None
        while tick <= datetime(2024, 6, 4, 10, 30):
            await services.reminders.run_reminder_sweep(tick)
            report = await services.missed.run_missed_dose_sweep(tick)
            if report.succeeded:
                marked_at = tick
            tick += timedelta(minutes=5)

        tuesday = ObligationKey(morning_schedule.id, datetime(2024, 6, 4, 8, 0))
        assert marked_at == datetime(2024, 6, 4, 8, 35)
        assert status_of(session_factory, tuesday) == DoseStatus.MISSED.value
        assert status_of(session_factory, monday) == DoseStatus.TAKEN.value

        user_alerts = [p for p in transport.pushes_to(USER) if p["metadata"]["type"] == "missed_dose"]
        assert len(user_alerts) == 1
        assert len(transport.pushes_to(caregiver)) == 1

    @pytest.mark.asyncio
    async def test_single_late_sweep_with_wider_lookback(self, session_factory, services, transport, morning_schedule, caregiver):
        services.missed.lookback = timedelta(hours=3)

        report = await services.missed.run_missed_dose_sweep(datetime(2024, 6, 4, 10, 30))

        assert report.succeeded == 1
        assert status_of(session_factory, ObligationKey(morning_schedule.id, datetime(2024, 6, 4, 8, 0))) == DoseStatus.MISSED.value
        assert len(transport.pushes) == 2
