"""
Tests for Challenge Service
Weekly rows, predicate matching, completion and exclusive claims
"""

import pytest
from datetime import datetime, date, timedelta

from sqlalchemy import func, select

from exceptions import AlreadyClaimedError, ChallengeNotCompletedError, NotFoundError
from models import UserChallenge, WeeklyChallenge
from services.challenge_service import DoseEvent, matches, week_start_for


NOW = datetime(2024, 6, 5, 8, 2)  # Wednesday
USER = 1

ON_TIME_MORNING = DoseEvent(time_of_day="morning", on_time=True, early=True, snoozed=False)
LATE_MORNING = DoseEvent(time_of_day="morning", on_time=False, early=False, snoozed=True)


class TestPredicates:

    @pytest.mark.unit
    def test_week_starts_monday(self):
        assert week_start_for(NOW) == date(2024, 6, 3)
        assert week_start_for(date(2024, 6, 3)) == date(2024, 6, 3)
        assert week_start_for(datetime(2024, 6, 9, 23, 59)) == date(2024, 6, 3)

    @pytest.mark.unit
    @pytest.mark.parametrize("challenge_type,time_of_day,event,expected", [
        ("time_streak", "morning", ON_TIME_MORNING, True),
        ("time_streak", "evening", ON_TIME_MORNING, False),
        ("time_streak", "morning", LATE_MORNING, False),
        ("perfect_week", None, LATE_MORNING, False),
        ("no_snooze", None, LATE_MORNING, False),
        ("no_snooze", None, ON_TIME_MORNING, True),
        ("early_dose", None, ON_TIME_MORNING, True),
        ("mystery", None, ON_TIME_MORNING, False),
    ])
    def test_matches(self, challenge_type, time_of_day, event, expected):
        challenge = WeeklyChallenge(id=1, challenge_type=challenge_type, time_of_day=time_of_day, target_count=1)

        assert matches(challenge, event) is expected


class TestProgress:

    @pytest.mark.database
    def test_ensure_week_is_idempotent(self, db_session, services, weekly_challenges):
        assert services.challenges.ensure_week(db_session, USER, NOW) == 2
        assert services.challenges.ensure_week(db_session, USER, NOW) == 0

        rows = services.challenges.list_for_week(db_session, USER, NOW)
        assert [row.current_progress for row in rows] == [0, 0]

    @pytest.mark.database
    def test_progress_completes_once(self, db_session, services, weekly_challenges):
        completed = []
        for day in range(4):
            completed += services.challenges.record_dose_event(db_session, USER, ON_TIME_MORNING, NOW + timedelta(days=day % 2))

        morning = next(row for row in services.challenges.list_for_week(db_session, USER, NOW) if row.challenge.name == "Morning Champion")
        assert morning.current_progress == 3
        assert morning.is_completed
        assert morning.completed_at == NOW
        assert sorted(row.challenge.name for row in completed) == ["Early Riser", "Morning Champion"]

    @pytest.mark.database
    def test_new_week_starts_fresh(self, db_session, services, weekly_challenges):
        services.challenges.record_dose_event(db_session, USER, ON_TIME_MORNING, NOW)
        next_week = NOW + timedelta(days=7)

        rows = services.challenges.list_for_week(db_session, USER, next_week)
        assert rows == []

        services.challenges.ensure_week(db_session, USER, next_week)
        rows = services.challenges.list_for_week(db_session, USER, next_week)
        assert all(row.current_progress == 0 for row in rows)

    @pytest.mark.asyncio
    async def test_weekly_rollover_covers_known_users(self, session_factory, services, weekly_challenges, morning_schedule):
        with session_factory() as session:
            services.economy.get_or_create_account(session, 42, NOW)
            session.commit()

        report = await services.challenges.run_weekly_rollover(NOW)
        again = await services.challenges.run_weekly_rollover(NOW)

        assert report.examined == 2
        assert report.succeeded == 2
        assert again.skipped == 2
        with session_factory() as session:
            assert session.execute(select(func.count(UserChallenge.id))).scalar_one() == 4


class TestClaims:

    @pytest.fixture
    def early_riser_row(self, session_factory, services, weekly_challenges):
        with session_factory() as session:
            completed = services.challenges.record_dose_event(session, USER, ON_TIME_MORNING, NOW)
            session.commit()
            return next(row.id for row in completed if row.challenge.name == "Early Riser")

    @pytest.mark.asyncio
    async def test_claim_credits_reward(self, services, early_riser_row):
        result = await services.challenges.claim_reward(early_riser_row, now=NOW)

        assert result.coins_awarded == 50
        assert result.spins_awarded == 1
        assert result.coins_balance == 50
        assert result.spins_balance == 2

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, session_factory, services, early_riser_row):
        await services.challenges.claim_reward(early_riser_row, now=NOW)

        with pytest.raises(AlreadyClaimedError):
            await services.challenges.claim_reward(early_riser_row, now=NOW)

        with session_factory() as session:
            assert services.economy.load_account(session, USER).coins == 50

    @pytest.mark.asyncio
    async def test_incomplete_challenge_cannot_be_claimed(self, session_factory, services, weekly_challenges):
        with session_factory() as session:
            services.challenges.ensure_week(session, USER, NOW)
            session.commit()
            row_id = services.challenges.list_for_week(session, USER, NOW)[0].id

        with pytest.raises(ChallengeNotCompletedError):
            await services.challenges.claim_reward(row_id, now=NOW)

    @pytest.mark.asyncio
    async def test_unknown_challenge(self, services):
        with pytest.raises(NotFoundError):
            await services.challenges.claim_reward(999, now=NOW)
