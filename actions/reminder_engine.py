"""
Reminder Engine
Pre-dose reminder sweep with at-most-once delivery per obligation
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from config import settings
from database import SessionFactory, get_db_context
from models import DispatchKind
from services.catalog import MedicationCatalog, medication_catalog
from services.dispatch_receipts import DispatchLeg, DispatchReceiptStore, dispatch_receipts, user_recipient
from services.dose_ledger import DoseLedger, dose_ledger, with_retry
from services.dose_state_machine import DoseStateMachine, dose_state_machine
from services.sweep_report import SweepReport
from tools.clock import system_clock
from tools.notification_service import (
    DeliveryResult,
    NotificationTransport,
    NotificationType,
    format_clock,
    notification_service,
    render,
)
from tools.scheduler import ObligationKey, expand_for_dates


logger = logging.getLogger(__name__)


@dataclass
class ReminderCandidate:
    """An obligation whose reminder window is open"""
    key: ObligationKey
    user_id: int
    medication_id: int
    time_of_day: Optional[str]
    medication_name: str
    strength: Optional[str] = None
    form: Optional[str] = None


class ReminderDispatcher:
    """
    Sends one reminder per obligation when ``now`` enters the window
    [scheduled_for - end, scheduled_for - start].

    The receipt is claimed before sending and only marked ``sent`` after the
    transport reports delivery, so overlapping sweeps cannot both deliver.
    Failed sends are retried by later sweeps while the window is open.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        transport: Optional[NotificationTransport] = None,
        catalog: Optional[MedicationCatalog] = None,
        ledger: Optional[DoseLedger] = None,
        receipts: Optional[DispatchReceiptStore] = None,
        state_machine: Optional[DoseStateMachine] = None,
        clock=None,
        window_start_minutes: Optional[int] = None,
        window_end_minutes: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.transport = transport or notification_service
        self.catalog = catalog or medication_catalog
        self.ledger = ledger or dose_ledger
        self.receipts = receipts or dispatch_receipts
        self.state_machine = state_machine or dose_state_machine
        self.clock = clock or system_clock
        self.window_start = timedelta(minutes=window_start_minutes if window_start_minutes is not None else settings.REMINDER_WINDOW_START_MINUTES)
        self.window_end = timedelta(minutes=window_end_minutes if window_end_minutes is not None else settings.REMINDER_WINDOW_END_MINUTES)

    def find_candidates(self, session: Session, now: datetime) -> List[ReminderCandidate]:
        """Active schedules whose obligation falls inside the reminder window"""
        earliest = now + self.window_start
        latest = now + self.window_end
        dates = sorted({earliest.date(), latest.date()})

        candidates = []
        for schedule, key in expand_for_dates(self.catalog.iter_active_schedules(session), dates):
            if not earliest <= key.scheduled_for <= latest:
                continue
            existing = self.ledger.get(session, key)
            if existing is not None and not self.state_machine.is_effectively_pending(existing.status, existing.snoozed_until, now):
                continue
            medication = schedule.medication
            candidates.append(ReminderCandidate(
                key=key,
                user_id=schedule.user_id,
                medication_id=schedule.medication_id,
                time_of_day=schedule.time_of_day,
                medication_name=medication.name,
                strength=medication.strength,
                form=medication.form,
            ))
        return candidates

    async def run_reminder_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Send reminders for obligations entering their window.

        Safe to invoke at any frequency and concurrently with itself.
        """
        now = now or self.clock.now()
        report = SweepReport(name="reminder_sweep", started_at=now)

        with get_db_context(self.session_factory) as session:
            candidates = self.find_candidates(session, now)

        for candidate in candidates:
            report.examined += 1
            item = f"{candidate.key.scheduled_dose_id}@{candidate.key.scheduled_for.isoformat()}"
            try:
                delivered = await self._remind(candidate, now)
            except Exception as e:
                logger.error(f"Reminder for {item} failed: {e}")
                report.record_failure(item, e)
                continue

            if delivered is None:
                report.skipped += 1
            elif delivered:
                report.succeeded += 1
            else:
                report.record_failure(item, RuntimeError("delivery failed"))

        if report.examined:
            logger.info(
                f"Reminder sweep at {now:%Y-%m-%d %H:%M}: {report.succeeded} sent, "
                f"{report.skipped} already handled, {report.failed} failed"
            )
        return report

    async def _remind(self, candidate: ReminderCandidate, now: datetime) -> Optional[bool]:
        """Returns None when another sweep owns or finished this reminder"""
        leg = DispatchLeg(kind=DispatchKind.REMINDER.value, recipient=user_recipient(candidate.user_id), user_id=candidate.user_id)

        def _claim() -> bool:
            with get_db_context(self.session_factory) as session:
                return self.receipts.claim(session, candidate.key, leg, now)

        if not await with_retry(_claim, description="claim reminder receipt"):
            return None

        notification = render(
            NotificationType.DOSE_REMINDER,
            metadata={
                "scheduled_dose_id": candidate.key.scheduled_dose_id,
                "scheduled_for": candidate.key.scheduled_for.isoformat(),
                "medication_id": candidate.medication_id,
            },
            medication=candidate.medication_name,
            scheduled_time=format_clock(candidate.key.scheduled_for),
            time_of_day=candidate.time_of_day or "",
            strength=candidate.strength or "",
            form=candidate.form or "",
        )
        try:
            result = await self.transport.send(candidate.user_id, notification.title, notification.body, notification.metadata)
        except Exception as e:
            logger.exception(f"Transport raised while reminding user {candidate.user_id}")
            result = DeliveryResult(delivered=False, channel="push", error=str(e))

        def _finish():
            with get_db_context(self.session_factory) as session:
                if result.delivered:
                    self.receipts.mark_sent(session, candidate.key, leg, now)
                    self.ledger.ensure_pending(
                        session,
                        candidate.key,
                        user_id=candidate.user_id,
                        medication_id=candidate.medication_id,
                        time_of_day=candidate.time_of_day,
                        now=now,
                    )
                else:
                    self.receipts.mark_failed(session, candidate.key, leg, result.error)

        await with_retry(_finish, description="record reminder outcome")
        if not result.delivered:
            logger.warning(f"Reminder to user {candidate.user_id} not delivered: {result.error}")
        return result.delivered
