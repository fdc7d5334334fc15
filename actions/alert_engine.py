"""
Alert Engine
Missed-dose detection and per-leg alert fan-out to the user, caregivers and emergency contacts
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from config import settings
from database import SessionFactory, get_db_context
from exceptions import InvalidTransitionError
from models import DispatchKind, DoseStatus, MISSED_ALERT_KINDS, OPEN_STATUSES
from services.catalog import CaregiverDirectory, MedicationCatalog, caregiver_directory, medication_catalog
from services.dispatch_receipts import (
    DispatchLeg,
    DispatchReceiptStore,
    caregiver_recipient,
    contact_recipient,
    dispatch_receipts,
    key_from_receipt,
    leg_from_receipt,
    user_recipient,
)
from services.dose_ledger import DoseLedger, dose_ledger, with_retry
from services.dose_state_machine import Actor, DoseStateMachine, dose_state_machine
from services.streak_economy import StreakEconomyManager, streak_economy
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
from tools.scheduler import ObligationKey, expand_for_dates, recent_dates


logger = logging.getLogger(__name__)


@dataclass
class AlertContext:
    """What a missed-dose message needs to say"""
    patient_id: int
    patient_name: str
    medication_name: str
    scheduled_for: datetime
    time_of_day: Optional[str] = None


def recipient_id(recipient: str) -> int:
    """'caregiver:7' -> 7"""
    return int(recipient.split(":", 1)[1])


class MissedDoseDetector:
    """
    Marks obligations missed once ``now - lookback < scheduled_for < now - grace``
    and they are still effectively pending, then alerts every leg.

    The missed transition, the leg receipts and the streak reset commit
    together. Legs are then sent one by one; a failed leg is retried on its
    own by later sweeps until it runs out of attempts.
    """

    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        transport: Optional[NotificationTransport] = None,
        catalog: Optional[MedicationCatalog] = None,
        directory: Optional[CaregiverDirectory] = None,
        ledger: Optional[DoseLedger] = None,
        receipts: Optional[DispatchReceiptStore] = None,
        state_machine: Optional[DoseStateMachine] = None,
        economy: Optional[StreakEconomyManager] = None,
        clock=None,
        lookback_minutes: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.transport = transport or notification_service
        self.catalog = catalog or medication_catalog
        self.directory = directory or caregiver_directory
        self.ledger = ledger or dose_ledger
        self.receipts = receipts or dispatch_receipts
        self.state_machine = state_machine or dose_state_machine
        self.economy = economy or streak_economy
        self.clock = clock or system_clock
        self.lookback = timedelta(minutes=lookback_minutes if lookback_minutes is not None else settings.MISSED_LOOKBACK_MINUTES)
        self.max_attempts = max_attempts or settings.MAX_ALERT_ATTEMPTS

    # ==================== DETECTION ====================

    def _window(self, now: datetime):
        return now - self.lookback, now - self.state_machine.grace

    def materialize(self, session: Session, now: datetime) -> int:
        """Create pending rows for obligations in the window that were never observed"""
        start, end = self._window(now)
        created = 0
        for schedule, key in expand_for_dates(self.catalog.iter_active_schedules(session), recent_dates(now, days_back=1)):
            if start < key.scheduled_for < end:
                created += self.ledger.ensure_pending(
                    session,
                    key,
                    user_id=schedule.user_id,
                    medication_id=schedule.medication_id,
                    time_of_day=schedule.time_of_day,
                    now=now,
                )
        return created

    def find_overdue(self, session: Session, now: datetime) -> List[ObligationKey]:
        start, end = self._window(now)
        rows = self.ledger.query_by_window(session, start, end, statuses=OPEN_STATUSES)
        return [
            ObligationKey(row.scheduled_dose_id, row.scheduled_for)
            for row in rows
            if self.state_machine.is_effectively_pending(row.status, row.snoozed_until, now)
        ]

    def _legs_for(self, session: Session, user_id: int) -> List[DispatchLeg]:
        legs = [DispatchLeg(kind=DispatchKind.MISSED_USER.value, recipient=user_recipient(user_id), user_id=user_id)]
        for caregiver_id in self.directory.get_alertable_caregivers(session, user_id):
            legs.append(DispatchLeg(
                kind=DispatchKind.MISSED_CAREGIVER.value,
                recipient=caregiver_recipient(caregiver_id),
                user_id=user_id,
            ))
        for contact in self.directory.get_sms_contacts(session, user_id):
            legs.append(DispatchLeg(
                kind=DispatchKind.MISSED_SMS.value,
                recipient=contact_recipient(contact.id),
                user_id=user_id,
                destination=contact.phone,
            ))
        return legs

    def mark_missed(self, session: Session, key: ObligationKey, now: datetime) -> Optional[int]:
        """
        Transition one obligation to missed and record its alert legs.

        Returns:
            Number of legs recorded, or None if the obligation was not eligible
            or another writer got there first
        """
        row = self.ledger.get(session, key)
        if row is None:
            return None
        try:
            self.state_machine.plan(row, DoseStatus.MISSED.value, Actor.SYSTEM, key.scheduled_for, now)
        except InvalidTransitionError as e:
            logger.debug(f"Not marking {key} missed: {e}")
            return None

        outcome = self.ledger.upsert_status(
            session,
            key,
            DoseStatus.MISSED.value,
            now,
            user_id=row.user_id,
            medication_id=row.medication_id,
            time_of_day=row.time_of_day,
            allowed_from=self.state_machine.effectively_pending_clause(now),
        )
        if not outcome.changed:
            return None

        legs = self._legs_for(session, row.user_id)
        self.receipts.create_pending(session, key, legs, now)
        self.economy.reset_streak(session, row.user_id, now)
        return len(legs)

    # ==================== SWEEP ====================

    async def run_missed_dose_sweep(self, now: Optional[datetime] = None) -> SweepReport:
        """
        Detect missed doses and deliver outstanding alert legs.

        Safe to invoke at any frequency and concurrently with itself.
        """
        now = now or self.clock.now()
        report = SweepReport(name="missed_dose_sweep", started_at=now)

        def _scan() -> List[ObligationKey]:
            with get_db_context(self.session_factory) as session:
                report.bump("materialized", self.materialize(session, now))
            with get_db_context(self.session_factory) as session:
                return self.find_overdue(session, now)

        try:
            overdue = await with_retry(_scan, description="missed-dose scan")
        except Exception as e:
            logger.error(f"Missed-dose scan failed: {e}")
            report.record_failure("scan", e)
            overdue = []

        for key in overdue:
            report.examined += 1
            item = f"{key.scheduled_dose_id}@{key.scheduled_for.isoformat()}"

            def _mark(k=key) -> Optional[int]:
                with get_db_context(self.session_factory) as session:
                    return self.mark_missed(session, k, now)

            try:
                legs = await with_retry(_mark, description=f"mark {item} missed")
            except Exception as e:
                logger.error(f"Could not mark {item} missed: {e}")
                report.record_failure(item, e)
                continue

            if legs is None:
                report.skipped += 1
                continue
            report.succeeded += 1
            logger.info(f"Dose {item} marked missed; {legs} alert legs queued")

        await self.deliver_pending_legs(now, report)

        if report.examined or report.counters.get("legs_sent") or report.counters.get("legs_failed"):
            logger.info(
                f"Missed-dose sweep at {now:%Y-%m-%d %H:%M}: {report.succeeded} marked missed, "
                f"{report.counters.get('legs_sent', 0)} alerts sent, {report.counters.get('legs_failed', 0)} alerts failed"
            )
        return report

    async def deliver_pending_legs(self, now: datetime, report: SweepReport) -> None:
        """Send every leg still owed a delivery attempt, one leg at a time"""
        def _load():
            with get_db_context(self.session_factory) as session:
                return [
                    (key_from_receipt(r), leg_from_receipt(r))
                    for r in self.receipts.pending_retries(session, MISSED_ALERT_KINDS, now, self.max_attempts)
                ]

        try:
            legs = await with_retry(_load, description="load pending alert legs")
        except Exception as e:
            logger.error(f"Could not load pending alert legs: {e}")
            report.record_failure("alert legs", e)
            return

        for key, leg in legs:
            item = f"{leg.kind}:{leg.recipient}@{key.scheduled_dose_id}/{key.scheduled_for.isoformat()}"
            try:
                delivered = await self._deliver_leg(key, leg, now)
            except Exception as e:
                logger.error(f"Alert leg {item} errored: {e}")
                report.bump("legs_failed")
                report.errors.append(f"{item}: {type(e).__name__}: {e}")
                continue

            if delivered is None:
                report.bump("legs_skipped")
            elif delivered:
                report.bump("legs_sent")
            else:
                report.bump("legs_failed")
                report.errors.append(f"{item}: delivery failed")

    async def _deliver_leg(self, key: ObligationKey, leg: DispatchLeg, now: datetime) -> Optional[bool]:
        def _claim() -> Optional[AlertContext]:
            with get_db_context(self.session_factory) as session:
                if not self.receipts.claim(session, key, leg, now, max_attempts=self.max_attempts):
                    return None
                return self._context(session, key, leg)

        context = await with_retry(_claim, description="claim alert leg")
        if context is None:
            return None

        try:
            result = await self._send(leg, context, key)
        except Exception as e:
            logger.exception(f"Transport raised for alert leg {leg.recipient}")
            result = DeliveryResult(delivered=False, channel=leg.kind, error=str(e))

        def _finish():
            with get_db_context(self.session_factory) as session:
                if result.delivered:
                    self.receipts.mark_sent(session, key, leg, now)
                else:
                    self.receipts.mark_failed(session, key, leg, result.error)

        await with_retry(_finish, description="record alert outcome")
        if not result.delivered:
            logger.warning(f"Missed-dose alert to {leg.recipient} not delivered: {result.error}")
        return result.delivered

    def _context(self, session: Session, key: ObligationKey, leg: DispatchLeg) -> AlertContext:
        schedule = self.catalog.get_schedule(session, key.scheduled_dose_id)
        medication_name = schedule.medication.name if schedule is not None and schedule.medication else "your medication"
        return AlertContext(
            patient_id=leg.user_id,
            patient_name=self.directory.get_display_name(session, leg.user_id),
            medication_name=medication_name,
            scheduled_for=key.scheduled_for,
            time_of_day=schedule.time_of_day if schedule is not None else None,
        )

    async def _send(self, leg: DispatchLeg, context: AlertContext, key: ObligationKey) -> DeliveryResult:
        data: Dict[str, str] = {
            "medication": context.medication_name,
            "scheduled_time": format_clock(context.scheduled_for),
            "patient_name": context.patient_name,
            "time_of_day": context.time_of_day or "",
        }
        metadata = {
            "scheduled_dose_id": key.scheduled_dose_id,
            "scheduled_for": key.scheduled_for.isoformat(),
            "patient_id": context.patient_id,
        }

        if leg.kind == DispatchKind.MISSED_USER.value:
            message = render(NotificationType.MISSED_DOSE, metadata=metadata, **data)
            return await self.transport.send(context.patient_id, message.title, message.body, message.metadata)

        if leg.kind == DispatchKind.MISSED_CAREGIVER.value:
            message = render(NotificationType.CAREGIVER_MISSED_DOSE, metadata=metadata, **data)
            return await self.transport.send(recipient_id(leg.recipient), message.title, message.body, message.metadata)

        if leg.kind == DispatchKind.MISSED_SMS.value:
            if not leg.destination:
                return DeliveryResult(delivered=False, channel="sms", error="no phone number")
            message = render(NotificationType.CAREGIVER_MISSED_DOSE_SMS, metadata=metadata, **data)
            return await self.transport.send_sms(leg.destination, message.body)

        return DeliveryResult(delivered=False, channel=leg.kind, error=f"unknown leg kind {leg.kind}")
