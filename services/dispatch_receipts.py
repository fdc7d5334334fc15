"""
Dispatch Receipts
Durable per-leg markers that enforce at-most-once notification delivery
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from config import settings
from database import dialect_insert
from models import DispatchReceipt, DispatchStatus
from services.dose_ledger import storage_errors
from tools.scheduler import ObligationKey


logger = logging.getLogger(__name__)

RECEIPT_KEY = ["scheduled_dose_id", "scheduled_for", "kind", "recipient"]


@dataclass
class DispatchLeg:
    """One recipient of a notification fan-out"""
    kind: str
    recipient: str
    user_id: int
    destination: Optional[str] = None


def user_recipient(user_id: int) -> str:
    return f"user:{user_id}"


def caregiver_recipient(caregiver_id: int) -> str:
    return f"caregiver:{caregiver_id}"


def contact_recipient(contact_id: int) -> str:
    return f"contact:{contact_id}"


class DispatchReceiptStore:
    """
    Claim / mark protocol:

    1. ``claim`` flips a receipt to ``sending`` (creating it if needed) and
       commits before the send is attempted.
    2. The caller sends, then calls ``mark_sent`` or ``mark_failed``.

    A receipt in ``sent`` is never claimed again. A ``sending`` receipt whose
    claim is older than the claim timeout is treated as abandoned.
    """

    def __init__(self, claim_timeout_seconds: Optional[int] = None):
        self.claim_timeout = timedelta(
            seconds=claim_timeout_seconds if claim_timeout_seconds is not None else settings.DISPATCH_CLAIM_TIMEOUT_SECONDS
        )

    def _reclaimable(self, now: datetime, max_attempts: Optional[int] = None):
        table = DispatchReceipt.__table__
        condition = or_(
            table.c.status.in_([DispatchStatus.PENDING.value, DispatchStatus.FAILED.value]),
            and_(
                table.c.status == DispatchStatus.SENDING.value,
                table.c.claimed_at < now - self.claim_timeout,
            ),
        )
        if max_attempts is not None:
            condition = and_(condition, table.c.attempts < max_attempts)
        return condition

    def claim(
        self,
        session: Session,
        key: ObligationKey,
        leg: DispatchLeg,
        now: datetime,
        max_attempts: Optional[int] = None,
    ) -> bool:
        """
        Atomically take ownership of one leg. Returns False when the leg was
        already sent, is being sent by someone else, or ran out of attempts.
        """
        stmt = dialect_insert(session, DispatchReceipt).values(
            scheduled_dose_id=key.scheduled_dose_id,
            scheduled_for=key.scheduled_for,
            kind=leg.kind,
            recipient=leg.recipient,
            user_id=leg.user_id,
            destination=leg.destination,
            status=DispatchStatus.SENDING.value,
            attempts=1,
            claimed_at=now,
            created_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=RECEIPT_KEY,
            set_={
                "status": DispatchStatus.SENDING.value,
                "attempts": DispatchReceipt.__table__.c.attempts + 1,
                "claimed_at": now,
            },
            where=self._reclaimable(now, max_attempts),
        )
        with storage_errors():
            result = session.execute(stmt)
        return result.rowcount > 0

    def create_pending(self, session: Session, key: ObligationKey, legs: Iterable[DispatchLeg], now: datetime) -> int:
        """Record legs to be sent later; existing receipts are left alone"""
        created = 0
        for leg in legs:
            stmt = dialect_insert(session, DispatchReceipt).values(
                scheduled_dose_id=key.scheduled_dose_id,
                scheduled_for=key.scheduled_for,
                kind=leg.kind,
                recipient=leg.recipient,
                user_id=leg.user_id,
                destination=leg.destination,
                status=DispatchStatus.PENDING.value,
                attempts=0,
                created_at=now,
            ).on_conflict_do_nothing(index_elements=RECEIPT_KEY)
            with storage_errors():
                created += session.execute(stmt).rowcount
        return created

    def _finish(self, session: Session, key: ObligationKey, leg: DispatchLeg, values: dict) -> bool:
        table = DispatchReceipt.__table__
        stmt = (
            update(table)
            .where(
                table.c.scheduled_dose_id == key.scheduled_dose_id,
                table.c.scheduled_for == key.scheduled_for,
                table.c.kind == leg.kind,
                table.c.recipient == leg.recipient,
                table.c.status == DispatchStatus.SENDING.value,
            )
            .values(**values)
        )
        with storage_errors():
            return session.execute(stmt).rowcount > 0

    def mark_sent(self, session: Session, key: ObligationKey, leg: DispatchLeg, now: datetime) -> bool:
        return self._finish(session, key, leg, {"status": DispatchStatus.SENT.value, "sent_at": now, "last_error": None})

    def mark_failed(self, session: Session, key: ObligationKey, leg: DispatchLeg, error: Optional[str]) -> bool:
        return self._finish(session, key, leg, {"status": DispatchStatus.FAILED.value, "last_error": (error or "delivery failed")[:500]})

    def get(self, session: Session, key: ObligationKey, kind: str, recipient: str) -> Optional[DispatchReceipt]:
        stmt = select(DispatchReceipt).where(
            DispatchReceipt.scheduled_dose_id == key.scheduled_dose_id,
            DispatchReceipt.scheduled_for == key.scheduled_for,
            DispatchReceipt.kind == kind,
            DispatchReceipt.recipient == recipient,
        ).execution_options(populate_existing=True)
        return session.execute(stmt).scalar_one_or_none()

    def pending_retries(
        self,
        session: Session,
        kinds: Iterable[str],
        now: datetime,
        max_attempts: int,
        limit: int = 500,
    ) -> List[DispatchReceipt]:
        """Legs that still need a send attempt"""
        stmt = (
            select(DispatchReceipt)
            .where(DispatchReceipt.kind.in_(list(kinds)), self._reclaimable(now, max_attempts))
            .order_by(DispatchReceipt.scheduled_for, DispatchReceipt.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        with storage_errors():
            return list(session.execute(stmt).scalars())


def leg_from_receipt(receipt: DispatchReceipt) -> DispatchLeg:
    return DispatchLeg(
        kind=receipt.kind,
        recipient=receipt.recipient,
        user_id=receipt.user_id,
        destination=receipt.destination,
    )


def key_from_receipt(receipt: DispatchReceipt) -> ObligationKey:
    return ObligationKey(receipt.scheduled_dose_id, receipt.scheduled_for)


dispatch_receipts = DispatchReceiptStore()
