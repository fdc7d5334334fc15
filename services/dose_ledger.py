"""
Dose Ledger
Idempotent store of dose obligation status, keyed by (scheduled_dose_id, scheduled_for)
"""

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from database import dialect_insert
from exceptions import ConflictError, LedgerUnavailableError, TransientStorageError
from models import DoseLog, DoseStatus, OPEN_STATUSES
from tools.scheduler import ObligationKey


logger = logging.getLogger(__name__)

T = TypeVar("T")

NATURAL_KEY = ["scheduled_dose_id", "scheduled_for"]

# Columns a status write is allowed to touch on an existing row
STATUS_COLUMNS = ("status", "action_at", "snoozed_until", "was_snoozed", "was_on_time", "was_early")


@dataclass
class UpsertOutcome:
    """Authoritative row after an upsert, and whether this call changed it"""
    obligation: DoseLog
    changed: bool


@contextmanager
def storage_errors():
    """Translate driver errors into the engine taxonomy"""
    try:
        yield
    except StaleDataError as e:
        raise ConflictError(str(e)) from e
    except IntegrityError as e:
        raise ConflictError(str(e.orig)) from e
    except (OperationalError, DBAPIError) as e:
        raise LedgerUnavailableError(str(e.orig) if getattr(e, "orig", None) else str(e)) from e


async def with_retry(
    operation: Callable[[], T],
    description: str = "ledger operation",
    attempts: Optional[int] = None,
    backoff: Optional[float] = None,
) -> T:
    """
    Run a transactional operation, retrying conflicts and transient storage
    errors with exponential backoff.

    The operation must open its own transaction so every attempt starts from
    a fresh read. After the last attempt the error is re-raised.
    """
    attempts = attempts or settings.LEDGER_RETRY_ATTEMPTS
    backoff = settings.LEDGER_RETRY_BACKOFF_SECONDS if backoff is None else backoff

    for attempt in range(1, attempts + 1):
        try:
            with storage_errors():
                return operation()
        except (ConflictError, TransientStorageError) as e:
            if attempt == attempts:
                logger.error(f"{description} failed after {attempts} attempts: {e}")
                raise
            delay = backoff * (2 ** (attempt - 1))
            logger.warning(f"{description} attempt {attempt} failed ({type(e).__name__}), retrying in {delay:.2f}s")
            await asyncio.sleep(delay)


class DoseLedger:
    """
    Upsert-by-natural-key store of dose status.

    Every writer goes through INSERT .. ON CONFLICT so concurrent writers
    converge on one row per obligation.
    """

    def get(self, session: Session, key: ObligationKey) -> Optional[DoseLog]:
        stmt = (
            select(DoseLog)
            .where(
                DoseLog.scheduled_dose_id == key.scheduled_dose_id,
                DoseLog.scheduled_for == key.scheduled_for,
            )
            .execution_options(populate_existing=True)
        )
        return session.execute(stmt).scalar_one_or_none()

    def upsert_status(
        self,
        session: Session,
        key: ObligationKey,
        new_status: str,
        action_at: Optional[datetime],
        user_id: int,
        medication_id: int,
        time_of_day: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        allowed_from=None,
    ) -> UpsertOutcome:
        """
        Write a status for an obligation, creating the row if absent.

        An existing row is only updated while ``allowed_from`` holds (by
        default: the row is still open). Terminal rows are never rewritten,
        so repeating a terminal status is a no-op.

        Args:
            session: Active session; the caller owns the transaction
            key: Obligation natural key
            new_status: Target status value
            action_at: Instant of the action
            user_id: Owner, used when the row is created
            medication_id: Medication, used when the row is created
            time_of_day: Bucket, used when the row is created
            extra: Additional status-owned columns (snoozed_until, was_on_time, ...)
            allowed_from: SQL condition on the existing row guarding the update

        Returns:
            UpsertOutcome with the authoritative row
        """
        extra = dict(extra or {})
        unknown = set(extra) - set(STATUS_COLUMNS)
        if unknown:
            raise ValueError(f"Not status-owned columns: {sorted(unknown)}")

        now = action_at or datetime.utcnow()
        values = {
            "scheduled_dose_id": key.scheduled_dose_id,
            "scheduled_for": key.scheduled_for,
            "user_id": user_id,
            "medication_id": medication_id,
            "time_of_day": time_of_day,
            "status": new_status,
            "action_at": action_at,
            "was_snoozed": False,
            "created_at": now,
            "updated_at": now,
            **extra,
        }

        if allowed_from is None:
            allowed_from = DoseLog.__table__.c.status.in_(OPEN_STATUSES)

        stmt = dialect_insert(session, DoseLog).values(**values)
        update_set = {"status": stmt.excluded.status, "action_at": stmt.excluded.action_at, "updated_at": stmt.excluded.updated_at}
        for column in extra:
            update_set[column] = getattr(stmt.excluded, column)
        stmt = stmt.on_conflict_do_update(
            index_elements=NATURAL_KEY,
            set_=update_set,
            where=allowed_from,
        )

        with storage_errors():
            result = session.execute(stmt)
            changed = result.rowcount > 0
            obligation = self.get(session, key)

        if changed:
            logger.debug(f"Dose {key.scheduled_dose_id}@{key.scheduled_for} -> {new_status}")
        return UpsertOutcome(obligation=obligation, changed=changed)

    def ensure_pending(
        self,
        session: Session,
        key: ObligationKey,
        user_id: int,
        medication_id: int,
        time_of_day: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Materialize an obligation as pending if absent. Returns True if created."""
        now = now or datetime.utcnow()
        stmt = dialect_insert(session, DoseLog).values(
            scheduled_dose_id=key.scheduled_dose_id,
            scheduled_for=key.scheduled_for,
            user_id=user_id,
            medication_id=medication_id,
            time_of_day=time_of_day,
            status=DoseStatus.PENDING.value,
            was_snoozed=False,
            created_at=now,
            updated_at=now,
        ).on_conflict_do_nothing(index_elements=NATURAL_KEY)

        with storage_errors():
            result = session.execute(stmt)
        return result.rowcount > 0

    def query_by_window(
        self,
        session: Session,
        start: datetime,
        end: datetime,
        statuses: Optional[Iterable[str]] = None,
        user_id: Optional[int] = None,
    ) -> List[DoseLog]:
        """Obligations with start < scheduled_for < end, optionally filtered by status"""
        stmt = select(DoseLog).where(DoseLog.scheduled_for > start, DoseLog.scheduled_for < end)
        if statuses is not None:
            stmt = stmt.where(DoseLog.status.in_(list(statuses)))
        if user_id is not None:
            stmt = stmt.where(DoseLog.user_id == user_id)
        stmt = stmt.order_by(DoseLog.scheduled_for, DoseLog.id).execution_options(populate_existing=True)

        with storage_errors():
            return list(session.execute(stmt).scalars())


dose_ledger = DoseLedger()
