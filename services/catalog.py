"""
Catalog Service
Read-only access to medication schedules and caregiver contacts
"""

import logging
from typing import Iterator, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

import models


logger = logging.getLogger(__name__)


class MedicationCatalog:
    """Active schedule definitions; the engine never writes them"""

    def _active(self):
        return (
            select(models.ScheduledDose)
            .join(models.Medication)
            .where(models.ScheduledDose.is_active.is_(True), models.Medication.active.is_(True))
            .options(joinedload(models.ScheduledDose.medication))
        )

    def get_active_schedules(self, session: Session, user_id: int) -> List[models.ScheduledDose]:
        stmt = self._active().where(models.ScheduledDose.user_id == user_id).order_by(
            models.ScheduledDose.scheduled_time, models.ScheduledDose.id
        )
        return list(session.execute(stmt).scalars())

    def iter_active_schedules(self, session: Session) -> Iterator[models.ScheduledDose]:
        """Every active schedule across all users"""
        stmt = self._active().order_by(models.ScheduledDose.user_id, models.ScheduledDose.id)
        yield from list(session.execute(stmt).scalars())

    def get_schedule(self, session: Session, scheduled_dose_id: int) -> Optional[models.ScheduledDose]:
        return session.get(models.ScheduledDose, scheduled_dose_id)

    def get_medication(self, session: Session, medication_id: int) -> Optional[models.Medication]:
        return session.get(models.Medication, medication_id)


class CaregiverDirectory:
    """Who hears about a patient's missed doses"""

    def get_alertable_caregivers(self, session: Session, patient_id: int) -> List[int]:
        stmt = (
            select(models.CaregiverRelationship.caregiver_id)
            .where(
                models.CaregiverRelationship.patient_id == patient_id,
                models.CaregiverRelationship.can_receive_alerts.is_(True),
            )
            .order_by(models.CaregiverRelationship.caregiver_id)
        )
        return list(session.execute(stmt).scalars())

    def get_sms_contacts(self, session: Session, patient_id: int) -> List[models.EmergencyContact]:
        stmt = (
            select(models.EmergencyContact)
            .where(
                models.EmergencyContact.user_id == patient_id,
                models.EmergencyContact.notify_on_missed_dose.is_(True),
            )
            .order_by(models.EmergencyContact.id)
        )
        return list(session.execute(stmt).scalars())

    def get_display_name(self, session: Session, user_id: int) -> str:
        profile = session.get(models.UserProfile, user_id)
        if profile and profile.display_name:
            return profile.display_name
        return "Your patient"


medication_catalog = MedicationCatalog()
caregiver_directory = CaregiverDirectory()
