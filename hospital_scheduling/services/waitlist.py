"""
Waitlist: standing requests to hear about openings on a doctor's day.

Joining and leaving are patient-driven. When a booking is cancelled the
ledger hands the freed interval to ``WaitlistMatcher.on_slot_freed``, which
offers it to a single entry, first come first served. Offers never book on
the patient's behalf and never remove the entry.
"""
import logging
from datetime import date, datetime
from typing import Callable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import NotFoundError, ValidationError
from ..core.security import Actor
from ..core.timeutils import ensure_utc, local_day, utcnow
from ..models.waitlist import WaitlistEntry
from .collaborators import EventPublisher
from .policy import resolve_patient_id

logger = logging.getLogger(__name__)

SLOT_AVAILABLE_EVENT = "waitlist.slot_available"


class WaitlistService:
    def __init__(self, db: Session):
        self.db = db

    def join(self, actor: Actor, doctor_id: str, desired_date: date, patient_id: Optional[str] = None) -> Tuple[WaitlistEntry, bool]:
        """Enqueue the patient; returns (entry, created). Joining twice is idempotent."""
        patient_id = resolve_patient_id(actor, patient_id)
        if not patient_id or not doctor_id:
            raise ValidationError("doctorId and patientId are required")

        existing = self._find(patient_id, doctor_id, desired_date)
        if existing is not None:
            return existing, False

        entry = WaitlistEntry(doctor_id=doctor_id, patient_id=patient_id, desired_date=desired_date, created_at=utcnow())
        self.db.add(entry)
        try:
            self.db.commit()
        except IntegrityError:
            # Same patient raced a duplicate join; the other insert won
            self.db.rollback()
            existing = self._find(patient_id, doctor_id, desired_date)
            if existing is None:
                raise
            return existing, False
        self.db.refresh(entry)
        logger.info(f"Patient {patient_id} joined waitlist of doctor {doctor_id} for {desired_date}")
        return entry, True

    def leave(self, actor: Actor, entry_id: str, patient_id: Optional[str] = None) -> None:
        query = self.db.query(WaitlistEntry).filter(WaitlistEntry.id == entry_id)
        if not actor.is_clinic_staff:
            owner = resolve_patient_id(actor, patient_id)
            query = query.filter(WaitlistEntry.patient_id == owner)
        entry = query.first()
        if entry is None:
            raise NotFoundError("Waitlist entry not found")
        self.db.delete(entry)
        self.db.commit()
        logger.info(f"Waitlist entry {entry_id} removed")

    def list_for(self, actor: Actor, patient_id: Optional[str] = None, doctor_id: Optional[str] = None) -> List[WaitlistEntry]:
        patient_id = resolve_patient_id(actor, patient_id)
        if not patient_id:
            return []
        query = self.db.query(WaitlistEntry).filter(WaitlistEntry.patient_id == patient_id)
        if doctor_id:
            query = query.filter(WaitlistEntry.doctor_id == doctor_id)
        return query.order_by(WaitlistEntry.desired_date, WaitlistEntry.created_at).all()

    def _find(self, patient_id: str, doctor_id: str, desired_date: date) -> Optional[WaitlistEntry]:
        return (
            self.db.query(WaitlistEntry)
            .filter(
                WaitlistEntry.patient_id == patient_id,
                WaitlistEntry.doctor_id == doctor_id,
                WaitlistEntry.desired_date == desired_date,
            )
            .first()
        )


class WaitlistMatcher:
    def __init__(
        self,
        db: Session,
        publisher: EventPublisher,
        tz_name: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.publisher = publisher
        self.tz_name = tz_name
        self.clock = clock

    def candidates(self, doctor_id: str, day: date, exclude_patient_id: Optional[str] = None) -> List[WaitlistEntry]:
        """Entries for the doctor's day, oldest first.

        Entries already offered an earlier opening sort after those never
        offered one, so a single early joiner does not take every opening.
        """
        query = self.db.query(WaitlistEntry).filter(
            WaitlistEntry.doctor_id == doctor_id,
            WaitlistEntry.desired_date == day,
        )
        if exclude_patient_id:
            query = query.filter(WaitlistEntry.patient_id != exclude_patient_id)
        entries = query.order_by(WaitlistEntry.created_at, WaitlistEntry.id).all()
        return sorted(entries, key=lambda entry: entry.notified_at is not None)

    def on_slot_freed(
        self,
        doctor_id: str,
        starts_at: datetime,
        ends_at: datetime,
        exclude_patient_id: Optional[str] = None,
    ) -> Optional[WaitlistEntry]:
        """Offer the freed interval to one waiting patient; None when nobody waits."""
        day = local_day(starts_at, self.tz_name)
        candidates = self.candidates(doctor_id, day, exclude_patient_id)
        if not candidates:
            logger.debug(f"No waitlist entries for doctor {doctor_id} on {day}")
            return None

        entry = candidates[0]
        # Marked offered only once the offer is published
        self.publisher.emit(
            SLOT_AVAILABLE_EVENT,
            {
                "waitlistEntryId": entry.id,
                "doctorId": doctor_id,
                "patientId": entry.patient_id,
                "startsAt": ensure_utc(starts_at).isoformat(),
                "endsAt": ensure_utc(ends_at).isoformat(),
            },
        )
        entry.notified_at = self.clock()
        self.db.commit()
        logger.info(f"Offered freed slot {starts_at.isoformat()} of doctor {doctor_id} to waitlist entry {entry.id}")
        return entry
