"""
Booking ledger: the only writer of appointment lifecycle state.

State machine::

    BOOKED    -> CONFIRMED | CANCELLED | REJECTED | RESCHEDULED
    CONFIRMED -> CANCELLED | RESCHEDULED

RESCHEDULED retires a record; the replacement is a new BOOKED record that
points back at it. Overlap checks and the write that depends on them run
under the doctor's schedule lock and commit before the lock is released, so
for one doctor and overlapping intervals at most one booking can win.
"""
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import (
    ForbiddenError,
    InvalidTransitionError,
    NotFoundError,
    SlotConflictError,
    ValidationError,
)
from ..core.security import Actor
from ..core.timeutils import ensure_utc, utcnow
from ..models.appointment import (
    ACTIVE_STATUSES,
    Appointment,
    AppointmentStatus,
    can_transition,
)
from .collaborators import AuditLog, BillingTrigger, EventPublisher, appointment_payload
from .locks import DoctorLockRegistry, doctor_locks
from .policy import (
    CancellationPolicy,
    Operation,
    authorize,
    check_access,
    check_reviewer,
    resolve_patient_id,
)
from .waitlist import WaitlistMatcher

logger = logging.getLogger(__name__)

AUDIT_ACTIONS = {
    AppointmentStatus.CONFIRMED: "approved",
    AppointmentStatus.REJECTED: "rejected",
    AppointmentStatus.CANCELLED: "cancelled",
    AppointmentStatus.RESCHEDULED: "rescheduled",
}

EVENT_TYPES = {
    AppointmentStatus.BOOKED: "appointment.booked",
    AppointmentStatus.CONFIRMED: "appointment.confirmed",
    AppointmentStatus.REJECTED: "appointment.rejected",
    AppointmentStatus.CANCELLED: "appointment.cancelled",
    AppointmentStatus.RESCHEDULED: "appointment.rescheduled",
}


def validate_interval(starts_at: datetime, ends_at: datetime, now: datetime):
    if starts_at is None or ends_at is None:
        raise ValidationError("startsAt and endsAt are required")
    starts_at, ends_at = ensure_utc(starts_at), ensure_utc(ends_at)
    if ends_at <= starts_at:
        raise ValidationError("endsAt must be after startsAt")
    if starts_at < ensure_utc(now):
        raise ValidationError("startsAt must not be in the past")
    return starts_at, ends_at


class BookingLedger:
    def __init__(
        self,
        db: Session,
        publisher: EventPublisher,
        matcher: Optional[WaitlistMatcher] = None,
        policy: Optional[CancellationPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        locks: DoctorLockRegistry = doctor_locks,
    ):
        self.db = db
        self.publisher = publisher
        self.matcher = matcher
        self.policy = policy or CancellationPolicy.from_settings()
        self.clock = clock
        self.locks = locks
        self.audit = AuditLog(db)
        self.billing = BillingTrigger(publisher)

    # Reads

    def get(self, appointment_id: str) -> Appointment:
        appointment = self.db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if appointment is None:
            raise NotFoundError("Appointment not found", details={"appointmentId": appointment_id})
        return appointment

    def get_for(self, appointment_id: str, actor: Actor) -> Appointment:
        appointment = self.get(appointment_id)
        check_access(appointment, actor)
        return appointment

    def list_for(
        self,
        actor: Actor,
        doctor_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        status: Optional[AppointmentStatus] = None,
        starts_from: Optional[datetime] = None,
        starts_to: Optional[datetime] = None,
    ) -> List[Appointment]:
        query = self.db.query(Appointment)
        if actor.is_patient:
            query = query.filter(Appointment.patient_id == resolve_patient_id(actor, patient_id))
        elif patient_id:
            query = query.filter(Appointment.patient_id == patient_id)
        if actor.is_doctor:
            if not actor.doctor_id:
                raise ForbiddenError("Your account is not linked to a doctor record")
            if doctor_id and doctor_id != actor.doctor_id:
                raise ForbiddenError("Doctors can only view their own schedule")
            doctor_id = actor.doctor_id
        if doctor_id:
            query = query.filter(Appointment.doctor_id == doctor_id)
        if status:
            query = query.filter(Appointment.status == status)
        if starts_from:
            query = query.filter(Appointment.starts_at >= ensure_utc(starts_from))
        if starts_to:
            query = query.filter(Appointment.starts_at <= ensure_utc(starts_to))
        return query.order_by(Appointment.starts_at, Appointment.created_at).all()

    def has_conflict(
        self,
        doctor_id: str,
        starts_at: datetime,
        ends_at: datetime,
        exclude_id: Optional[str] = None,
    ) -> bool:
        query = self.db.query(Appointment.id).filter(
            Appointment.doctor_id == doctor_id,
            Appointment.status.in_(ACTIVE_STATUSES),
            Appointment.starts_at < ends_at,
            Appointment.ends_at > starts_at,
        )
        if exclude_id:
            query = query.filter(Appointment.id != exclude_id)
        return query.first() is not None

    # Writes

    @contextmanager
    def _serialized_write(self, doctor_ids: Iterable[str]):
        """Commit the body under the doctors' schedule locks, or leave no trace."""
        with self.locks.hold(doctor_ids, self.db):
            try:
                yield
                self.db.commit()
            except IntegrityError as exc:
                self.db.rollback()
                logger.info(f"Unique slot index rejected a write for doctors {sorted(set(doctor_ids))}")
                raise SlotConflictError("Selected time slot is already booked") from exc
            except Exception:
                self.db.rollback()
                raise

    def create_booking(
        self,
        doctor_id: str,
        patient_id: Optional[str],
        starts_at: datetime,
        ends_at: datetime,
        reason: Optional[str] = None,
        department: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> Appointment:
        if actor is not None:
            patient_id = resolve_patient_id(actor, patient_id)
        if not doctor_id or not patient_id:
            raise ValidationError("doctorId and patientId are required")
        starts_at, ends_at = validate_interval(starts_at, ends_at, self.clock())
        actor_id = actor.id if actor else None

        with self._serialized_write([doctor_id]):
            if self.has_conflict(doctor_id, starts_at, ends_at):
                raise SlotConflictError(
                    "Selected time slot is no longer available",
                    details={"doctorId": doctor_id, "startsAt": starts_at.isoformat()},
                )
            appointment = Appointment(
                doctor_id=doctor_id,
                patient_id=patient_id,
                starts_at=starts_at,
                ends_at=ends_at,
                status=AppointmentStatus.BOOKED,
                reason=reason,
                department=department,
                created_by=actor_id,
                updated_by=actor_id,
            )
            self.db.add(appointment)
            self.db.flush()
            self.audit.append(appointment.id, actor_id, "booked", None, appointment.snapshot())

        logger.info(f"Booked appointment {appointment.id} for doctor {doctor_id} at {starts_at.isoformat()}")
        self._emit(appointment)
        return appointment

    def approve(self, appointment_id: str, actor: Actor) -> Appointment:
        check_reviewer(actor, Operation.APPROVE)
        appointment = self._transition(appointment_id, actor, AppointmentStatus.CONFIRMED, Operation.APPROVE)
        try:
            self.billing.appointment_confirmed(appointment, actor.id)
        except Exception:
            logger.exception(f"Billing trigger failed for appointment {appointment.id}")
        self._emit(appointment)
        return appointment

    def reject(self, appointment_id: str, actor: Actor) -> Appointment:
        check_reviewer(actor, Operation.REJECT)
        appointment = self._transition(appointment_id, actor, AppointmentStatus.REJECTED, Operation.REJECT)
        self._emit(appointment)
        return appointment

    def cancel(self, appointment_id: str, actor: Actor) -> Appointment:
        appointment = self._transition(appointment_id, actor, AppointmentStatus.CANCELLED, Operation.CANCEL)
        self._emit(appointment)
        self._offer_freed_slot(appointment)
        return appointment

    def reschedule(
        self,
        appointment_id: str,
        new_starts_at: datetime,
        new_ends_at: datetime,
        actor: Actor,
        doctor_id: Optional[str] = None,
    ) -> Appointment:
        """Retire the booking and create its replacement atomically; returns the replacement."""
        new_starts_at, new_ends_at = validate_interval(new_starts_at, new_ends_at, self.clock())
        appointment = self.get_for(appointment_id, actor)

        target_doctor = doctor_id or appointment.doctor_id
        if target_doctor != appointment.doctor_id and not actor.is_clinic_staff:
            raise ForbiddenError("Only staff can reassign doctors")

        self._ensure_transition(appointment, AppointmentStatus.RESCHEDULED)
        authorize(Operation.RESCHEDULE, appointment, self.clock(), actor.role, self.policy)

        with self._serialized_write([appointment.doctor_id, target_doctor]):
            self.db.refresh(appointment)
            self._ensure_transition(appointment, AppointmentStatus.RESCHEDULED)
            if self.has_conflict(target_doctor, new_starts_at, new_ends_at, exclude_id=appointment.id):
                raise SlotConflictError(
                    "Requested slot is unavailable",
                    details={"doctorId": target_doctor, "startsAt": new_starts_at.isoformat()},
                )

            before = appointment.snapshot()
            appointment.status = AppointmentStatus.RESCHEDULED
            appointment.updated_by = actor.id
            # Retire first so the active-slot index never sees both records
            self.db.flush()

            replacement = Appointment(
                doctor_id=target_doctor,
                patient_id=appointment.patient_id,
                starts_at=new_starts_at,
                ends_at=new_ends_at,
                status=AppointmentStatus.BOOKED,
                reason=appointment.reason,
                department=appointment.department,
                previous_appointment_id=appointment.id,
                created_by=actor.id,
                updated_by=actor.id,
            )
            self.db.add(replacement)
            self.db.flush()

            self.audit.append(appointment.id, actor.id, "rescheduled", before, appointment.snapshot())
            self.audit.append(replacement.id, actor.id, "booked", None, replacement.snapshot())

        logger.info(f"Rescheduled appointment {appointment.id} to {replacement.id}")
        self._emit(
            replacement,
            event_type=EVENT_TYPES[AppointmentStatus.RESCHEDULED],
            previous={
                "appointmentId": appointment.id,
                "doctorId": appointment.doctor_id,
                "startsAt": appointment.starts_at.isoformat(),
                "endsAt": appointment.ends_at.isoformat(),
            },
        )
        return replacement

    # Helpers

    def _ensure_transition(self, appointment: Appointment, target: AppointmentStatus) -> None:
        if not can_transition(appointment.status, target):
            raise InvalidTransitionError(
                f"Cannot move appointment from {appointment.status.value} to {target.value}",
                details={"from": appointment.status.value, "to": target.value},
            )

    def _transition(
        self,
        appointment_id: str,
        actor: Actor,
        target: AppointmentStatus,
        operation: Operation,
    ) -> Appointment:
        appointment = self.get_for(appointment_id, actor)
        self._ensure_transition(appointment, target)
        authorize(operation, appointment, self.clock(), actor.role, self.policy)

        with self._serialized_write([appointment.doctor_id]):
            # Another caller may have moved it while we waited for the lock
            self.db.refresh(appointment)
            self._ensure_transition(appointment, target)
            before = appointment.snapshot()
            appointment.status = target
            appointment.updated_by = actor.id
            self.db.flush()
            self.audit.append(appointment.id, actor.id, AUDIT_ACTIONS[target], before, appointment.snapshot())

        logger.info(f"Appointment {appointment.id} {AUDIT_ACTIONS[target]} by {actor.role.value} {actor.id}")
        return appointment

    def _emit(self, appointment: Appointment, event_type: Optional[str] = None, **extra) -> None:
        event_type = event_type or EVENT_TYPES[appointment.status]
        try:
            self.publisher.emit(event_type, appointment_payload(appointment, **extra))
        except Exception:
            logger.exception(f"Failed to emit {event_type} for appointment {appointment.id}")

    def _offer_freed_slot(self, appointment: Appointment) -> None:
        if self.matcher is None:
            return
        try:
            self.matcher.on_slot_freed(
                appointment.doctor_id,
                appointment.starts_at,
                appointment.ends_at,
                exclude_patient_id=appointment.patient_id,
            )
        except Exception:
            self.db.rollback()
            logger.exception(f"Waitlist matching failed for cancelled appointment {appointment.id}")
