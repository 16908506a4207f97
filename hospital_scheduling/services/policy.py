"""
Reschedule/cancel policy engine.

Pure decisions over (operation, appointment, now, role, policy); nothing here
touches the database. Callers run ``authorize`` before delegating the write
to the booking ledger.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import FrozenSet, Optional

from ..core.config import settings
from ..core.exceptions import CutoffViolationError, ForbiddenError
from ..core.security import Actor, UserRole
from ..core.timeutils import ensure_utc
from ..models.appointment import Appointment


class Operation(str, Enum):
    CANCEL = "cancel"
    RESCHEDULE = "reschedule"
    APPROVE = "approve"
    REJECT = "reject"


@dataclass(frozen=True)
class CancellationPolicy:
    cancel_cutoff_hours: float = 12
    bypass_roles: FrozenSet[UserRole] = field(
        default_factory=lambda: frozenset({UserRole.DOCTOR, UserRole.STAFF, UserRole.ADMIN})
    )

    @classmethod
    def from_settings(cls, config=settings) -> "CancellationPolicy":
        return cls(
            cancel_cutoff_hours=config.CANCEL_CUTOFF_HOURS,
            bypass_roles=frozenset(UserRole(role) for role in config.CUTOFF_BYPASS_ROLES),
        )

    def bypasses_cutoff(self, role: UserRole) -> bool:
        return role in self.bypass_roles


def hours_until_start(appointment: Appointment, now: datetime) -> float:
    return (ensure_utc(appointment.starts_at) - ensure_utc(now)).total_seconds() / 3600


def authorize(
    operation: Operation,
    appointment: Appointment,
    now: datetime,
    role: UserRole,
    policy: CancellationPolicy,
) -> None:
    """Raise CutoffViolationError when ``role`` is too close to the start for ``operation``."""
    if policy.bypasses_cutoff(role):
        return

    remaining = hours_until_start(appointment, now)
    if remaining < policy.cancel_cutoff_hours:
        raise CutoffViolationError(
            f"Cannot {operation.value} within {policy.cancel_cutoff_hours:g} hours of appointment time",
            details={
                "operation": operation.value,
                "hoursUntilStart": round(remaining, 2),
                "cancelCutoffHours": policy.cancel_cutoff_hours,
            },
        )


# Actor scoping

REVIEWER_ROLES = (UserRole.DOCTOR, UserRole.STAFF, UserRole.ADMIN)


def check_access(appointment: Appointment, actor: Actor) -> None:
    """Patients and doctors may only manage their own appointments."""
    if actor.is_patient:
        if not actor.patient_id or actor.patient_id != appointment.patient_id:
            raise ForbiddenError("Patients may only manage their own appointments")
    elif actor.is_doctor:
        if not actor.doctor_id:
            raise ForbiddenError("Your account is not linked to a doctor record")
        if actor.doctor_id != appointment.doctor_id:
            raise ForbiddenError("Doctors may only manage their own appointments")


def check_reviewer(actor: Actor, operation: Operation) -> None:
    if actor.role not in REVIEWER_ROLES:
        raise ForbiddenError(f"Only staff or doctors can {operation.value} appointments")


def resolve_patient_id(actor: Actor, requested: Optional[str]) -> Optional[str]:
    """Patient actors always act for their linked record; others name the patient."""
    if actor.is_patient:
        if not actor.patient_id:
            raise ForbiddenError("Your account is not linked to a patient record")
        if requested and requested != actor.patient_id:
            raise ForbiddenError("Patients can only act for themselves")
        return actor.patient_id
    return requested
