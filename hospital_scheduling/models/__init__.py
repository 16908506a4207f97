from .appointment import Appointment, AppointmentStatus, AuditEntry, ACTIVE_STATUSES
from .doctor import ScheduleOverride, WorkingHours
from .waitlist import WaitlistEntry

__all__ = [
    "Appointment",
    "AppointmentStatus",
    "AuditEntry",
    "ACTIVE_STATUSES",
    "ScheduleOverride",
    "WorkingHours",
    "WaitlistEntry",
]
