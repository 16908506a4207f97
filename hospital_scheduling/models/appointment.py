from sqlalchemy import Column, String, Text, Index, JSON, Integer, Enum as SQLEnum, text
import enum
import uuid

from ..core.database import Base
from ..core.timeutils import utcnow
from .types import UTCDateTime

class AppointmentStatus(str, enum.Enum):
    BOOKED = "BOOKED"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    RESCHEDULED = "RESCHEDULED"

# Statuses that hold an interval on the doctor's calendar
ACTIVE_STATUSES = (AppointmentStatus.BOOKED, AppointmentStatus.CONFIRMED)

# CANCELLED, REJECTED and RESCHEDULED are terminal
ALLOWED_TRANSITIONS = {
    AppointmentStatus.BOOKED: {
        AppointmentStatus.CONFIRMED,
        AppointmentStatus.CANCELLED,
        AppointmentStatus.REJECTED,
        AppointmentStatus.RESCHEDULED,
    },
    AppointmentStatus.CONFIRMED: {
        AppointmentStatus.CANCELLED,
        AppointmentStatus.RESCHEDULED,
    },
}

def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())

def new_id() -> str:
    return str(uuid.uuid4())

class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        Index("ix_appointments_doctor_starts", "doctor_id", "starts_at"),
        # Backstop for the per-doctor lock: two active bookings can never share a start
        Index(
            "uq_appointments_active_doctor_start",
            "doctor_id",
            "starts_at",
            unique=True,
            sqlite_where=text("status IN ('BOOKED', 'CONFIRMED')"),
            postgresql_where=text("status IN ('BOOKED', 'CONFIRMED')"),
        ),
    )

    id = Column(String(36), primary_key=True, default=new_id)

    # External identifiers, opaque to this service
    doctor_id = Column(String(64), nullable=False, index=True)
    patient_id = Column(String(64), nullable=False, index=True)

    # Appointment details
    starts_at = Column(UTCDateTime, nullable=False)
    ends_at = Column(UTCDateTime, nullable=False)
    status = Column(
        SQLEnum(AppointmentStatus, name="appointment_status"),
        nullable=False,
        default=AppointmentStatus.BOOKED,
    )
    reason = Column(Text, nullable=True)
    department = Column(String(100), nullable=True)

    # Lineage: a rescheduled booking points at the record it replaced
    previous_appointment_id = Column(String(36), nullable=True, index=True)

    # Tracking
    created_by = Column(String(64), nullable=True)
    updated_by = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def snapshot(self) -> dict:
        """Plain values of the fields an audit diff tracks."""
        return {
            "doctorId": self.doctor_id,
            "patientId": self.patient_id,
            "startsAt": self.starts_at.isoformat() if self.starts_at else None,
            "endsAt": self.ends_at.isoformat() if self.ends_at else None,
            "status": self.status.value if self.status else None,
        }

    def __repr__(self):
        return f"<Appointment(id={self.id}, doctor_id={self.doctor_id}, patient_id={self.patient_id}, starts_at='{self.starts_at}', status={self.status})>"

class AuditEntry(Base):
    __tablename__ = "audit_entries"
    __table_args__ = (
        Index("ix_audit_entity", "entity", "entity_id", "at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    entity = Column(String(50), nullable=False)
    entity_id = Column(String(36), nullable=False)
    actor_id = Column(String(64), nullable=True)
    action = Column(String(50), nullable=False)
    at = Column(UTCDateTime, nullable=False, default=utcnow)
    diff = Column(JSON, nullable=False, default=list)

    def __repr__(self):
        return f"<AuditEntry(entity={self.entity}, entity_id={self.entity_id}, action='{self.action}')>"
