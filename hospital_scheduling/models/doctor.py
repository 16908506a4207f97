from sqlalchemy import Boolean, Column, Integer, String, Time, Index, UniqueConstraint, CheckConstraint

from ..core.database import Base
from ..core.timeutils import utcnow
from .types import UTCDateTime

class WorkingHours(Base):
    """One clinic-local working range of a doctor's weekly template."""
    __tablename__ = "working_hours"
    __table_args__ = (
        UniqueConstraint("doctor_id", "weekday", "start_time", name="uq_working_hours_range"),
        CheckConstraint("weekday >= 0 AND weekday <= 6", name="ck_working_hours_weekday"),
    )

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(String(64), nullable=False, index=True)

    # Monday == 0, as in date.weekday()
    weekday = Column(Integer, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    def __repr__(self):
        return f"<WorkingHours(doctor_id={self.doctor_id}, weekday={self.weekday}, {self.start_time}-{self.end_time})>"


class ScheduleOverride(Base):
    """Date-specific roster entry: extra working hours, or a blocked window (leave, closure)."""
    __tablename__ = "schedule_overrides"
    __table_args__ = (
        Index("ix_schedule_overrides_doctor_starts", "doctor_id", "starts_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    doctor_id = Column(String(64), nullable=False)
    starts_at = Column(UTCDateTime, nullable=False)
    ends_at = Column(UTCDateTime, nullable=False)
    is_blocked = Column(Boolean, nullable=False, default=False)
    reason = Column(String(255), nullable=True)

    created_by = Column(String(64), nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self):
        kind = "blocked" if self.is_blocked else "open"
        return f"<ScheduleOverride(doctor_id={self.doctor_id}, {kind}, {self.starts_at}-{self.ends_at})>"
