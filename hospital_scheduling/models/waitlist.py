from sqlalchemy import Column, String, Date, Index, UniqueConstraint

from ..core.database import Base
from ..core.timeutils import utcnow
from .appointment import new_id
from .types import UTCDateTime

class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"
    __table_args__ = (
        UniqueConstraint("patient_id", "doctor_id", "desired_date", name="uq_waitlist_patient_doctor_day"),
        Index("ix_waitlist_doctor_day", "doctor_id", "desired_date"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    doctor_id = Column(String(64), nullable=False)
    patient_id = Column(String(64), nullable=False, index=True)
    desired_date = Column(Date, nullable=False)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    # Last time this entry was offered a freed interval
    notified_at = Column(UTCDateTime, nullable=True)

    def __repr__(self):
        return f"<WaitlistEntry(id={self.id}, doctor_id={self.doctor_id}, patient_id={self.patient_id}, desired_date='{self.desired_date}')>"
