from datetime import date, datetime
from typing import Optional
from pydantic import Field

from .base import CamelModel


class WaitlistJoinRequest(CamelModel):
    doctor_id: str = Field(..., min_length=1, max_length=64)
    desired_date: date
    # Staff may enqueue on behalf of a patient
    patient_id: Optional[str] = Field(None, min_length=1, max_length=64)


class WaitlistEntryResponse(CamelModel):
    id: str
    doctor_id: str
    patient_id: str
    desired_date: date
    created_at: datetime
    notified_at: Optional[datetime] = None
