from datetime import datetime
from typing import Optional
from pydantic import Field, field_validator, model_validator

from ..models.appointment import AppointmentStatus
from ..core.timeutils import ensure_utc
from .base import CamelModel


class IntervalMixin(CamelModel):
    starts_at: datetime
    ends_at: datetime

    @field_validator("starts_at", "ends_at")
    @classmethod
    def normalize_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)

    @model_validator(mode="after")
    def check_interval(self):
        if self.ends_at <= self.starts_at:
            raise ValueError("endsAt must be after startsAt")
        return self


class BookingRequest(IntervalMixin):
    doctor_id: str = Field(..., min_length=1, max_length=64)
    patient_id: Optional[str] = Field(None, min_length=1, max_length=64)
    reason: Optional[str] = Field(None, max_length=2000)
    department: Optional[str] = Field(None, max_length=100)


class RescheduleRequest(IntervalMixin):
    doctor_id: Optional[str] = Field(None, min_length=1, max_length=64)


class AppointmentResponse(CamelModel):
    id: str
    doctor_id: str
    patient_id: str
    starts_at: datetime
    ends_at: datetime
    status: AppointmentStatus
    reason: Optional[str] = None
    department: Optional[str] = None
    previous_appointment_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class SlotResponse(CamelModel):
    doctor_id: str
    starts_at: datetime
    ends_at: datetime
    available: bool
    is_past: bool


class PolicyResponse(CamelModel):
    cancel_cutoff_hours: float
