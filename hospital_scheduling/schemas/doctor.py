from datetime import datetime, time
from typing import List, Optional
from pydantic import Field, model_validator

from .appointment import IntervalMixin
from .base import CamelModel


class WorkingHoursRange(CamelModel):
    weekday: int = Field(..., ge=0, le=6)
    start_time: time
    end_time: time

    @model_validator(mode="after")
    def check_range(self):
        if self.end_time <= self.start_time:
            raise ValueError("endTime must be after startTime")
        return self


class WorkingHoursTemplate(CamelModel):
    doctor_id: str
    ranges: List[WorkingHoursRange]


class WorkingHoursUpdate(CamelModel):
    ranges: List[WorkingHoursRange]


class ScheduleOverrideCreate(IntervalMixin):
    # Blocked windows remove slots; open ones replace the day's weekly hours
    is_blocked: bool = True
    reason: Optional[str] = Field(None, max_length=255)


class ScheduleOverrideResponse(CamelModel):
    id: int
    doctor_id: str
    starts_at: datetime
    ends_at: datetime
    is_blocked: bool
    reason: Optional[str] = None
    created_at: datetime
