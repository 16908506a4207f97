from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple

import pytz

from .config import settings


def utcnow() -> datetime:
    """Current instant, timezone-aware UTC."""
    return datetime.now(pytz.UTC)


def ensure_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def clinic_tz(name: Optional[str] = None):
    return pytz.timezone(name or settings.CLINIC_TIMEZONE)


def local_instant(day: date, at: time, tz_name: Optional[str] = None) -> datetime:
    """Clinic-local wall clock time on ``day`` as an aware UTC instant."""
    tz = clinic_tz(tz_name)
    return tz.localize(datetime.combine(day, at)).astimezone(pytz.UTC)


def day_bounds(day: date, tz_name: Optional[str] = None) -> Tuple[datetime, datetime]:
    """UTC instants delimiting the clinic-local calendar day [start, end)."""
    tz = clinic_tz(tz_name)
    start = tz.localize(datetime.combine(day, time(0, 0)))
    end = tz.localize(datetime.combine(day + timedelta(days=1), time(0, 0)))
    return start.astimezone(pytz.UTC), end.astimezone(pytz.UTC)


def local_day(instant: datetime, tz_name: Optional[str] = None) -> date:
    """Clinic-local calendar day an instant falls on."""
    return ensure_utc(instant).astimezone(clinic_tz(tz_name)).date()


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open [start, end) overlap test."""
    return a_start < b_end and b_start < a_end
