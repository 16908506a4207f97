"""
Slot calendar: bookable windows for a doctor on a day.

Slots are derived on every query from the doctor's weekly working-hours
template (clinic-local wall clock) minus the doctor's active appointments.
Date-specific overrides sit on top of the template: open overrides replace
the template's hours for that day, blocked overrides remove every slot they
touch. Nothing here is persisted.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import NotFoundError, ValidationError
from ..core.security import Actor
from ..core.timeutils import day_bounds, ensure_utc, intervals_overlap, local_instant, utcnow
from ..models.appointment import Appointment, ACTIVE_STATUSES
from ..models.doctor import ScheduleOverride, WorkingHours
from ..schemas.doctor import WorkingHoursRange

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Slot:
    doctor_id: str
    starts_at: datetime
    ends_at: datetime
    available: bool
    # Raw "already started" flag; callers apply their own future-only rule
    is_past: bool


def merge_ranges(ranges: Sequence[Tuple[datetime, datetime]]) -> List[Tuple[datetime, datetime]]:
    """Coalesce overlapping ranges; touching ranges stay separate."""
    merged: List[Tuple[datetime, datetime]] = []
    for start, end in sorted(ranges):
        if merged and start < merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def partition(ranges: Sequence[Tuple[datetime, datetime]], step: timedelta) -> List[Tuple[datetime, datetime]]:
    """Cut working ranges into non-overlapping fixed segments; a trailing partial segment is dropped."""
    segments = []
    for range_start, range_end in merge_ranges(ranges):
        cursor = range_start
        while cursor + step <= range_end:
            segments.append((cursor, cursor + step))
            cursor += step
    return segments


class SlotCalendar:
    def __init__(
        self,
        db: Session,
        slot_minutes: Optional[int] = None,
        tz_name: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.step = timedelta(minutes=slot_minutes or settings.SLOT_MINUTES)
        self.tz_name = tz_name or settings.CLINIC_TIMEZONE
        self.clock = clock

    def overrides_for(self, doctor_id: str, day: date) -> List[ScheduleOverride]:
        day_start, day_end = day_bounds(day, self.tz_name)
        return (
            self.db.query(ScheduleOverride)
            .filter(
                ScheduleOverride.doctor_id == doctor_id,
                ScheduleOverride.starts_at < day_end,
                ScheduleOverride.ends_at > day_start,
            )
            .order_by(ScheduleOverride.starts_at)
            .all()
        )

    def working_ranges(
        self,
        doctor_id: str,
        day: date,
        overrides: Optional[Sequence[ScheduleOverride]] = None,
    ) -> List[Tuple[datetime, datetime]]:
        if overrides is None:
            overrides = self.overrides_for(doctor_id, day)
        day_start, day_end = day_bounds(day, self.tz_name)
        rostered = [
            (max(o.starts_at, day_start), min(o.ends_at, day_end))
            for o in overrides if not o.is_blocked
        ]
        if rostered:
            return rostered

        rows = (
            self.db.query(WorkingHours)
            .filter(WorkingHours.doctor_id == doctor_id, WorkingHours.weekday == day.weekday())
            .order_by(WorkingHours.start_time)
            .all()
        )
        return [
            (local_instant(day, row.start_time, self.tz_name), local_instant(day, row.end_time, self.tz_name))
            for row in rows
        ]

    def busy_intervals(self, doctor_id: str, window_start: datetime, window_end: datetime) -> List[Tuple[datetime, datetime]]:
        appointments = (
            self.db.query(Appointment)
            .filter(
                Appointment.doctor_id == doctor_id,
                Appointment.status.in_(ACTIVE_STATUSES),
                Appointment.starts_at < window_end,
                Appointment.ends_at > window_start,
            )
            .all()
        )
        return [(a.starts_at, a.ends_at) for a in appointments]

    def get_slots(self, doctor_id: str, day: date, now: Optional[datetime] = None) -> List[Slot]:
        """Ordered slots for ``doctor_id`` on ``day``; empty when there is no template."""
        overrides = self.overrides_for(doctor_id, day)
        ranges = self.working_ranges(doctor_id, day, overrides)
        if not ranges:
            logger.debug(f"No working hours for doctor {doctor_id} on {day}")
            return []

        blocked = [(o.starts_at, o.ends_at) for o in overrides if o.is_blocked]
        segments = [
            (start, end)
            for start, end in partition(ranges, self.step)
            if not any(intervals_overlap(start, end, b0, b1) for b0, b1 in blocked)
        ]
        if not segments:
            return []

        now = now or self.clock()
        day_start, day_end = day_bounds(day, self.tz_name)
        window_start = min(day_start, segments[0][0])
        window_end = max(day_end, segments[-1][1])
        busy = self.busy_intervals(doctor_id, window_start, window_end)

        return [
            Slot(
                doctor_id=doctor_id,
                starts_at=start,
                ends_at=end,
                available=not any(intervals_overlap(start, end, b0, b1) for b0, b1 in busy),
                is_past=start <= now,
            )
            for start, end in segments
        ]


class WorkingHoursService:
    """Staff-maintained weekly template the calendar partitions into slots."""

    def __init__(self, db: Session):
        self.db = db

    def get_template(self, doctor_id: str) -> List[WorkingHours]:
        return (
            self.db.query(WorkingHours)
            .filter(WorkingHours.doctor_id == doctor_id)
            .order_by(WorkingHours.weekday, WorkingHours.start_time)
            .all()
        )

    def replace_template(self, doctor_id: str, ranges: Sequence[WorkingHoursRange]) -> List[WorkingHours]:
        """Replace the doctor's whole weekly template in one transaction."""
        ordered = sorted(ranges, key=lambda item: (item.weekday, item.start_time))
        for previous, current in zip(ordered, ordered[1:]):
            if current.weekday == previous.weekday and current.start_time < previous.end_time:
                raise ValidationError(
                    "Working hours ranges must not overlap",
                    details={
                        "weekday": current.weekday,
                        "ranges": [
                            f"{previous.start_time.isoformat()}-{previous.end_time.isoformat()}",
                            f"{current.start_time.isoformat()}-{current.end_time.isoformat()}",
                        ],
                    },
                )
        self.db.query(WorkingHours).filter(WorkingHours.doctor_id == doctor_id).delete()
        for item in ordered:
            self.db.add(
                WorkingHours(
                    doctor_id=doctor_id,
                    weekday=item.weekday,
                    start_time=item.start_time,
                    end_time=item.end_time,
                )
            )
        self.db.commit()
        logger.info(f"Working hours for doctor {doctor_id} replaced with {len(ranges)} ranges")
        return self.get_template(doctor_id)


class ScheduleOverrideService:
    """Date-specific roster entries layered over the weekly template."""

    def __init__(self, db: Session, tz_name: Optional[str] = None):
        self.db = db
        self.tz_name = tz_name or settings.CLINIC_TIMEZONE

    def list_for(self, doctor_id: str, day: Optional[date] = None) -> List[ScheduleOverride]:
        query = self.db.query(ScheduleOverride).filter(ScheduleOverride.doctor_id == doctor_id)
        if day is not None:
            day_start, day_end = day_bounds(day, self.tz_name)
            query = query.filter(ScheduleOverride.starts_at < day_end, ScheduleOverride.ends_at > day_start)
        return query.order_by(ScheduleOverride.starts_at).all()

    def add(
        self,
        doctor_id: str,
        starts_at: datetime,
        ends_at: datetime,
        is_blocked: bool = True,
        reason: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> ScheduleOverride:
        starts_at, ends_at = ensure_utc(starts_at), ensure_utc(ends_at)
        if ends_at <= starts_at:
            raise ValidationError("endsAt must be after startsAt")
        override = ScheduleOverride(
            doctor_id=doctor_id,
            starts_at=starts_at,
            ends_at=ends_at,
            is_blocked=is_blocked,
            reason=reason,
            created_by=actor.id if actor else None,
        )
        self.db.add(override)
        self.db.commit()
        self.db.refresh(override)
        kind = "Blocked" if is_blocked else "Rostered"
        logger.info(f"{kind} {starts_at.isoformat()}-{ends_at.isoformat()} for doctor {doctor_id}")
        return override

    def remove(self, doctor_id: str, override_id: int) -> None:
        override = (
            self.db.query(ScheduleOverride)
            .filter(ScheduleOverride.id == override_id, ScheduleOverride.doctor_id == doctor_id)
            .first()
        )
        if override is None:
            raise NotFoundError("Schedule override not found", details={"overrideId": override_id})
        self.db.delete(override)
        self.db.commit()
        logger.info(f"Schedule override {override_id} of doctor {doctor_id} removed")
