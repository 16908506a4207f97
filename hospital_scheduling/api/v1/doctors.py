from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from ...api.deps import (
    get_current_actor, get_schedule_override_service, get_staff_actor,
    get_working_hours_service
)
from ...core.security import Actor
from ...schemas.doctor import (
    ScheduleOverrideCreate, ScheduleOverrideResponse, WorkingHoursRange,
    WorkingHoursTemplate, WorkingHoursUpdate
)
from ...services.slot_calendar import ScheduleOverrideService, WorkingHoursService

router = APIRouter(prefix="/doctors", tags=["Doctors"])

def _template(doctor_id: str, rows) -> WorkingHoursTemplate:
    return WorkingHoursTemplate(
        doctor_id=doctor_id,
        ranges=[WorkingHoursRange.model_validate(row) for row in rows],
    )

@router.get("/{doctor_id}/working-hours", response_model=WorkingHoursTemplate)
def get_working_hours(
    doctor_id: str,
    service: WorkingHoursService = Depends(get_working_hours_service),
    _: Actor = Depends(get_current_actor)
):
    """Weekly clinic-local template slots are generated from."""
    return _template(doctor_id, service.get_template(doctor_id))

@router.put("/{doctor_id}/working-hours", response_model=WorkingHoursTemplate)
def replace_working_hours(
    doctor_id: str,
    body: WorkingHoursUpdate,
    service: WorkingHoursService = Depends(get_working_hours_service),
    _: Actor = Depends(get_staff_actor)
):
    """Replace the doctor's weekly template (staff only); ranges on one weekday must not overlap."""
    return _template(doctor_id, service.replace_template(doctor_id, body.ranges))

@router.get("/{doctor_id}/overrides", response_model=List[ScheduleOverrideResponse])
def list_schedule_overrides(
    doctor_id: str,
    day: Optional[date] = Query(None, description="Only overrides touching this clinic-local day"),
    service: ScheduleOverrideService = Depends(get_schedule_override_service),
    _: Actor = Depends(get_current_actor)
):
    return [ScheduleOverrideResponse.model_validate(o) for o in service.list_for(doctor_id, day)]

@router.post("/{doctor_id}/overrides", response_model=ScheduleOverrideResponse, status_code=status.HTTP_201_CREATED)
def add_schedule_override(
    doctor_id: str,
    body: ScheduleOverrideCreate,
    service: ScheduleOverrideService = Depends(get_schedule_override_service),
    current_actor: Actor = Depends(get_staff_actor)
):
    """Block a window (leave, closure) or roster extra hours for specific dates (staff only)."""
    override = service.add(
        doctor_id,
        body.starts_at,
        body.ends_at,
        is_blocked=body.is_blocked,
        reason=body.reason,
        actor=current_actor,
    )
    return ScheduleOverrideResponse.model_validate(override)

@router.delete("/{doctor_id}/overrides/{override_id}")
def remove_schedule_override(
    doctor_id: str,
    override_id: int,
    service: ScheduleOverrideService = Depends(get_schedule_override_service),
    _: Actor = Depends(get_staff_actor)
):
    service.remove(doctor_id, override_id)
    return {"ok": True}
