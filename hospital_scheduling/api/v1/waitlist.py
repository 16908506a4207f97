from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from ...api.deps import get_current_actor, get_waitlist_service, rate_limit_check
from ...core.security import Actor
from ...schemas.waitlist import WaitlistEntryResponse, WaitlistJoinRequest
from ...services.waitlist import WaitlistService

router = APIRouter(prefix="/waitlist", tags=["Waitlist"])

@router.get("", response_model=List[WaitlistEntryResponse])
def list_waitlist(
    patient_id: Optional[str] = Query(None, alias="patientId"),
    doctor_id: Optional[str] = Query(None, alias="doctorId"),
    service: WaitlistService = Depends(get_waitlist_service),
    current_actor: Actor = Depends(get_current_actor)
):
    """The caller's waitlist entries, by desired day then join time."""
    entries = service.list_for(current_actor, patient_id=patient_id, doctor_id=doctor_id)
    return [WaitlistEntryResponse.model_validate(e) for e in entries]

@router.post("", response_model=WaitlistEntryResponse, status_code=status.HTTP_201_CREATED)
def join_waitlist(
    body: WaitlistJoinRequest,
    response: Response,
    service: WaitlistService = Depends(get_waitlist_service),
    current_actor: Actor = Depends(get_current_actor),
    _: None = Depends(rate_limit_check)
):
    """Join a doctor's waitlist for a day; joining again returns the existing entry."""
    entry, created = service.join(
        current_actor,
        body.doctor_id,
        body.desired_date,
        patient_id=body.patient_id,
    )
    if not created:
        response.status_code = status.HTTP_200_OK
    return WaitlistEntryResponse.model_validate(entry)

@router.delete("/{entry_id}")
def leave_waitlist(
    entry_id: str,
    service: WaitlistService = Depends(get_waitlist_service),
    current_actor: Actor = Depends(get_current_actor)
):
    service.leave(current_actor, entry_id)
    return {"ok": True}
