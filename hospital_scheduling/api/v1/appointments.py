from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from ...api.deps import (
    get_current_actor, get_reviewer_actor, get_ledger, get_policy,
    get_slot_calendar, rate_limit_check
)
from ...core.security import Actor
from ...models.appointment import AppointmentStatus
from ...schemas.appointment import (
    AppointmentResponse, BookingRequest, PolicyResponse,
    RescheduleRequest, SlotResponse
)
from ...services.booking_ledger import BookingLedger
from ...services.policy import CancellationPolicy
from ...services.slot_calendar import SlotCalendar

router = APIRouter(prefix="/appointments", tags=["Appointments"])

@router.get("/policy", response_model=PolicyResponse)
async def get_cancellation_policy(
    policy: CancellationPolicy = Depends(get_policy),
    _: Actor = Depends(get_current_actor)
):
    """Cutoff the client should present before offering cancel/reschedule."""
    return PolicyResponse(cancel_cutoff_hours=policy.cancel_cutoff_hours)

@router.get("/{doctor_id}/slots", response_model=List[SlotResponse])
def get_slots(
    doctor_id: str,
    day: date = Query(..., description="Calendar day, YYYY-MM-DD"),
    future_only: bool = Query(False, alias="futureOnly"),
    calendar: SlotCalendar = Depends(get_slot_calendar),
    _: Actor = Depends(get_current_actor)
):
    """Ordered slots of a doctor's day, with availability and past flags."""
    slots = calendar.get_slots(doctor_id, day)
    if future_only:
        slots = [slot for slot in slots if not slot.is_past]
    return [SlotResponse.model_validate(slot) for slot in slots]

@router.get("", response_model=List[AppointmentResponse])
def list_appointments(
    doctor_id: Optional[str] = Query(None, alias="doctorId"),
    patient_id: Optional[str] = Query(None, alias="patientId"),
    status_filter: Optional[AppointmentStatus] = Query(None, alias="status"),
    starts_from: Optional[datetime] = Query(None, alias="from"),
    starts_to: Optional[datetime] = Query(None, alias="to"),
    ledger: BookingLedger = Depends(get_ledger),
    current_actor: Actor = Depends(get_current_actor)
):
    """List appointments visible to the caller, ordered by start."""
    appointments = ledger.list_for(
        current_actor,
        doctor_id=doctor_id,
        patient_id=patient_id,
        status=status_filter,
        starts_from=starts_from,
        starts_to=starts_to,
    )
    return [AppointmentResponse.model_validate(a) for a in appointments]

@router.get("/{appointment_id}", response_model=AppointmentResponse)
def get_appointment(
    appointment_id: str,
    ledger: BookingLedger = Depends(get_ledger),
    current_actor: Actor = Depends(get_current_actor)
):
    return AppointmentResponse.model_validate(ledger.get_for(appointment_id, current_actor))

@router.post("", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def book_appointment(
    booking: BookingRequest,
    ledger: BookingLedger = Depends(get_ledger),
    current_actor: Actor = Depends(get_current_actor),
    _: None = Depends(rate_limit_check)
):
    """Book an interval; 409 when another active booking holds it."""
    appointment = ledger.create_booking(
        doctor_id=booking.doctor_id,
        patient_id=booking.patient_id,
        starts_at=booking.starts_at,
        ends_at=booking.ends_at,
        reason=booking.reason,
        department=booking.department,
        actor=current_actor,
    )
    return AppointmentResponse.model_validate(appointment)

@router.patch("/{appointment_id}/cancel", response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: str,
    ledger: BookingLedger = Depends(get_ledger),
    current_actor: Actor = Depends(get_current_actor)
):
    """Cancel; 409 past the cutoff, 400 from a terminal state."""
    return AppointmentResponse.model_validate(ledger.cancel(appointment_id, current_actor))

@router.patch("/{appointment_id}/reschedule", response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_id: str,
    body: RescheduleRequest,
    ledger: BookingLedger = Depends(get_ledger),
    current_actor: Actor = Depends(get_current_actor)
):
    """Move to a new interval; the response is the replacement booking."""
    appointment = ledger.reschedule(
        appointment_id,
        body.starts_at,
        body.ends_at,
        current_actor,
        doctor_id=body.doctor_id,
    )
    return AppointmentResponse.model_validate(appointment)

@router.patch("/{appointment_id}/approve", response_model=AppointmentResponse)
def approve_appointment(
    appointment_id: str,
    ledger: BookingLedger = Depends(get_ledger),
    current_actor: Actor = Depends(get_reviewer_actor)
):
    return AppointmentResponse.model_validate(ledger.approve(appointment_id, current_actor))

@router.patch("/{appointment_id}/reject", response_model=AppointmentResponse)
def reject_appointment(
    appointment_id: str,
    ledger: BookingLedger = Depends(get_ledger),
    current_actor: Actor = Depends(get_reviewer_actor)
):
    return AppointmentResponse.model_validate(ledger.reject(appointment_id, current_actor))
