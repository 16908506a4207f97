"""
Scheduling error taxonomy.

Every error carries a stable ``code`` tag so callers can tell "slot taken"
apart from "past cutoff" without parsing messages. The API layer maps codes
to transport status codes; the core never deals in HTTP.
"""
from typing import Any, Dict, Optional


class SchedulingError(Exception):
    code = "scheduling_error"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SlotConflictError(SchedulingError):
    """Interval already held by another active booking."""
    code = "slot_conflict"
    retryable = True


class InvalidTransitionError(SchedulingError):
    """Requested status change is not permitted from the current state."""
    code = "invalid_transition"


class CutoffViolationError(SchedulingError):
    """Operation requested too close to the appointment start."""
    code = "cutoff_violation"


class NotFoundError(SchedulingError):
    code = "not_found"


class ValidationError(SchedulingError):
    """Malformed interval or missing identifiers."""
    code = "validation_error"


class ForbiddenError(SchedulingError):
    """Actor may not act on this appointment or waitlist entry."""
    code = "forbidden"


class ScheduleBusyError(SchedulingError):
    """The doctor's schedule lock could not be taken in time; nothing was written."""
    code = "schedule_busy"
    retryable = True


# Transport mapping used by the API layer
HTTP_STATUS_BY_CODE = {
    SlotConflictError.code: 409,
    CutoffViolationError.code: 409,
    InvalidTransitionError.code: 400,
    ValidationError.code: 400,
    NotFoundError.code: 404,
    ForbiddenError.code: 403,
    ScheduleBusyError.code: 503,
}
