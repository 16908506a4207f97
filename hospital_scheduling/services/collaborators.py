"""
Outbound collaborator seams: event emission, audit append, billing trigger.

The scheduling core calls these; the real consumers (notification delivery,
audit rendering, billing) live in other services.
"""
import json
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.timeutils import utcnow
from ..models.appointment import Appointment, AuditEntry

logger = logging.getLogger(__name__)

def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")

class EventPublisher:
    """Publishes scheduling events on a Redis channel so consumers can push instead of poll."""

    def __init__(self, redis_client, channel: Optional[str] = None):
        self.redis = redis_client
        self.channel = channel or settings.EVENTS_CHANNEL

    def emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        message = json.dumps(
            {"type": event_type, "payload": payload, "emittedAt": utcnow()},
            default=_json_default,
        )
        self.redis.publish(self.channel, message)
        logger.info(f"Emitted {event_type} on {self.channel}")

def appointment_payload(appointment: Appointment, **extra) -> Dict[str, Any]:
    payload = {
        "appointmentId": appointment.id,
        "doctorId": appointment.doctor_id,
        "patientId": appointment.patient_id,
        "startsAt": appointment.starts_at.isoformat(),
        "endsAt": appointment.ends_at.isoformat(),
        "status": appointment.status.value,
    }
    payload.update(extra)
    return payload

def json_diff(before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Field-level {path, before, after} changes between two snapshots."""
    before = before or {}
    after = after or {}
    diff = []
    for key in sorted(set(before) | set(after)):
        previous = before.get(key)
        current = after.get(key)
        if previous != current:
            diff.append({"path": key, "before": previous, "after": current})
    return diff

class AuditLog:
    """Appends audit entries to the caller's session; they commit with the transition."""

    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        entity_id: str,
        actor_id: Optional[str],
        action: str,
        before: Optional[Dict[str, Any]],
        after: Optional[Dict[str, Any]],
        entity: str = "Appointment",
    ) -> AuditEntry:
        entry = AuditEntry(
            entity=entity,
            entity_id=entity_id,
            actor_id=actor_id,
            action=action,
            at=utcnow(),
            diff=json_diff(before, after),
        )
        self.db.add(entry)
        return entry

class BillingTrigger:
    """Feeds confirmed appointments to the bill-build step of the billing service."""

    def __init__(self, publisher: EventPublisher):
        self.publisher = publisher

    def appointment_confirmed(self, appointment: Appointment, actor_id: Optional[str]) -> None:
        self.publisher.emit(
            "billing.build_requested",
            {
                "patientId": appointment.patient_id,
                "appointmentId": appointment.id,
                "requestedBy": actor_id,
            },
        )
