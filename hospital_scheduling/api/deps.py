from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from typing import List

from ..core.config import settings
from ..core.database import get_db, get_redis
from ..core.security import (
    security, verify_token, actor_from_payload, AuthenticationError,
    AuthorizationError, UserRole, TokenPayload, Actor
)
from ..core.timeutils import utcnow
from ..services.booking_ledger import BookingLedger
from ..services.collaborators import EventPublisher
from ..services.policy import CancellationPolicy
from ..services.slot_calendar import ScheduleOverrideService, SlotCalendar, WorkingHoursService
from ..services.waitlist import WaitlistMatcher, WaitlistService

async def get_current_user_token(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> TokenPayload:
    """Extract and verify JWT token from Authorization header."""
    token = credentials.credentials

    # Verify token
    token_payload = verify_token(token)
    if not token_payload:
        raise AuthenticationError("Invalid or expired token")

    # Check if token is access token
    if token_payload.token_type != "access":
        raise AuthenticationError("Invalid token type")

    return token_payload

async def get_current_actor(
    token_payload: TokenPayload = Depends(get_current_user_token)
) -> Actor:
    """Resolve the calling actor from verified token claims."""
    actor = actor_from_payload(token_payload)
    if actor is None:
        raise AuthenticationError("Invalid token payload")
    return actor

# Role-based access control dependencies
def require_role(allowed_roles: List[UserRole]):
    """Create a dependency that requires specific actor roles."""
    async def role_checker(
        current_actor: Actor = Depends(get_current_actor)
    ) -> Actor:
        if current_actor.role not in allowed_roles:
            raise AuthorizationError(
                f"Access denied. Required roles: {[role.value for role in allowed_roles]}"
            )
        return current_actor

    return role_checker

async def get_staff_actor(
    current_actor: Actor = Depends(require_role([UserRole.STAFF, UserRole.ADMIN]))
) -> Actor:
    """Require staff or admin role."""
    return current_actor

async def get_reviewer_actor(
    current_actor: Actor = Depends(require_role([UserRole.DOCTOR, UserRole.STAFF, UserRole.ADMIN]))
) -> Actor:
    """Require doctor, staff or admin role."""
    return current_actor

# Rate limiting dependency
async def rate_limit_check(
    request: Request,
    current_actor: Actor = Depends(get_current_actor),
    redis_client = Depends(get_redis)
) -> None:
    """Per-actor rate limiting for write endpoints."""
    key = f"rate_limit:{current_actor.id}:{request.url.path}"

    current_requests = redis_client.get(key)
    if current_requests is None:
        redis_client.setex(key, settings.RATE_LIMIT_WINDOW_SECONDS, 1)
    else:
        if int(current_requests) >= settings.RATE_LIMIT_REQUESTS:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests. Please try again later."
            )
        redis_client.incr(key)

# Scheduling components
def get_clock():
    """Source of "now"; overridden in tests."""
    return utcnow

def get_policy() -> CancellationPolicy:
    return CancellationPolicy.from_settings(settings)

def get_publisher(redis_client = Depends(get_redis)) -> EventPublisher:
    return EventPublisher(redis_client)

def get_slot_calendar(
    db: Session = Depends(get_db),
    clock = Depends(get_clock)
) -> SlotCalendar:
    return SlotCalendar(db, clock=clock)

def get_working_hours_service(db: Session = Depends(get_db)) -> WorkingHoursService:
    return WorkingHoursService(db)

def get_schedule_override_service(db: Session = Depends(get_db)) -> ScheduleOverrideService:
    return ScheduleOverrideService(db)

def get_waitlist_service(db: Session = Depends(get_db)) -> WaitlistService:
    return WaitlistService(db)

def get_ledger(
    db: Session = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
    policy: CancellationPolicy = Depends(get_policy),
    clock = Depends(get_clock)
) -> BookingLedger:
    matcher = WaitlistMatcher(db, publisher, clock=clock)
    return BookingLedger(db, publisher, matcher=matcher, policy=policy, clock=clock)
