from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from fastapi import HTTPException, status
from fastapi.security import HTTPBearer
from pydantic import BaseModel
from enum import Enum

from .config import settings

# JWT Security
security = HTTPBearer()

class UserRole(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"
    DOCTOR = "doctor"
    PATIENT = "patient"

class TokenPayload(BaseModel):
    sub: Optional[str] = None
    role: Optional[str] = None
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None
    exp: Optional[int] = None
    token_type: Optional[str] = None  # "access" or "refresh"

class Actor(BaseModel):
    """The authenticated caller a scheduling operation is performed for."""
    id: str
    role: UserRole
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None

    @property
    def is_patient(self) -> bool:
        return self.role == UserRole.PATIENT

    @property
    def is_doctor(self) -> bool:
        return self.role == UserRole.DOCTOR

    @property
    def is_clinic_staff(self) -> bool:
        return self.role in (UserRole.STAFF, UserRole.ADMIN)

# JWT utilities
def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None
) -> str:
    """Create JWT access token.

    Production tokens come from the identity service; this mirrors its claim
    layout for tooling and tests.
    """
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )

    to_encode.update({
        "exp": expire,
        "token_type": "access"
    })

    encoded_jwt = jwt.encode(
        to_encode,
        settings.SECRET_KEY,
        algorithm=settings.ALGORITHM
    )
    return encoded_jwt

def create_actor_token(actor: Actor, expires_delta: Optional[timedelta] = None) -> str:
    """Mint an access token carrying the actor claims."""
    claims = {"sub": actor.id, "role": actor.role.value}
    if actor.patient_id:
        claims["patient_id"] = actor.patient_id
    if actor.doctor_id:
        claims["doctor_id"] = actor.doctor_id
    return create_access_token(claims, expires_delta)

def verify_token(token: str) -> Optional[TokenPayload]:
    """Verify and decode JWT token."""
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM]
        )

        return TokenPayload(**payload)

    except JWTError:
        return None

def actor_from_payload(payload: TokenPayload) -> Optional[Actor]:
    """Build an actor from verified claims, None if the claims are incomplete."""
    if not payload.sub or not payload.role:
        return None
    try:
        role = UserRole(payload.role)
    except ValueError:
        return None
    return Actor(
        id=payload.sub,
        role=role,
        patient_id=payload.patient_id,
        doctor_id=payload.doctor_id,
    )

# Security exceptions
class AuthenticationError(HTTPException):
    def __init__(self, detail: str = "Could not validate credentials"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            headers={"WWW-Authenticate": "Bearer"},
        )

class AuthorizationError(HTTPException):
    def __init__(self, detail: str = "Not enough permissions"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
        )
