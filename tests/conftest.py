import os

# Set testing environment before the application reads its settings
os.environ["TESTING"] = "1"
os.environ["TEST_DATABASE_URL"] = "sqlite:///./test_scheduling.db"

from datetime import date, datetime, time

import pytest
import pytz
from fastapi.testclient import TestClient

from hospital_scheduling.main import app
from hospital_scheduling.api.deps import get_clock, get_publisher
from hospital_scheduling.core.database import Base, SessionLocal, engine, redis_client
from hospital_scheduling.core.security import Actor, UserRole, create_actor_token
from hospital_scheduling.models import WorkingHours
from hospital_scheduling.services.booking_ledger import BookingLedger
from hospital_scheduling.services.policy import CancellationPolicy
from hospital_scheduling.services.waitlist import WaitlistMatcher

# Monday 06:00 UTC; DAY is the Tuesday after
NOW = datetime(2030, 3, 4, 6, 0, tzinfo=pytz.UTC)
DAY = date(2030, 3, 5)

PATIENT_1 = Actor(id="user-pat-1", role=UserRole.PATIENT, patient_id="pat-1")
PATIENT_2 = Actor(id="user-pat-2", role=UserRole.PATIENT, patient_id="pat-2")
DOCTOR_1 = Actor(id="user-doc-1", role=UserRole.DOCTOR, doctor_id="doc-1")
UNLINKED_DOCTOR = Actor(id="user-doc-x", role=UserRole.DOCTOR)
STAFF = Actor(id="user-staff", role=UserRole.STAFF)


def at(hour, minute=0, day=DAY):
    """UTC instant on the test day."""
    return pytz.UTC.localize(datetime.combine(day, time(hour, minute)))


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def emit(self, event_type, payload):
        self.events.append((event_type, payload))

    def of_type(self, event_type):
        return [payload for kind, payload in self.events if kind == event_type]


class FailingPublisher:
    def emit(self, event_type, payload):
        raise ConnectionError("event bus unavailable")


class FrozenClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def set(self, now):
        self.now = now


@pytest.fixture(autouse=True)
def test_db():
    # Create tables
    Base.metadata.create_all(bind=engine)
    redis_client.flushall()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(test_db):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def policy():
    return CancellationPolicy(cancel_cutoff_hours=12)


@pytest.fixture
def ledger(db, publisher, policy, clock):
    matcher = WaitlistMatcher(db, publisher, clock=clock)
    return BookingLedger(db, publisher, matcher=matcher, policy=policy, clock=clock)


@pytest.fixture
def working_hours(db):
    """doc-1 works 09:00-12:00 on Tuesdays."""
    db.add(WorkingHours(doctor_id="doc-1", weekday=DAY.weekday(), start_time=time(9, 0), end_time=time(12, 0)))
    db.commit()


@pytest.fixture
def client(test_db, publisher, clock):
    app.dependency_overrides[get_publisher] = lambda: publisher
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app, base_url="http://testserver") as test_client:
        yield test_client
    app.dependency_overrides.clear()


def auth_headers(actor):
    return {"Authorization": f"Bearer {create_actor_token(actor)}"}
