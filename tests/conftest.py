"""
Pytest configuration and fixtures for testing all services.
"""

import os
import sys

# Service modules read these at import time.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["CACHE_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"
os.environ["FACILITY_AUDIT_REQUIRED"] = "false"
os.environ["FACILITY_MAX_DURATION_HOURS"] = "72"
os.environ.pop("ENABLE_METRICS", None)

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from datetime import datetime, timedelta, timezone
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shared.audit import MemoryAuditSink, get_audit_sink
from shared.auth import create_access_token
from shared.clock import FrozenClock, get_clock
from shared.database import Base, get_db
from shared.facility_config import FacilityConfig
from shared.models import Building, Reservation, ReservationParticipant, ReservationStatus, Room


# Use in-memory SQLite for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Monday 2025-03-03 08:00 UTC
NOW = datetime(2025, 3, 3, 8, 0, tzinfo=timezone.utc)

APPLICANT_ID = 1
OTHER_USER_ID = 2
REVIEWER_ID = 100
ADMIN_ID = 900


def make_headers(user_id: int, *perms: str) -> dict:
    """Bearer header for a user holding the given permission codes."""
    token = create_access_token(data={"sub": str(user_id), "perms": list(perms)})
    return {"Authorization": f"Bearer {token}"}


def add_reservation(db, room, start, end, status=ReservationStatus.APPROVED,
                    applicant_id=APPLICANT_ID, purpose="Study group"):
    """Insert a reservation directly, bypassing admission."""
    reservation = Reservation(
        room_id=room.id,
        applicant_id=applicant_id,
        purpose=purpose,
        start_at=start,
        end_at=end,
        status=status,
        created_by=applicant_id,
        created_at=NOW,
        updated_at=NOW,
    )
    reservation.participants = [ReservationParticipant(user_id=applicant_id, is_applicant=True)]
    db.add(reservation)
    db.commit()
    db.refresh(reservation)
    return reservation


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def override_get_db(db):
    """Override the get_db dependency."""
    def _override_get_db():
        try:
            yield db
        finally:
            pass
    return _override_get_db


@pytest.fixture(scope="function")
def clock():
    """Clock pinned to NOW."""
    return FrozenClock(NOW)


@pytest.fixture(scope="function")
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture(scope="function")
def config():
    """Default configuration: no review, 72h cap."""
    return FacilityConfig(audit_required=False, max_duration_hours=72)


@pytest.fixture(scope="function")
def make_client(override_get_db, clock, audit_sink):
    """
    Build a TestClient for a service app with database, clock and
    audit sink overridden.
    """
    apps = []

    def _make_client(app):
        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_clock] = lambda: clock
        app.dependency_overrides[get_audit_sink] = lambda: audit_sink
        apps.append(app)
        return TestClient(app)

    yield _make_client
    for app in apps:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def test_building(db):
    """Create a test building."""
    building = Building(name="Main Library", enabled=True, sort=1)
    db.add(building)
    db.commit()
    db.refresh(building)
    return building


@pytest.fixture(scope="function")
def test_room(db, test_building):
    """Create a test room on floor 3."""
    room = Room(
        building_id=test_building.id,
        floor_no=3,
        name="Seminar Room 301",
        capacity=30,
        enabled=True,
        sort=1,
    )
    db.add(room)
    db.commit()
    db.refresh(room)
    return room


@pytest.fixture(scope="function")
def second_room(db, test_building):
    """Another room on the same floor."""
    room = Room(
        building_id=test_building.id,
        floor_no=3,
        name="Seminar Room 302",
        capacity=20,
        enabled=True,
        sort=2,
    )
    db.add(room)
    db.commit()
    db.refresh(room)
    return room


@pytest.fixture(scope="function")
def auth_headers_user():
    """Authentication headers for a regular applicant."""
    return make_headers(APPLICANT_ID)


@pytest.fixture(scope="function")
def auth_headers_other():
    """Authentication headers for another regular user."""
    return make_headers(OTHER_USER_ID)


@pytest.fixture(scope="function")
def auth_headers_reviewer():
    """Authentication headers for a reviewer."""
    return make_headers(REVIEWER_ID, "facility:review")


@pytest.fixture(scope="function")
def auth_headers_admin():
    """Authentication headers for a user holding every facility permission."""
    return make_headers(ADMIN_ID, "facility:*")


def slot(hours_from_now: float, length_hours: float = 1):
    """ISO start/end strings relative to NOW."""
    start = NOW + timedelta(hours=hours_from_now)
    end = start + timedelta(hours=length_hours)
    return start.isoformat(), end.isoformat()
