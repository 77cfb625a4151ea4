"""
Concurrent admission and room-lock tests against a file-backed SQLite database.
"""

import gc
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import NOW
from shared import catalog, lifecycle
from shared.clock import FrozenClock
from shared.database import Base
from shared.errors import BadRequestError, ConflictError
from shared.facility_config import FacilityConfig
from shared.locking import RoomLockRegistry, room_locks
from shared.models import Building, Reservation, ReservationStatus, Room, utcnow

WORKERS = 8


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def room_id(session_factory):
    db = session_factory()
    try:
        building = Building(name="Engineering Hall")
        db.add(building)
        db.flush()
        room = Room(building_id=building.id, floor_no=2, name="Meeting Room 201")
        db.add(room)
        db.commit()
        return room.id
    finally:
        db.close()


def _race(session_factory, room_id, slots, config):
    """Submit one create per slot at the same moment and collect outcomes."""
    clock = FrozenClock(NOW)
    barrier = threading.Barrier(len(slots))

    def attempt(index):
        start, end = slots[index]
        db = session_factory()
        try:
            barrier.wait()
            reservation = lifecycle.create_reservation(
                db, config, clock,
                applicant_id=index + 1,
                room_id=room_id,
                start_at=start,
                end_at=end,
                purpose=f"Attempt {index}",
            )
            return ("ok", reservation.id)
        except ConflictError:
            return ("conflict", None)
        finally:
            db.close()

    with ThreadPoolExecutor(max_workers=len(slots)) as pool:
        return list(pool.map(attempt, range(len(slots))))


def _active_intervals(session_factory, room_id):
    db = session_factory()
    try:
        rows = db.query(Reservation).filter(
            Reservation.room_id == room_id,
            Reservation.status.in_([ReservationStatus.PENDING, ReservationStatus.APPROVED]),
        ).all()
        return [(r.start_at, r.end_at) for r in rows]
    finally:
        db.close()


@pytest.mark.parametrize("audit_required", [False, True])
def test_identical_slots_admit_exactly_one(session_factory, room_id, audit_required):
    config = FacilityConfig(audit_required=audit_required, max_duration_hours=72)
    start = NOW + timedelta(hours=4)
    slots = [(start, start + timedelta(hours=2))] * WORKERS

    outcomes = _race(session_factory, room_id, slots, config)

    assert [o[0] for o in outcomes].count("ok") == 1
    assert [o[0] for o in outcomes].count("conflict") == WORKERS - 1
    assert len(_active_intervals(session_factory, room_id)) == 1


def test_staggered_overlapping_slots_never_double_book(session_factory, room_id):
    """Every slot overlaps its neighbours; the committed set must be pairwise disjoint."""
    config = FacilityConfig(audit_required=False, max_duration_hours=72)
    base = NOW + timedelta(hours=4)
    slots = [
        (base + timedelta(minutes=30 * i), base + timedelta(minutes=30 * i + 90))
        for i in range(WORKERS)
    ]

    outcomes = _race(session_factory, room_id, slots, config)
    intervals = sorted(_active_intervals(session_factory, room_id))

    assert [o[0] for o in outcomes].count("ok") == len(intervals) >= 1
    for (a_start, a_end), (b_start, b_end) in zip(intervals, intervals[1:]):
        assert a_end <= b_start


def test_room_delete_waits_for_in_flight_booking(session_factory, room_id):
    """A booking arriving during a room delete waits for it and is then refused."""
    config = FacilityConfig(audit_required=False, max_duration_hours=72)
    start = NOW + timedelta(hours=4)
    outcome = []
    workers = []

    def book():
        db = session_factory()
        try:
            lifecycle.create_reservation(
                db, config, FrozenClock(NOW),
                applicant_id=1, room_id=room_id,
                start_at=start, end_at=start + timedelta(hours=1),
                purpose="Late booking",
            )
            outcome.append("ok")
        except BadRequestError as e:
            outcome.append(e.message)
        finally:
            db.close()

    def stamp_while_booking():
        worker = threading.Thread(target=book)
        workers.append(worker)
        worker.start()
        worker.join(timeout=0.5)
        return utcnow()

    db = session_factory()
    try:
        with patch("shared.catalog.utcnow", side_effect=stamp_while_booking):
            catalog.delete_room(db, 900, room_id)
    finally:
        db.close()
    workers[0].join(timeout=15)

    assert outcome == ["room unavailable"]
    assert _active_intervals(session_factory, room_id) == []


def test_room_locks_are_released_after_use():
    registry = RoomLockRegistry()
    with registry.hold(424242):
        assert 424242 in registry._locks
    gc.collect()
    assert 424242 not in registry._locks


def test_unknown_room_leaves_no_lock_behind(session_factory):
    db = session_factory()
    try:
        for bogus_id in range(10_000, 10_050):
            with pytest.raises(BadRequestError):
                lifecycle.create_reservation(
                    db, FacilityConfig(audit_required=False, max_duration_hours=72), FrozenClock(NOW),
                    applicant_id=1, room_id=bogus_id,
                    start_at=NOW + timedelta(hours=1), end_at=NOW + timedelta(hours=2),
                    purpose="Nowhere",
                )
    finally:
        db.close()
    gc.collect()
    assert not any(key >= 10_000 for key in room_locks._locks.keys())
