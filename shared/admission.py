"""
Admission & conflict engine.

A candidate booking is admitted only if it passes, in order:

1. interval sanity (end after start, start in the future, within the
   advance-booking horizon)
2. the duration cap of the current FacilityConfig
3. room availability (room and building exist, are enabled)
4. the applicant is not banned
5. no pending/approved reservation of the same room overlaps it

The first failing rule wins. The check and the write that depends on
it must run through :func:`run_admitted_write`, which holds the room
lock across check, write and commit.
"""

from dataclasses import dataclass, field as dc_field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, TypeVar
import logging
import os

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from shared.bans import is_banned
from shared.errors import (
    BadRequestError, ConflictError, FacilityError, ForbiddenError,
)
from shared.facility_config import FacilityConfig
from shared.locking import lock_room_row, room_locks
from shared.models import ACTIVE_STATUSES, Building, Reservation, Room
from shared.monitoring import track_admission_rejected, track_lock_retry

logger = logging.getLogger(__name__)

MAX_ADVANCE_DAYS = int(os.getenv("FACILITY_MAX_ADVANCE_DAYS", "180"))
WRITE_ATTEMPTS = 2

T = TypeVar("T")


@dataclass
class AdmissionResult:
    """Outcome of a non-raising admission check."""
    ok: bool
    code: Optional[str] = None
    reason: Optional[str] = None
    field: Optional[str] = None
    conflicts: List[Reservation] = dc_field(default_factory=list)


def validate_interval(start_at: datetime, end_at: datetime, now: datetime,
                      require_future_start: bool = True):
    """
    Rule 1: interval sanity.

    Raises:
        BadRequestError: If end <= start, start is not in the future, or
            start lies beyond the advance-booking horizon
    """
    if end_at <= start_at:
        raise BadRequestError("end_at must be after start_at", field="end_at")
    if not require_future_start:
        return
    if start_at <= now:
        raise BadRequestError("start_at must be in the future", field="start_at")
    if start_at > now + timedelta(days=MAX_ADVANCE_DAYS):
        raise BadRequestError(
            f"start_at must be within {MAX_ADVANCE_DAYS} days from now", field="start_at"
        )


def validate_duration(start_at: datetime, end_at: datetime, config: FacilityConfig):
    """Rule 2: ``end - start <= max_duration_hours``, boundary inclusive."""
    if end_at - start_at > timedelta(hours=config.max_duration_hours):
        raise BadRequestError(
            "duration exceeds cap",
            field="end_at",
            details={"max_duration_hours": config.max_duration_hours},
        )


def load_bookable_room(db: Session, room_id: int) -> Room:
    """
    Rule 3: the room exists and accepts new bookings.

    Raises:
        BadRequestError: If the room or its building is missing, deleted
            or disabled
    """
    room = (
        db.query(Room)
        .join(Building, Building.id == Room.building_id)
        .filter(
            Room.id == room_id,
            Room.deleted_at.is_(None),
            Room.enabled.is_(True),
            Building.deleted_at.is_(None),
            Building.enabled.is_(True),
        )
        .first()
    )
    if room is None:
        raise BadRequestError("room unavailable", field="room_id")
    return room


def ensure_not_banned(db: Session, user_id: int, now: datetime):
    """Rule 4: the applicant holds no active ban."""
    if is_banned(db, user_id, now):
        raise ForbiddenError("banned", field="applicant_id")


def conflicting_reservations(db: Session, room_id: int, start_at: datetime, end_at: datetime,
                             exclude_reservation_id: Optional[int] = None,
                             limit: Optional[int] = None) -> List[Reservation]:
    """Active reservations of a room overlapping ``[start_at, end_at)``."""
    query = db.query(Reservation).filter(
        Reservation.room_id == room_id,
        Reservation.status.in_(ACTIVE_STATUSES),
        Reservation.start_at < end_at,
        Reservation.end_at > start_at,
    )
    if exclude_reservation_id is not None:
        query = query.filter(Reservation.id != exclude_reservation_id)
    query = query.order_by(Reservation.start_at, Reservation.id)
    if limit is not None:
        query = query.limit(limit)
    return query.all()


def ensure_no_overlap(db: Session, room_id: int, start_at: datetime, end_at: datetime,
                      exclude_reservation_id: Optional[int] = None):
    """Rule 5: no active reservation of the room overlaps the interval."""
    clash = conflicting_reservations(db, room_id, start_at, end_at,
                                     exclude_reservation_id=exclude_reservation_id, limit=1)
    if clash:
        raise ConflictError("time conflict", field="start_at",
                            details={"conflicting_reservation_id": clash[0].id})


def check_admission(
    db: Session,
    config: FacilityConfig,
    now: datetime,
    room_id: int,
    start_at: datetime,
    end_at: datetime,
    applicant_id: int,
    exclude_reservation_id: Optional[int] = None,
) -> Room:
    """
    Run the five admission rules, failing fast.

    Args:
        db: Database session
        config: Facility configuration of this request
        now: Current instant
        room_id: Requested room
        start_at: Interval start
        end_at: Interval end
        applicant_id: Requesting user
        exclude_reservation_id: Reservation to ignore in the overlap
            check (an edit re-validating against itself)

    Returns:
        Room: The bookable room

    Raises:
        BadRequestError: Rules 1-3
        ForbiddenError: Rule 4
        ConflictError: Rule 5
    """
    try:
        validate_interval(start_at, end_at, now)
        validate_duration(start_at, end_at, config)
        room = load_bookable_room(db, room_id)
        ensure_not_banned(db, applicant_id, now)
        ensure_no_overlap(db, room_id, start_at, end_at, exclude_reservation_id)
    except FacilityError as e:
        track_admission_rejected(e.code)
        logger.info(f"Admission rejected for user {applicant_id} on room {room_id}: {e.code} {e.message}")
        raise
    return room


def find_conflicts(
    db: Session,
    config: FacilityConfig,
    now: datetime,
    room_id: int,
    start_at: datetime,
    end_at: datetime,
    applicant_id: int,
) -> AdmissionResult:
    """
    Non-raising admission check used by availability queries.

    Unlike :func:`check_admission` it lists every overlapping
    reservation instead of stopping at the first one. Nothing is locked;
    the answer is advisory only.
    """
    try:
        validate_interval(start_at, end_at, now)
        validate_duration(start_at, end_at, config)
        load_bookable_room(db, room_id)
        ensure_not_banned(db, applicant_id, now)
    except FacilityError as e:
        return AdmissionResult(ok=False, code=e.code, reason=e.message, field=e.field)

    conflicts = conflicting_reservations(db, room_id, start_at, end_at)
    if conflicts:
        return AdmissionResult(ok=False, code=ConflictError.code, reason="time conflict",
                               field="start_at", conflicts=conflicts)
    return AdmissionResult(ok=True)


def run_admitted_write(db: Session, room_id: int, write: Callable[[], T],
                       attempts: int = WRITE_ATTEMPTS) -> T:
    """
    Run an admission check and its write as one serialized unit.

    ``write`` must perform the admission check itself and then stage its
    changes; it is called with the room lock held and the changes are
    committed before the lock is released. An exclusion-constraint
    violation becomes CONFLICT; a serialization failure or deadlock is
    retried once from scratch before it becomes CONFLICT.

    Args:
        db: Database session
        room_id: Room whose reservations are being changed
        write: Callable doing check + staging, returning the result
        attempts: Total attempts for serialization failures

    Returns:
        Whatever ``write`` returned, after commit
    """
    for attempt in range(1, attempts + 1):
        try:
            with room_locks.hold(room_id):
                lock_room_row(db, room_id)
                result = write()
                db.commit()
            return result
        except FacilityError:
            db.rollback()
            raise
        except IntegrityError as e:
            db.rollback()
            logger.warning(f"Overlap rejected by database for room {room_id}: {e.orig}")
            track_admission_rejected(ConflictError.code)
            raise ConflictError("time conflict", field="start_at") from e
        except OperationalError as e:
            db.rollback()
            if attempt >= attempts:
                logger.error(f"Write on room {room_id} failed after {attempts} attempts: {e.orig}")
                raise ConflictError("reservation could not be committed, please retry") from e
            track_lock_retry()
            logger.warning(f"Retrying write on room {room_id} after serialization failure: {e.orig}")
    raise ConflictError("reservation could not be committed, please retry")
