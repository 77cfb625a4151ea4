"""
Usage aggregation: occupancy views and leaderboards.

All functions here are read-only. They take no locks and may observe a
slightly older state than a concurrent admission; nothing in the
admission path depends on them.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple
import logging

from sqlalchemy.orm import Session, joinedload

from shared.errors import BadRequestError, NotFoundError
from shared.intervals import overlap_seconds, window_end
from shared.models import ACTIVE_STATUSES, Building, Reservation, ReservationStatus, Room
from shared.monitoring import MetricsCollector

logger = logging.getLogger(__name__)

ALLOWED_DAYS = (1, 7, 30)
LEADERBOARD_LIMIT = 50
SCOPE_ROOM = "room"
SCOPE_USER = "user"


@dataclass
class LeaderboardItem:
    """One ranked entity."""
    id: int
    total_seconds: int
    label: Optional[str] = None


def ensure_days(days: int) -> int:
    """
    Validate a window length.

    Raises:
        BadRequestError: If ``days`` is not one of ALLOWED_DAYS
    """
    if days not in ALLOWED_DAYS:
        allowed = ", ".join(str(d) for d in ALLOWED_DAYS)
        raise BadRequestError(f"days must be one of {allowed}", field="days")
    return days


def _active_in_window(db: Session, room_ids: List[int], start: datetime, end: datetime) -> List[Reservation]:
    if not room_ids:
        return []
    return (
        db.query(Reservation)
        .filter(
            Reservation.room_id.in_(room_ids),
            Reservation.status.in_(ACTIVE_STATUSES),
            Reservation.start_at < end,
            Reservation.end_at > start,
        )
        .order_by(Reservation.start_at, Reservation.id)
        .all()
    )


def floor_overview(db: Session, building_id: int, floor_no: int, window_from: datetime,
                   days: int) -> dict:
    """
    Rooms of one floor and their active reservations in a window.

    Args:
        db: Database session
        building_id: Building to show
        floor_no: Floor to show
        window_from: Window start
        days: Window length, one of ALLOWED_DAYS

    Returns:
        dict: ``building``, ``floor_no``, ``window`` (from, to), ``rooms``
        and ``items`` (reservations intersecting the window)

    Raises:
        BadRequestError: Invalid ``days``
        NotFoundError: Unknown, deleted or disabled building
    """
    ensure_days(days)
    building = db.query(Building).filter(
        Building.id == building_id,
        Building.enabled.is_(True),
        Building.deleted_at.is_(None),
    ).first()
    if building is None:
        raise NotFoundError("Building not found or unavailable", field="building_id")

    window_to = window_end(window_from, days)
    with MetricsCollector("floor_overview"):
        rooms = (
            db.query(Room)
            .filter(Room.building_id == building_id, Room.floor_no == floor_no,
                    Room.deleted_at.is_(None))
            .order_by(Room.sort, Room.name, Room.id)
            .all()
        )
        items = _active_in_window(db, [r.id for r in rooms], window_from, window_to)

    return {
        "building": building,
        "floor_no": floor_no,
        "window": (window_from, window_to),
        "rooms": rooms,
        "items": items,
    }


def room_timeline(db: Session, room_id: int, window_from: datetime, days: int) -> dict:
    """
    One room and its active reservations in a window.

    Raises:
        BadRequestError: Invalid ``days``
        NotFoundError: Unknown or deleted room, or its building unavailable
    """
    ensure_days(days)
    room = (
        db.query(Room)
        .join(Building, Building.id == Room.building_id)
        .options(joinedload(Room.building))
        .filter(
            Room.id == room_id,
            Room.deleted_at.is_(None),
            Building.enabled.is_(True),
            Building.deleted_at.is_(None),
        )
        .first()
    )
    if room is None:
        raise NotFoundError("Room not found or unavailable", field="room_id")

    window_to = window_end(window_from, days)
    with MetricsCollector("room_timeline"):
        items = _active_in_window(db, [room.id], window_from, window_to)
    return {"room": room, "window": (window_from, window_to), "items": items}


def rank_usage(intervals: Iterable[Tuple[int, datetime, datetime]], window_from: datetime,
               window_to: datetime, limit: int = LEADERBOARD_LIMIT) -> List[LeaderboardItem]:
    """
    Sum whole-second overlaps with a window per entity and rank them.

    Args:
        intervals: ``(entity_id, start, end)`` triples
        window_from: Window start
        window_to: Window end
        limit: Maximum number of entries

    Returns:
        list: Items ordered by total seconds descending, then id ascending;
        entities with no overlap are left out
    """
    totals: Dict[int, int] = defaultdict(int)
    for entity_id, start, end in intervals:
        seconds = overlap_seconds(start, end, window_from, window_to)
        if seconds > 0:
            totals[entity_id] += seconds
    ranked = sorted(totals.items(), key=lambda kv: (-kv[1], kv[0]))
    return [LeaderboardItem(id=entity_id, total_seconds=total) for entity_id, total in ranked[:limit]]


def room_label(room: Room) -> str:
    return f"{room.building.name} / {room.floor_no}F / {room.name}"


def leaderboard(db: Session, scope: str, window_from: datetime, days: int,
                limit: int = LEADERBOARD_LIMIT) -> dict:
    """
    Rank rooms or applicants by approved usage within a window.

    Only ``approved`` reservations count. Each reservation contributes
    the whole seconds it shares with ``[window_from, window_from + days)``.

    Args:
        db: Database session
        scope: ``room`` or ``user``
        window_from: Window start
        days: Window length, one of ALLOWED_DAYS
        limit: Maximum number of entries

    Returns:
        dict: ``scope``, ``days``, ``window`` and ranked ``items``
    """
    ensure_days(days)
    if scope not in (SCOPE_ROOM, SCOPE_USER):
        raise BadRequestError("scope must be room or user", field="scope")

    window_to = window_end(window_from, days)
    with MetricsCollector("leaderboard"):
        query = (
            db.query(Reservation)
            .join(Room, Room.id == Reservation.room_id)
            .join(Building, Building.id == Room.building_id)
            .filter(
                Reservation.status == ReservationStatus.APPROVED,
                Reservation.start_at < window_to,
                Reservation.end_at > window_from,
            )
        )
        if scope == SCOPE_ROOM:
            query = query.filter(Room.deleted_at.is_(None), Building.deleted_at.is_(None))
        rows = query.all()

    key = (lambda r: r.room_id) if scope == SCOPE_ROOM else (lambda r: r.applicant_id)
    items = rank_usage(((key(r), r.start_at, r.end_at) for r in rows), window_from, window_to, limit)

    if scope == SCOPE_ROOM and items:
        rooms = {
            room.id: room
            for room in db.query(Room).options(joinedload(Room.building))
            .filter(Room.id.in_([i.id for i in items]))
        }
        for item in items:
            item.label = room_label(rooms[item.id])

    return {"scope": scope, "days": days, "window": (window_from, window_to), "items": items}
