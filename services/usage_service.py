"""
Usage Service

This service renders occupancy views and usage leaderboards.

Endpoints:
    - GET /usage/overview: Reservations of one floor within a window
    - GET /usage/rooms/{room_id}/timeline: Reservations of one room within a window
    - GET /usage/leaderboard: Rooms or users ranked by approved usage
"""

from fastapi import FastAPI, Depends, Query
from pydantic import BaseModel
from typing import Optional, List
from sqlalchemy.orm import Session
from datetime import datetime, timedelta
import logging

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shared import usage
from shared.auth import CurrentUser, get_current_user
from shared.clock import Clock, get_clock
from shared.database import get_db, init_db
from shared.errors import install_error_handlers
from shared.intervals import ensure_utc
from shared.models import Reservation, Room
from shared.monitoring import setup_metrics
from shared.rate_limiting import setup_rate_limiting

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

app = FastAPI(title="Usage Service", version="1.0.0")
install_error_handlers(app)
setup_rate_limiting(app)
setup_metrics(app)


class WindowResponse(BaseModel):
    window_from: datetime
    window_to: datetime


class OccupancyItem(BaseModel):
    """One reservation on a calendar."""
    id: int
    room_id: int
    start_at: datetime
    end_at: datetime
    status: str
    purpose: Optional[str] = None
    mine: bool


class RoomSummary(BaseModel):
    id: int
    name: str
    floor_no: int
    capacity: Optional[int]
    enabled: bool

    class Config:
        from_attributes = True


class FloorOverviewResponse(BaseModel):
    """Floor overview response model."""
    building_id: int
    building_name: str
    floor_no: int
    window: WindowResponse
    rooms: List[RoomSummary]
    items: List[OccupancyItem]


class RoomTimelineResponse(BaseModel):
    """Room timeline response model."""
    room: RoomSummary
    building_id: int
    building_name: str
    window: WindowResponse
    items: List[OccupancyItem]


class LeaderboardEntry(BaseModel):
    rank: int
    id: int
    label: Optional[str] = None
    total_seconds: int


class LeaderboardResponse(BaseModel):
    """Leaderboard response model."""
    scope: str
    days: int
    window: WindowResponse
    items: List[LeaderboardEntry]


def to_item(reservation: Reservation, viewer: CurrentUser) -> OccupancyItem:
    """Calendar entry; the purpose is only shown on the viewer's own reservations."""
    mine = reservation.applicant_id == viewer.id
    return OccupancyItem(
        id=reservation.id,
        room_id=reservation.room_id,
        start_at=reservation.start_at,
        end_at=reservation.end_at,
        status=reservation.status.value,
        purpose=reservation.purpose if mine else None,
        mine=mine,
    )


def _window(window) -> WindowResponse:
    return WindowResponse(window_from=window[0], window_to=window[1])


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup."""
    init_db()


@app.get("/usage/overview", response_model=FloorOverviewResponse)
def floor_overview(
    building_id: int = Query(..., description="Building ID"),
    floor_no: int = Query(..., description="Floor number"),
    window_from: Optional[datetime] = Query(None, alias="from", description="Window start (defaults to now)"),
    days: int = Query(7, description="Window length in days (1, 7 or 30)"),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    """
    Pending and approved reservations of a floor within ``[from, from + days)``.

    Args:
        building_id: Building ID
        floor_no: Floor number
        window_from: Window start
        days: Window length
        current_user: Current authenticated user
        db: Database session
        clock: Clock

    Returns:
        FloorOverviewResponse: Rooms of the floor and their reservations

    Raises:
        BadRequestError: Unsupported ``days``
        NotFoundError: Unknown or disabled building
    """
    start = ensure_utc(window_from, "from") if window_from else clock.now()
    result = usage.floor_overview(db, building_id, floor_no, start, days)
    building = result["building"]
    return FloorOverviewResponse(
        building_id=building.id,
        building_name=building.name,
        floor_no=floor_no,
        window=_window(result["window"]),
        rooms=[RoomSummary.model_validate(r) for r in result["rooms"]],
        items=[to_item(r, current_user) for r in result["items"]],
    )


@app.get("/usage/rooms/{room_id}/timeline", response_model=RoomTimelineResponse)
def room_timeline(
    room_id: int,
    window_from: Optional[datetime] = Query(None, alias="from", description="Window start (defaults to now)"),
    days: int = Query(7, description="Window length in days (1, 7 or 30)"),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    """Pending and approved reservations of one room within ``[from, from + days)``."""
    start = ensure_utc(window_from, "from") if window_from else clock.now()
    result = usage.room_timeline(db, room_id, start, days)
    room: Room = result["room"]
    return RoomTimelineResponse(
        room=RoomSummary.model_validate(room),
        building_id=room.building_id,
        building_name=room.building.name,
        window=_window(result["window"]),
        items=[to_item(r, current_user) for r in result["items"]],
    )


@app.get("/usage/leaderboard", response_model=LeaderboardResponse)
def leaderboard(
    scope: str = Query("room", description="room or user"),
    days: int = Query(7, description="Rolling window in days (1, 7 or 30)"),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    """
    Rank rooms or users by approved usage over the last ``days`` days.

    Returns:
        LeaderboardResponse: Top entries by total seconds, ties by id
    """
    usage.ensure_days(days)
    window_from = clock.now() - timedelta(days=days)
    result = usage.leaderboard(db, scope, window_from, days)
    return LeaderboardResponse(
        scope=result["scope"],
        days=result["days"],
        window=_window(result["window"]),
        items=[
            LeaderboardEntry(rank=i, id=item.id, label=item.label, total_seconds=item.total_seconds)
            for i, item in enumerate(result["items"], start=1)
        ],
    )


@app.get("/health")
def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Health status
    """
    return {"status": "healthy", "service": "usage"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8005)
