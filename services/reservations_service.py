"""
Reservations Service

This service handles booking requests and the approval workflow.

Endpoints:
    - POST /reservations: Request a reservation
    - GET /reservations/mine: Caller's reservations
    - GET /reservations/check-availability: Advisory admission check
    - GET /reservations/{reservation_id}: Reservation detail
    - PUT /reservations/{reservation_id}: Edit a pending reservation
    - POST /reservations/{reservation_id}/cancel: Cancel before start
    - GET /review/reservations: Reservations for reviewers
    - POST /review/reservations/{reservation_id}/approve: Approve a pending reservation
    - POST /review/reservations/{reservation_id}/reject: Reject a pending reservation
"""

from fastapi import FastAPI, Depends, Query, Request, status
from pydantic import BaseModel, Field
from typing import Optional, List, Union
from sqlalchemy.orm import Session
from datetime import datetime
import logging

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shared import lifecycle
from shared.admission import find_conflicts
from shared.audit import AuditSink, get_audit_sink
from shared.auth import CurrentUser, PERM_REVIEW, get_current_user, has_permission, require_permission, sanitize_input
from shared.clock import Clock, get_clock
from shared.database import get_db, init_db
from shared.errors import install_error_handlers
from shared.facility_config import FacilityConfig, get_request_config
from shared.intervals import ensure_utc
from shared.models import Reservation, ReservationStatus
from shared.monitoring import setup_metrics
from shared.rate_limiting import rate_limit_decorator, setup_rate_limiting

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

app = FastAPI(title="Reservations Service", version="1.0.0")
install_error_handlers(app)
setup_rate_limiting(app)
setup_metrics(app)


class ReservationCreate(BaseModel):
    """Reservation request model."""
    room_id: int
    start_at: datetime
    end_at: datetime
    purpose: str = Field(..., min_length=1, max_length=200)
    participant_user_ids: List[int] = Field(default_factory=list, max_length=50)


class ReservationUpdate(BaseModel):
    """Pending reservation edit model; omitted fields are kept."""
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    purpose: Optional[str] = Field(None, min_length=1, max_length=200)
    participant_user_ids: Optional[List[int]] = Field(None, max_length=50)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class RejectRequest(BaseModel):
    """Reject request model."""
    reason: str = Field(..., min_length=1, max_length=500)


class ReservationResponse(BaseModel):
    """Reservation as seen by its applicant."""
    id: int
    room_id: int
    room_name: str
    building_id: int
    building_name: str
    floor_no: int
    applicant_id: int
    participant_user_ids: List[int]
    purpose: str
    start_at: datetime
    end_at: datetime
    status: str
    reject_reason: Optional[str]
    created_at: datetime
    updated_at: datetime


class ReviewReservationResponse(ReservationResponse):
    """Reservation as seen by a reviewer."""
    reviewed_by: Optional[int]
    reviewed_at: Optional[datetime]
    cancelled_by: Optional[int]
    cancelled_at: Optional[datetime]
    cancel_reason: Optional[str]


class ReservationPage(BaseModel):
    total: int
    page: int
    page_size: int
    items: List[ReservationResponse]


class ReviewReservationPage(BaseModel):
    total: int
    page: int
    page_size: int
    items: List[ReviewReservationResponse]


class ConflictingReservation(BaseModel):
    id: int
    start_at: datetime
    end_at: datetime
    status: str


class AvailabilityResponse(BaseModel):
    """Availability response model."""
    available: bool
    code: Optional[str] = None
    reason: Optional[str] = None
    field: Optional[str] = None
    conflicting_reservations: List[ConflictingReservation] = []


def to_response(reservation: Reservation) -> ReservationResponse:
    """Applicant view: status and reject reason, no reviewer details."""
    room = reservation.room
    return ReservationResponse(
        id=reservation.id,
        room_id=reservation.room_id,
        room_name=room.name,
        building_id=room.building_id,
        building_name=room.building.name,
        floor_no=room.floor_no,
        applicant_id=reservation.applicant_id,
        participant_user_ids=[p.user_id for p in reservation.participants],
        purpose=reservation.purpose,
        start_at=reservation.start_at,
        end_at=reservation.end_at,
        status=reservation.status.value,
        reject_reason=reservation.reject_reason,
        created_at=reservation.created_at,
        updated_at=reservation.updated_at,
    )


def to_review_response(reservation: Reservation) -> ReviewReservationResponse:
    return ReviewReservationResponse(
        **to_response(reservation).model_dump(),
        reviewed_by=reservation.reviewed_by,
        reviewed_at=reservation.reviewed_at,
        cancelled_by=reservation.cancelled_by,
        cancelled_at=reservation.cancelled_at,
        cancel_reason=reservation.cancel_reason,
    )


def _view(reservation: Reservation, user: CurrentUser):
    if has_permission(user, PERM_REVIEW):
        return to_review_response(reservation)
    return to_response(reservation)


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup."""
    init_db()


@app.post("/reservations", response_model=Union[ReviewReservationResponse, ReservationResponse],
          status_code=status.HTTP_201_CREATED)
@rate_limit_decorator("write")
def create_reservation(
    request: Request,
    reservation_data: ReservationCreate,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    config: FacilityConfig = Depends(get_request_config),
    clock: Clock = Depends(get_clock),
    audit: AuditSink = Depends(get_audit_sink)
):
    """
    Request a reservation.

    The reservation is approved immediately unless review is required,
    in which case it stays pending until a reviewer acts on it.

    Args:
        reservation_data: Reservation request data
        current_user: Current authenticated user
        db: Database session
        config: Facility configuration of this request
        clock: Clock
        audit: Audit sink

    Returns:
        ReservationResponse: Created reservation

    Raises:
        BadRequestError: Invalid interval, duration over cap, unavailable room
        ForbiddenError: Caller is banned
        ConflictError: Time slot overlaps another active reservation
    """
    reservation = lifecycle.create_reservation(
        db,
        config,
        clock,
        applicant_id=current_user.id,
        room_id=reservation_data.room_id,
        start_at=ensure_utc(reservation_data.start_at, "start_at"),
        end_at=ensure_utc(reservation_data.end_at, "end_at"),
        purpose=reservation_data.purpose,
        participant_user_ids=reservation_data.participant_user_ids,
        audit=audit,
    )
    return _view(reservation, current_user)


@app.get("/reservations/mine", response_model=ReservationPage)
def list_my_reservations(
    status_filter: Optional[ReservationStatus] = Query(None, alias="status", description="Filter by status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Caller's reservations, newest first.

    Returns:
        ReservationPage: Paginated reservations
    """
    total, items = lifecycle.list_my_reservations(db, current_user.id, status=status_filter,
                                                  page=page, page_size=page_size)
    return ReservationPage(total=total, page=page, page_size=page_size,
                           items=[to_response(r) for r in items])


@app.get("/reservations/check-availability", response_model=AvailabilityResponse)
def check_availability(
    room_id: int = Query(..., description="Room ID"),
    start_at: datetime = Query(..., description="Desired start"),
    end_at: datetime = Query(..., description="Desired end"),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    config: FacilityConfig = Depends(get_request_config),
    clock: Clock = Depends(get_clock)
):
    """
    Check whether the caller could book a room for a time slot.

    The answer is advisory: nothing is held, so a later request may
    still lose the slot to a concurrent booking.

    Returns:
        AvailabilityResponse: Admission outcome and every overlapping reservation
    """
    result = find_conflicts(
        db, config, clock.now(), room_id,
        ensure_utc(start_at, "start_at"), ensure_utc(end_at, "end_at"),
        current_user.id,
    )
    return AvailabilityResponse(
        available=result.ok,
        code=result.code,
        reason=result.reason,
        field=result.field,
        conflicting_reservations=[
            ConflictingReservation(id=r.id, start_at=r.start_at, end_at=r.end_at, status=r.status.value)
            for r in result.conflicts
        ],
    )


@app.get("/reservations/{reservation_id}", response_model=Union[ReviewReservationResponse, ReservationResponse])
def get_reservation(
    reservation_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Get reservation details.

    Reviewers see any reservation with review and cancellation details;
    everyone else sees only their own.

    Raises:
        NotFoundError: If the reservation does not exist or is not visible
    """
    privileged = has_permission(current_user, PERM_REVIEW)
    reservation = lifecycle.get_visible_reservation(db, reservation_id, current_user.id, privileged)
    return _view(reservation, current_user)


@app.put("/reservations/{reservation_id}", response_model=Union[ReviewReservationResponse, ReservationResponse])
@rate_limit_decorator("write")
def update_reservation(
    request: Request,
    reservation_id: int,
    reservation_data: ReservationUpdate,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    config: FacilityConfig = Depends(get_request_config),
    clock: Clock = Depends(get_clock),
    audit: AuditSink = Depends(get_audit_sink)
):
    """
    Edit a pending reservation of the caller.

    Raises:
        NotFoundError: Unknown reservation or not the caller's
        ConflictError: Not pending, or the new time slot overlaps
    """
    reservation = lifecycle.update_reservation(
        db,
        config,
        clock,
        reservation_id=reservation_id,
        actor_id=current_user.id,
        start_at=ensure_utc(reservation_data.start_at, "start_at") if reservation_data.start_at else None,
        end_at=ensure_utc(reservation_data.end_at, "end_at") if reservation_data.end_at else None,
        purpose=reservation_data.purpose,
        participant_user_ids=reservation_data.participant_user_ids,
        audit=audit,
    )
    return _view(reservation, current_user)


@app.post("/reservations/{reservation_id}/cancel", response_model=Union[ReviewReservationResponse, ReservationResponse])
@rate_limit_decorator("review")
def cancel_reservation(
    request: Request,
    reservation_id: int,
    cancel_data: Optional[CancelRequest] = None,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    audit: AuditSink = Depends(get_audit_sink)
):
    """
    Cancel a reservation before it starts.

    Applicants cancel their own reservations; reviewers may cancel any.

    Raises:
        NotFoundError: Unknown reservation or not visible to the caller
        ConflictError: Already rejected/cancelled, or already started
    """
    reservation = lifecycle.cancel_reservation(
        db,
        clock,
        reservation_id=reservation_id,
        actor_id=current_user.id,
        privileged=has_permission(current_user, PERM_REVIEW),
        reason=sanitize_input(cancel_data.reason) if cancel_data and cancel_data.reason else None,
        audit=audit,
    )
    return _view(reservation, current_user)


# Review

@app.get("/review/reservations", response_model=ReviewReservationPage)
def list_for_review(
    status_filter: Optional[ReservationStatus] = Query(None, alias="status", description="Filter by status"),
    building_id: Optional[int] = Query(None),
    floor_no: Optional[int] = Query(None),
    room_id: Optional[int] = Query(None),
    applicant_id: Optional[int] = Query(None),
    window_from: Optional[datetime] = Query(None, alias="from"),
    window_to: Optional[datetime] = Query(None, alias="to"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: CurrentUser = Depends(require_permission(PERM_REVIEW)),
    db: Session = Depends(get_db)
):
    """
    Reservations for reviewers, newest first.

    ``from``/``to`` keep reservations intersecting that window.
    """
    total, items = lifecycle.list_for_review(
        db,
        status=status_filter,
        building_id=building_id,
        floor_no=floor_no,
        room_id=room_id,
        applicant_id=applicant_id,
        window_from=ensure_utc(window_from, "from") if window_from else None,
        window_to=ensure_utc(window_to, "to") if window_to else None,
        page=page,
        page_size=page_size,
    )
    return ReviewReservationPage(total=total, page=page, page_size=page_size,
                                 items=[to_review_response(r) for r in items])


@app.post("/review/reservations/{reservation_id}/approve", response_model=ReviewReservationResponse)
@rate_limit_decorator("review")
def approve_reservation(
    request: Request,
    reservation_id: int,
    current_user: CurrentUser = Depends(require_permission(PERM_REVIEW)),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    audit: AuditSink = Depends(get_audit_sink)
):
    """
    Approve a pending reservation.

    Raises:
        NotFoundError: Unknown reservation
        ConflictError: Not pending, or it now overlaps another active reservation
    """
    reservation = lifecycle.approve_reservation(db, clock, reservation_id, current_user.id, audit=audit)
    return to_review_response(reservation)


@app.post("/review/reservations/{reservation_id}/reject", response_model=ReviewReservationResponse)
@rate_limit_decorator("review")
def reject_reservation(
    request: Request,
    reservation_id: int,
    reject_data: RejectRequest,
    current_user: CurrentUser = Depends(require_permission(PERM_REVIEW)),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    audit: AuditSink = Depends(get_audit_sink)
):
    """
    Reject a pending reservation with a reason.

    Raises:
        NotFoundError: Unknown reservation
        ConflictError: Not pending
    """
    reservation = lifecycle.reject_reservation(db, clock, reservation_id, current_user.id,
                                               sanitize_input(reject_data.reason), audit=audit)
    return to_review_response(reservation)


@app.get("/health")
def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Health status
    """
    return {"status": "healthy", "service": "reservations"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8003)
