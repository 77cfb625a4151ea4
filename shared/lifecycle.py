"""
Reservation lifecycle.

States and transitions::

    create ──> approved            (audit not required)
    create ──> pending             (audit required)
    pending ──approve──> approved
    pending ──reject───> rejected   (terminal)
    pending|approved ──cancel──> cancelled (terminal, only before start)

Pending reservations may be edited by their applicant. Every write that
depends on the overlap check (create, edit, approve) goes through
:func:`shared.admission.run_admitted_write`; reject and cancel are
conditional updates on the current status, so concurrent reviewers
cannot both win.
"""

from datetime import datetime
from typing import Iterable, List, Optional, Tuple
import logging

from sqlalchemy.orm import Session, joinedload

from shared.admission import (
    check_admission, ensure_no_overlap, run_admitted_write, validate_interval,
)
from shared.audit import AuditSink, record_audit
from shared.auth import sanitize_input
from shared.clock import Clock
from shared.errors import BadRequestError, ConflictError, FacilityError, NotFoundError
from shared.facility_config import FacilityConfig
from shared.models import (
    ACTIVE_STATUSES, Building, Reservation, ReservationParticipant, ReservationStatus, Room,
)
from shared.monitoring import track_reservation_created, track_transition

logger = logging.getLogger(__name__)

MAX_PARTICIPANTS = 50
MAX_PURPOSE_LENGTH = 200
TARGET_TYPE = "facility_reservation"


def normalize_participants(applicant_id: int, participant_user_ids: Iterable[int]) -> List[int]:
    """
    Participant set: the applicant first, then the others, deduplicated.

    Raises:
        BadRequestError: If more than MAX_PARTICIPANTS others are listed
    """
    unique = list(dict.fromkeys([applicant_id, *participant_user_ids]))
    if len(unique) - 1 > MAX_PARTICIPANTS:
        raise BadRequestError(f"at most {MAX_PARTICIPANTS} participants are allowed",
                              field="participant_user_ids")
    return unique


def _clean_purpose(purpose: Optional[str]) -> str:
    """Trim and length-check the raw text, then escape it for storage."""
    purpose = (purpose or "").strip()
    if not purpose:
        raise BadRequestError("purpose is required", field="purpose")
    if len(purpose) > MAX_PURPOSE_LENGTH:
        raise BadRequestError(f"purpose must be at most {MAX_PURPOSE_LENGTH} characters",
                              field="purpose")
    return sanitize_input(purpose)


def _participants(applicant_id: int, user_ids: List[int],
                  existing: Iterable[ReservationParticipant] = ()) -> List[ReservationParticipant]:
    # Reuse rows that stay, so the flush never inserts a duplicate key
    # before deleting the old row.
    kept = {p.user_id: p for p in existing}
    return [
        kept.get(u) or ReservationParticipant(user_id=u, is_applicant=(u == applicant_id))
        for u in user_ids
    ]


def snapshot(reservation: Reservation) -> dict:
    """Audit-friendly view of the mutable fields."""
    return {
        "room_id": reservation.room_id,
        "status": reservation.status.value if reservation.status else None,
        "start_at": reservation.start_at.isoformat() if reservation.start_at else None,
        "end_at": reservation.end_at.isoformat() if reservation.end_at else None,
        "purpose": reservation.purpose,
        "participant_user_ids": sorted(p.user_id for p in reservation.participants),
    }


def _audit_failure(audit, actor_id, action, target_id, exc: FacilityError):
    record_audit(audit, actor_id=actor_id, action=action, target_type=TARGET_TYPE,
                 target_id=target_id, success=False, error_code=exc.code, reason=exc.message)


def _get(db: Session, reservation_id: int) -> Reservation:
    reservation = db.get(Reservation, reservation_id)
    if reservation is None:
        raise NotFoundError("Reservation not found", field="reservation_id")
    return reservation


def get_visible_reservation(db: Session, reservation_id: int, viewer_id: int,
                            privileged: bool = False) -> Reservation:
    """
    Reservation detail for the applicant or a reviewer.

    Raises:
        NotFoundError: If it does not exist or the viewer may not see it
    """
    reservation = (
        db.query(Reservation)
        .options(joinedload(Reservation.room).joinedload(Room.building))
        .filter(Reservation.id == reservation_id)
        .first()
    )
    if reservation is None or (reservation.applicant_id != viewer_id and not privileged):
        raise NotFoundError("Reservation not found", field="reservation_id")
    return reservation


def create_reservation(
    db: Session,
    config: FacilityConfig,
    clock: Clock,
    applicant_id: int,
    room_id: int,
    start_at: datetime,
    end_at: datetime,
    purpose: str,
    participant_user_ids: Iterable[int] = (),
    audit: Optional[AuditSink] = None,
) -> Reservation:
    """
    Create a reservation.

    The reservation starts ``approved`` (without a reviewer) when the
    configuration does not require review, ``pending`` otherwise.

    Args:
        db: Database session
        config: Facility configuration of this request
        clock: Clock
        applicant_id: Requesting user
        room_id: Room to book
        start_at: Interval start
        end_at: Interval end
        purpose: Free text purpose
        participant_user_ids: Other users taking part
        audit: Audit sink

    Returns:
        Reservation: The committed reservation

    Raises:
        BadRequestError, ForbiddenError, ConflictError: Admission failures
    """
    action = "facility.reservation.create"
    now = clock.now()
    status = ReservationStatus.PENDING if config.audit_required else ReservationStatus.APPROVED

    def write() -> Reservation:
        check_admission(db, config, now, room_id, start_at, end_at, applicant_id)
        reservation = Reservation(
            room_id=room_id,
            applicant_id=applicant_id,
            purpose=clean_purpose,
            start_at=start_at,
            end_at=end_at,
            status=status,
            created_by=applicant_id,
            created_at=now,
            updated_at=now,
        )
        reservation.participants = _participants(applicant_id, participants)
        db.add(reservation)
        db.flush()
        return reservation

    try:
        clean_purpose = _clean_purpose(purpose)
        participants = normalize_participants(applicant_id, participant_user_ids)
        reservation = run_admitted_write(db, room_id, write)
    except FacilityError as e:
        _audit_failure(audit, applicant_id, action, room_id, e)
        raise

    db.refresh(reservation)
    track_reservation_created(status.value)
    logger.info(f"Reservation {reservation.id} created on room {room_id} as {status.value}")
    record_audit(audit, actor_id=applicant_id, action=action, target_type=TARGET_TYPE,
                 target_id=reservation.id, diff={"before": None, "after": snapshot(reservation)})
    return reservation


def update_reservation(
    db: Session,
    config: FacilityConfig,
    clock: Clock,
    reservation_id: int,
    actor_id: int,
    start_at: Optional[datetime] = None,
    end_at: Optional[datetime] = None,
    purpose: Optional[str] = None,
    participant_user_ids: Optional[Iterable[int]] = None,
    audit: Optional[AuditSink] = None,
) -> Reservation:
    """
    Edit a pending reservation of the caller.

    Omitted fields keep their value. The new interval is re-admitted
    with the reservation itself excluded from the overlap check.

    Raises:
        NotFoundError: Unknown reservation or not the caller's
        ConflictError: Not pending, or the new interval overlaps
        BadRequestError, ForbiddenError: Admission failures
    """
    action = "facility.reservation.update"
    now = clock.now()

    try:
        reservation = _get(db, reservation_id)
        if reservation.applicant_id != actor_id:
            raise NotFoundError("Reservation not found", field="reservation_id")
        room_id = reservation.room_id
        clean_purpose = _clean_purpose(purpose) if purpose is not None else None
        participants = (
            normalize_participants(actor_id, participant_user_ids)
            if participant_user_ids is not None else None
        )

        def write():
            db.refresh(reservation)
            if reservation.status != ReservationStatus.PENDING:
                raise ConflictError("only pending reservations can be edited", field="status")
            before = snapshot(reservation)
            new_start = start_at or reservation.start_at
            new_end = end_at or reservation.end_at
            check_admission(db, config, now, room_id, new_start, new_end, actor_id,
                            exclude_reservation_id=reservation.id)
            reservation.start_at = new_start
            reservation.end_at = new_end
            if clean_purpose is not None:
                reservation.purpose = clean_purpose
            if participants is not None:
                reservation.participants = _participants(actor_id, participants, reservation.participants)
            reservation.updated_by = actor_id
            reservation.updated_at = now
            db.flush()
            return before

        before = run_admitted_write(db, room_id, write)
    except FacilityError as e:
        _audit_failure(audit, actor_id, action, reservation_id, e)
        raise

    db.refresh(reservation)
    track_transition("update")
    record_audit(audit, actor_id=actor_id, action=action, target_type=TARGET_TYPE,
                 target_id=reservation.id, diff={"before": before, "after": snapshot(reservation)})
    return reservation


def approve_reservation(
    db: Session,
    clock: Clock,
    reservation_id: int,
    reviewer_id: int,
    audit: Optional[AuditSink] = None,
) -> Reservation:
    """
    Approve a pending reservation.

    The overlap check is repeated under the room lock, excluding the
    reservation itself. A newly found overlap fails the approval with
    CONFLICT and leaves the reservation pending. Bans, the duration cap
    and room enablement are not re-applied: they only gate new requests.

    Raises:
        NotFoundError: Unknown reservation
        ConflictError: Not pending, or overlaps another active reservation
    """
    action = "facility.reservation.approve"
    now = clock.now()

    try:
        reservation = _get(db, reservation_id)
        room_id = reservation.room_id

        def write():
            db.refresh(reservation)
            if reservation.status != ReservationStatus.PENDING:
                raise ConflictError("only pending reservations can be approved", field="status")
            validate_interval(reservation.start_at, reservation.end_at, now,
                              require_future_start=False)
            ensure_no_overlap(db, room_id, reservation.start_at, reservation.end_at,
                              exclude_reservation_id=reservation.id)
            updated = (
                db.query(Reservation)
                .filter(Reservation.id == reservation.id,
                        Reservation.status == ReservationStatus.PENDING)
                .update({
                    Reservation.status: ReservationStatus.APPROVED,
                    Reservation.reviewed_by: reviewer_id,
                    Reservation.reviewed_at: now,
                    Reservation.reject_reason: None,
                    Reservation.updated_by: reviewer_id,
                    Reservation.updated_at: now,
                }, synchronize_session=False)
            )
            if updated == 0:
                raise ConflictError("only pending reservations can be approved", field="status")

        run_admitted_write(db, room_id, write)
    except FacilityError as e:
        _audit_failure(audit, reviewer_id, action, reservation_id, e)
        raise

    db.refresh(reservation)
    track_transition("approve")
    record_audit(audit, actor_id=reviewer_id, action=action, target_type=TARGET_TYPE,
                 target_id=reservation.id,
                 diff={"before": {"status": "pending"}, "after": {"status": "approved"}})
    return reservation


def reject_reservation(
    db: Session,
    clock: Clock,
    reservation_id: int,
    reviewer_id: int,
    reason: str,
    audit: Optional[AuditSink] = None,
) -> Reservation:
    """
    Reject a pending reservation with a reason.

    Raises:
        BadRequestError: Empty reason
        NotFoundError: Unknown reservation
        ConflictError: Not pending
    """
    action = "facility.reservation.reject"
    now = clock.now()

    try:
        reason = (reason or "").strip()
        if not reason:
            raise BadRequestError("reason is required", field="reason")
        reservation = _get(db, reservation_id)
        updated = (
            db.query(Reservation)
            .filter(Reservation.id == reservation_id,
                    Reservation.status == ReservationStatus.PENDING)
            .update({
                Reservation.status: ReservationStatus.REJECTED,
                Reservation.reviewed_by: reviewer_id,
                Reservation.reviewed_at: now,
                Reservation.reject_reason: reason,
                Reservation.updated_by: reviewer_id,
                Reservation.updated_at: now,
            }, synchronize_session=False)
        )
        if updated == 0:
            db.rollback()
            raise ConflictError("only pending reservations can be rejected", field="status")
        db.commit()
    except FacilityError as e:
        _audit_failure(audit, reviewer_id, action, reservation_id, e)
        raise

    db.refresh(reservation)
    track_transition("reject")
    record_audit(audit, actor_id=reviewer_id, action=action, target_type=TARGET_TYPE,
                 target_id=reservation_id, reason=reason,
                 diff={"before": {"status": "pending"}, "after": {"status": "rejected"}})
    return reservation


def cancel_reservation(
    db: Session,
    clock: Clock,
    reservation_id: int,
    actor_id: int,
    privileged: bool = False,
    reason: Optional[str] = None,
    audit: Optional[AuditSink] = None,
) -> Reservation:
    """
    Cancel a pending or approved reservation that has not started yet.

    Args:
        privileged: Caller is a reviewer and may cancel any reservation

    Raises:
        NotFoundError: Unknown reservation or not visible to the caller
        ConflictError: Already terminal, or already started
    """
    action = "facility.reservation.cancel"
    now = clock.now()

    try:
        reservation = _get(db, reservation_id)
        if reservation.applicant_id != actor_id and not privileged:
            raise NotFoundError("Reservation not found", field="reservation_id")
        before_status = reservation.status.value
        updated = (
            db.query(Reservation)
            .filter(Reservation.id == reservation_id,
                    Reservation.status.in_(ACTIVE_STATUSES),
                    Reservation.start_at > now)
            .update({
                Reservation.status: ReservationStatus.CANCELLED,
                Reservation.cancelled_by: actor_id,
                Reservation.cancelled_at: now,
                Reservation.cancel_reason: (reason or "").strip() or None,
                Reservation.updated_by: actor_id,
                Reservation.updated_at: now,
            }, synchronize_session=False)
        )
        if updated == 0:
            db.rollback()
            raise ConflictError(
                "only pending or approved reservations that have not started can be cancelled",
                field="status",
            )
        db.commit()
    except FacilityError as e:
        _audit_failure(audit, actor_id, action, reservation_id, e)
        raise

    db.refresh(reservation)
    track_transition("cancel")
    record_audit(audit, actor_id=actor_id, action=action, target_type=TARGET_TYPE,
                 target_id=reservation_id, reason=reservation.cancel_reason,
                 diff={"before": {"status": before_status}, "after": {"status": "cancelled"}})
    return reservation


def list_my_reservations(
    db: Session,
    user_id: int,
    status: Optional[ReservationStatus] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[int, List[Reservation]]:
    """
    Reservations applied for by a user, newest first.

    Returns:
        tuple: (total count, page of reservations)
    """
    query = db.query(Reservation).filter(Reservation.applicant_id == user_id)
    if status is not None:
        query = query.filter(Reservation.status == status)
    total = query.count()
    items = (
        query.options(joinedload(Reservation.room).joinedload(Room.building))
        .order_by(Reservation.created_at.desc(), Reservation.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return total, items


def list_for_review(
    db: Session,
    status: Optional[ReservationStatus] = None,
    building_id: Optional[int] = None,
    floor_no: Optional[int] = None,
    room_id: Optional[int] = None,
    applicant_id: Optional[int] = None,
    window_from: Optional[datetime] = None,
    window_to: Optional[datetime] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[int, List[Reservation]]:
    """
    Reservations visible to reviewers, filtered, newest first.

    ``window_from``/``window_to`` keep reservations intersecting that
    window.

    Returns:
        tuple: (total count, page of reservations)
    """
    query = (
        db.query(Reservation)
        .join(Room, Room.id == Reservation.room_id)
        .join(Building, Building.id == Room.building_id)
    )
    if status is not None:
        query = query.filter(Reservation.status == status)
    if building_id is not None:
        query = query.filter(Room.building_id == building_id)
    if floor_no is not None:
        query = query.filter(Room.floor_no == floor_no)
    if room_id is not None:
        query = query.filter(Reservation.room_id == room_id)
    if applicant_id is not None:
        query = query.filter(Reservation.applicant_id == applicant_id)
    if window_from is not None:
        query = query.filter(Reservation.end_at > window_from)
    if window_to is not None:
        query = query.filter(Reservation.start_at < window_to)

    total = query.count()
    items = (
        query.options(joinedload(Reservation.room).joinedload(Room.building))
        .order_by(Reservation.created_at.desc(), Reservation.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return total, items
