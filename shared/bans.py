"""
Ban registry.

Bans are scoped to the reservation module. Rows are append-only: a
ban is lifted by recording a revocation on its row, and re-banning or
extending appends a new row. A user is banned at ``now`` iff some row
has no revocation and either no expiry or an expiry after ``now``.

Bans only gate the creation (and editing) of reservations; existing
reservations of a banned user are never touched.
"""

from datetime import datetime
from typing import List, Optional, Union
import logging

from sqlalchemy import or_
from sqlalchemy.orm import Session

from shared.audit import AuditSink, record_audit
from shared.errors import BadRequestError, ConflictError, NotFoundError
from shared.intervals import expiry_from
from shared.models import FacilityBan
from shared.monitoring import track_ban_issued

logger = logging.getLogger(__name__)

LIST_LIMIT = 200


def is_ban_active(ban: FacilityBan, now: datetime) -> bool:
    return ban.revoked_at is None and (ban.expires_at is None or ban.expires_at > now)


def _active_filter(now: datetime):
    return (
        FacilityBan.revoked_at.is_(None),
        or_(FacilityBan.expires_at.is_(None), FacilityBan.expires_at > now),
    )


def active_ban_for(db: Session, user_id: int, now: datetime) -> Optional[FacilityBan]:
    """Newest active ban row of a user, if any."""
    return (
        db.query(FacilityBan)
        .filter(FacilityBan.user_id == user_id, *_active_filter(now))
        .order_by(FacilityBan.created_at.desc(), FacilityBan.id.desc())
        .first()
    )


def is_banned(db: Session, user_id: int, now: datetime) -> bool:
    """
    Whether a user is currently banned from booking.

    Args:
        db: Database session
        user_id: User to check
        now: Instant to evaluate expiry against

    Returns:
        bool: True iff an active ban row exists
    """
    return active_ban_for(db, user_id, now) is not None


def list_bans(db: Session, now: datetime, user_id: Optional[int] = None) -> List[dict]:
    """Ban history, newest first, with a derived ``active`` flag."""
    query = db.query(FacilityBan)
    if user_id is not None:
        query = query.filter(FacilityBan.user_id == user_id)
    rows = query.order_by(FacilityBan.created_at.desc(), FacilityBan.id.desc()).limit(LIST_LIMIT).all()
    return [{"ban": row, "active": is_ban_active(row, now)} for row in rows]


def list_active(db: Session, now: datetime) -> List[FacilityBan]:
    return (
        db.query(FacilityBan)
        .filter(*_active_filter(now))
        .order_by(FacilityBan.created_at.desc(), FacilityBan.id.desc())
        .all()
    )


def _resolve_expiry(now: datetime, duration: Optional[str],
                    expires_at: Union[str, datetime, None]) -> Optional[datetime]:
    expiry = expiry_from(now, duration=duration, expires_at=expires_at)
    if expiry is not None and expiry <= now:
        raise BadRequestError("expires_at must be in the future", field="expires_at")
    return expiry


def ban(
    db: Session,
    user_id: int,
    actor_id: int,
    now: datetime,
    duration: Optional[str] = None,
    expires_at: Union[str, datetime, None] = None,
    reason: Optional[str] = None,
    audit: Optional[AuditSink] = None,
) -> FacilityBan:
    """
    Ban a user from booking.

    Args:
        db: Database session
        user_id: User to ban
        actor_id: Moderator issuing the ban
        now: Current instant
        duration: Compact duration (``7d``, ``1h30m``); wins over expires_at
        expires_at: Explicit expiry; neither given means indefinite
        reason: Optional reason
        audit: Audit sink

    Returns:
        FacilityBan: The new ban row

    Raises:
        BadRequestError: If the expiry is malformed or not in the future
        ConflictError: If the user is already actively banned
    """
    expiry = _resolve_expiry(now, duration, expires_at)
    if is_banned(db, user_id, now):
        raise ConflictError("User is already banned; revoke or extend the existing ban",
                            field="user_id")

    row = FacilityBan(user_id=user_id, reason=reason, expires_at=expiry,
                      created_by=actor_id, created_at=now)
    db.add(row)
    db.commit()
    db.refresh(row)
    track_ban_issued()

    logger.info(f"User {user_id} banned by {actor_id} until {expiry or 'revoked'}")
    record_audit(
        audit,
        actor_id=actor_id,
        action="facility.ban.create",
        target_type="facility_ban",
        target_id=row.id,
        reason=reason,
        diff={"user_id": user_id, "expires_at": expiry.isoformat() if expiry else None},
    )
    return row


def _get_active(db: Session, ban_id: int, now: datetime) -> FacilityBan:
    row = db.get(FacilityBan, ban_id)
    if row is None or not is_ban_active(row, now):
        raise NotFoundError("Ban not found or no longer active", field="ban_id")
    return row


def revoke(
    db: Session,
    ban_id: int,
    actor_id: int,
    now: datetime,
    reason: Optional[str] = None,
    audit: Optional[AuditSink] = None,
) -> FacilityBan:
    """
    Lift a ban by recording a revocation on its row.

    Raises:
        NotFoundError: If the ban is unknown, already revoked or expired
    """
    row = _get_active(db, ban_id, now)
    row.revoked_at = now
    row.revoked_by = actor_id
    row.revoked_reason = reason
    db.commit()
    db.refresh(row)

    logger.info(f"Ban {ban_id} of user {row.user_id} revoked by {actor_id}")
    record_audit(
        audit,
        actor_id=actor_id,
        action="facility.ban.revoke",
        target_type="facility_ban",
        target_id=ban_id,
        reason=reason,
    )
    return row


def extend(
    db: Session,
    ban_id: int,
    actor_id: int,
    now: datetime,
    duration: Optional[str] = None,
    expires_at: Union[str, datetime, None] = None,
    reason: Optional[str] = None,
    audit: Optional[AuditSink] = None,
) -> FacilityBan:
    """
    Replace an active ban with a new expiry.

    The current row is revoked and a new row appended in one
    transaction, so the user is never unbanned in between. The duration
    counts from ``now``; no duration and no expiry makes it indefinite.

    Raises:
        NotFoundError: If the ban is unknown, revoked or expired
    """
    expiry = _resolve_expiry(now, duration, expires_at)
    current = _get_active(db, ban_id, now)

    current.revoked_at = now
    current.revoked_by = actor_id
    current.revoked_reason = "extended"
    replacement = FacilityBan(
        user_id=current.user_id,
        reason=reason or current.reason,
        expires_at=expiry,
        created_by=actor_id,
        created_at=now,
    )
    db.add(replacement)
    db.commit()
    db.refresh(replacement)

    record_audit(
        audit,
        actor_id=actor_id,
        action="facility.ban.extend",
        target_type="facility_ban",
        target_id=replacement.id,
        reason=reason,
        diff={
            "before": {"ban_id": current.id, "expires_at": current.expires_at.isoformat() if current.expires_at else None},
            "after": {"ban_id": replacement.id, "expires_at": expiry.isoformat() if expiry else None},
        },
    )
    return replacement
