"""
Facility configuration store.

Two flags steer admission: ``audit_required`` (new bookings start as
pending) and ``max_duration_hours`` (booking length cap). They are
stored as key/value rows and read into an immutable FacilityConfig
once per request; the engine receives that value as a parameter.
"""

from dataclasses import dataclass, replace
from typing import Optional
import logging
import os

from fastapi import Depends
from sqlalchemy.orm import Session

from shared.audit import AuditSink, record_audit
from shared.database import get_db
from shared.errors import BadRequestError
from shared.models import FacilityConfigEntry

logger = logging.getLogger(__name__)

AUDIT_REQUIRED_KEY = "facility.auditRequired"
MAX_DURATION_KEY = "facility.maxDurationHours"

DEFAULT_AUDIT_REQUIRED = os.getenv("FACILITY_AUDIT_REQUIRED", "false").lower() == "true"
DEFAULT_MAX_DURATION_HOURS = float(os.getenv("FACILITY_MAX_DURATION_HOURS", "72"))
MAX_DURATION_CEILING_HOURS = 168


@dataclass(frozen=True)
class FacilityConfig:
    """Snapshot of the facility flags."""
    audit_required: bool = DEFAULT_AUDIT_REQUIRED
    max_duration_hours: float = DEFAULT_MAX_DURATION_HOURS

    def to_dict(self) -> dict:
        return {
            "audit_required": self.audit_required,
            "max_duration_hours": self.max_duration_hours,
        }


def _coerce_bool(raw: Optional[str], default: bool) -> bool:
    if raw == "true":
        return True
    if raw == "false":
        return False
    return default


def _coerce_number(raw: Optional[str], default: float) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def get_config(db: Session) -> FacilityConfig:
    """
    Read the current configuration.

    Missing or unreadable rows fall back to the environment defaults.

    Args:
        db: Database session

    Returns:
        FacilityConfig: Current flags
    """
    rows = {
        row.key: row.value
        for row in db.query(FacilityConfigEntry).filter(
            FacilityConfigEntry.key.in_([AUDIT_REQUIRED_KEY, MAX_DURATION_KEY])
        )
    }
    return FacilityConfig(
        audit_required=_coerce_bool(rows.get(AUDIT_REQUIRED_KEY), DEFAULT_AUDIT_REQUIRED),
        max_duration_hours=_coerce_number(rows.get(MAX_DURATION_KEY), DEFAULT_MAX_DURATION_HOURS),
    )


def get_request_config(db: Session = Depends(get_db)) -> FacilityConfig:
    """FastAPI dependency: config fetched once per request."""
    return get_config(db)


def _upsert(db: Session, key: str, value: str, actor_id: Optional[int]):
    entry = db.get(FacilityConfigEntry, key)
    if entry is None:
        db.add(FacilityConfigEntry(key=key, value=value, updated_by=actor_id))
    else:
        entry.value = value
        entry.updated_by = actor_id


def set_config(
    db: Session,
    actor_id: int,
    audit_required: Optional[bool] = None,
    max_duration_hours: Optional[float] = None,
    reason: Optional[str] = None,
    audit: Optional[AuditSink] = None,
) -> FacilityConfig:
    """
    Patch the configuration.

    Changes apply to admission checks made after the commit; existing
    reservations are not re-evaluated.

    Args:
        db: Database session
        actor_id: User making the change
        audit_required: New auditRequired flag
        max_duration_hours: New duration cap, 0 < value <= 168
        reason: Optional free text reason
        audit: Audit sink

    Returns:
        FacilityConfig: Configuration after the change

    Raises:
        BadRequestError: If nothing to update or the cap is out of range
    """
    if audit_required is None and max_duration_hours is None:
        raise BadRequestError("no fields to update")
    if max_duration_hours is not None and not 0 < max_duration_hours <= MAX_DURATION_CEILING_HOURS:
        raise BadRequestError(
            f"max_duration_hours must be in (0, {MAX_DURATION_CEILING_HOURS}]",
            field="max_duration_hours",
        )

    before = get_config(db)
    after = before
    if audit_required is not None:
        _upsert(db, AUDIT_REQUIRED_KEY, "true" if audit_required else "false", actor_id)
        after = replace(after, audit_required=audit_required)
    if max_duration_hours is not None:
        _upsert(db, MAX_DURATION_KEY, repr(float(max_duration_hours)), actor_id)
        after = replace(after, max_duration_hours=float(max_duration_hours))
    db.commit()

    logger.info(f"Facility config updated by {actor_id}: {after.to_dict()}")
    record_audit(
        audit,
        actor_id=actor_id,
        action="facility.config.update",
        target_type="facility_config",
        target_id="facility",
        reason=reason,
        diff={"before": before.to_dict(), "after": after.to_dict()},
    )
    return after
