"""
Moderation Service

This service manages booking bans and the facility configuration.

Endpoints:
    - GET /bans: Ban history, optionally for one user
    - GET /bans/active: Currently active bans
    - POST /bans: Ban a user from booking
    - POST /bans/{ban_id}/revoke: Lift an active ban
    - POST /bans/{ban_id}/extend: Replace an active ban with a new expiry
    - GET /config: Current facility configuration
    - PUT /config: Update the facility configuration
"""

from fastapi import FastAPI, Depends, Query, Request, status
from pydantic import BaseModel, Field
from typing import Optional, List
from sqlalchemy.orm import Session
from datetime import datetime
import logging

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shared import bans
from shared.audit import AuditSink, get_audit_sink
from shared.auth import (
    CurrentUser, PERM_BAN, PERM_CONFIG, get_current_user, optional_text, require_permission,
)
from shared.clock import Clock, get_clock
from shared.database import get_db, init_db
from shared.errors import install_error_handlers
from shared.facility_config import MAX_DURATION_CEILING_HOURS, FacilityConfig, get_request_config, set_config
from shared.models import FacilityBan
from shared.monitoring import setup_metrics, update_active_bans
from shared.rate_limiting import rate_limit_decorator, setup_rate_limiting

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

app = FastAPI(title="Moderation Service", version="1.0.0")
install_error_handlers(app)
setup_rate_limiting(app)
setup_metrics(app)


class BanCreate(BaseModel):
    """
    Ban request model.

    ``duration`` uses the compact form (``10m``, ``2h``, ``1h30m``,
    ``7d``, ``4w``) and wins over ``expires_at``; with neither the ban
    is indefinite.
    """
    user_id: int
    duration: Optional[str] = Field(None, max_length=32)
    expires_at: Optional[datetime] = None
    reason: Optional[str] = Field(None, max_length=500)


class BanExtend(BaseModel):
    """Ban extension model; the new expiry counts from now."""
    duration: Optional[str] = Field(None, max_length=32)
    expires_at: Optional[datetime] = None
    reason: Optional[str] = Field(None, max_length=500)


class BanRevoke(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class BanResponse(BaseModel):
    """Ban response model."""
    id: int
    user_id: int
    reason: Optional[str]
    expires_at: Optional[datetime]
    created_by: int
    created_at: datetime
    revoked_by: Optional[int]
    revoked_at: Optional[datetime]
    revoked_reason: Optional[str]
    active: bool


class ConfigResponse(BaseModel):
    """Facility configuration response model."""
    audit_required: bool
    max_duration_hours: float


class ConfigUpdate(BaseModel):
    """Facility configuration patch."""
    audit_required: Optional[bool] = None
    max_duration_hours: Optional[float] = Field(None, gt=0, le=MAX_DURATION_CEILING_HOURS)
    reason: Optional[str] = Field(None, max_length=500)


def to_ban_response(ban: FacilityBan, active: bool) -> BanResponse:
    return BanResponse(
        id=ban.id,
        user_id=ban.user_id,
        reason=ban.reason,
        expires_at=ban.expires_at,
        created_by=ban.created_by,
        created_at=ban.created_at,
        revoked_by=ban.revoked_by,
        revoked_at=ban.revoked_at,
        revoked_reason=ban.revoked_reason,
        active=active,
    )


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup."""
    init_db()


# Bans

@app.get("/bans", response_model=List[BanResponse])
def list_bans(
    user_id: Optional[int] = Query(None, description="Only this user's bans"),
    current_user: CurrentUser = Depends(require_permission(PERM_BAN)),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    """Ban history, newest first."""
    rows = bans.list_bans(db, clock.now(), user_id=user_id)
    return [to_ban_response(row["ban"], row["active"]) for row in rows]


@app.get("/bans/active", response_model=List[BanResponse])
def list_active_bans(
    current_user: CurrentUser = Depends(require_permission(PERM_BAN)),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock)
):
    """Currently active bans, newest first."""
    rows = bans.list_active(db, clock.now())
    update_active_bans(len(rows))
    return [to_ban_response(row, True) for row in rows]


@app.post("/bans", response_model=BanResponse, status_code=status.HTTP_201_CREATED)
@rate_limit_decorator("moderation")
def create_ban(
    request: Request,
    ban_data: BanCreate,
    current_user: CurrentUser = Depends(require_permission(PERM_BAN)),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    audit: AuditSink = Depends(get_audit_sink)
):
    """
    Ban a user from booking.

    Existing reservations of the user are not touched.

    Args:
        ban_data: Ban request data
        current_user: Current authenticated user (ban manager)
        db: Database session
        clock: Clock
        audit: Audit sink

    Returns:
        BanResponse: The new ban

    Raises:
        BadRequestError: Malformed duration or expiry not in the future
        ConflictError: The user is already banned
    """
    row = bans.ban(
        db,
        user_id=ban_data.user_id,
        actor_id=current_user.id,
        now=clock.now(),
        duration=ban_data.duration,
        expires_at=ban_data.expires_at,
        reason=optional_text(ban_data.reason),
        audit=audit,
    )
    return to_ban_response(row, True)


@app.post("/bans/{ban_id}/revoke", response_model=BanResponse)
@rate_limit_decorator("moderation")
def revoke_ban(
    request: Request,
    ban_id: int,
    revoke_data: Optional[BanRevoke] = None,
    current_user: CurrentUser = Depends(require_permission(PERM_BAN)),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    audit: AuditSink = Depends(get_audit_sink)
):
    """
    Lift an active ban.

    Raises:
        NotFoundError: Unknown, already revoked or expired ban
    """
    row = bans.revoke(
        db,
        ban_id=ban_id,
        actor_id=current_user.id,
        now=clock.now(),
        reason=optional_text(revoke_data.reason) if revoke_data else None,
        audit=audit,
    )
    return to_ban_response(row, False)


@app.post("/bans/{ban_id}/extend", response_model=BanResponse)
@rate_limit_decorator("moderation")
def extend_ban(
    request: Request,
    ban_id: int,
    extend_data: BanExtend,
    current_user: CurrentUser = Depends(require_permission(PERM_BAN)),
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
    audit: AuditSink = Depends(get_audit_sink)
):
    """
    Replace an active ban with a new expiry.

    Returns:
        BanResponse: The replacement ban

    Raises:
        NotFoundError: Unknown, already revoked or expired ban
    """
    row = bans.extend(
        db,
        ban_id=ban_id,
        actor_id=current_user.id,
        now=clock.now(),
        duration=extend_data.duration,
        expires_at=extend_data.expires_at,
        reason=optional_text(extend_data.reason),
        audit=audit,
    )
    return to_ban_response(row, True)


# Configuration

@app.get("/config", response_model=ConfigResponse)
def get_config(
    current_user: CurrentUser = Depends(get_current_user),
    config: FacilityConfig = Depends(get_request_config)
):
    """Current facility configuration."""
    return ConfigResponse(**config.to_dict())


@app.put("/config", response_model=ConfigResponse)
@rate_limit_decorator("moderation")
def update_config(
    request: Request,
    config_data: ConfigUpdate,
    current_user: CurrentUser = Depends(require_permission(PERM_CONFIG)),
    db: Session = Depends(get_db),
    audit: AuditSink = Depends(get_audit_sink)
):
    """
    Update the facility configuration.

    Changes apply to requests made after this one; existing reservations
    are not re-evaluated.

    Raises:
        BadRequestError: Empty patch or cap out of range
    """
    config = set_config(
        db,
        actor_id=current_user.id,
        audit_required=config_data.audit_required,
        max_duration_hours=config_data.max_duration_hours,
        reason=optional_text(config_data.reason),
        audit=audit,
    )
    return ConfigResponse(**config.to_dict())


@app.get("/health")
def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Health status
    """
    return {"status": "healthy", "service": "moderation"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8004)
