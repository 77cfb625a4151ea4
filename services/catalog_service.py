"""
Catalog Service

This service manages buildings and the rooms inside them.

Endpoints:
    - GET /buildings: List buildings (catalog managers, disabled included)
    - POST /buildings: Add a building
    - PUT /buildings/{building_id}: Update a building
    - PUT /buildings/{building_id}/status: Enable or disable a building
    - DELETE /buildings/{building_id}: Delete an empty building
    - GET /rooms: List rooms (catalog managers, disabled included)
    - POST /rooms: Add a room
    - GET /rooms/{room_id}: Get room details
    - PUT /rooms/{room_id}: Update a room
    - PUT /rooms/{room_id}/status: Enable or disable a room
    - DELETE /rooms/{room_id}: Delete a room without active reservations
    - GET /portal/buildings: Bookable buildings
    - GET /portal/buildings/{building_id}/floors: Floors of a building
    - GET /portal/rooms: Bookable rooms of a building/floor
    - GET /stats: Cache and process statistics
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

from shared import catalog
from shared.audit import AuditSink, get_audit_sink
from shared.auth import (
    CurrentUser, PERM_CATALOG, get_current_user, optional_text, require_permission, sanitize_input,
)
from shared.caching import cache_response, get_cache_stats
from shared.database import get_db, init_db
from shared.errors import install_error_handlers
from shared.monitoring import get_metrics_summary, setup_metrics
from shared.rate_limiting import rate_limit_decorator, setup_rate_limiting

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

app = FastAPI(title="Catalog Service", version="1.0.0")
install_error_handlers(app)
setup_rate_limiting(app)
setup_metrics(app)

NULLABLE_FIELDS = ("capacity", "remark")


class BuildingCreate(BaseModel):
    """Building creation request model."""
    name: str = Field(..., min_length=1, max_length=100)
    enabled: bool = True
    sort: int = Field(0, ge=0, le=9999)
    remark: Optional[str] = Field(None, max_length=500)


class BuildingUpdate(BaseModel):
    """Building update request model."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    enabled: Optional[bool] = None
    sort: Optional[int] = Field(None, ge=0, le=9999)
    remark: Optional[str] = Field(None, max_length=500)


class BuildingResponse(BaseModel):
    """Building response model."""
    id: int
    name: str
    enabled: bool
    sort: int
    remark: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class RoomCreate(BaseModel):
    """Room creation request model."""
    building_id: int
    floor_no: int = Field(..., ge=-50, le=200)
    name: str = Field(..., min_length=1, max_length=100)
    capacity: Optional[int] = Field(None, ge=0, le=9999)
    enabled: bool = True
    sort: int = Field(0, ge=0, le=9999)
    remark: Optional[str] = Field(None, max_length=500)


class RoomUpdate(BaseModel):
    """Room update request model."""
    floor_no: Optional[int] = Field(None, ge=-50, le=200)
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    capacity: Optional[int] = Field(None, ge=0, le=9999)
    enabled: Optional[bool] = None
    sort: Optional[int] = Field(None, ge=0, le=9999)
    remark: Optional[str] = Field(None, max_length=500)


class RoomResponse(BaseModel):
    """Room response model."""
    id: int
    building_id: int
    floor_no: int
    name: str
    capacity: Optional[int]
    enabled: bool
    sort: int
    remark: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class StatusUpdate(BaseModel):
    """Enable/disable request model."""
    enabled: bool


class FloorsResponse(BaseModel):
    building_id: int
    floors: List[int]


def _patch(data: BaseModel) -> dict:
    patch = {}
    for key, value in data.model_dump(exclude_unset=True).items():
        if value is None and key not in NULLABLE_FIELDS:
            continue
        if key == "name":
            value = sanitize_input(value)
        elif key == "remark":
            value = optional_text(value)
        patch[key] = value
    return patch


# Cached portal reads. Only plain keyword arguments form the cache key.

@cache_response("building")
def portal_buildings(db: Session) -> List[dict]:
    return [
        BuildingResponse.model_validate(b).model_dump()
        for b in catalog.list_buildings(db, include_disabled=False)
    ]


@cache_response("floor")
def portal_floors(db: Session, building_id: int) -> List[int]:
    return catalog.list_floors(db, building_id)


@cache_response("room")
def portal_rooms(db: Session, building_id: Optional[int] = None,
                 floor_no: Optional[int] = None) -> List[dict]:
    rooms = catalog.list_rooms(db, building_id=building_id, floor_no=floor_no, include_disabled=False)
    return [RoomResponse.model_validate(r).model_dump() for r in rooms]


@app.on_event("startup")
async def startup_event():
    """Initialize database on startup."""
    init_db()


# Buildings

@app.get("/buildings", response_model=List[BuildingResponse])
def list_buildings(
    include_disabled: bool = Query(True, description="Include disabled buildings"),
    current_user: CurrentUser = Depends(require_permission(PERM_CATALOG)),
    db: Session = Depends(get_db)
):
    """List buildings ordered by sort, then name."""
    return catalog.list_buildings(db, include_disabled=include_disabled)


@app.post("/buildings", response_model=BuildingResponse, status_code=status.HTTP_201_CREATED)
@rate_limit_decorator("write")
def create_building(
    request: Request,
    building_data: BuildingCreate,
    current_user: CurrentUser = Depends(require_permission(PERM_CATALOG)),
    db: Session = Depends(get_db),
    audit: AuditSink = Depends(get_audit_sink)
):
    """
    Add a new building.

    Args:
        building_data: Building creation data
        current_user: Current authenticated user (catalog manager)
        db: Database session
        audit: Audit sink

    Returns:
        BuildingResponse: Created building

    Raises:
        ConflictError: If the building name already exists
    """
    return catalog.create_building(
        db,
        actor_id=current_user.id,
        name=sanitize_input(building_data.name),
        enabled=building_data.enabled,
        sort=building_data.sort,
        remark=optional_text(building_data.remark),
        audit=audit,
    )


@app.put("/buildings/{building_id}", response_model=BuildingResponse)
@rate_limit_decorator("write")
def update_building(
    request: Request,
    building_id: int,
    building_data: BuildingUpdate,
    current_user: CurrentUser = Depends(require_permission(PERM_CATALOG)),
    db: Session = Depends(get_db),
    audit: AuditSink = Depends(get_audit_sink)
):
    """
    Update building details.

    Raises:
        BadRequestError: If no field is given
        NotFoundError: If the building does not exist
        ConflictError: If the new name already exists
    """
    return catalog.update_building(db, current_user.id, building_id, _patch(building_data), audit=audit)


@app.put("/buildings/{building_id}/status", response_model=BuildingResponse)
def update_building_status(
    building_id: int,
    status_data: StatusUpdate,
    current_user: CurrentUser = Depends(require_permission(PERM_CATALOG)),
    db: Session = Depends(get_db),
    audit: AuditSink = Depends(get_audit_sink)
):
    """Enable or disable a building. Existing reservations are not affected."""
    return catalog.set_building_enabled(db, current_user.id, building_id, status_data.enabled, audit=audit)


@app.delete("/buildings/{building_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_building(
    building_id: int,
    reason: Optional[str] = Query(None, max_length=500),
    current_user: CurrentUser = Depends(require_permission(PERM_CATALOG)),
    db: Session = Depends(get_db),
    audit: AuditSink = Depends(get_audit_sink)
):
    """
    Delete a building.

    Raises:
        NotFoundError: If the building does not exist
        ConflictError: If the building still has rooms
    """
    catalog.delete_building(db, current_user.id, building_id, reason=optional_text(reason), audit=audit)
    return None


# Rooms

@app.get("/rooms", response_model=List[RoomResponse])
def list_rooms(
    building_id: Optional[int] = Query(None, description="Building filter"),
    floor_no: Optional[int] = Query(None, description="Floor filter"),
    include_disabled: bool = Query(True, description="Include disabled rooms"),
    current_user: CurrentUser = Depends(require_permission(PERM_CATALOG)),
    db: Session = Depends(get_db)
):
    """List rooms with optional filtering."""
    return catalog.list_rooms(db, building_id=building_id, floor_no=floor_no,
                              include_disabled=include_disabled)


@app.post("/rooms", response_model=RoomResponse, status_code=status.HTTP_201_CREATED)
@rate_limit_decorator("write")
def create_room(
    request: Request,
    room_data: RoomCreate,
    current_user: CurrentUser = Depends(require_permission(PERM_CATALOG)),
    db: Session = Depends(get_db),
    audit: AuditSink = Depends(get_audit_sink)
):
    """
    Add a new room to a building.

    Args:
        room_data: Room creation data
        current_user: Current authenticated user (catalog manager)
        db: Database session
        audit: Audit sink

    Returns:
        RoomResponse: Created room

    Raises:
        NotFoundError: If the building does not exist
        ConflictError: If the name is taken on that floor
    """
    return catalog.create_room(
        db,
        actor_id=current_user.id,
        building_id=room_data.building_id,
        floor_no=room_data.floor_no,
        name=sanitize_input(room_data.name),
        capacity=room_data.capacity,
        enabled=room_data.enabled,
        sort=room_data.sort,
        remark=optional_text(room_data.remark),
        audit=audit,
    )


@app.get("/rooms/{room_id}", response_model=RoomResponse)
def get_room(
    room_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Get specific room details."""
    return catalog.get_room(db, room_id)


@app.put("/rooms/{room_id}", response_model=RoomResponse)
@rate_limit_decorator("write")
def update_room(
    request: Request,
    room_id: int,
    room_data: RoomUpdate,
    current_user: CurrentUser = Depends(require_permission(PERM_CATALOG)),
    db: Session = Depends(get_db),
    audit: AuditSink = Depends(get_audit_sink)
):
    """Update room details."""
    return catalog.update_room(db, current_user.id, room_id, _patch(room_data), audit=audit)


@app.put("/rooms/{room_id}/status", response_model=RoomResponse)
def update_room_status(
    room_id: int,
    status_data: StatusUpdate,
    current_user: CurrentUser = Depends(require_permission(PERM_CATALOG)),
    db: Session = Depends(get_db),
    audit: AuditSink = Depends(get_audit_sink)
):
    """Enable or disable a room. Existing reservations are not affected."""
    return catalog.set_room_enabled(db, current_user.id, room_id, status_data.enabled, audit=audit)


@app.delete("/rooms/{room_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_room(
    room_id: int,
    reason: Optional[str] = Query(None, max_length=500),
    current_user: CurrentUser = Depends(require_permission(PERM_CATALOG)),
    db: Session = Depends(get_db),
    audit: AuditSink = Depends(get_audit_sink)
):
    """
    Delete a room.

    Raises:
        NotFoundError: If the room does not exist
        ConflictError: If a pending or approved reservation references it
    """
    catalog.delete_room(db, current_user.id, room_id, reason=optional_text(reason), audit=audit)
    return None


# Portal

@app.get("/portal/buildings", response_model=List[BuildingResponse])
def get_portal_buildings(
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Enabled buildings, for the booking portal."""
    return portal_buildings(db)


@app.get("/portal/buildings/{building_id}/floors", response_model=FloorsResponse)
def get_portal_floors(
    building_id: int,
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Floors of an enabled building, highest first."""
    return FloorsResponse(building_id=building_id, floors=portal_floors(db, building_id=building_id))


@app.get("/portal/rooms", response_model=List[RoomResponse])
def get_portal_rooms(
    building_id: Optional[int] = Query(None, description="Building filter"),
    floor_no: Optional[int] = Query(None, description="Floor filter"),
    current_user: CurrentUser = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """Bookable rooms: enabled rooms of enabled buildings."""
    return portal_rooms(db, building_id=building_id, floor_no=floor_no)


@app.get("/stats")
def get_stats(current_user: CurrentUser = Depends(require_permission(PERM_CATALOG))):
    """Listing cache statistics and process health."""
    return {"cache": get_cache_stats(), "metrics": get_metrics_summary()}


@app.get("/health")
def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Health status
    """
    return {"status": "healthy", "service": "catalog"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8002)
