"""
Building and room catalog.

Static reference data read by admission and aggregation. Deletion is
a soft delete guarded by dependency checks: a building with rooms, or
a room with active reservations, cannot be deleted.
"""

from typing import List, Optional
import logging

from sqlalchemy.orm import Session

from shared.audit import AuditSink, record_audit
from shared.caching import invalidate_catalog
from shared.errors import BadRequestError, ConflictError, NotFoundError
from shared.locking import lock_room_row, room_locks
from shared.models import ACTIVE_STATUSES, Building, Reservation, Room, utcnow

logger = logging.getLogger(__name__)

BUILDING_FIELDS = ("name", "enabled", "sort", "remark")
ROOM_FIELDS = ("floor_no", "name", "capacity", "enabled", "sort", "remark")


def _audit(audit, actor_id, action, target_type, target_id, **kwargs):
    record_audit(audit, actor_id=actor_id, action=action, target_type=target_type,
                 target_id=target_id, **kwargs)


def _clean_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise BadRequestError("name is required", field="name")
    return name


# Buildings

def list_buildings(db: Session, include_disabled: bool = True) -> List[Building]:
    query = db.query(Building).filter(Building.deleted_at.is_(None))
    if not include_disabled:
        query = query.filter(Building.enabled.is_(True))
    return query.order_by(Building.sort, Building.name, Building.id).all()


def get_building(db: Session, building_id: int) -> Building:
    building = db.query(Building).filter(
        Building.id == building_id, Building.deleted_at.is_(None)
    ).first()
    if not building:
        raise NotFoundError("Building not found", field="building_id")
    return building


def _ensure_building_name_free(db: Session, name: str, exclude_id: Optional[int] = None):
    query = db.query(Building.id).filter(Building.name == name, Building.deleted_at.is_(None))
    if exclude_id is not None:
        query = query.filter(Building.id != exclude_id)
    if query.first():
        raise ConflictError("Building name already exists", field="name")


def create_building(db: Session, actor_id: int, name: str, enabled: bool = True,
                    sort: int = 0, remark: Optional[str] = None,
                    audit: Optional[AuditSink] = None) -> Building:
    """
    Create a building.

    Raises:
        BadRequestError: If the name is blank
        ConflictError: If the name is taken
    """
    name = _clean_name(name)
    _ensure_building_name_free(db, name)

    building = Building(name=name, enabled=enabled, sort=sort, remark=remark)
    db.add(building)
    db.commit()
    db.refresh(building)
    invalidate_catalog()

    _audit(audit, actor_id, "facility.building.create", "facility_building", building.id,
           diff={"after": {"name": name, "enabled": enabled, "sort": sort}})
    return building


def update_building(db: Session, actor_id: int, building_id: int, patch: dict,
                    audit: Optional[AuditSink] = None) -> Building:
    """
    Patch a building.

    Args:
        patch: Subset of name, enabled, sort, remark

    Raises:
        BadRequestError: If the patch is empty
        NotFoundError: If the building does not exist
        ConflictError: If the new name is taken
    """
    changes = {k: v for k, v in patch.items() if k in BUILDING_FIELDS}
    if not changes:
        raise BadRequestError("no fields to update")
    building = get_building(db, building_id)
    if "name" in changes:
        changes["name"] = _clean_name(changes["name"])
        _ensure_building_name_free(db, changes["name"], exclude_id=building.id)

    before = {k: getattr(building, k) for k in changes}
    for key, value in changes.items():
        setattr(building, key, value)
    db.commit()
    db.refresh(building)
    invalidate_catalog()

    _audit(audit, actor_id, "facility.building.update", "facility_building", building.id,
           diff={"before": before, "after": changes})
    return building


def set_building_enabled(db: Session, actor_id: int, building_id: int, enabled: bool,
                         audit: Optional[AuditSink] = None) -> Building:
    """Enable or disable a building; existing reservations are untouched."""
    return update_building(db, actor_id, building_id, {"enabled": enabled}, audit=audit)


def delete_building(db: Session, actor_id: int, building_id: int, reason: Optional[str] = None,
                    audit: Optional[AuditSink] = None):
    """
    Soft-delete a building.

    Raises:
        NotFoundError: If the building does not exist
        ConflictError: If any room still belongs to it
    """
    building = get_building(db, building_id)
    has_rooms = db.query(Room.id).filter(
        Room.building_id == building.id, Room.deleted_at.is_(None)
    ).first()
    if has_rooms:
        raise ConflictError("Building still has rooms; delete or move them first",
                            field="building_id")

    building.deleted_at = utcnow()
    building.enabled = False
    db.commit()
    invalidate_catalog()

    _audit(audit, actor_id, "facility.building.delete", "facility_building", building.id,
           reason=reason)


# Rooms

def list_rooms(db: Session, building_id: Optional[int] = None, floor_no: Optional[int] = None,
               include_disabled: bool = True) -> List[Room]:
    query = (
        db.query(Room)
        .join(Building, Building.id == Room.building_id)
        .filter(Room.deleted_at.is_(None), Building.deleted_at.is_(None))
    )
    if building_id is not None:
        query = query.filter(Room.building_id == building_id)
    if floor_no is not None:
        query = query.filter(Room.floor_no == floor_no)
    if not include_disabled:
        query = query.filter(Room.enabled.is_(True), Building.enabled.is_(True))
    return query.order_by(Building.sort, Room.floor_no, Room.sort, Room.name, Room.id).all()


def get_room(db: Session, room_id: int) -> Room:
    room = db.query(Room).filter(Room.id == room_id, Room.deleted_at.is_(None)).first()
    if not room:
        raise NotFoundError("Room not found", field="room_id")
    return room


def list_floors(db: Session, building_id: int) -> List[int]:
    """Distinct floors of an enabled building, highest first."""
    building = get_building(db, building_id)
    if not building.enabled:
        raise NotFoundError("Building not found or unavailable", field="building_id")
    rows = (
        db.query(Room.floor_no)
        .filter(Room.building_id == building_id, Room.deleted_at.is_(None))
        .distinct()
        .order_by(Room.floor_no.desc())
        .all()
    )
    return [row[0] for row in rows]


def _ensure_room_name_free(db: Session, building_id: int, floor_no: int, name: str,
                           exclude_id: Optional[int] = None):
    query = db.query(Room.id).filter(
        Room.building_id == building_id,
        Room.floor_no == floor_no,
        Room.name == name,
        Room.deleted_at.is_(None),
    )
    if exclude_id is not None:
        query = query.filter(Room.id != exclude_id)
    if query.first():
        raise ConflictError("A room with this name already exists on that floor", field="name")


def create_room(db: Session, actor_id: int, building_id: int, floor_no: int, name: str,
                capacity: Optional[int] = None, enabled: bool = True, sort: int = 0,
                remark: Optional[str] = None, audit: Optional[AuditSink] = None) -> Room:
    """
    Create a room under an existing building.

    Raises:
        NotFoundError: If the building does not exist
        ConflictError: If the name is taken on that floor
    """
    get_building(db, building_id)
    name = _clean_name(name)
    _ensure_room_name_free(db, building_id, floor_no, name)

    room = Room(building_id=building_id, floor_no=floor_no, name=name, capacity=capacity,
                enabled=enabled, sort=sort, remark=remark)
    db.add(room)
    db.commit()
    db.refresh(room)
    invalidate_catalog()

    _audit(audit, actor_id, "facility.room.create", "facility_room", room.id,
           diff={"after": {"building_id": building_id, "floor_no": floor_no, "name": name,
                           "enabled": enabled}})
    return room


def update_room(db: Session, actor_id: int, room_id: int, patch: dict,
                audit: Optional[AuditSink] = None) -> Room:
    """
    Patch a room.

    Args:
        patch: Subset of floor_no, name, capacity, enabled, sort, remark
    """
    changes = {k: v for k, v in patch.items() if k in ROOM_FIELDS}
    if not changes:
        raise BadRequestError("no fields to update")
    room = get_room(db, room_id)
    if "name" in changes:
        changes["name"] = _clean_name(changes["name"])
    if "name" in changes or "floor_no" in changes:
        _ensure_room_name_free(
            db, room.building_id, changes.get("floor_no", room.floor_no),
            changes.get("name", room.name), exclude_id=room.id,
        )

    before = {k: getattr(room, k) for k in changes}
    for key, value in changes.items():
        setattr(room, key, value)
    db.commit()
    db.refresh(room)
    invalidate_catalog()

    _audit(audit, actor_id, "facility.room.update", "facility_room", room.id,
           diff={"before": before, "after": changes})
    return room


def set_room_enabled(db: Session, actor_id: int, room_id: int, enabled: bool,
                     audit: Optional[AuditSink] = None) -> Room:
    """Enable or disable a room; existing reservations are untouched."""
    return update_room(db, actor_id, room_id, {"enabled": enabled}, audit=audit)


def delete_room(db: Session, actor_id: int, room_id: int, reason: Optional[str] = None,
                audit: Optional[AuditSink] = None):
    """
    Soft-delete a room.

    Raises:
        NotFoundError: If the room does not exist
        ConflictError: If a pending or approved reservation references it
    """
    room = get_room(db, room_id)
    # Serialized with admitted writes on the same room.
    with room_locks.hold(room.id):
        lock_room_row(db, room.id)
        has_active = db.query(Reservation.id).filter(
            Reservation.room_id == room.id, Reservation.status.in_(ACTIVE_STATUSES)
        ).first()
        if has_active:
            db.rollback()
            raise ConflictError("Room has active reservations; disable it instead", field="room_id")

        room.deleted_at = utcnow()
        room.enabled = False
        db.commit()
    invalidate_catalog()

    _audit(audit, actor_id, "facility.room.delete", "facility_room", room.id, reason=reason)
