"""
Shared database models for all services.

This module contains the SQLAlchemy models used by the facility
reservation engine: the building/room catalog, reservations and their
participants, module-level bans and the facility configuration store.

Identity lives outside this system, so user references are plain
integer ids without foreign keys.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, ForeignKey, Text,
    CheckConstraint, Index, DDL, TypeDecorator, event, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import enum
from shared.database import Base


def utcnow() -> datetime:
    """Timezone-aware UTC now, used for column defaults."""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamp column.

    Values are normalised to UTC before they are bound and come back
    aware even on backends (SQLite) that store naive timestamps.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ReservationStatus(str, enum.Enum):
    """Reservation status enumeration."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (ReservationStatus.PENDING, ReservationStatus.APPROVED)


class Building(Base):
    """
    Building model. Rooms exist only under buildings.

    Attributes:
        id (int): Primary key
        name (str): Building name, unique among non-deleted buildings
        enabled (bool): Whether new bookings may target rooms in it
        sort (int): Display order
        remark (str): Free text note
        deleted_at (datetime): Soft-delete marker
    """
    __tablename__ = "facility_buildings"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False, index=True)
    enabled = Column(Boolean, default=True, nullable=False, index=True)
    sort = Column(Integer, default=0, nullable=False)
    remark = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at = Column(UTCDateTime, nullable=True)

    rooms = relationship("Room", back_populates="building")


class Room(Base):
    """
    Room model representing a bookable facility room.

    Attributes:
        id (int): Primary key
        building_id (int): Owning building
        floor_no (int): Floor number, negative below ground
        name (str): Room name, unique per building floor
        capacity (int): Optional capacity
        enabled (bool): Whether new bookings are accepted
        sort (int): Display order
        remark (str): Free text note
        deleted_at (datetime): Soft-delete marker
    """
    __tablename__ = "facility_rooms"

    id = Column(Integer, primary_key=True, index=True)
    building_id = Column(Integer, ForeignKey("facility_buildings.id"), nullable=False, index=True)
    floor_no = Column(Integer, nullable=False)
    name = Column(String(100), nullable=False)
    capacity = Column(Integer, nullable=True)
    enabled = Column(Boolean, default=True, nullable=False, index=True)
    sort = Column(Integer, default=0, nullable=False)
    remark = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at = Column(UTCDateTime, nullable=True)

    # Relationships
    building = relationship("Building", back_populates="rooms")
    reservations = relationship("Reservation", back_populates="room")

    __table_args__ = (
        Index("facility_rooms_building_floor_idx", "building_id", "floor_no"),
    )


class Reservation(Base):
    """
    Reservation model representing a room booking request.

    Attributes:
        id (int): Primary key
        room_id (int): Booked room
        applicant_id (int): User who applied
        purpose (str): Free text purpose
        start_at (datetime): Interval start (inclusive)
        end_at (datetime): Interval end (exclusive)
        status (ReservationStatus): pending, approved, rejected, cancelled
        reviewed_by / reviewed_at: Set once a reviewer acted
        reject_reason (str): Set iff rejected
        cancelled_by / cancelled_at / cancel_reason: Set iff cancelled
    """
    __tablename__ = "facility_reservations"

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(Integer, ForeignKey("facility_rooms.id"), nullable=False, index=True)
    applicant_id = Column(Integer, nullable=False, index=True)
    purpose = Column(Text, nullable=False)
    start_at = Column(UTCDateTime, nullable=False)
    end_at = Column(UTCDateTime, nullable=False)
    status = Column(
        SQLEnum(ReservationStatus, name="facility_reservation_status",
                values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        index=True,
    )
    reviewed_by = Column(Integer, nullable=True)
    reviewed_at = Column(UTCDateTime, nullable=True)
    reject_reason = Column(Text, nullable=True)
    cancelled_by = Column(Integer, nullable=True)
    cancelled_at = Column(UTCDateTime, nullable=True)
    cancel_reason = Column(Text, nullable=True)
    created_by = Column(Integer, nullable=False)
    updated_by = Column(Integer, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    room = relationship("Room", back_populates="reservations")
    participants = relationship(
        "ReservationParticipant",
        back_populates="reservation",
        cascade="all, delete-orphan",
        order_by=lambda: (ReservationParticipant.is_applicant.desc(), ReservationParticipant.user_id),
    )

    __table_args__ = (
        CheckConstraint("end_at > start_at", name="facility_reservations_interval_ck"),
        Index("facility_reservations_time_room_idx", "room_id", "start_at", "end_at"),
    )


class ReservationParticipant(Base):
    """Participant of a reservation; the applicant is always one of them."""
    __tablename__ = "facility_reservation_participants"

    reservation_id = Column(
        Integer,
        ForeignKey("facility_reservations.id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id = Column(Integer, primary_key=True, index=True)
    is_applicant = Column(Boolean, default=False, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)

    reservation = relationship("Reservation", back_populates="participants")


class FacilityBan(Base):
    """
    Module-level ban. Rows are never deleted; revocation is recorded
    on the row and a user is banned while any row is unrevoked and
    unexpired.

    Attributes:
        id (int): Primary key
        user_id (int): Banned user
        reason (str): Why the ban was issued
        expires_at (datetime): Expiry, None means indefinite
        created_by (int): Actor who issued the ban
        revoked_by / revoked_at / revoked_reason: Revocation event
    """
    __tablename__ = "facility_bans"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    reason = Column(Text, nullable=True)
    expires_at = Column(UTCDateTime, nullable=True, index=True)
    created_by = Column(Integer, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    revoked_by = Column(Integer, nullable=True)
    revoked_at = Column(UTCDateTime, nullable=True, index=True)
    revoked_reason = Column(Text, nullable=True)


class FacilityConfigEntry(Base):
    """Key/value row of the facility configuration store."""
    __tablename__ = "facility_config"

    key = Column(String(100), primary_key=True)
    value = Column(String(255), nullable=False)
    updated_by = Column(Integer, nullable=True)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)


# Two active reservations of one room may never overlap. The admission
# path already serializes per room; on PostgreSQL the database enforces
# it as well and a violation surfaces as IntegrityError.
event.listen(
    Reservation.__table__,
    "after_create",
    DDL(
        "CREATE EXTENSION IF NOT EXISTS btree_gist;"
        "ALTER TABLE facility_reservations "
        "ADD CONSTRAINT facility_reservations_no_overlap "
        "EXCLUDE USING gist (room_id WITH =, tstzrange(start_at, end_at, '[)') WITH &&) "
        "WHERE (status IN ('pending', 'approved'))"
    ).execute_if(dialect="postgresql"),
)
