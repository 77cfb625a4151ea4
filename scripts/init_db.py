"""
Database initialization script.

This script creates the schema and initial data for the Facility
Reservation system:
- Facility configuration rows
- Sample buildings and rooms for development

Run with: python scripts/init_db.py
"""

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shared.database import SessionLocal, init_db
from shared.errors import FacilityError
from shared.facility_config import (
    DEFAULT_AUDIT_REQUIRED, DEFAULT_MAX_DURATION_HOURS, get_config, set_config,
)
from shared.models import Building, FacilityConfigEntry, Room
from shared import catalog

SYSTEM_ACTOR_ID = 0

SAMPLE_CATALOG = [
    {
        "name": "Main Library",
        "sort": 10,
        "rooms": [
            {"floor_no": 1, "name": "Group Study 101", "capacity": 8},
            {"floor_no": 1, "name": "Group Study 102", "capacity": 6},
            {"floor_no": 3, "name": "Seminar Room 301", "capacity": 30},
        ],
    },
    {
        "name": "Engineering Hall",
        "sort": 20,
        "rooms": [
            {"floor_no": -1, "name": "Maker Lab B1", "capacity": 12},
            {"floor_no": 2, "name": "Meeting Room 201", "capacity": 10},
            {"floor_no": 5, "name": "Auditorium 501", "capacity": 120},
        ],
    },
    {
        "name": "Student Center",
        "sort": 30,
        "rooms": [
            {"floor_no": 1, "name": "Activity Room A", "capacity": 40},
            {"floor_no": 2, "name": "Rehearsal Room", "capacity": 15},
        ],
    },
]


def create_config(db):
    """Write the configuration rows if they do not exist yet."""
    if db.query(FacilityConfigEntry).count():
        print(f"Facility config already set: {get_config(db).to_dict()}")
        return
    config = set_config(
        db,
        actor_id=SYSTEM_ACTOR_ID,
        audit_required=DEFAULT_AUDIT_REQUIRED,
        max_duration_hours=DEFAULT_MAX_DURATION_HOURS,
        reason="initial setup",
    )
    print(f"Facility config: {config.to_dict()}")


def create_sample_catalog(db):
    """Create sample buildings and rooms."""
    building_count = 0
    room_count = 0
    for building_data in SAMPLE_CATALOG:
        building = db.query(Building).filter(
            Building.name == building_data["name"], Building.deleted_at.is_(None)
        ).first()
        if not building:
            building = catalog.create_building(
                db, SYSTEM_ACTOR_ID, building_data["name"], sort=building_data["sort"]
            )
            building_count += 1

        for room_data in building_data["rooms"]:
            existing_room = db.query(Room).filter(
                Room.building_id == building.id,
                Room.floor_no == room_data["floor_no"],
                Room.name == room_data["name"],
                Room.deleted_at.is_(None),
            ).first()
            if not existing_room:
                catalog.create_room(db, SYSTEM_ACTOR_ID, building.id, **room_data)
                room_count += 1

    print(f"Created {building_count} buildings and {room_count} rooms")


def main():
    """Initialize database with sample data."""
    print("Initializing database...")

    init_db()
    print("Database tables created")

    db = SessionLocal()

    try:
        create_config(db)
        create_sample_catalog(db)

        print("\n" + "="*60)
        print("Database initialization complete!")
        print("="*60)
        print("\nTokens are issued by the identity provider. Grant the")
        print("permission codes below to operators:")
        print("-" * 60)
        print("facility:catalog   manage buildings and rooms")
        print("facility:review    approve, reject and cancel reservations")
        print("facility:ban       ban users from booking")
        print("facility:config    change auditRequired / maxDurationHours")
        print("-" * 60)

    except FacilityError as e:
        print(f"\n Error: {e.message}")
        db.rollback()
        sys.exit(1)
    finally:
        db.close()


if __name__ == "__main__":
    main()
