"""
Unit tests for Catalog Service.
"""

import pytest
from datetime import timedelta

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import NOW, add_reservation, make_headers
from services.catalog_service import app
from shared.models import Building, ReservationStatus, Room


@pytest.fixture(scope="function")
def client(make_client):
    """Create a test client."""
    return make_client(app)


@pytest.fixture(scope="function")
def auth_headers_catalog():
    return make_headers(10, "facility:catalog")


def test_health_check(client):
    """Test health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "catalog"}


def test_create_building(client, auth_headers_catalog, audit_sink):
    response = client.post("/buildings", json={"name": "Science Park", "sort": 5},
                           headers=auth_headers_catalog)
    assert response.status_code == 201
    data = response.json()
    assert data["name"] == "Science Park"
    assert data["enabled"] is True
    assert audit_sink.actions() == ["facility.building.create"]


def test_create_building_requires_permission(client, auth_headers_user):
    response = client.post("/buildings", json={"name": "Science Park"}, headers=auth_headers_user)
    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


def test_create_building_requires_token(client):
    response = client.post("/buildings", json={"name": "Science Park"})
    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHORIZED"


def test_wildcard_permission_grants_catalog(client, auth_headers_admin):
    response = client.post("/buildings", json={"name": "Science Park"}, headers=auth_headers_admin)
    assert response.status_code == 201


def test_duplicate_building_name(client, auth_headers_catalog, test_building):
    response = client.post("/buildings", json={"name": test_building.name}, headers=auth_headers_catalog)
    assert response.status_code == 409
    assert response.json()["field"] == "name"


def test_invalid_building_payload(client, auth_headers_catalog):
    response = client.post("/buildings", json={"name": "", "sort": 10000}, headers=auth_headers_catalog)
    assert response.status_code == 400
    assert response.json()["code"] == "BAD_REQUEST"


def test_update_building(client, auth_headers_catalog, test_building):
    response = client.put(f"/buildings/{test_building.id}", json={"remark": "Closed on Sundays"},
                          headers=auth_headers_catalog)
    assert response.status_code == 200
    assert response.json()["remark"] == "Closed on Sundays"
    assert response.json()["name"] == test_building.name


def test_update_building_empty_patch(client, auth_headers_catalog, test_building):
    response = client.put(f"/buildings/{test_building.id}", json={}, headers=auth_headers_catalog)
    assert response.status_code == 400


def test_update_unknown_building(client, auth_headers_catalog):
    response = client.put("/buildings/999", json={"sort": 1}, headers=auth_headers_catalog)
    assert response.status_code == 404


def test_toggle_building(client, auth_headers_catalog, test_building):
    response = client.put(f"/buildings/{test_building.id}/status", json={"enabled": False},
                          headers=auth_headers_catalog)
    assert response.status_code == 200
    assert response.json()["enabled"] is False


def test_delete_building_with_rooms(client, auth_headers_catalog, test_room):
    response = client.delete(f"/buildings/{test_room.building_id}", headers=auth_headers_catalog)
    assert response.status_code == 409


def test_delete_empty_building(client, auth_headers_catalog, test_building, db):
    response = client.delete(f"/buildings/{test_building.id}", headers=auth_headers_catalog)
    assert response.status_code == 204

    db.refresh(test_building)
    assert test_building.deleted_at is not None
    response = client.get("/buildings", headers=auth_headers_catalog)
    assert response.json() == []


def test_create_room(client, auth_headers_catalog, test_building, audit_sink):
    room_data = {"building_id": test_building.id, "floor_no": -1, "name": "Basement Lab", "capacity": 12}
    response = client.post("/rooms", json=room_data, headers=auth_headers_catalog)
    assert response.status_code == 201
    assert response.json()["floor_no"] == -1
    assert audit_sink.actions() == ["facility.room.create"]


def test_create_room_in_unknown_building(client, auth_headers_catalog):
    room_data = {"building_id": 999, "floor_no": 1, "name": "Nowhere"}
    response = client.post("/rooms", json=room_data, headers=auth_headers_catalog)
    assert response.status_code == 404


def test_duplicate_room_name_on_floor(client, auth_headers_catalog, test_room):
    room_data = {"building_id": test_room.building_id, "floor_no": test_room.floor_no, "name": test_room.name}
    response = client.post("/rooms", json=room_data, headers=auth_headers_catalog)
    assert response.status_code == 409


def test_same_room_name_on_other_floor(client, auth_headers_catalog, test_room):
    room_data = {"building_id": test_room.building_id, "floor_no": 4, "name": test_room.name}
    response = client.post("/rooms", json=room_data, headers=auth_headers_catalog)
    assert response.status_code == 201


def test_update_room(client, auth_headers_catalog, test_room):
    response = client.put(f"/rooms/{test_room.id}", json={"capacity": 35, "remark": None},
                          headers=auth_headers_catalog)
    assert response.status_code == 200
    assert response.json()["capacity"] == 35


def test_get_room(client, auth_headers_user, test_room):
    response = client.get(f"/rooms/{test_room.id}", headers=auth_headers_user)
    assert response.status_code == 200
    assert response.json()["name"] == test_room.name


def test_delete_room_with_active_reservation(client, auth_headers_catalog, test_room, db):
    add_reservation(db, test_room, NOW + timedelta(hours=1), NOW + timedelta(hours=2))
    response = client.delete(f"/rooms/{test_room.id}", headers=auth_headers_catalog)
    assert response.status_code == 409


def test_delete_room_with_only_terminal_reservations(client, auth_headers_catalog, test_room, db):
    add_reservation(db, test_room, NOW + timedelta(hours=1), NOW + timedelta(hours=2),
                    status=ReservationStatus.CANCELLED)
    response = client.delete(f"/rooms/{test_room.id}", headers=auth_headers_catalog)
    assert response.status_code == 204
    assert client.get(f"/rooms/{test_room.id}", headers=auth_headers_catalog).status_code == 404


def test_portal_hides_disabled(client, auth_headers_user, db, test_room, second_room):
    second_room.enabled = False
    hidden = Building(name="Old Annex", enabled=False, sort=9)
    db.add(hidden)
    db.commit()

    buildings = client.get("/portal/buildings", headers=auth_headers_user).json()
    assert [b["name"] for b in buildings] == ["Main Library"]

    rooms = client.get("/portal/rooms", params={"building_id": test_room.building_id, "floor_no": 3},
                       headers=auth_headers_user).json()
    assert [r["id"] for r in rooms] == [test_room.id]


def test_portal_floors_descending(client, auth_headers_user, db, test_room):
    db.add(Room(building_id=test_room.building_id, floor_no=-1, name="Archive"))
    db.add(Room(building_id=test_room.building_id, floor_no=7, name="Reading Room"))
    db.commit()

    response = client.get(f"/portal/buildings/{test_room.building_id}/floors", headers=auth_headers_user)
    assert response.status_code == 200
    assert response.json()["floors"] == [7, 3, -1]


def test_admin_list_includes_disabled(client, auth_headers_catalog, db, test_room, second_room):
    second_room.enabled = False
    db.commit()
    response = client.get("/rooms", headers=auth_headers_catalog)
    assert [r["id"] for r in response.json()] == [test_room.id, second_room.id]

    response = client.get("/rooms", params={"include_disabled": False}, headers=auth_headers_catalog)
    assert [r["id"] for r in response.json()] == [test_room.id]


def test_stats(client, auth_headers_catalog):
    response = client.get("/stats", headers=auth_headers_catalog)
    assert response.status_code == 200
    assert response.json()["cache"] == {"enabled": False}
    assert "status" in response.json()["metrics"]


def test_stats_requires_permission(client, auth_headers_user):
    assert client.get("/stats", headers=auth_headers_user).status_code == 403
