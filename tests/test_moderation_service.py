"""
Unit tests for Moderation Service.
"""

import pytest

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import APPLICANT_ID, OTHER_USER_ID, make_headers, slot
from services.moderation_service import app
from shared.facility_config import get_config


MODERATOR_ID = 50


@pytest.fixture(scope="function")
def client(make_client):
    """Create a test client."""
    return make_client(app)


@pytest.fixture(scope="function")
def auth_headers_moderator():
    return make_headers(MODERATOR_ID, "facility:ban")


@pytest.fixture(scope="function")
def auth_headers_config():
    return make_headers(60, "facility:config")


def _ban(client, headers, user_id=APPLICANT_ID, **extra):
    response = client.post("/bans", json={"user_id": user_id, **extra}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_health_check(client):
    """Test health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy", "service": "moderation"}


def test_create_ban(client, auth_headers_moderator, audit_sink):
    data = _ban(client, auth_headers_moderator, duration="7d", reason="Repeated no-shows")

    assert data["user_id"] == APPLICANT_ID
    assert data["created_by"] == MODERATOR_ID
    assert data["active"] is True
    assert data["expires_at"] is not None
    assert audit_sink.actions() == ["facility.ban.create"]


def test_create_indefinite_ban(client, auth_headers_moderator):
    data = _ban(client, auth_headers_moderator)
    assert data["expires_at"] is None


def test_create_ban_requires_permission(client, auth_headers_user, auth_headers_reviewer):
    for headers in (auth_headers_user, auth_headers_reviewer):
        response = client.post("/bans", json={"user_id": OTHER_USER_ID}, headers=headers)
        assert response.status_code == 403


def test_create_ban_malformed_duration(client, auth_headers_moderator):
    response = client.post("/bans", json={"user_id": APPLICANT_ID, "duration": "forever"},
                           headers=auth_headers_moderator)
    assert response.status_code == 400
    assert response.json()["field"] == "duration"


def test_create_ban_expiry_in_past(client, auth_headers_moderator):
    past, _ = slot(-24)
    response = client.post("/bans", json={"user_id": APPLICANT_ID, "expires_at": past},
                           headers=auth_headers_moderator)
    assert response.status_code == 400


def test_reban_conflicts(client, auth_headers_moderator):
    _ban(client, auth_headers_moderator, duration="1d")
    response = client.post("/bans", json={"user_id": APPLICANT_ID, "duration": "2d"},
                           headers=auth_headers_moderator)
    assert response.status_code == 409


def test_revoke_ban(client, auth_headers_moderator):
    created = _ban(client, auth_headers_moderator)

    response = client.post(f"/bans/{created['id']}/revoke", json={"reason": "Appeal accepted"},
                           headers=auth_headers_moderator)
    assert response.status_code == 200
    data = response.json()
    assert data["active"] is False
    assert data["revoked_by"] == MODERATOR_ID
    assert data["revoked_reason"] == "Appeal accepted"

    response = client.post(f"/bans/{created['id']}/revoke", headers=auth_headers_moderator)
    assert response.status_code == 404


def test_revoke_expired_ban(client, auth_headers_moderator, clock):
    created = _ban(client, auth_headers_moderator, duration="1h")
    clock.advance(hours=2)
    response = client.post(f"/bans/{created['id']}/revoke", headers=auth_headers_moderator)
    assert response.status_code == 404


def test_extend_ban(client, auth_headers_moderator):
    created = _ban(client, auth_headers_moderator, duration="1d")

    response = client.post(f"/bans/{created['id']}/extend", json={"duration": "4w"},
                           headers=auth_headers_moderator)
    assert response.status_code == 200
    replacement = response.json()
    assert replacement["id"] != created["id"]
    assert replacement["active"] is True

    history = client.get("/bans", params={"user_id": APPLICANT_ID}, headers=auth_headers_moderator).json()
    assert [(b["id"], b["active"]) for b in history] == [(replacement["id"], True), (created["id"], False)]


def test_list_active_bans(client, auth_headers_moderator, clock):
    _ban(client, auth_headers_moderator, user_id=APPLICANT_ID, duration="1h")
    lasting = _ban(client, auth_headers_moderator, user_id=OTHER_USER_ID)
    clock.advance(hours=1)

    response = client.get("/bans/active", headers=auth_headers_moderator)
    assert response.status_code == 200
    assert [b["id"] for b in response.json()] == [lasting["id"]]

    response = client.get("/bans", headers=auth_headers_moderator)
    assert len(response.json()) == 2


def test_get_config(client, auth_headers_user):
    response = client.get("/config", headers=auth_headers_user)
    assert response.status_code == 200
    assert response.json() == {"audit_required": False, "max_duration_hours": 72.0}


def test_update_config(client, auth_headers_config, audit_sink, db):
    response = client.put("/config", json={"audit_required": True, "reason": "Exam period"},
                          headers=auth_headers_config)
    assert response.status_code == 200
    assert response.json() == {"audit_required": True, "max_duration_hours": 72.0}
    assert get_config(db).audit_required is True
    assert audit_sink.actions() == ["facility.config.update"]

    response = client.put("/config", json={"max_duration_hours": 4}, headers=auth_headers_config)
    assert response.json() == {"audit_required": True, "max_duration_hours": 4.0}


@pytest.mark.parametrize("value", [0, -1, 169])
def test_update_config_out_of_range(client, auth_headers_config, value):
    response = client.put("/config", json={"max_duration_hours": value}, headers=auth_headers_config)
    assert response.status_code == 400
    assert response.json()["field"] == "max_duration_hours"


def test_update_config_empty_patch(client, auth_headers_config):
    response = client.put("/config", json={}, headers=auth_headers_config)
    assert response.status_code == 400


def test_update_config_requires_permission(client, auth_headers_moderator):
    response = client.put("/config", json={"audit_required": True}, headers=auth_headers_moderator)
    assert response.status_code == 403
