"""
Unit tests for the ban registry.
"""

import pytest
from datetime import timedelta

import sys
import os
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import APPLICANT_ID, NOW
from shared import bans
from shared.errors import BadRequestError, ConflictError, NotFoundError
from shared.models import FacilityBan

MODERATOR_ID = 50


def test_not_banned_without_rows(db):
    assert bans.is_banned(db, APPLICANT_ID, NOW) is False


def test_ban_with_duration(db, audit_sink):
    row = bans.ban(db, APPLICANT_ID, MODERATOR_ID, NOW, duration="1h30m", reason="no-show", audit=audit_sink)

    assert row.expires_at == NOW + timedelta(hours=1, minutes=30)
    assert row.created_by == MODERATOR_ID
    assert bans.is_banned(db, APPLICANT_ID, NOW) is True
    assert audit_sink.actions() == ["facility.ban.create"]


def test_ban_without_expiry_is_indefinite(db):
    row = bans.ban(db, APPLICANT_ID, MODERATOR_ID, NOW)
    assert row.expires_at is None
    assert bans.is_banned(db, APPLICANT_ID, NOW + timedelta(days=3650)) is True


def test_ban_expires(db, clock):
    bans.ban(db, APPLICANT_ID, MODERATOR_ID, clock.now(), duration="7d")

    clock.advance(days=7)
    assert bans.is_banned(db, APPLICANT_ID, clock.now()) is False


def test_ban_with_explicit_expiry(db):
    row = bans.ban(db, APPLICANT_ID, MODERATOR_ID, NOW, expires_at="2025-03-10T00:00:00Z")
    assert row.expires_at == NOW.replace(day=10, hour=0)


def test_duration_wins_over_expiry(db):
    row = bans.ban(db, APPLICANT_ID, MODERATOR_ID, NOW, duration="2h", expires_at="2025-03-10T00:00:00Z")
    assert row.expires_at == NOW + timedelta(hours=2)


def test_expiry_in_past_is_rejected(db):
    with pytest.raises(BadRequestError):
        bans.ban(db, APPLICANT_ID, MODERATOR_ID, NOW, expires_at="2025-03-01T00:00:00Z")


@pytest.mark.parametrize("duration", ["abc", "10", "1x", "0h"])
def test_malformed_duration_is_rejected(db, duration):
    with pytest.raises(BadRequestError):
        bans.ban(db, APPLICANT_ID, MODERATOR_ID, NOW, duration=duration)


def test_reban_of_active_user_conflicts(db):
    bans.ban(db, APPLICANT_ID, MODERATOR_ID, NOW, duration="1d")
    with pytest.raises(ConflictError):
        bans.ban(db, APPLICANT_ID, MODERATOR_ID, NOW, duration="2d")


def test_reban_after_expiry_appends_row(db, clock):
    bans.ban(db, APPLICANT_ID, MODERATOR_ID, clock.now(), duration="1h")
    clock.advance(hours=2)
    bans.ban(db, APPLICANT_ID, MODERATOR_ID, clock.now(), duration="1h")

    assert db.query(FacilityBan).filter(FacilityBan.user_id == APPLICANT_ID).count() == 2


def test_revoke_lifts_ban(db, audit_sink):
    row = bans.ban(db, APPLICANT_ID, MODERATOR_ID, NOW)
    revoked = bans.revoke(db, row.id, MODERATOR_ID, NOW, reason="appeal accepted", audit=audit_sink)

    assert revoked.revoked_at == NOW
    assert revoked.revoked_by == MODERATOR_ID
    assert bans.is_banned(db, APPLICANT_ID, NOW) is False
    assert audit_sink.actions() == ["facility.ban.revoke"]


def test_revoke_twice_is_not_found(db):
    row = bans.ban(db, APPLICANT_ID, MODERATOR_ID, NOW)
    bans.revoke(db, row.id, MODERATOR_ID, NOW)
    with pytest.raises(NotFoundError):
        bans.revoke(db, row.id, MODERATOR_ID, NOW)


def test_revoke_expired_is_not_found(db, clock):
    row = bans.ban(db, APPLICANT_ID, MODERATOR_ID, clock.now(), duration="1h")
    clock.advance(hours=1)
    with pytest.raises(NotFoundError):
        bans.revoke(db, row.id, MODERATOR_ID, clock.now())


def test_revoke_unknown_is_not_found(db):
    with pytest.raises(NotFoundError):
        bans.revoke(db, 12345, MODERATOR_ID, NOW)


def test_extend_replaces_active_ban(db, audit_sink):
    row = bans.ban(db, APPLICANT_ID, MODERATOR_ID, NOW, duration="1d")
    replacement = bans.extend(db, row.id, MODERATOR_ID, NOW, duration="30d", audit=audit_sink)

    db.refresh(row)
    assert row.revoked_reason == "extended"
    assert replacement.id != row.id
    assert replacement.expires_at == NOW + timedelta(days=30)
    assert bans.is_banned(db, APPLICANT_ID, NOW + timedelta(days=10)) is True
    assert audit_sink.actions() == ["facility.ban.extend"]


def test_list_bans_marks_active_rows(db, clock):
    first = bans.ban(db, APPLICANT_ID, MODERATOR_ID, clock.now(), duration="1h")
    clock.advance(hours=2)
    second = bans.ban(db, APPLICANT_ID, MODERATOR_ID, clock.now())

    history = bans.list_bans(db, clock.now(), user_id=APPLICANT_ID)

    assert [(h["ban"].id, h["active"]) for h in history] == [(second.id, True), (first.id, False)]
    assert [b.id for b in bans.list_active(db, clock.now())] == [second.id]


def test_audit_failure_does_not_fail_ban(db):
    class BrokenSink:
        def record(self, entry):
            raise RuntimeError("audit store down")

    row = bans.ban(db, APPLICANT_ID, MODERATOR_ID, NOW, audit=BrokenSink())
    assert row.id is not None
    assert bans.is_banned(db, APPLICANT_ID, NOW) is True
