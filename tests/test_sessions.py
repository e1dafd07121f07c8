"""
tests/test_sessions.py -- Unit tests for auth/sessions.py (DeviceSessionTracker).

Covers:
  - fingerprint and device-type derivation
  - upsert: create once per (user, device), reactivate and overwrite on repeat
  - ownership scoping: another user's session id is NotFound, not Forbidden
  - revoke / revoke_all / revoke_all_except_current
  - best-effort paths: record_login() and update_last_active() never raise
  - cleanup_expired() sweeps only rows with a past expires_at
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from auth.models import DeviceType
from auth.sessions import derive_device_fingerprint, detect_device_type
from core.errors import NotFound

_IPHONE_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X)"
_ANDROID_UA = "Mozilla/5.0 (Linux; Android 14; Pixel 8)"
_DESKTOP_UA = "Mozilla/5.0 (X11; Linux x86_64) Firefox/128.0"


@pytest.fixture
def alice(make_user):
    return make_user("alice@example.com")


@pytest.fixture
def bob(make_user):
    return make_user("bob@example.com")


def _broken(*args, **kwargs):
    raise OperationalError("UPDATE device_sessions", {}, Exception("database is locked"))


class TestFingerprint:
    def test_stable_for_same_inputs(self):
        assert derive_device_fingerprint("10.0.0.1", _DESKTOP_UA) == derive_device_fingerprint("10.0.0.1", _DESKTOP_UA)

    def test_differs_by_ip_and_agent(self):
        base = derive_device_fingerprint("10.0.0.1", _DESKTOP_UA)
        assert derive_device_fingerprint("10.0.0.2", _DESKTOP_UA) != base
        assert derive_device_fingerprint("10.0.0.1", _ANDROID_UA) != base

    def test_missing_inputs_still_produce_a_key(self):
        assert len(derive_device_fingerprint(None, None)) == 32

    @pytest.mark.parametrize(
        "ua,expected",
        [(_IPHONE_UA, DeviceType.ios), (_ANDROID_UA, DeviceType.android), (_DESKTOP_UA, DeviceType.web), (None, DeviceType.web)],
    )
    def test_device_type(self, ua, expected):
        assert detect_device_type(ua) == expected


class TestUpsert:
    def test_first_login_creates_session(self, tracker, alice, clock):
        session = tracker.upsert_session(alice.id, "device-1", ip_address="10.0.0.1", device_name="Laptop")
        assert session.id
        assert session.is_active is True
        assert session.device_name == "Laptop"
        assert session.created_at == clock()
        assert session.last_active == clock()

    def test_repeat_login_reactivates_same_row(self, tracker, alice, clock):
        first = tracker.upsert_session(alice.id, "device-1", ip_address="10.0.0.1", device_name="Laptop")
        tracker.revoke(first.id, alice.id)
        clock.advance(hours=2)

        again = tracker.upsert_session(alice.id, "device-1", ip_address="10.0.0.9")
        assert again.id == first.id
        assert again.is_active is True
        assert again.ip_address == "10.0.0.9"
        # Attributes not supplied keep their stored value.
        assert again.device_name == "Laptop"
        assert again.created_at == first.created_at
        assert again.last_active == clock()
        assert len(tracker.list_sessions(alice.id)) == 1

    def test_same_device_token_for_two_users_is_two_sessions(self, tracker, alice, bob):
        a = tracker.upsert_session(alice.id, "shared-nat")
        b = tracker.upsert_session(bob.id, "shared-nat")
        assert a.id != b.id

    def test_record_login_derives_fingerprint_and_type(self, tracker, alice):
        session = tracker.record_login(alice.id, "10.0.0.1", _IPHONE_UA)
        assert session.device_token == derive_device_fingerprint("10.0.0.1", _IPHONE_UA)
        assert session.device_type == DeviceType.ios
        assert session.user_agent == _IPHONE_UA


class TestOwnership:
    def test_revoke_other_users_session_is_not_found(self, tracker, alice, bob):
        session = tracker.upsert_session(alice.id, "device-1")
        with pytest.raises(NotFound):
            tracker.revoke(session.id, bob.id)
        assert tracker.list_active_sessions(alice.id)[0].id == session.id

    def test_rename_other_users_session_is_not_found(self, tracker, alice, bob):
        session = tracker.upsert_session(alice.id, "device-1")
        with pytest.raises(NotFound):
            tracker.rename_session(session.id, bob.id, "Hijacked")

    def test_delete_other_users_session_is_not_found(self, tracker, alice, bob):
        session = tracker.upsert_session(alice.id, "device-1")
        with pytest.raises(NotFound):
            tracker.delete_session(session.id, bob.id)

    def test_unknown_session_is_not_found(self, tracker, alice):
        with pytest.raises(NotFound):
            tracker.revoke("does-not-exist", alice.id)

    def test_rename_own_session(self, tracker, alice):
        session = tracker.upsert_session(alice.id, "device-1")
        renamed = tracker.rename_session(session.id, alice.id, "Work laptop")
        assert renamed.device_name == "Work laptop"


class TestRevocation:
    def test_revoke_marks_inactive(self, tracker, alice):
        session = tracker.upsert_session(alice.id, "device-1")
        revoked = tracker.revoke(session.id, alice.id)
        assert revoked.is_active is False
        assert tracker.list_active_sessions(alice.id) == []
        assert len(tracker.list_sessions(alice.id)) == 1

    def test_revoke_all_except_current(self, tracker, alice, bob):
        for token in ("laptop", "phone", "tablet"):
            tracker.upsert_session(alice.id, token)
        tracker.upsert_session(bob.id, "phone")

        assert tracker.revoke_all_except_current(alice.id, "laptop") == 2
        active = tracker.list_active_sessions(alice.id)
        assert [s.device_token for s in active] == ["laptop"]
        assert len(tracker.list_active_sessions(bob.id)) == 1

    def test_revoke_all(self, tracker, alice):
        tracker.upsert_session(alice.id, "laptop")
        tracker.upsert_session(alice.id, "phone")
        assert tracker.revoke_all(alice.id) == 2
        assert tracker.revoke_all(alice.id) == 0

    def test_revoke_device(self, tracker, alice):
        tracker.upsert_session(alice.id, "laptop")
        assert tracker.revoke_device(alice.id, "laptop") is True
        assert tracker.revoke_device(alice.id, "unknown") is False

    def test_delete_inactive(self, tracker, alice):
        keep = tracker.upsert_session(alice.id, "laptop")
        gone = tracker.upsert_session(alice.id, "phone")
        tracker.revoke(gone.id, alice.id)
        assert tracker.delete_inactive(alice.id) == 1
        assert [s.id for s in tracker.list_sessions(alice.id)] == [keep.id]


class TestBestEffort:
    def test_touch_updates_last_active(self, tracker, alice, clock):
        session = tracker.upsert_session(alice.id, "laptop")
        clock.advance(minutes=5)
        tracker.update_last_active(alice.id, "laptop")
        assert tracker.list_sessions(alice.id)[0].last_active == session.last_active + timedelta(minutes=5)

    def test_touch_swallows_database_errors(self, tracker, credential_store, alice, monkeypatch):
        monkeypatch.setattr(credential_store, "touch_session", _broken)
        tracker.update_last_active(alice.id, "laptop")  # must not raise

    def test_record_login_swallows_database_errors(self, tracker, credential_store, alice, monkeypatch):
        monkeypatch.setattr(credential_store, "get_session_by_device", _broken)
        assert tracker.record_login(alice.id, "10.0.0.1", _DESKTOP_UA) is None

    def test_explicit_revoke_does_raise(self, tracker, credential_store, alice, monkeypatch):
        monkeypatch.setattr(credential_store, "deactivate_session", _broken)
        with pytest.raises(OperationalError):
            tracker.revoke("any", alice.id)


class TestCleanup:
    def test_only_past_expiry_is_swept(self, tracker, alice, clock):
        tracker.upsert_session(alice.id, "short", expires_at=clock() + timedelta(hours=1))
        tracker.upsert_session(alice.id, "long", expires_at=clock() + timedelta(days=30))
        tracker.upsert_session(alice.id, "forever")

        assert tracker.cleanup_expired() == 0
        clock.advance(hours=2)
        assert tracker.cleanup_expired() == 1
        assert sorted(s.device_token for s in tracker.list_sessions(alice.id)) == ["forever", "long"]
