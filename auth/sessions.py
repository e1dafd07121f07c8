"""
auth/sessions.py -- Device session tracker.

A device session is observability state: "you are signed in on these
devices". It is keyed by (user_id, device_token) where device_token is a
fingerprint of (client IP, User-Agent). That fingerprint is shared by every
client behind the same NAT with the same browser, so it is a UX convenience
key only. Nothing in workgate authorizes a request by looking at sessions.

Failure policy: bookkeeping must never fail the primary request. Callers on
the login/signup/refresh path use record_login(), and the per-request
activity stamp goes through update_last_active(); both log a warning and
swallow database errors. Explicit self-service operations (revoke, rename)
do raise, because there the session IS the primary request.

Ownership: every per-session operation is scoped by user_id in SQL. Another
user's session id is indistinguishable from a missing one -- NotFound, never
Forbidden, so a caller cannot probe which session ids exist.

Layer rule: no imports from api/ or workspace/.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import DeviceSession, DeviceType
from auth.store import CredentialStore
from core.clock import Clock, utc_now
from core.errors import NotFound

logger = logging.getLogger("workgate.auth.sessions")


def derive_device_fingerprint(client_ip: str | None, user_agent: str | None) -> str:
    """Stable per-device key from (IP, User-Agent). Not a security boundary."""
    raw = f"{client_ip or 'unknown'}-{user_agent or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


def detect_device_type(user_agent: str | None) -> DeviceType:
    ua = user_agent or ""
    if "iPhone" in ua or "iPad" in ua or "iOS" in ua:
        return DeviceType.ios
    if "Android" in ua:
        return DeviceType.android
    return DeviceType.web


class DeviceSessionTracker:
    def __init__(self, store: CredentialStore, clock: Clock = utc_now) -> None:
        self.store = store
        self._clock = clock

    def upsert_session(
        self,
        user_id: str,
        device_token: str,
        *,
        device_type: DeviceType | str = DeviceType.web,
        ip_address: str = "unknown",
        device_name: str | None = None,
        user_agent: str | None = None,
        location: str | None = None,
        expires_at: datetime | None = None,
    ) -> DeviceSession:
        """Create the (user_id, device_token) session or reactivate the existing one.

        On an existing row: last_active=now, is_active=True, and any supplied
        attribute overwrites the stored value. A concurrent insert of the same
        key loses on the UNIQUE constraint and falls back to the update path.
        """
        now = self._clock()
        attrs = {
            "device_type": DeviceType(device_type),
            "ip_address": ip_address,
            "device_name": device_name,
            "user_agent": user_agent,
            "location": location,
            "expires_at": expires_at,
        }
        existing = self.store.get_session_by_device(user_id, device_token)
        if existing is None:
            try:
                self.store.insert_session(
                    DeviceSession(user_id=user_id, device_token=device_token, **attrs),
                    now,
                )
            except IntegrityError:
                existing = self.store.get_session_by_device(user_id, device_token)
                if existing is None:
                    raise
        if existing is not None:
            self.store.reactivate_session(existing.id, now, **attrs)

        session = self.store.get_session_by_device(user_id, device_token)
        if session is None:
            raise NotFound("Device session not found.")
        return session

    def record_login(self, user_id: str, client_ip: str | None, user_agent: str | None) -> DeviceSession | None:
        """Best-effort upsert for the login/signup/refresh paths.

        Returns None (and logs) instead of raising: a broken sessions table
        must not stop a user from signing in.
        """
        try:
            return self.upsert_session(
                user_id,
                derive_device_fingerprint(client_ip, user_agent),
                device_type=detect_device_type(user_agent),
                ip_address=client_ip or "unknown",
                user_agent=user_agent,
            )
        except (SQLAlchemyError, NotFound):
            logger.warning("Failed to record device session for user %s", user_id, exc_info=True)
            return None

    def update_last_active(self, user_id: str, device_token: str) -> None:
        """Cheap per-request touch. Fire-and-forget: failures are only logged."""
        try:
            self.store.touch_session(user_id, device_token, self._clock())
        except SQLAlchemyError:
            logger.warning("Failed to update device session activity for user %s", user_id, exc_info=True)

    def list_sessions(self, user_id: str) -> list[DeviceSession]:
        return self.store.list_sessions(user_id)

    def list_active_sessions(self, user_id: str) -> list[DeviceSession]:
        return self.store.list_sessions(user_id, active_only=True)

    def rename_session(self, session_id: str, user_id: str, device_name: str) -> DeviceSession:
        if not self.store.update_session(session_id, user_id, device_name=device_name):
            raise NotFound("Device session not found.")
        session = self.store.get_session(session_id, user_id)
        if session is None:
            raise NotFound("Device session not found.")
        return session

    def revoke(self, session_id: str, user_id: str) -> DeviceSession:
        """Deactivate one of the caller's sessions. NotFound if not theirs."""
        if not self.store.deactivate_session(session_id, user_id):
            raise NotFound("Device session not found.")
        session = self.store.get_session(session_id, user_id)
        if session is None:
            raise NotFound("Device session not found.")
        return session

    def revoke_device(self, user_id: str, device_token: str) -> bool:
        """Deactivate the session for one fingerprint (used by logout)."""
        return self.store.deactivate_device(user_id, device_token)

    def revoke_all(self, user_id: str) -> int:
        return self.store.deactivate_all_sessions(user_id)

    def revoke_all_except_current(self, user_id: str, current_device_token: str) -> int:
        """Sign out every other device, keep the one making this request."""
        return self.store.deactivate_all_sessions(user_id, except_device_token=current_device_token)

    def delete_session(self, session_id: str, user_id: str) -> None:
        if not self.store.delete_session(session_id, user_id):
            raise NotFound("Device session not found.")

    def delete_inactive(self, user_id: str) -> int:
        return self.store.delete_inactive_sessions(user_id)

    def cleanup_expired(self) -> int:
        """Sweep sessions whose expires_at has passed. Run by the reaper."""
        return self.store.delete_expired_sessions(self._clock())
