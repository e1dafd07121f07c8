"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Authentication is a Bearer access token in the Authorization header, verified
with the access-token secret. Refresh tokens are never accepted here: they are
signed with a different secret, so one fails verification outright.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises Unauthorized, which the app's
exception handler renders as the generic 401.

Every successful authentication stamps last_active on the caller's device
session. The stamp is fire-and-forget: DeviceSessionTracker.update_last_active
swallows and logs its own failures, so it can never fail the request.

Layer rule: no imports from web/ or workspace/. This module may import from
fastapi because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Request

from auth.credentials import CredentialIssuer
from auth.models import User
from auth.sessions import DeviceSessionTracker, derive_device_fingerprint
from auth.store import CredentialStore
from core.errors import Unauthorized


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, else the socket peer, else "unknown"."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def request_fingerprint(request: Request) -> str:
    return derive_device_fingerprint(client_ip(request), request.headers.get("User-Agent"))


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_user(request: Request) -> User | None:
    """Authenticate via Authorization: Bearer <access token>.

    Returns the User on success, None on any failure. Never raises.
    """
    token = _bearer_token(request)
    if not token:
        return None

    issuer: CredentialIssuer = request.app.state.issuer
    payload = issuer.decode_access_token(token)
    if payload is None:
        return None

    store: CredentialStore = request.app.state.credential_store
    user = store.get_by_id(payload["sub"])
    if user is None:
        return None

    tracker: DeviceSessionTracker = request.app.state.session_tracker
    tracker.update_last_active(user.id, request_fingerprint(request))
    return user


def get_current_user(request: Request) -> User:
    """Require authentication. Raises Unauthorized (401) if not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise Unauthorized(reason="missing_or_invalid_access_token")
    return user
