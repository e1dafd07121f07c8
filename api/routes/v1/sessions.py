"""
api/routes/v1/sessions.py -- Self-service device session management.

Routes (in registration order to avoid FastAPI path capture conflicts):
  GET    /users/me/sessions                -- all of the caller's sessions
  GET    /users/me/sessions/active         -- active sessions only
  DELETE /users/me/sessions                -- sign out other devices (?keep_current=true)
                                              or everything, refresh tokens included (false)
  PATCH  /users/me/sessions/{session_id}   -- rename a device
  DELETE /users/me/sessions/{session_id}   -- deactivate one device

Every route is scoped to the authenticated caller. A session id belonging to
someone else answers 404 exactly like a missing one [IDOR guard].

Device sessions are advisory. Deactivating one does not by itself invalidate
any token; only keep_current=false also revokes the refresh tokens, which is
what turns "sign out everywhere" into a real remote sign-out.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import DeviceSessionRename, DeviceSessionResponse, RevokedCountResponse
from auth.credentials import TokenRotationAuthority
from auth.dependencies import client_ip, get_current_user, request_fingerprint
from auth.models import User
from auth.sessions import DeviceSessionTracker
from core.audit import AuditAction, AuditTarget

router = APIRouter(dependencies=[Depends(get_current_user)])


@router.get("/users/me/sessions", response_model=list[DeviceSessionResponse])
def list_sessions(request: Request, current_user: User = Depends(get_current_user)) -> list[DeviceSessionResponse]:
    """Every recorded device for the caller, most recently active first."""
    tracker: DeviceSessionTracker = request.app.state.session_tracker
    current = request_fingerprint(request)
    return [DeviceSessionResponse.from_session(s, current) for s in tracker.list_sessions(current_user.id)]


@router.get("/users/me/sessions/active", response_model=list[DeviceSessionResponse])
def list_active_sessions(
    request: Request, current_user: User = Depends(get_current_user)
) -> list[DeviceSessionResponse]:
    tracker: DeviceSessionTracker = request.app.state.session_tracker
    current = request_fingerprint(request)
    return [DeviceSessionResponse.from_session(s, current) for s in tracker.list_active_sessions(current_user.id)]


@router.delete("/users/me/sessions", response_model=RevokedCountResponse)
def revoke_all_sessions(
    request: Request,
    keep_current: bool = True,
    current_user: User = Depends(get_current_user),
) -> RevokedCountResponse:
    """Deactivate the caller's other devices, or all of them.

    keep_current=false also revokes every refresh token, so no device can
    mint a new access token afterwards.
    """
    tracker: DeviceSessionTracker = request.app.state.session_tracker
    if keep_current:
        revoked = tracker.revoke_all_except_current(current_user.id, request_fingerprint(request))
    else:
        revoked = tracker.revoke_all(current_user.id)
        rotation: TokenRotationAuthority = request.app.state.rotation
        rotation.revoke_all(current_user.id)

    request.app.state.audit.record(
        AuditAction.SECURITY_SESSION_TERMINATE,
        AuditTarget.SESSION,
        current_user.id,
        user_id=current_user.id,
        changes={"device_sessions": {"after": revoked}, "keep_current": {"after": keep_current}},
        ip_address=client_ip(request),
    )
    return RevokedCountResponse(revoked=revoked)


@router.patch("/users/me/sessions/{session_id}", response_model=DeviceSessionResponse)
def rename_session(
    request: Request,
    session_id: str,
    body: DeviceSessionRename,
    current_user: User = Depends(get_current_user),
) -> DeviceSessionResponse:
    tracker: DeviceSessionTracker = request.app.state.session_tracker
    session = tracker.rename_session(session_id, current_user.id, body.device_name)
    return DeviceSessionResponse.from_session(session, request_fingerprint(request))


@router.delete("/users/me/sessions/{session_id}", status_code=204)
def revoke_session(
    request: Request,
    session_id: str,
    current_user: User = Depends(get_current_user),
) -> Response:
    """Deactivate one of the caller's sessions. 404 if it is not theirs."""
    tracker: DeviceSessionTracker = request.app.state.session_tracker
    tracker.revoke(session_id, current_user.id)
    request.app.state.audit.record(
        AuditAction.SECURITY_SESSION_TERMINATE,
        AuditTarget.SESSION,
        session_id,
        user_id=current_user.id,
        ip_address=client_ip(request),
    )
    return Response(status_code=204)
