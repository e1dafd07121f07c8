"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/signup                   -- create account; returns token pair
  POST /api/v1/auth/login                    -- password login; returns token pair
  POST /api/v1/auth/refresh                  -- rotate a refresh token into a new pair
  POST /api/v1/auth/logout                   -- revoke presented refresh token + end this device session
  POST /api/v1/auth/logout-all               -- revoke every refresh token + every device session
  GET  /api/v1/auth/me                       -- current user (requires auth)
  POST /api/v1/auth/verify-email             -- redeem an email verification token
  POST /api/v1/auth/send-verification-email  -- mint a verification token for the caller

Security:
  [H2] login and refresh are rate-limited per IP (LOGIN_RATE_LIMIT / REFRESH_RATE_LIMIT).
  [C1] authenticate_user() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Every credential failure (bad password, expired/reused/forged refresh token)
  surfaces as the same generic 401. The precise reason is logged only.

Device sessions are recorded on signup, login and refresh through
DeviceSessionTracker.record_login(), which never raises: a broken sessions
table does not block sign-in.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter, login_limit, refresh_limit
from api.models import (
    AuthResponse,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RevokedCountResponse,
    SignupRequest,
    UserResponse,
    VerificationTokenResponse,
    VerifyEmailRequest,
)
from auth.credentials import CredentialIssuer, TokenRotationAuthority
from auth.dependencies import client_ip, get_current_user, request_fingerprint
from auth.models import TokenPair, User
from auth.sessions import DeviceSessionTracker
from auth.store import CredentialStore
from auth.tokens import authenticate_user, hash_password
from auth.verification import EmailVerifier
from core.audit import AuditAction, AuditLog, AuditTarget
from core.config import Settings
from core.errors import Conflict, Forbidden, Unauthorized

# Auth policy:
# - signup, login, refresh, verify-email:   public
# - logout, logout-all, me, send-verification-email: requires auth (get_current_user)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/signup", response_model=AuthResponse, status_code=201)
def signup(request: Request, body: SignupRequest) -> JSONResponse:
    """Create an account and sign it in on the calling device."""
    settings: Settings = request.app.state.settings
    store: CredentialStore = request.app.state.credential_store
    if not settings.self_registration_enabled:
        raise Forbidden(reason="self_registration_disabled")

    now = request.app.state.clock()
    try:
        user_id = store.create_user(
            User(
                email=body.email.lower(),
                name=body.name,
                password_hash=hash_password(body.password, settings.bcrypt_rounds),
            ),
            now,
        )
    except IntegrityError as exc:
        raise Conflict("An account with that email already exists.") from exc

    user = store.get_by_id(user_id)
    if user is None:
        raise Unauthorized(reason="user_vanished_after_signup")

    audit: AuditLog = request.app.state.audit
    audit.record(AuditAction.USER_SIGNUP, AuditTarget.USER, user.id, user_id=user.id, ip_address=client_ip(request))
    return _sign_in(request, user, status_code=201)


@limiter.limit(login_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Uses authenticate_user() which includes timing equalization [C1]. Wrong
    email and wrong password produce the same 401.
    """
    settings: Settings = request.app.state.settings
    store: CredentialStore = request.app.state.credential_store
    audit: AuditLog = request.app.state.audit
    user = authenticate_user(store, body.email.lower(), body.password, settings.bcrypt_rounds)
    if user is None:
        audit.record(
            AuditAction.SECURITY_LOGIN_FAILED,
            AuditTarget.USER,
            body.email.lower(),
            ip_address=client_ip(request),
        )
        raise Unauthorized(reason="bad_credentials")

    store.update_last_login(user.id, request.app.state.clock())
    user = store.get_by_id(user.id) or user
    audit.record(AuditAction.USER_LOGIN, AuditTarget.USER, user.id, user_id=user.id, ip_address=client_ip(request))
    return _sign_in(request, user)


@limiter.limit(refresh_limit)  # [H2]
@router.post("/auth/refresh", response_model=AuthResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Redeem a refresh token exactly once for a new access/refresh pair.

    The presented token is dead after this call whether or not the client
    receives the response. Any failure is a generic 401; the client must log
    in again.
    """
    rotation: TokenRotationAuthority = request.app.state.rotation
    issuer: CredentialIssuer = request.app.state.issuer
    store: CredentialStore = request.app.state.credential_store

    pair = rotation.rotate(body.refresh_token)
    payload = issuer.decode_access_token(pair.access_token)
    user = store.get_by_id(payload["sub"]) if payload else None
    if user is None:
        raise Unauthorized(reason="user_missing_after_rotation")

    tracker: DeviceSessionTracker = request.app.state.session_tracker
    tracker.record_login(user.id, client_ip(request), request.headers.get("User-Agent"))
    request.app.state.audit.record(
        AuditAction.SECURITY_TOKEN_REFRESH,
        AuditTarget.USER,
        user.id,
        user_id=user.id,
        ip_address=client_ip(request),
    )
    return _token_response(request, pair, user)


@router.post("/auth/verify-email", response_model=MessageResponse)
def verify_email(request: Request, body: VerifyEmailRequest) -> MessageResponse:
    """Mark the token's user as email-verified. Idempotent."""
    verifier: EmailVerifier = request.app.state.verifier
    changed = verifier.verify(body.token)
    if not changed:
        return MessageResponse(message="Email is already verified.")
    payload = verifier.codec.decode(body.token) or {}
    request.app.state.audit.record(
        AuditAction.USER_EMAIL_VERIFY,
        AuditTarget.USER,
        payload.get("userId", ""),
        user_id=payload.get("userId"),
        ip_address=client_ip(request),
    )
    return MessageResponse(message="Email verified.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    current_user: User = Depends(get_current_user),
) -> MessageResponse:
    """End this device's session and revoke the presented refresh token.

    A refresh token that fails verification or belongs to someone else is
    ignored: logout always succeeds for the caller's own device.
    """
    rotation: TokenRotationAuthority = request.app.state.rotation
    if body is not None and body.refresh_token:
        try:
            payload = rotation.verify_refresh_token(body.refresh_token)
        except Unauthorized:
            payload = None
        if payload is not None and payload["sub"] == current_user.id:
            rotation.revoke(payload["tokenId"])

    tracker: DeviceSessionTracker = request.app.state.session_tracker
    tracker.revoke_device(current_user.id, request_fingerprint(request))
    request.app.state.audit.record(
        AuditAction.USER_LOGOUT,
        AuditTarget.USER,
        current_user.id,
        user_id=current_user.id,
        ip_address=client_ip(request),
    )
    return MessageResponse(message="Logged out.")


@router.post("/auth/logout-all", response_model=RevokedCountResponse)
def logout_all(request: Request, current_user: User = Depends(get_current_user)) -> RevokedCountResponse:
    """Remote sign-out: revoke every refresh token and deactivate every device session.

    Access tokens already issued stay valid until their (short) expiry.
    """
    rotation: TokenRotationAuthority = request.app.state.rotation
    tracker: DeviceSessionTracker = request.app.state.session_tracker
    revoked = rotation.revoke_all(current_user.id)
    sessions = tracker.revoke_all(current_user.id)
    request.app.state.audit.record(
        AuditAction.SECURITY_SESSION_TERMINATE,
        AuditTarget.SESSION,
        current_user.id,
        user_id=current_user.id,
        changes={"refresh_tokens": {"after": "revoked"}, "device_sessions": {"after": sessions}},
        ip_address=client_ip(request),
    )
    return RevokedCountResponse(revoked=revoked)


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return identity information for the currently authenticated user."""
    return _user_to_response(current_user)


@router.post("/auth/send-verification-email", response_model=VerificationTokenResponse)
def send_verification_email(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> VerificationTokenResponse:
    """Mint a verification token for the caller's own address.

    Mail delivery is outside this service; the token is returned so the
    caller (or a mailer sitting in front of it) can deliver the link.
    """
    verifier: EmailVerifier = request.app.state.verifier
    token = verifier.create_token(current_user.email)
    return VerificationTokenResponse(message="Verification token created.", token=token)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _sign_in(request: Request, user: User, status_code: int = 200) -> JSONResponse:
    """Issue a fresh rotation chain and record the calling device."""
    issuer: CredentialIssuer = request.app.state.issuer
    pair = issuer.issue_tokens(user.id, user.email)
    tracker: DeviceSessionTracker = request.app.state.session_tracker
    tracker.record_login(user.id, client_ip(request), request.headers.get("User-Agent"))
    return _token_response(request, pair, user, status_code)


def _token_response(request: Request, pair: TokenPair, user: User, status_code: int = 200) -> JSONResponse:
    settings: Settings = request.app.state.settings
    resp = JSONResponse(
        status_code=status_code,
        content=AuthResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=int(settings.access_token_ttl.total_seconds()),
            user=_user_to_response(user),
        ).model_dump(),
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        email_verified=user.email_verified,
        created_at=user.created_at or "",
        last_login=user.last_login,
    )
