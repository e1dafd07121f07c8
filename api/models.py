"""
API request and response models for the workgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
workspace/models.py, which own the internal domain representation. Route
handlers map between the two.

Separation of concerns: domain dataclasses = domain truth; api/ models = API contract.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth.models import DeviceSession
from workspace.models import InvitationInfo, Membership
from workspace.permissions import MembershipRole, MembershipStatus, WorkspacePermission

# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Auth -- requests
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/v1/auth/signup.

    max_length on password keeps input under bcrypt's 72-byte truncation.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    name: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=8, max_length=64)


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    password: str = Field(min_length=1, max_length=64)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class LogoutRequest(BaseModel):
    """Optional body for POST /auth/logout. Without it only the device session ends."""

    refresh_token: Optional[str] = None


class VerifyEmailRequest(BaseModel):
    token: str = Field(min_length=1)


# ---------------------------------------------------------------------------
# Auth -- responses
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: str
    email_verified: bool
    created_at: str = ""
    last_login: Optional[str] = None


class AuthResponse(BaseModel):
    """Token pair plus the authenticated user (login, signup, refresh)."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"  # noqa: S105 # nosec B105 -- OAuth token type, not a password
    expires_in: int
    user: UserResponse


class VerificationTokenResponse(BaseModel):
    """Returned by send-verification-email. Delivery is a separate concern."""

    model_config = ConfigDict(frozen=True)

    message: str
    token: str


# ---------------------------------------------------------------------------
# Device sessions
# ---------------------------------------------------------------------------


class DeviceSessionResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    device_type: str
    device_name: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: str
    location: Optional[str] = None
    is_active: bool
    is_current: bool = False
    created_at: Optional[datetime] = None
    last_active: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_session(cls, session: DeviceSession, current_device_token: str | None = None) -> DeviceSessionResponse:
        return cls(
            id=session.id,
            device_type=session.device_type.value,
            device_name=session.device_name,
            user_agent=session.user_agent,
            ip_address=session.ip_address,
            location=session.location,
            is_active=session.is_active,
            is_current=current_device_token is not None and session.device_token == current_device_token,
            created_at=session.created_at,
            last_active=session.last_active,
            expires_at=session.expires_at,
        )


class DeviceSessionRename(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    device_name: str = Field(min_length=1, max_length=255)


class RevokedCountResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    revoked: int


# ---------------------------------------------------------------------------
# Workspaces and members
# ---------------------------------------------------------------------------


class WorkspaceCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)


class WorkspaceResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: Optional[str] = None
    owner_id: str
    created_at: Optional[datetime] = None


class PermissionOverrideBody(BaseModel):
    granted: list[WorkspacePermission] = Field(default_factory=list)
    revoked: list[WorkspacePermission] = Field(default_factory=list)


class MemberResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None
    role: MembershipRole
    status: MembershipStatus
    permissions_override: Optional[PermissionOverrideBody] = None
    joined_at: Optional[datetime] = None

    @classmethod
    def from_membership(cls, membership: Membership, email: str | None = None, name: str | None = None):
        override = membership.permissions_override
        return cls(
            user_id=membership.user_id,
            email=email,
            name=name,
            role=membership.role,
            status=membership.status,
            permissions_override=(
                PermissionOverrideBody(granted=override.granted, revoked=override.revoked) if override else None
            ),
            joined_at=membership.joined_at,
        )


class MemberRoleUpdate(BaseModel):
    role: MembershipRole


class MyPermissionsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    workspace_id: str
    role: MembershipRole
    permissions: list[WorkspacePermission]
    has_overrides: bool


# ---------------------------------------------------------------------------
# Invitations
# ---------------------------------------------------------------------------


class InvitationCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    role: MembershipRole = MembershipRole.member
    message: Optional[str] = Field(default=None, max_length=1000)


class InvitationAccept(BaseModel):
    token: str = Field(min_length=1)


class InviterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    email: str


class InvitationInfoResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    workspace: WorkspaceResponse
    invited_by: InviterResponse
    email: str
    role: MembershipRole
    is_valid: bool
    expires_at: datetime
    message: Optional[str] = None

    @classmethod
    def from_info(cls, info: InvitationInfo) -> InvitationInfoResponse:
        ws = info.workspace
        return cls(
            workspace=WorkspaceResponse(
                id=ws.id,
                name=ws.name,
                description=ws.description,
                owner_id=ws.owner_id,
                created_at=ws.created_at,
            ),
            invited_by=InviterResponse(id=info.inviter_id, name=info.inviter_name, email=info.inviter_email),
            email=info.email,
            role=info.role,
            is_valid=info.is_valid,
            expires_at=info.expires_at,
            message=info.message,
        )


class InvitationCreatedResponse(InvitationInfoResponse):
    token: str
