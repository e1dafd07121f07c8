"""
workspace/models.py -- Workspace domain dataclasses.

Layer rule: stdlib + workspace.permissions only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from workspace.permissions import MembershipRole, MembershipStatus, WorkspacePermission


@dataclass
class Workspace:
    name: str
    owner_id: str
    id: str = ""
    description: str | None = None
    created_at: datetime | None = None


@dataclass
class PermissionOverride:
    """Per-membership adjustments layered over the role defaults."""

    granted: list[WorkspacePermission] = field(default_factory=list)
    revoked: list[WorkspacePermission] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.granted and not self.revoked

    def to_dict(self) -> dict:
        return {
            "granted": [p.value for p in self.granted],
            "revoked": [p.value for p in self.revoked],
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> PermissionOverride | None:
        if not data:
            return None
        return cls(
            granted=[WorkspacePermission(p) for p in data.get("granted") or []],
            revoked=[WorkspacePermission(p) for p in data.get("revoked") or []],
        )


@dataclass
class Membership:
    user_id: str
    workspace_id: str
    role: MembershipRole
    status: MembershipStatus = MembershipStatus.active
    id: str = ""
    permissions_override: PermissionOverride | None = None
    invited_by: str | None = None
    joined_at: datetime | None = None


@dataclass
class UserWorkspacePermissions:
    role: MembershipRole
    permissions: frozenset[WorkspacePermission]
    has_overrides: bool = False


@dataclass
class InvitationClaim:
    """Decoded invitation payload. Never persisted."""

    email: str
    workspace_id: str
    invited_by: str
    role: MembershipRole
    issued_at: datetime
    expires_at: datetime


@dataclass
class InvitationInfo:
    workspace: Workspace
    inviter_id: str
    inviter_name: str
    inviter_email: str
    email: str
    role: MembershipRole
    expires_at: datetime
    is_valid: bool = True
    message: str | None = None
