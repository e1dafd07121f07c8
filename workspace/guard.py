"""
workspace/guard.py -- Per-route workspace authorization.

A route declares what it needs as a frozen Requirement value at registration
time and hands it to workspace_guard():

    @router.delete("/workspaces/{workspace_id}")
    def delete_workspace(access: WorkspaceAccess = Depends(workspace_guard(CAN_DELETE_WORKSPACE))): ...

evaluate_requirement() is the single decision point. Rules:

  - an empty Requirement allows (the caller is still authenticated upstream)
  - otherwise every declared check KIND must pass (conjunction):
      roles         caller's role is one of them
      minimum_role  caller's role level >= minimum
      permissions   any of them (require_all=False) or all of them (True)
  - a caller without an active membership fails every non-empty requirement

Denials raise Forbidden with a generic public message; the failing check is
logged at INFO and carried in the exception's reason, never sent to the client.
A route without a workspace_id path parameter is a client error (BadRequest),
not an authorization failure.

Layer rule: no imports from api/. fastapi is imported because workspace_guard
builds a FastAPI dependency.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Depends, Request

from auth.dependencies import get_current_user
from auth.models import User
from core.errors import BadRequest, Forbidden
from workspace.models import UserWorkspacePermissions
from workspace.permissions import ROLE_LEVEL, MembershipRole, WorkspacePermission
from workspace.resolver import PermissionResolver

logger = logging.getLogger("workgate.workspace")

_WORKSPACE_PATH_PARAMS = ("workspace_id", "id")


@dataclass(frozen=True)
class Requirement:
    permissions: tuple[WorkspacePermission, ...] = ()
    roles: tuple[MembershipRole, ...] = ()
    minimum_role: MembershipRole | None = None
    require_all: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.permissions and not self.roles and self.minimum_role is None


@dataclass
class WorkspaceAccess:
    """What a guarded handler receives: who is calling, on which workspace, with what."""

    user: User
    workspace_id: str
    permissions: UserWorkspacePermissions | None


def _unmet(resolved: UserWorkspacePermissions | None, requirement: Requirement) -> str | None:
    """Name of the first failing check, or None when the requirement holds."""
    if requirement.is_empty:
        return None
    if resolved is None:
        return "no_active_membership"

    if requirement.roles and resolved.role not in requirement.roles:
        return "role:" + ",".join(r.value for r in requirement.roles)

    if requirement.minimum_role is not None:
        if ROLE_LEVEL[resolved.role] < ROLE_LEVEL[requirement.minimum_role]:
            return "minimum_role:" + requirement.minimum_role.value

    if requirement.permissions:
        check = all if requirement.require_all else any
        if not check(p in resolved.permissions for p in requirement.permissions):
            mode = "all" if requirement.require_all else "any"
            return f"permissions({mode}):" + ",".join(p.value for p in requirement.permissions)
    return None


def evaluate_requirement(
    resolver: PermissionResolver,
    user_id: str,
    workspace_id: str,
    requirement: Requirement,
) -> UserWorkspacePermissions | None:
    """Raise Forbidden unless the caller satisfies `requirement` in the workspace.

    Returns the caller's resolved permissions (None only for an empty
    requirement held by a non-member).
    """
    resolved = resolver.get_user_permissions(user_id, workspace_id)
    missing = _unmet(resolved, requirement)
    if missing is not None:
        logger.info("Access denied for user %s in workspace %s: %s", user_id, workspace_id, missing)
        raise Forbidden(reason=missing)
    return resolved


def workspace_guard(requirement: Requirement):
    """Build a FastAPI dependency enforcing `requirement` on the route's workspace."""

    def dependency(request: Request, user: User = Depends(get_current_user)) -> WorkspaceAccess:
        workspace_id = None
        for name in _WORKSPACE_PATH_PARAMS:
            workspace_id = request.path_params.get(name)
            if workspace_id:
                break
        if not workspace_id:
            raise BadRequest("Workspace ID not found in request.")

        resolver: PermissionResolver = request.app.state.resolver
        resolved = evaluate_requirement(resolver, user.id, workspace_id, requirement)
        return WorkspaceAccess(user=user, workspace_id=workspace_id, permissions=resolved)

    return dependency


# ---------------------------------------------------------------------------
# Common requirements
# ---------------------------------------------------------------------------


def require_permissions(*permissions: WorkspacePermission, require_all: bool = False) -> Requirement:
    return Requirement(permissions=tuple(permissions), require_all=require_all)


REQUIRE_ADMIN = Requirement(roles=(MembershipRole.admin,))
REQUIRE_MEMBER = Requirement(minimum_role=MembershipRole.member)
REQUIRE_ANY_MEMBERSHIP = Requirement(minimum_role=MembershipRole.guest)

CAN_VIEW_WORKSPACE = require_permissions(WorkspacePermission.VIEW_WORKSPACE)
CAN_DELETE_WORKSPACE = require_permissions(WorkspacePermission.DELETE_WORKSPACE)
CAN_VIEW_MEMBERS = require_permissions(WorkspacePermission.VIEW_MEMBERS)
CAN_INVITE_MEMBERS = require_permissions(WorkspacePermission.INVITE_MEMBERS)
CAN_UPDATE_MEMBERS = require_permissions(WorkspacePermission.UPDATE_MEMBERS)
# Role changes need the permission AND the admin role: an UPDATE_MEMBERS grant
# on a member's override does not let them hand out roles.
CAN_CHANGE_ROLES = Requirement(
    permissions=(WorkspacePermission.UPDATE_MEMBERS,),
    roles=(MembershipRole.admin,),
)
