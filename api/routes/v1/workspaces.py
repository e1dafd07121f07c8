"""
api/routes/v1/workspaces.py -- Workspace, membership and permission-override routes.

Routes:
  POST   /workspaces                                         -- create (caller becomes admin)
  GET    /workspaces/{workspace_id}                          -- view          [VIEW_WORKSPACE]
  DELETE /workspaces/{workspace_id}                          -- delete        [DELETE_WORKSPACE]
  GET    /workspaces/{workspace_id}/members                  -- list members  [VIEW_MEMBERS]
  PATCH  /workspaces/{workspace_id}/members/{user_id}        -- change role   [admin + UPDATE_MEMBERS]
  GET    /workspaces/{workspace_id}/permissions/me           -- caller's effective permissions
  PUT    /workspaces/{workspace_id}/members/{user_id}/permissions  -- set override   [UPDATE_MEMBERS]
  DELETE /workspaces/{workspace_id}/members/{user_id}/permissions  -- clear override [UPDATE_MEMBERS]

Authorization is declared per route with Depends(workspace_guard(<Requirement>)).
The requirement is a plain value visible at the decorator; nothing is looked
up by reflection at request time.

Override routes call PermissionResolver.update_overrides / clear_overrides,
which re-check UPDATE_MEMBERS and refuse self-modification even though the
guard has already run.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    MemberResponse,
    MemberRoleUpdate,
    MyPermissionsResponse,
    PermissionOverrideBody,
    WorkspaceCreate,
    WorkspaceResponse,
)
from auth.dependencies import client_ip, get_current_user
from auth.models import User
from auth.store import CredentialStore
from core.errors import NotFound
from workspace.guard import (
    CAN_CHANGE_ROLES,
    CAN_DELETE_WORKSPACE,
    CAN_UPDATE_MEMBERS,
    CAN_VIEW_MEMBERS,
    CAN_VIEW_WORKSPACE,
    REQUIRE_ANY_MEMBERSHIP,
    WorkspaceAccess,
    workspace_guard,
)
from workspace.models import Membership, PermissionOverride, Workspace
from workspace.resolver import PermissionResolver
from workspace.service import WorkspaceService
from workspace.store import WorkspaceStore

router = APIRouter(dependencies=[Depends(get_current_user)])


# ---------------------------------------------------------------------------
# Workspaces
# ---------------------------------------------------------------------------


@router.post("/workspaces", response_model=WorkspaceResponse, status_code=201)
def create_workspace(
    request: Request,
    body: WorkspaceCreate,
    current_user: User = Depends(get_current_user),
) -> WorkspaceResponse:
    service: WorkspaceService = request.app.state.workspaces
    workspace = service.create_workspace(current_user, body.name, body.description, ip_address=client_ip(request))
    return _workspace_to_response(workspace)


@router.get("/workspaces/{workspace_id}", response_model=WorkspaceResponse)
def get_workspace(
    request: Request,
    access: WorkspaceAccess = Depends(workspace_guard(CAN_VIEW_WORKSPACE)),
) -> WorkspaceResponse:
    service: WorkspaceService = request.app.state.workspaces
    return _workspace_to_response(service.get_workspace(access.workspace_id))


@router.delete("/workspaces/{workspace_id}", status_code=204)
def delete_workspace(
    request: Request,
    access: WorkspaceAccess = Depends(workspace_guard(CAN_DELETE_WORKSPACE)),
) -> Response:
    """Delete the workspace and all of its memberships. Outstanding invitations die with it."""
    service: WorkspaceService = request.app.state.workspaces
    service.delete_workspace(access.workspace_id, access.user.id, ip_address=client_ip(request))
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


@router.get("/workspaces/{workspace_id}/members", response_model=list[MemberResponse])
def list_members(
    request: Request,
    access: WorkspaceAccess = Depends(workspace_guard(CAN_VIEW_MEMBERS)),
) -> list[MemberResponse]:
    service: WorkspaceService = request.app.state.workspaces
    return [_member_to_response(request, m) for m in service.list_members(access.workspace_id)]


@router.patch("/workspaces/{workspace_id}/members/{user_id}", response_model=MemberResponse)
def update_member_role(
    request: Request,
    user_id: str,
    body: MemberRoleUpdate,
    access: WorkspaceAccess = Depends(workspace_guard(CAN_CHANGE_ROLES)),
) -> MemberResponse:
    """Change another member's role. 403 on your own row, 409 if it would remove the last active admin."""
    service: WorkspaceService = request.app.state.workspaces
    membership = service.update_member_role(
        access.workspace_id, user_id, body.role, access.user.id, ip_address=client_ip(request)
    )
    return _member_to_response(request, membership)


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


@router.get("/workspaces/{workspace_id}/permissions/me", response_model=MyPermissionsResponse)
def my_permissions(
    access: WorkspaceAccess = Depends(workspace_guard(REQUIRE_ANY_MEMBERSHIP)),
) -> MyPermissionsResponse:
    """The caller's effective permission set (role defaults + overrides)."""
    resolved = access.permissions
    if resolved is None:
        raise NotFound("Workspace not found.")
    return MyPermissionsResponse(
        workspace_id=access.workspace_id,
        role=resolved.role,
        permissions=sorted(resolved.permissions, key=lambda p: p.value),
        has_overrides=resolved.has_overrides,
    )


@router.put("/workspaces/{workspace_id}/members/{user_id}/permissions", response_model=MemberResponse)
def set_member_permissions(
    request: Request,
    user_id: str,
    body: PermissionOverrideBody,
    access: WorkspaceAccess = Depends(workspace_guard(CAN_UPDATE_MEMBERS)),
) -> MemberResponse:
    """Replace a member's granted/revoked override lists. Never allowed on yourself."""
    resolver: PermissionResolver = request.app.state.resolver
    resolver.update_overrides(
        user_id,
        access.workspace_id,
        PermissionOverride(granted=list(body.granted), revoked=list(body.revoked)),
        access.user.id,
        ip_address=client_ip(request),
    )
    return _member_or_404(request, user_id, access.workspace_id)


@router.delete("/workspaces/{workspace_id}/members/{user_id}/permissions", status_code=204)
def clear_member_permissions(
    request: Request,
    user_id: str,
    access: WorkspaceAccess = Depends(workspace_guard(CAN_UPDATE_MEMBERS)),
) -> Response:
    resolver: PermissionResolver = request.app.state.resolver
    resolver.clear_overrides(user_id, access.workspace_id, access.user.id, ip_address=client_ip(request))
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _workspace_to_response(workspace: Workspace) -> WorkspaceResponse:
    return WorkspaceResponse(
        id=workspace.id,
        name=workspace.name,
        description=workspace.description,
        owner_id=workspace.owner_id,
        created_at=workspace.created_at,
    )


def _member_or_404(request: Request, user_id: str, workspace_id: str) -> MemberResponse:
    store: WorkspaceStore = request.app.state.workspace_store
    membership = store.get_membership(user_id, workspace_id)
    if membership is None:
        raise NotFound("Member not found.")
    return _member_to_response(request, membership)


def _member_to_response(request: Request, membership: Membership) -> MemberResponse:
    users: CredentialStore = request.app.state.credential_store
    user = users.get_by_id(membership.user_id)
    return MemberResponse.from_membership(
        membership,
        email=user.email if user else None,
        name=user.name if user else None,
    )
