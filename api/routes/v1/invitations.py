"""
api/routes/v1/invitations.py -- Workspace invitation routes.

Routes:
  POST /workspaces/{workspace_id}/invitations  -- sign an invitation   [INVITE_MEMBERS]
  GET  /invitations/{token}                    -- preview (public)
  POST /invitations/accept                     -- join the workspace (requires auth)

The preview is public so an invitee can see where they are going before
signing up. It reveals only what the token holder was meant to see: the
workspace name, who invited them and the offered role.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import (
    InvitationAccept,
    InvitationCreate,
    InvitationCreatedResponse,
    InvitationInfoResponse,
    MemberResponse,
)
from auth.dependencies import client_ip, get_current_user
from auth.models import User
from workspace.guard import CAN_INVITE_MEMBERS, WorkspaceAccess, workspace_guard
from workspace.invitations import InvitationService

router = APIRouter()


@router.post(
    "/workspaces/{workspace_id}/invitations",
    response_model=InvitationCreatedResponse,
    status_code=201,
)
def create_invitation(
    request: Request,
    body: InvitationCreate,
    access: WorkspaceAccess = Depends(workspace_guard(CAN_INVITE_MEMBERS)),
) -> InvitationCreatedResponse:
    """Sign an invitation token. Delivery to the invitee is the caller's job."""
    service: InvitationService = request.app.state.invitations
    token, info = service.create(
        access.user.id,
        body.email,
        access.workspace_id,
        role=body.role,
        message=body.message,
        ip_address=client_ip(request),
    )
    preview = InvitationInfoResponse.from_info(info)
    return InvitationCreatedResponse(token=token, **preview.model_dump())


@router.get("/invitations/{token}", response_model=InvitationInfoResponse)
def get_invitation(request: Request, token: str) -> InvitationInfoResponse:
    service: InvitationService = request.app.state.invitations
    return InvitationInfoResponse.from_info(service.get_info(token))


@router.post("/invitations/accept", response_model=MemberResponse, status_code=201)
def accept_invitation(
    request: Request,
    body: InvitationAccept,
    current_user: User = Depends(get_current_user),
) -> MemberResponse:
    service: InvitationService = request.app.state.invitations
    membership = service.accept(body.token, current_user.id, ip_address=client_ip(request))
    return MemberResponse.from_membership(membership, email=current_user.email, name=current_user.name)
