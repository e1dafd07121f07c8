"""
workspace/invitations.py -- Signed, self-contained workspace invitations.

An invitation is a JWT carrying {email, workspaceId, invitedBy, role} signed
with its OWN secret (settings.invitation_secret_key), so neither the access
nor the refresh key can forge one. Nothing is stored when it is created.

Signature validity is necessary but not sufficient. verify() re-resolves the
workspace and the inviter against live storage every time and fails closed if
either is gone: deleting a workspace kills every outstanding invitation to it.

Single use (settings.invitation_single_use, on by default): accept() inserts
sha256(token) into invitation_redemptions in the SAME transaction as the new
membership. A second acceptance of the same token, by anyone, hits the
primary key and is refused with Conflict. With the flag off, one token can
admit several different users until it expires.

The invited email is informational. Acceptance is bound to the accepting
user's identity, not to the address the invitation was sent to.

Failure mapping:
  bad signature / expired / malformed claims  -> InvalidInvitation (400)
  workspace or inviter no longer exists       -> NotFound (404)
  inviter is not an active member             -> Forbidden (403)
  invited role outranks the inviter's role    -> Forbidden (403)
  already a member / token already redeemed   -> Conflict (409)

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError

from auth.store import CredentialStore
from auth.tokens import JWTCodec, has_string_claims
from core.audit import AuditAction, AuditLog, AuditTarget
from core.clock import Clock, utc_now
from core.config import Settings
from core.errors import Conflict, Forbidden, InvalidInvitation, NotFound
from workspace.models import InvitationClaim, InvitationInfo, Membership
from workspace.permissions import ROLE_LEVEL, MembershipRole, MembershipStatus
from workspace.store import WorkspaceStore

logger = logging.getLogger("workgate.workspace")


def invitation_token_hash(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class InvitationService:
    """Usage:
    service = InvitationService(workspace_store, credential_store, settings, audit)
    token, info = service.create(inviter_id, "new@example.com", workspace_id)
    membership = service.accept(token, new_user_id)
    """

    def __init__(
        self,
        workspace_store: WorkspaceStore,
        credential_store: CredentialStore,
        settings: Settings,
        audit: AuditLog | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.workspace_store = workspace_store
        self.credential_store = credential_store
        self.audit = audit
        self.single_use = settings.invitation_single_use
        self.codec = JWTCodec(settings.invitation_secret_key, settings.invitation_ttl, clock)
        self._clock = clock

    def create(
        self,
        inviter_id: str,
        email: str,
        workspace_id: str,
        role: MembershipRole = MembershipRole.member,
        message: str | None = None,
        ip_address: str | None = None,
    ) -> tuple[str, InvitationInfo]:
        """Sign an invitation to `workspace_id`. The inviter must be an active member."""
        role = MembershipRole(role)
        workspace = self.workspace_store.get_workspace(workspace_id)
        if workspace is None:
            raise NotFound("Workspace not found.")

        membership = self.workspace_store.get_membership(inviter_id, workspace_id)
        if membership is None or membership.status != MembershipStatus.active:
            raise Forbidden(reason="inviter_not_active_member")
        # An invitation never confers more than the inviter holds.
        if ROLE_LEVEL[role] > ROLE_LEVEL[membership.role]:
            raise Forbidden(reason=f"invite_role_above_inviter:{role.value}")

        inviter = self.credential_store.get_by_id(inviter_id)
        if inviter is None:
            raise NotFound("Inviter not found.")

        token = self.codec.encode(
            {
                "email": email,
                "workspaceId": workspace_id,
                "invitedBy": inviter_id,
                "role": role.value,
            }
        )
        claim = self._decode(token)

        logger.info("Invitation to workspace %s created by user %s", workspace_id, inviter_id)
        if self.audit is not None:
            self.audit.record(
                AuditAction.WORKSPACE_MEMBER_INVITE,
                AuditTarget.MEMBERSHIP,
                email,
                workspace_id=workspace_id,
                user_id=inviter_id,
                changes={"email": {"after": email}, "role": {"after": role.value}},
                ip_address=ip_address,
            )

        info = InvitationInfo(
            workspace=workspace,
            inviter_id=inviter.id,
            inviter_name=inviter.name,
            inviter_email=inviter.email,
            email=email,
            role=role,
            expires_at=claim.expires_at,
            message=message,
        )
        return token, info

    def verify(self, token: str) -> InvitationInfo:
        """Check the signature, then re-resolve workspace and inviter against storage."""
        claim = self._decode(token)

        workspace = self.workspace_store.get_workspace(claim.workspace_id)
        if workspace is None:
            raise NotFound("Workspace no longer exists.")
        inviter = self.credential_store.get_by_id(claim.invited_by)
        if inviter is None:
            raise NotFound("Inviter no longer exists.")
        if self.single_use and self.workspace_store.is_redeemed(invitation_token_hash(token)):
            raise Conflict("Invitation has already been used.")

        return InvitationInfo(
            workspace=workspace,
            inviter_id=inviter.id,
            inviter_name=inviter.name,
            inviter_email=inviter.email,
            email=claim.email,
            role=claim.role,
            expires_at=claim.expires_at,
        )

    def get_info(self, token: str) -> InvitationInfo:
        """Preview an invitation without accepting it."""
        return self.verify(token)

    def accept(self, token: str, user_id: str, ip_address: str | None = None) -> Membership:
        """Re-verify and create an active membership with the claimed role."""
        info = self.verify(token)
        workspace_id = info.workspace.id

        if self.workspace_store.get_membership(user_id, workspace_id) is not None:
            raise Conflict("You are already a member of this workspace.")

        now = self._clock()
        try:
            with self.workspace_store.transaction() as conn:
                if self.single_use:
                    self.workspace_store.record_redemption(
                        invitation_token_hash(token), workspace_id, user_id, now, conn=conn
                    )
                self.workspace_store.create_membership(
                    Membership(
                        user_id=user_id,
                        workspace_id=workspace_id,
                        role=info.role,
                        invited_by=info.inviter_id,
                    ),
                    now,
                    conn=conn,
                )
        except IntegrityError as exc:
            # Lost a race: either the token was redeemed or the membership was
            # created between verify() and here.
            if self.workspace_store.get_membership(user_id, workspace_id) is not None:
                raise Conflict("You are already a member of this workspace.") from exc
            raise Conflict("Invitation has already been used.") from exc

        logger.info("User %s joined workspace %s as %s", user_id, workspace_id, info.role.value)
        if self.audit is not None:
            self.audit.record(
                AuditAction.WORKSPACE_MEMBER_JOIN,
                AuditTarget.MEMBERSHIP,
                user_id,
                workspace_id=workspace_id,
                user_id=user_id,
                changes={"role": {"after": info.role.value}, "status": {"after": MembershipStatus.active.value}},
                ip_address=ip_address,
            )

        membership = self.workspace_store.get_membership(user_id, workspace_id)
        if membership is None:
            raise NotFound("Member not found.")
        return membership

    def _decode(self, token: str) -> InvitationClaim:
        payload = self.codec.decode(token)
        if payload is None or not has_string_claims(payload, "email", "workspaceId", "invitedBy", "role"):
            raise InvalidInvitation("Invalid or expired invitation token.")
        try:
            role = MembershipRole(payload["role"])
        except ValueError:
            raise InvalidInvitation("Invalid or expired invitation token.") from None
        return InvitationClaim(
            email=payload["email"],
            workspace_id=payload["workspaceId"],
            invited_by=payload["invitedBy"],
            role=role,
            issued_at=datetime.fromtimestamp(payload.get("iat", 0), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
