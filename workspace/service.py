"""
workspace/service.py -- Workspace lifecycle and member role changes.

This is the collaborator that mutates roles, so it owns the last-admin rule:
a change that would leave a workspace without an active admin is refused
with Conflict. The admin count comes from PermissionResolver so the rule and
the resolution logic read the same membership state.

Lifecycle methods trust the route's workspace_guard(). Role changes re-check
the actor like the override mutations do: only an active admin holding
UPDATE_MEMBERS may change roles, and never their own.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.models import User
from core.audit import AuditAction, AuditLog, AuditTarget
from core.clock import Clock, utc_now
from core.errors import Conflict, Forbidden, NotFound
from workspace.models import Membership, Workspace
from workspace.permissions import MembershipRole, MembershipStatus, WorkspacePermission
from workspace.resolver import PermissionResolver
from workspace.store import WorkspaceStore

logger = logging.getLogger("workgate.workspace")


class WorkspaceService:
    def __init__(
        self,
        store: WorkspaceStore,
        resolver: PermissionResolver,
        audit: AuditLog,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.audit = audit
        self._clock = clock

    def create_workspace(
        self,
        owner: User,
        name: str,
        description: str | None = None,
        ip_address: str | None = None,
    ) -> Workspace:
        """Create a workspace; the owner becomes its first active admin."""
        workspace = self.store.create_workspace(
            Workspace(name=name, description=description, owner_id=owner.id),
            self._clock(),
        )
        logger.info("Workspace %s created by user %s", workspace.id, owner.id)
        self.audit.record(
            AuditAction.WORKSPACE_CREATE,
            AuditTarget.WORKSPACE,
            workspace.id,
            workspace_id=workspace.id,
            user_id=owner.id,
            changes={"name": {"after": name}},
            ip_address=ip_address,
        )
        return workspace

    def get_workspace(self, workspace_id: str) -> Workspace:
        workspace = self.store.get_workspace(workspace_id)
        if workspace is None:
            raise NotFound("Workspace not found.")
        return workspace

    def delete_workspace(self, workspace_id: str, acting_user_id: str, ip_address: str | None = None) -> None:
        """Delete a workspace and every membership in it."""
        workspace = self.get_workspace(workspace_id)
        self.store.delete_workspace(workspace_id)
        logger.info("Workspace %s deleted by user %s", workspace_id, acting_user_id)
        self.audit.record(
            AuditAction.WORKSPACE_DELETE,
            AuditTarget.WORKSPACE,
            workspace_id,
            workspace_id=workspace_id,
            user_id=acting_user_id,
            changes={"name": {"before": workspace.name}},
            ip_address=ip_address,
        )

    def list_members(self, workspace_id: str) -> list[Membership]:
        return self.store.list_members(workspace_id)

    def update_member_role(
        self,
        workspace_id: str,
        user_id: str,
        role: MembershipRole,
        acting_user_id: str,
        ip_address: str | None = None,
    ) -> Membership:
        """Change another member's role, keeping at least one active admin."""
        role = MembershipRole(role)
        if user_id == acting_user_id:
            raise Forbidden(reason="self_role_change")
        actor = self.resolver.get_user_permissions(acting_user_id, workspace_id)
        if actor is None or actor.role != MembershipRole.admin:
            raise Forbidden(reason="role_change_requires_admin")
        if WorkspacePermission.UPDATE_MEMBERS not in actor.permissions:
            raise Forbidden(reason="missing:workspace:update_members")

        membership = self.store.get_membership(user_id, workspace_id)
        if membership is None:
            raise NotFound("Member not found.")
        if membership.role == role:
            return membership

        demoting_active_admin = (
            membership.role == MembershipRole.admin and membership.status == MembershipStatus.active
        )
        if demoting_active_admin and self.resolver.count_active_admins(workspace_id) <= 1:
            raise Conflict("A workspace must keep at least one active admin.")

        self.store.update_role(user_id, workspace_id, role)
        logger.info(
            "Role of user %s in workspace %s changed %s -> %s by %s",
            user_id,
            workspace_id,
            membership.role.value,
            role.value,
            acting_user_id,
        )
        self.audit.record(
            AuditAction.WORKSPACE_MEMBER_ROLE_UPDATE,
            AuditTarget.MEMBERSHIP,
            user_id,
            workspace_id=workspace_id,
            user_id=acting_user_id,
            changes={"role": {"before": membership.role.value, "after": role.value}},
            ip_address=ip_address,
        )
        updated = self.store.get_membership(user_id, workspace_id)
        if updated is None:
            raise NotFound("Member not found.")
        return updated
