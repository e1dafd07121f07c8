"""
workspace/resolver.py -- Effective permission computation per (user, workspace).

Evaluation order is fixed:

  1. no ACTIVE membership            -> None (uniform "no access")
  2. base = ROLE_PERMISSIONS[role]
  3. base |= override.granted         (duplicates collapse)
  4. base -= override.revoked         (revocation beats role defaults AND grants)

Pending, suspended and never-invited users all resolve to None so callers
cannot tell them apart.

Resolution performs no writes and is safe for any number of concurrent
readers. The two mutations (update_overrides / clear_overrides) refuse to let
a caller edit their own membership, whatever their role: the override path
must never be usable for self-escalation or self-lockout.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from core.audit import AuditAction, AuditLog, AuditTarget
from core.errors import Forbidden, NotFound
from workspace.models import PermissionOverride, UserWorkspacePermissions
from workspace.permissions import (
    ROLE_LEVEL,
    ROLE_PERMISSIONS,
    MembershipRole,
    MembershipStatus,
    WorkspacePermission,
)
from workspace.store import WorkspaceStore

logger = logging.getLogger("workgate.workspace")


class PermissionResolver:
    def __init__(self, store: WorkspaceStore, audit: AuditLog | None = None) -> None:
        self.store = store
        self.audit = audit

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def get_user_permissions(self, user_id: str, workspace_id: str) -> UserWorkspacePermissions | None:
        membership = self.store.get_membership(user_id, workspace_id)
        if membership is None or membership.status != MembershipStatus.active:
            return None

        permissions = set(ROLE_PERMISSIONS.get(membership.role, frozenset()))
        override = membership.permissions_override
        if override is not None:
            permissions |= set(override.granted)
            permissions -= set(override.revoked)

        return UserWorkspacePermissions(
            role=membership.role,
            permissions=frozenset(permissions),
            has_overrides=override is not None,
        )

    def has_permission(self, user_id: str, workspace_id: str, permission: WorkspacePermission) -> bool:
        resolved = self.get_user_permissions(user_id, workspace_id)
        return resolved is not None and permission in resolved.permissions

    def has_any_permission(
        self, user_id: str, workspace_id: str, permissions: Iterable[WorkspacePermission]
    ) -> bool:
        resolved = self.get_user_permissions(user_id, workspace_id)
        if resolved is None:
            return False
        return any(p in resolved.permissions for p in permissions)

    def has_all_permissions(
        self, user_id: str, workspace_id: str, permissions: Iterable[WorkspacePermission]
    ) -> bool:
        resolved = self.get_user_permissions(user_id, workspace_id)
        if resolved is None:
            return False
        return all(p in resolved.permissions for p in permissions)

    def has_role(self, user_id: str, workspace_id: str, role: MembershipRole) -> bool:
        resolved = self.get_user_permissions(user_id, workspace_id)
        return resolved is not None and resolved.role == role

    def has_any_role(self, user_id: str, workspace_id: str, roles: Iterable[MembershipRole]) -> bool:
        resolved = self.get_user_permissions(user_id, workspace_id)
        return resolved is not None and resolved.role in set(roles)

    def has_minimum_role(self, user_id: str, workspace_id: str, minimum_role: MembershipRole) -> bool:
        resolved = self.get_user_permissions(user_id, workspace_id)
        if resolved is None:
            return False
        return ROLE_LEVEL[resolved.role] >= ROLE_LEVEL[minimum_role]

    def count_active_admins(self, workspace_id: str) -> int:
        """Number of active admins. Role mutations use this to keep at least one."""
        return self.store.count_active_admins(workspace_id)

    # ------------------------------------------------------------------
    # Override mutations
    # ------------------------------------------------------------------

    def update_overrides(
        self,
        user_id: str,
        workspace_id: str,
        override: PermissionOverride,
        acting_user_id: str,
        ip_address: str | None = None,
    ) -> None:
        """Replace a member's override. Caller needs UPDATE_MEMBERS and must not be the target."""
        before = self._check_override_mutation(user_id, workspace_id, acting_user_id)
        self.store.set_permissions_override(user_id, workspace_id, override)
        logger.info(
            "Permission override set for user %s in workspace %s by %s", user_id, workspace_id, acting_user_id
        )
        self._audit(
            AuditAction.PERMISSION_OVERRIDE_UPDATE,
            user_id,
            workspace_id,
            acting_user_id,
            {"permissions_override": {"before": before, "after": override.to_dict()}},
            ip_address,
        )

    def clear_overrides(
        self,
        user_id: str,
        workspace_id: str,
        acting_user_id: str,
        ip_address: str | None = None,
    ) -> None:
        before = self._check_override_mutation(user_id, workspace_id, acting_user_id)
        self.store.set_permissions_override(user_id, workspace_id, None)
        logger.info(
            "Permission override cleared for user %s in workspace %s by %s", user_id, workspace_id, acting_user_id
        )
        self._audit(
            AuditAction.PERMISSION_OVERRIDE_CLEAR,
            user_id,
            workspace_id,
            acting_user_id,
            {"permissions_override": {"before": before, "after": None}},
            ip_address,
        )

    def _check_override_mutation(self, user_id: str, workspace_id: str, acting_user_id: str) -> dict | None:
        if user_id == acting_user_id:
            raise Forbidden(reason="self_permission_override")
        if not self.has_permission(acting_user_id, workspace_id, WorkspacePermission.UPDATE_MEMBERS):
            raise Forbidden(reason="missing:workspace:update_members")
        target = self.store.get_membership(user_id, workspace_id)
        if target is None:
            raise NotFound("Member not found.")
        return target.permissions_override.to_dict() if target.permissions_override else None

    def _audit(self, action, user_id, workspace_id, acting_user_id, changes, ip_address) -> None:
        if self.audit is None:
            return
        self.audit.record(
            action,
            AuditTarget.PERMISSION,
            user_id,
            workspace_id=workspace_id,
            user_id=acting_user_id,
            changes=changes,
            ip_address=ip_address,
        )

    # ------------------------------------------------------------------
    # Static catalogue
    # ------------------------------------------------------------------

    @staticmethod
    def get_all_permissions() -> list[WorkspacePermission]:
        return list(WorkspacePermission)

    @staticmethod
    def get_role_permissions(role: MembershipRole) -> frozenset[WorkspacePermission]:
        return ROLE_PERMISSIONS.get(MembershipRole(role), frozenset())
