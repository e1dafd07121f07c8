"""
tests/test_permissions.py -- Unit tests for workspace/permissions.py and
workspace/resolver.py (PermissionResolver).

Covers:
  - role tables: admin >= member >= guest containment, admin holds everything
  - resolution: role defaults, then grants, then revokes (revoke wins)
  - only active memberships resolve; pending/suspended/absent -> None
  - override mutation rules: no self-override (even for admins), actor needs
    UPDATE_MEMBERS, target must exist, changes are audited
"""

from __future__ import annotations

import pytest

from core.errors import Forbidden, NotFound
from workspace.models import Membership, PermissionOverride
from workspace.permissions import ROLE_LEVEL, ROLE_PERMISSIONS, MembershipRole, MembershipStatus, WorkspacePermission
from workspace.resolver import PermissionResolver

P = WorkspacePermission


@pytest.fixture
def owner(make_user):
    return make_user("owner@example.com")


@pytest.fixture
def workspace(workspace_service, owner):
    return workspace_service.create_workspace(owner, "Acme")


@pytest.fixture
def add_member(workspace_store, workspace, make_user, clock):
    """add_member("m@example.com", MembershipRole.member) -> user"""

    def _add(email, role=MembershipRole.member, status=MembershipStatus.active, override=None):
        user = make_user(email)
        workspace_store.create_membership(
            Membership(
                user_id=user.id,
                workspace_id=workspace.id,
                role=role,
                status=status,
                permissions_override=override,
            ),
            clock(),
        )
        return user

    return _add


# ---------------------------------------------------------------------------
# Role tables
# ---------------------------------------------------------------------------


class TestRoleTables:
    def test_admin_holds_every_permission(self):
        assert ROLE_PERMISSIONS[MembershipRole.admin] == frozenset(WorkspacePermission)

    def test_containment(self):
        admin = ROLE_PERMISSIONS[MembershipRole.admin]
        member = ROLE_PERMISSIONS[MembershipRole.member]
        guest = ROLE_PERMISSIONS[MembershipRole.guest]
        assert guest <= member <= admin

    def test_every_role_has_a_level(self):
        assert set(ROLE_LEVEL) == set(MembershipRole)
        assert ROLE_LEVEL[MembershipRole.guest] < ROLE_LEVEL[MembershipRole.member] < ROLE_LEVEL[MembershipRole.admin]

    def test_member_cannot_manage_members(self):
        member = ROLE_PERMISSIONS[MembershipRole.member]
        assert P.UPDATE_MEMBERS not in member
        assert P.DELETE_WORKSPACE not in member

    def test_permission_values_are_namespaced(self):
        assert all(p.value.startswith("workspace:") for p in WorkspacePermission)

    def test_static_catalogue(self):
        assert PermissionResolver.get_all_permissions() == list(WorkspacePermission)
        assert PermissionResolver.get_role_permissions("guest") == ROLE_PERMISSIONS[MembershipRole.guest]


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class TestResolution:
    def test_owner_is_active_admin(self, resolver, workspace, owner):
        resolved = resolver.get_user_permissions(owner.id, workspace.id)
        assert resolved.role == MembershipRole.admin
        assert resolved.permissions == frozenset(WorkspacePermission)
        assert resolved.has_overrides is False

    def test_role_defaults_without_override(self, resolver, workspace, add_member):
        guest = add_member("guest@example.com", MembershipRole.guest)
        resolved = resolver.get_user_permissions(guest.id, workspace.id)
        assert resolved.permissions == ROLE_PERMISSIONS[MembershipRole.guest]

    def test_grant_adds_to_role_defaults(self, resolver, workspace, add_member):
        user = add_member("m@example.com", override=PermissionOverride(granted=[P.EXPORT_DATA]))
        resolved = resolver.get_user_permissions(user.id, workspace.id)
        assert resolved.permissions == ROLE_PERMISSIONS[MembershipRole.member] | {P.EXPORT_DATA}
        assert resolved.has_overrides is True

    def test_granting_a_held_permission_is_a_no_op(self, resolver, workspace, add_member):
        user = add_member("m@example.com", override=PermissionOverride(granted=[P.VIEW_ISSUES]))
        resolved = resolver.get_user_permissions(user.id, workspace.id)
        assert resolved.permissions == ROLE_PERMISSIONS[MembershipRole.member]

    def test_revoke_removes_from_role_defaults(self, resolver, workspace, add_member):
        user = add_member("m@example.com", override=PermissionOverride(revoked=[P.CREATE_ISSUES]))
        assert not resolver.has_permission(user.id, workspace.id, P.CREATE_ISSUES)
        assert resolver.has_permission(user.id, workspace.id, P.VIEW_ISSUES)

    def test_revoke_beats_grant(self, resolver, workspace, add_member):
        user = add_member(
            "m@example.com",
            override=PermissionOverride(granted=[P.EXPORT_DATA], revoked=[P.EXPORT_DATA]),
        )
        assert not resolver.has_permission(user.id, workspace.id, P.EXPORT_DATA)

    def test_empty_override_resolves_to_role_defaults(self, resolver, workspace, add_member):
        user = add_member("m@example.com", override=PermissionOverride())
        resolved = resolver.get_user_permissions(user.id, workspace.id)
        assert resolved.permissions == ROLE_PERMISSIONS[MembershipRole.member]

    @pytest.mark.parametrize("status", [MembershipStatus.pending, MembershipStatus.suspended])
    def test_inactive_membership_resolves_to_none(self, resolver, workspace, add_member, status):
        user = add_member("m@example.com", MembershipRole.admin, status=status)
        assert resolver.get_user_permissions(user.id, workspace.id) is None
        assert not resolver.has_permission(user.id, workspace.id, P.VIEW_WORKSPACE)
        assert not resolver.has_minimum_role(user.id, workspace.id, MembershipRole.guest)

    def test_non_member_resolves_to_none(self, resolver, workspace, make_user):
        stranger = make_user("stranger@example.com")
        assert resolver.get_user_permissions(stranger.id, workspace.id) is None
        assert not resolver.has_any_permission(stranger.id, workspace.id, [P.VIEW_WORKSPACE])

    def test_any_and_all(self, resolver, workspace, add_member):
        user = add_member("m@example.com")
        assert resolver.has_any_permission(user.id, workspace.id, [P.DELETE_WORKSPACE, P.VIEW_ISSUES])
        assert not resolver.has_all_permissions(user.id, workspace.id, [P.DELETE_WORKSPACE, P.VIEW_ISSUES])
        assert resolver.has_all_permissions(user.id, workspace.id, [P.VIEW_ISSUES, P.CREATE_ISSUES])

    def test_role_queries(self, resolver, workspace, add_member):
        user = add_member("m@example.com")
        assert resolver.has_role(user.id, workspace.id, MembershipRole.member)
        assert resolver.has_any_role(user.id, workspace.id, [MembershipRole.admin, MembershipRole.member])
        assert resolver.has_minimum_role(user.id, workspace.id, MembershipRole.guest)
        assert resolver.has_minimum_role(user.id, workspace.id, MembershipRole.member)
        assert not resolver.has_minimum_role(user.id, workspace.id, MembershipRole.admin)

    def test_count_active_admins(self, resolver, workspace, add_member):
        add_member("a2@example.com", MembershipRole.admin)
        add_member("a3@example.com", MembershipRole.admin, status=MembershipStatus.suspended)
        assert resolver.count_active_admins(workspace.id) == 2


# ---------------------------------------------------------------------------
# Override mutations
# ---------------------------------------------------------------------------


class TestOverrideMutation:
    def test_admin_grants_to_member(self, resolver, workspace, owner, add_member):
        user = add_member("m@example.com")
        resolver.update_overrides(user.id, workspace.id, PermissionOverride(granted=[P.EXPORT_DATA]), owner.id)
        assert resolver.has_permission(user.id, workspace.id, P.EXPORT_DATA)

    def test_grant_is_monotonic(self, resolver, workspace, owner, add_member):
        user = add_member("m@example.com")
        before = resolver.get_user_permissions(user.id, workspace.id).permissions
        resolver.update_overrides(user.id, workspace.id, PermissionOverride(granted=[P.EXPORT_DATA]), owner.id)
        after = resolver.get_user_permissions(user.id, workspace.id).permissions
        assert before < after

    def test_admin_cannot_override_self(self, resolver, workspace, owner):
        with pytest.raises(Forbidden) as exc_info:
            resolver.update_overrides(owner.id, workspace.id, PermissionOverride(revoked=[P.VIEW_WORKSPACE]), owner.id)
        assert exc_info.value.reason == "self_permission_override"

    def test_member_cannot_escalate_self(self, resolver, workspace, add_member):
        user = add_member("m@example.com")
        with pytest.raises(Forbidden):
            resolver.update_overrides(user.id, workspace.id, PermissionOverride(granted=[P.UPDATE_MEMBERS]), user.id)
        assert not resolver.has_permission(user.id, workspace.id, P.UPDATE_MEMBERS)

    def test_actor_without_update_members_is_forbidden(self, resolver, workspace, add_member):
        actor = add_member("actor@example.com")
        target = add_member("target@example.com")
        with pytest.raises(Forbidden) as exc_info:
            resolver.update_overrides(target.id, workspace.id, PermissionOverride(granted=[P.EXPORT_DATA]), actor.id)
        assert exc_info.value.reason == "missing:workspace:update_members"

    def test_granted_update_members_lets_member_manage_others(self, resolver, workspace, owner, add_member):
        manager = add_member("manager@example.com")
        target = add_member("target@example.com")
        resolver.update_overrides(manager.id, workspace.id, PermissionOverride(granted=[P.UPDATE_MEMBERS]), owner.id)
        resolver.update_overrides(target.id, workspace.id, PermissionOverride(revoked=[P.CREATE_ISSUES]), manager.id)
        assert not resolver.has_permission(target.id, workspace.id, P.CREATE_ISSUES)

    def test_unknown_target_is_not_found(self, resolver, workspace, owner):
        with pytest.raises(NotFound):
            resolver.update_overrides("ghost", workspace.id, PermissionOverride(), owner.id)

    def test_clear_restores_role_defaults(self, resolver, workspace, owner, add_member):
        user = add_member("m@example.com", override=PermissionOverride(revoked=[P.VIEW_ISSUES]))
        resolver.clear_overrides(user.id, workspace.id, owner.id)
        resolved = resolver.get_user_permissions(user.id, workspace.id)
        assert resolved.permissions == ROLE_PERMISSIONS[MembershipRole.member]
        assert resolved.has_overrides is False

    def test_clear_on_self_is_forbidden(self, resolver, workspace, owner):
        with pytest.raises(Forbidden):
            resolver.clear_overrides(owner.id, workspace.id, owner.id)

    def test_mutation_is_audited(self, resolver, workspace, owner, add_member, audit):
        user = add_member("m@example.com")
        resolver.update_overrides(
            user.id, workspace.id, PermissionOverride(granted=[P.EXPORT_DATA]), owner.id, ip_address="10.0.0.1"
        )
        entry = next(e for e in audit.list_for_workspace(workspace.id) if e.action == "permission.override.update")
        assert entry.target_id == user.id
        assert entry.user_id == owner.id
        assert entry.ip_address == "10.0.0.1"
        assert entry.changes["permissions_override"]["before"] is None
        assert entry.changes["permissions_override"]["after"] == {"granted": ["workspace:export_data"], "revoked": []}
