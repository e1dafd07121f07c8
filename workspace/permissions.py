"""
workspace/permissions.py -- Permission vocabulary and role defaults.

ROLE_PERMISSIONS is a closed table: each role's set is authored on its own.
admin >= member >= guest holds by convention, not by construction, which is
why tests/test_permissions.py asserts the containment explicitly. Editing one
row without the others will trip that test.

ROLE_LEVEL backs hasMinimumRole: guest(0) < member(1) < admin(2).
"""

from __future__ import annotations

from enum import Enum


class WorkspacePermission(str, Enum):
    # Workspace management
    VIEW_WORKSPACE = "workspace:view"
    UPDATE_WORKSPACE = "workspace:update"
    DELETE_WORKSPACE = "workspace:delete"

    # Member management
    VIEW_MEMBERS = "workspace:view_members"
    INVITE_MEMBERS = "workspace:invite_members"
    UPDATE_MEMBERS = "workspace:update_members"
    REMOVE_MEMBERS = "workspace:remove_members"

    # Projects
    VIEW_PROJECTS = "workspace:view_projects"
    CREATE_PROJECTS = "workspace:create_projects"
    UPDATE_PROJECTS = "workspace:update_projects"
    DELETE_PROJECTS = "workspace:delete_projects"

    # Issues
    VIEW_ISSUES = "workspace:view_issues"
    CREATE_ISSUES = "workspace:create_issues"
    UPDATE_ISSUES = "workspace:update_issues"
    DELETE_ISSUES = "workspace:delete_issues"
    ASSIGN_ISSUES = "workspace:assign_issues"

    # Comments
    VIEW_COMMENTS = "workspace:view_comments"
    CREATE_COMMENTS = "workspace:create_comments"
    UPDATE_COMMENTS = "workspace:update_comments"
    DELETE_COMMENTS = "workspace:delete_comments"

    # Labels
    VIEW_LABELS = "workspace:view_labels"
    CREATE_LABELS = "workspace:create_labels"
    UPDATE_LABELS = "workspace:update_labels"
    DELETE_LABELS = "workspace:delete_labels"

    # Cycles
    VIEW_CYCLES = "workspace:view_cycles"
    CREATE_CYCLES = "workspace:create_cycles"
    UPDATE_CYCLES = "workspace:update_cycles"
    DELETE_CYCLES = "workspace:delete_cycles"

    # Integrations
    VIEW_INTEGRATIONS = "workspace:view_integrations"
    MANAGE_INTEGRATIONS = "workspace:manage_integrations"

    # Automations
    VIEW_AUTOMATIONS = "workspace:view_automations"
    CREATE_AUTOMATIONS = "workspace:create_automations"
    UPDATE_AUTOMATIONS = "workspace:update_automations"
    DELETE_AUTOMATIONS = "workspace:delete_automations"

    # Analytics and reporting
    VIEW_ANALYTICS = "workspace:view_analytics"
    EXPORT_DATA = "workspace:export_data"

    # Files
    UPLOAD_FILES = "workspace:upload_files"
    DELETE_FILES = "workspace:delete_files"


class MembershipRole(str, Enum):
    admin = "admin"
    member = "member"
    guest = "guest"


class MembershipStatus(str, Enum):
    active = "active"
    pending = "pending"
    suspended = "suspended"


ROLE_LEVEL: dict[MembershipRole, int] = {
    MembershipRole.guest: 0,
    MembershipRole.member: 1,
    MembershipRole.admin: 2,
}

_P = WorkspacePermission

ROLE_PERMISSIONS: dict[MembershipRole, frozenset[WorkspacePermission]] = {
    # Full access to everything
    MembershipRole.admin: frozenset(WorkspacePermission),
    MembershipRole.member: frozenset(
        {
            _P.VIEW_WORKSPACE,
            _P.VIEW_MEMBERS,
            _P.VIEW_PROJECTS,
            _P.CREATE_PROJECTS,
            _P.UPDATE_PROJECTS,
            _P.VIEW_ISSUES,
            _P.CREATE_ISSUES,
            _P.UPDATE_ISSUES,
            _P.ASSIGN_ISSUES,
            _P.VIEW_COMMENTS,
            _P.CREATE_COMMENTS,
            _P.UPDATE_COMMENTS,
            _P.VIEW_LABELS,
            _P.CREATE_LABELS,
            _P.UPDATE_LABELS,
            _P.VIEW_CYCLES,
            _P.CREATE_CYCLES,
            _P.UPDATE_CYCLES,
            _P.VIEW_INTEGRATIONS,
            _P.VIEW_AUTOMATIONS,
            _P.CREATE_AUTOMATIONS,
            _P.UPDATE_AUTOMATIONS,
            _P.VIEW_ANALYTICS,
            _P.UPLOAD_FILES,
        }
    ),
    # Limited read-only access (plus commenting)
    MembershipRole.guest: frozenset(
        {
            _P.VIEW_WORKSPACE,
            _P.VIEW_MEMBERS,
            _P.VIEW_PROJECTS,
            _P.VIEW_ISSUES,
            _P.VIEW_COMMENTS,
            _P.CREATE_COMMENTS,
            _P.VIEW_LABELS,
            _P.VIEW_CYCLES,
            _P.VIEW_INTEGRATIONS,
            _P.VIEW_AUTOMATIONS,
        }
    ),
}
