"""
workspace/store.py -- SQLAlchemy Core persistence for workspaces and memberships.

Pattern: Repository + Data Mapper, same shape as auth/store.py.

Tables:
  workspaces              -- tenant roots
  memberships             -- UNIQUE(user_id, workspace_id); permissions_override is JSON
  invitation_redemptions  -- PK token_hash; one row per accepted single-use invitation

The (user_id, workspace_id) constraint is load-bearing: without it two
concurrent invitation acceptances could create duplicate memberships. Callers
rely on IntegrityError from create_membership() / record_redemption() to detect
the losing side of such a race.

Deleting a workspace removes its memberships and redemption markers in the
same transaction. SQLite does not enforce foreign keys by default, so the
cascade is explicit here.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from sqlalchemy import (
    Column,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine

from core.clock import from_iso, to_iso
from workspace.models import Membership, PermissionOverride, Workspace
from workspace.permissions import MembershipRole, MembershipStatus

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'workgate_workspace.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_workspaces = Table(
    "workspaces",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("owner_id", String(36), nullable=False),
    Column("created_at", String(40), nullable=False),
)

_memberships = Table(
    "memberships",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False),
    Column("workspace_id", String(36), nullable=False, index=True),
    Column("role", String(16), nullable=False),
    Column("status", String(16), nullable=False),
    Column("permissions_override", Text),  # JSON {"granted": [...], "revoked": [...]}
    Column("invited_by", String(36)),
    Column("joined_at", String(40)),
    UniqueConstraint("user_id", "workspace_id", name="uq_memberships_user_workspace"),
)

_invitation_redemptions = Table(
    "invitation_redemptions",
    _metadata,
    Column("token_hash", String(64), primary_key=True),  # sha256 hex of the signed token
    Column("workspace_id", String(36), nullable=False, index=True),
    Column("redeemed_by", String(36), nullable=False),
    Column("redeemed_at", String(40), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class WorkspaceStore:
    """Repository for Workspace and Membership entities.

    Usage:
        store = WorkspaceStore()
        ws = store.create_workspace(Workspace(name="Acme", owner_id=user_id), now)
        membership = store.get_membership(user_id, ws.id)
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Connection]:
        with self.engine.begin() as conn:
            yield conn

    @contextmanager
    def _using(self, conn: Connection | None) -> Iterator[Connection]:
        if conn is not None:
            yield conn
        else:
            with self.engine.begin() as own:
                yield own

    # ------------------------------------------------------------------
    # Workspaces
    # ------------------------------------------------------------------

    def create_workspace(self, workspace: Workspace, now: datetime) -> Workspace:
        """Insert a workspace and make its owner an active admin, atomically."""
        workspace_id = workspace.id or _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _workspaces.insert().values(
                    id=workspace_id,
                    name=workspace.name,
                    description=workspace.description,
                    owner_id=workspace.owner_id,
                    created_at=to_iso(now),
                )
            )
            self.create_membership(
                Membership(
                    user_id=workspace.owner_id,
                    workspace_id=workspace_id,
                    role=MembershipRole.admin,
                ),
                now,
                conn=conn,
            )
        return Workspace(
            id=workspace_id,
            name=workspace.name,
            description=workspace.description,
            owner_id=workspace.owner_id,
            created_at=now,
        )

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        with self.engine.connect() as conn:
            row = conn.execute(_workspaces.select().where(_workspaces.c.id == workspace_id)).fetchone()
        return _row_to_workspace(row) if row is not None else None

    def delete_workspace(self, workspace_id: str) -> bool:
        with self.engine.begin() as conn:
            conn.execute(_memberships.delete().where(_memberships.c.workspace_id == workspace_id))
            conn.execute(
                _invitation_redemptions.delete().where(_invitation_redemptions.c.workspace_id == workspace_id)
            )
            result = conn.execute(_workspaces.delete().where(_workspaces.c.id == workspace_id))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Memberships
    # ------------------------------------------------------------------

    def create_membership(self, membership: Membership, now: datetime, conn: Connection | None = None) -> str:
        """Insert a membership. Raises IntegrityError if (user_id, workspace_id) exists."""
        membership_id = membership.id or _new_id()
        override = membership.permissions_override
        with self._using(conn) as c:
            c.execute(
                _memberships.insert().values(
                    id=membership_id,
                    user_id=membership.user_id,
                    workspace_id=membership.workspace_id,
                    role=MembershipRole(membership.role).value,
                    status=MembershipStatus(membership.status).value,
                    permissions_override=json.dumps(override.to_dict()) if override else None,
                    invited_by=membership.invited_by,
                    joined_at=to_iso(now),
                )
            )
        return membership_id

    def get_membership(self, user_id: str, workspace_id: str) -> Membership | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _memberships.select().where(
                    (_memberships.c.user_id == user_id) & (_memberships.c.workspace_id == workspace_id)
                )
            ).fetchone()
        return _row_to_membership(row) if row is not None else None

    def list_members(self, workspace_id: str) -> list[Membership]:
        """Memberships of a workspace in join order."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _memberships.select()
                .where(_memberships.c.workspace_id == workspace_id)
                .order_by(_memberships.c.joined_at)
            ).fetchall()
        return [_row_to_membership(r) for r in rows]

    def update_role(self, user_id: str, workspace_id: str, role: MembershipRole) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _memberships.update()
                .where((_memberships.c.user_id == user_id) & (_memberships.c.workspace_id == workspace_id))
                .values(role=MembershipRole(role).value)
            )
        return result.rowcount > 0

    def update_status(self, user_id: str, workspace_id: str, status: MembershipStatus) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _memberships.update()
                .where((_memberships.c.user_id == user_id) & (_memberships.c.workspace_id == workspace_id))
                .values(status=MembershipStatus(status).value)
            )
        return result.rowcount > 0

    def set_permissions_override(
        self,
        user_id: str,
        workspace_id: str,
        override: PermissionOverride | None,
    ) -> bool:
        """Replace the override wholesale. None (or an empty override) clears it."""
        value = json.dumps(override.to_dict()) if override and not override.is_empty else None
        with self.engine.begin() as conn:
            result = conn.execute(
                _memberships.update()
                .where((_memberships.c.user_id == user_id) & (_memberships.c.workspace_id == workspace_id))
                .values(permissions_override=value)
            )
        return result.rowcount > 0

    def count_active_admins(self, workspace_id: str) -> int:
        with self.engine.connect() as conn:
            count = conn.execute(
                select(func.count())
                .select_from(_memberships)
                .where(
                    (_memberships.c.workspace_id == workspace_id)
                    & (_memberships.c.role == MembershipRole.admin.value)
                    & (_memberships.c.status == MembershipStatus.active.value)
                )
            ).scalar_one()
        return int(count)

    # ------------------------------------------------------------------
    # Invitation redemptions
    # ------------------------------------------------------------------

    def record_redemption(
        self,
        token_hash: str,
        workspace_id: str,
        redeemed_by: str,
        now: datetime,
        conn: Connection | None = None,
    ) -> None:
        """Mark an invitation token as used. Raises IntegrityError if it already was."""
        with self._using(conn) as c:
            c.execute(
                _invitation_redemptions.insert().values(
                    token_hash=token_hash,
                    workspace_id=workspace_id,
                    redeemed_by=redeemed_by,
                    redeemed_at=to_iso(now),
                )
            )

    def is_redeemed(self, token_hash: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_invitation_redemptions.c.token_hash).where(
                    _invitation_redemptions.c.token_hash == token_hash
                )
            ).fetchone()
        return row is not None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers
# ---------------------------------------------------------------------------


def _row_to_workspace(row) -> Workspace:
    return Workspace(
        id=row.id,
        name=row.name,
        description=row.description,
        owner_id=row.owner_id,
        created_at=from_iso(row.created_at),
    )


def _row_to_membership(row) -> Membership:
    return Membership(
        id=row.id,
        user_id=row.user_id,
        workspace_id=row.workspace_id,
        role=MembershipRole(row.role),
        status=MembershipStatus(row.status),
        permissions_override=PermissionOverride.from_dict(
            json.loads(row.permissions_override) if row.permissions_override else None
        ),
        invited_by=row.invited_by,
        joined_at=from_iso(row.joined_at),
    )
