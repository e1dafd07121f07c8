"""
core/audit.py -- Append-only audit trail for security-relevant actions.

Pattern: Repository over a single SQLAlchemy Core table. Records are only
ever inserted; nothing in workgate updates or deletes them.

Failure policy: auditing is a side effect, never the point of a request.
record() catches SQLAlchemyError, logs a warning, and returns False so a
broken audit table cannot fail a login, a refresh or an invitation.

Layer rule: core/ is the kernel -- no imports from api/, auth/, or workspace/.
"""

from __future__ import annotations

import json
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from core.clock import Clock, to_iso, utc_now

logger = logging.getLogger("workgate.audit")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'workgate_audit.db'}"


class AuditAction(str, Enum):
    USER_LOGIN = "user.login"
    USER_LOGOUT = "user.logout"
    USER_SIGNUP = "user.signup"
    USER_EMAIL_VERIFY = "user.email.verify"

    WORKSPACE_CREATE = "workspace.create"
    WORKSPACE_DELETE = "workspace.delete"
    WORKSPACE_MEMBER_INVITE = "workspace.member.invite"
    WORKSPACE_MEMBER_JOIN = "workspace.member.join"
    WORKSPACE_MEMBER_ROLE_UPDATE = "workspace.member.role.update"

    PERMISSION_OVERRIDE_UPDATE = "permission.override.update"
    PERMISSION_OVERRIDE_CLEAR = "permission.override.clear"

    SECURITY_LOGIN_FAILED = "security.login.failed"
    SECURITY_TOKEN_REFRESH = "security.token.refresh"
    SECURITY_SESSION_TERMINATE = "security.session.terminate"


class AuditTarget(str, Enum):
    USER = "user"
    WORKSPACE = "workspace"
    MEMBERSHIP = "membership"
    PERMISSION = "permission"
    SESSION = "session"


@dataclass
class AuditEntry:
    action: str
    target_type: str
    target_id: str
    id: str = ""
    workspace_id: str | None = None
    user_id: str | None = None
    changes: dict = field(default_factory=dict)
    ip_address: str | None = None
    created_at: str = ""


_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("workspace_id", String(36), index=True),  # NULL for user-level actions
    Column("user_id", String(36), index=True),  # NULL for system actions
    Column("action", String(64), nullable=False),
    Column("target_type", String(32), nullable=False),
    Column("target_id", String(255), nullable=False),
    Column("changes", Text),  # JSON {"field": {"before": ..., "after": ...}}
    Column("ip_address", String(45)),
    Column("created_at", String(40), nullable=False),
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


class AuditLog:
    """Usage:
    audit = AuditLog()
    audit.record(AuditAction.USER_LOGIN, AuditTarget.USER, user.id, user_id=user.id)
    entries = audit.list_for_workspace(workspace_id)
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, clock: Clock = utc_now) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._clock = clock

    def record(
        self,
        action: AuditAction,
        target_type: AuditTarget,
        target_id: str,
        *,
        workspace_id: str | None = None,
        user_id: str | None = None,
        changes: dict | None = None,
        ip_address: str | None = None,
    ) -> bool:
        """Insert one audit entry. Returns False (and logs) instead of raising."""
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _audit_logs.insert().values(
                        id=str(uuid.uuid4()),
                        workspace_id=workspace_id,
                        user_id=user_id,
                        action=AuditAction(action).value,
                        target_type=AuditTarget(target_type).value,
                        target_id=target_id,
                        changes=json.dumps(changes) if changes else None,
                        ip_address=ip_address,
                        created_at=to_iso(self._clock()),
                    )
                )
        except SQLAlchemyError:
            logger.warning("Failed to write audit entry %s for target %s", action, target_id, exc_info=True)
            return False
        return True

    def list_for_workspace(self, workspace_id: str, limit: int = 50, offset: int = 0) -> list[AuditEntry]:
        """Newest-first page of a workspace's audit trail."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit_logs.select()
                .where(_audit_logs.c.workspace_id == workspace_id)
                .order_by(_audit_logs.c.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def list_for_user(self, user_id: str, limit: int = 50) -> list[AuditEntry]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _audit_logs.select()
                .where(_audit_logs.c.user_id == user_id)
                .order_by(_audit_logs.c.created_at.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        workspace_id=row.workspace_id,
        user_id=row.user_id,
        action=row.action,
        target_type=row.target_type,
        target_id=row.target_id,
        changes=json.loads(row.changes) if row.changes else {},
        ip_address=row.ip_address,
        created_at=row.created_at,
    )
