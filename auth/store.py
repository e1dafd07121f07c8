"""
auth/store.py -- SQLAlchemy Core persistence layer for identity and credentials.

Pattern: Repository + Data Mapper. CredentialStore is the repository;
_row_to_user / _row_to_refresh_token / _row_to_session are the mappers.
Service code never touches SQL directly.

Tables:
  users            -- identities (email unique)
  refresh_tokens   -- one row per issued refresh token, linked by replaced_by
  device_sessions  -- UNIQUE(user_id, device_token)

Transactions:
  Every write method accepts an optional `conn`. Without one it opens and
  commits its own transaction; with one it joins the caller's transaction,
  so multi-step operations (reserve id -> sign -> write token -> revoke
  parent) commit or roll back as a unit. Never call a store method WITHOUT
  conn while holding a transaction() on the same store: with SQLite that
  either deadlocks or, on :memory: databases, shares the connection.

Compare-and-swap [R1]:
  mark_rotated() and revoke_refresh_token() only touch rows WHERE revoked_at
  IS NULL and report the rowcount. Two racing rotations of the same token can
  both read the row as live, but only one UPDATE can match; the loser sees
  rowcount 0. Correctness is pushed to the database, no in-process locks.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or workspace/.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import DeviceSession, DeviceType, RefreshTokenRecord, User
from core.clock import from_iso, to_iso

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'workgate_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("name", String(255), nullable=False),
    Column("password_hash", Text, nullable=False),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
    Column("last_login", String(40)),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False, index=True),
    # "" while provisional. Not UNIQUE: two concurrent issuances may both
    # hold a provisional "" row for the length of their transaction.
    Column("token", Text, nullable=False),
    Column("issued_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("revoked_at", String(40)),
    Column("replaced_by", Text),  # child token string once rotated
    Index("ix_refresh_tokens_token", "token"),
)

_device_sessions = Table(
    "device_sessions",
    _metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36), nullable=False),
    Column("device_token", String(64), nullable=False),
    Column("device_type", String(16), nullable=False),
    Column("device_name", String(255)),
    Column("user_agent", Text),
    Column("ip_address", String(45), nullable=False),
    Column("location", String(255)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(40), nullable=False),
    Column("last_active", String(40), nullable=False),
    Column("expires_at", String(40)),
    UniqueConstraint("user_id", "device_token", name="uq_device_sessions_user_device"),
)

# Columns a caller may change on an existing device session.
_SESSION_MUTABLE = {"device_type", "device_name", "user_agent", "ip_address", "location", "expires_at"}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for User, RefreshTokenRecord and DeviceSession entities.

    Usage:
        store = CredentialStore()
        user_id = store.create_user(User(email="a@example.com", name="A", password_hash=...), now)
        with store.transaction() as conn:
            record = store.create_refresh_token(user_id, now, expires_at, conn=conn)
            store.set_refresh_token_string(record.id, signed, conn=conn)
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
        """Open a transaction that commits on clean exit and rolls back on error."""
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
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User, now: datetime) -> str:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email is already taken.
        The signup route turns that into 409.
        """
        user_id = user.id or _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=user.email,
                    name=user.name,
                    password_hash=user.password_hash,
                    email_verified=1 if user.email_verified else 0,
                    created_at=to_iso(now),
                )
            )
        return user_id

    def get_by_email(self, email: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_email_verified(self, user_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(email_verified=1))
        return result.rowcount > 0

    def update_last_login(self, user_id: str, now: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=to_iso(now)))

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def create_refresh_token(
        self,
        user_id: str,
        issued_at: datetime,
        expires_at: datetime,
        conn: Connection | None = None,
    ) -> RefreshTokenRecord:
        """Insert a provisional record (token="") to reserve a stable id."""
        record = RefreshTokenRecord(
            id=_new_id(),
            user_id=user_id,
            token="",
            issued_at=issued_at,
            expires_at=expires_at,
        )
        with self._using(conn) as c:
            c.execute(
                _refresh_tokens.insert().values(
                    id=record.id,
                    user_id=user_id,
                    token="",
                    issued_at=to_iso(issued_at),
                    expires_at=to_iso(expires_at),
                )
            )
        return record

    def set_refresh_token_string(self, record_id: str, token: str, conn: Connection | None = None) -> None:
        """Close the provisional state by writing the signed token string."""
        with self._using(conn) as c:
            c.execute(_refresh_tokens.update().where(_refresh_tokens.c.id == record_id).values(token=token))

    def get_refresh_token(self, token: str) -> tuple[RefreshTokenRecord, User] | None:
        """Look up a record by its literal token string, joined with its owner.

        Returns None when no row stores this exact string or when the owning
        user no longer exists. The provisional "" is never a valid lookup key.
        """
        if not token:
            return None
        stmt = (
            select(_refresh_tokens, _users.c.email, _users.c.name, _users.c.password_hash)
            .add_columns(
                _users.c.email_verified,
                _users.c.created_at.label("user_created_at"),
                _users.c.last_login,
            )
            .join(_users, _users.c.id == _refresh_tokens.c.user_id)
            .where(_refresh_tokens.c.token == token)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        if row is None:
            return None
        user = User(
            id=row.user_id,
            email=row.email,
            name=row.name,
            password_hash=row.password_hash,
            email_verified=bool(row.email_verified),
            created_at=row.user_created_at,
            last_login=row.last_login,
        )
        return _row_to_refresh_token(row), user

    def get_refresh_token_by_id(self, record_id: str) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.id == record_id)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def delete_refresh_token(self, record_id: str, conn: Connection | None = None) -> bool:
        with self._using(conn) as c:
            result = c.execute(_refresh_tokens.delete().where(_refresh_tokens.c.id == record_id))
        return result.rowcount > 0

    def mark_rotated(
        self,
        record_id: str,
        replaced_by: str,
        now: datetime,
        conn: Connection | None = None,
    ) -> bool:
        """Revoke a record and link it to its child -- only if still unrevoked [R1].

        Returns True when this call won the swap, False when another rotation
        (or a revoke) got there first.
        """
        with self._using(conn) as c:
            result = c.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == record_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=to_iso(now), replaced_by=replaced_by)
            )
        return result.rowcount == 1

    def revoke_refresh_token(self, record_id: str, now: datetime) -> bool:
        """Set revoked_at on one unrevoked record. Idempotent: False if already revoked or absent."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.id == record_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=to_iso(now))
            )
        return result.rowcount > 0

    def revoke_all_refresh_tokens(self, user_id: str, now: datetime) -> int:
        """Revoke every live record for a user. Returns the number revoked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.user_id == user_id) & (_refresh_tokens.c.revoked_at.is_(None)))
                .values(revoked_at=to_iso(now))
            )
        return result.rowcount

    def delete_dead_refresh_tokens(self, now: datetime) -> int:
        """Delete records that are expired or revoked. Safe to run concurrently."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.delete().where(
                    (_refresh_tokens.c.expires_at <= to_iso(now)) | (_refresh_tokens.c.revoked_at.is_not(None))
                )
            )
        return result.rowcount

    def list_refresh_tokens(self, user_id: str) -> list[RefreshTokenRecord]:
        """All records for a user, oldest first. Used for audits and tests."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _refresh_tokens.select()
                .where(_refresh_tokens.c.user_id == user_id)
                .order_by(_refresh_tokens.c.issued_at)
            ).fetchall()
        return [_row_to_refresh_token(r) for r in rows]

    def follow_chain(self, token: str) -> list[RefreshTokenRecord]:
        """Walk replaced_by pointers starting at `token`. Stops at the live tip
        or at a record the reaper already deleted."""
        chain: list[RefreshTokenRecord] = []
        seen: set[str] = set()
        current: str | None = token
        with self.engine.connect() as conn:
            while current and current not in seen:
                seen.add(current)
                row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token == current)).fetchone()
                if row is None:
                    break
                record = _row_to_refresh_token(row)
                chain.append(record)
                current = record.replaced_by
        return chain

    # ------------------------------------------------------------------
    # Device sessions
    # ------------------------------------------------------------------

    def get_session_by_device(self, user_id: str, device_token: str) -> DeviceSession | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _device_sessions.select().where(
                    (_device_sessions.c.user_id == user_id) & (_device_sessions.c.device_token == device_token)
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_session(self, session_id: str, user_id: str) -> DeviceSession | None:
        """Ownership-scoped lookup: another user's session id returns None."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _device_sessions.select().where(
                    (_device_sessions.c.id == session_id) & (_device_sessions.c.user_id == user_id)
                )
            ).fetchone()
        return _row_to_session(row) if row is not None else None

    def insert_session(self, session: DeviceSession, now: datetime) -> str:
        """Insert an active session. Raises IntegrityError on (user_id, device_token) collision."""
        session_id = session.id or _new_id()
        with self.engine.begin() as conn:
            conn.execute(
                _device_sessions.insert().values(
                    id=session_id,
                    user_id=session.user_id,
                    device_token=session.device_token,
                    device_type=DeviceType(session.device_type).value,
                    device_name=session.device_name,
                    user_agent=session.user_agent,
                    ip_address=session.ip_address,
                    location=session.location,
                    is_active=1,
                    created_at=to_iso(now),
                    last_active=to_iso(now),
                    expires_at=to_iso(session.expires_at) if session.expires_at else None,
                )
            )
        return session_id

    def reactivate_session(self, session_id: str, now: datetime, **fields) -> bool:
        """Mark a session active, stamp last_active and apply attribute changes.

        Only keys in _SESSION_MUTABLE are accepted; None values are skipped so
        a refresh without a device name does not erase the stored one.
        """
        values = _session_values(fields)
        values.update(is_active=1, last_active=to_iso(now))
        with self.engine.begin() as conn:
            result = conn.execute(_device_sessions.update().where(_device_sessions.c.id == session_id).values(**values))
        return result.rowcount > 0

    def update_session(self, session_id: str, user_id: str, **fields) -> bool:
        """Change attributes of a session the caller owns. No activity stamp."""
        values = _session_values(fields)
        if not values:
            return self.get_session(session_id, user_id) is not None
        with self.engine.begin() as conn:
            result = conn.execute(
                _device_sessions.update()
                .where((_device_sessions.c.id == session_id) & (_device_sessions.c.user_id == user_id))
                .values(**values)
            )
        return result.rowcount > 0

    def touch_session(self, user_id: str, device_token: str, now: datetime) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _device_sessions.update()
                .where((_device_sessions.c.user_id == user_id) & (_device_sessions.c.device_token == device_token))
                .values(last_active=to_iso(now))
            )
        return result.rowcount

    def list_sessions(self, user_id: str, active_only: bool = False) -> list[DeviceSession]:
        """Sessions for a user, most recently active first."""
        stmt = _device_sessions.select().where(_device_sessions.c.user_id == user_id)
        if active_only:
            stmt = stmt.where(_device_sessions.c.is_active == 1)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt.order_by(_device_sessions.c.last_active.desc())).fetchall()
        return [_row_to_session(r) for r in rows]

    def deactivate_session(self, session_id: str, user_id: str) -> bool:
        """Set is_active=0. user_id is part of the WHERE clause [IDOR guard]."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _device_sessions.update()
                .where((_device_sessions.c.id == session_id) & (_device_sessions.c.user_id == user_id))
                .values(is_active=0)
            )
        return result.rowcount > 0

    def deactivate_device(self, user_id: str, device_token: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _device_sessions.update()
                .where((_device_sessions.c.user_id == user_id) & (_device_sessions.c.device_token == device_token))
                .values(is_active=0)
            )
        return result.rowcount > 0

    def deactivate_all_sessions(self, user_id: str, except_device_token: str | None = None) -> int:
        stmt = _device_sessions.update().where(
            (_device_sessions.c.user_id == user_id) & (_device_sessions.c.is_active == 1)
        )
        if except_device_token is not None:
            stmt = stmt.where(_device_sessions.c.device_token != except_device_token)
        with self.engine.begin() as conn:
            result = conn.execute(stmt.values(is_active=0))
        return result.rowcount

    def delete_session(self, session_id: str, user_id: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                _device_sessions.delete().where(
                    (_device_sessions.c.id == session_id) & (_device_sessions.c.user_id == user_id)
                )
            )
        return result.rowcount > 0

    def delete_inactive_sessions(self, user_id: str) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _device_sessions.delete().where(
                    (_device_sessions.c.user_id == user_id) & (_device_sessions.c.is_active == 0)
                )
            )
        return result.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        """Sweep rows whose expires_at has passed. Rows without expiry are kept."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _device_sessions.delete().where(
                    _device_sessions.c.expires_at.is_not(None) & (_device_sessions.c.expires_at < to_iso(now))
                )
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _session_values(fields: dict) -> dict:
    unknown = set(fields) - _SESSION_MUTABLE
    if unknown:
        raise ValueError(f"Unknown device session fields: {unknown!r}")
    values: dict = {}
    for key, value in fields.items():
        if value is None:
            continue
        if key == "device_type":
            value = DeviceType(value).value
        elif key == "expires_at":
            value = to_iso(value)
        values[key] = value
    return values


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        email_verified=bool(row.email_verified),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_refresh_token(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row.id,
        user_id=row.user_id,
        token=row.token,
        issued_at=from_iso(row.issued_at),
        expires_at=from_iso(row.expires_at),
        revoked_at=from_iso(row.revoked_at),
        replaced_by=row.replaced_by,
    )


def _row_to_session(row) -> DeviceSession:
    return DeviceSession(
        id=row.id,
        user_id=row.user_id,
        device_token=row.device_token,
        device_type=DeviceType(row.device_type),
        device_name=row.device_name,
        user_agent=row.user_agent,
        ip_address=row.ip_address,
        location=row.location,
        is_active=bool(row.is_active),
        created_at=from_iso(row.created_at),
        last_active=from_iso(row.last_active),
        expires_at=from_iso(row.expires_at),
    )
