"""
tests/conftest.py -- Shared test fixtures for workgate unit and integration tests.

This module provides:
  - FakeClock / clock: a pinned, advanceable clock injected into every service
  - settings: a Settings instance with fixed, distinct secrets and fast bcrypt
  - *_store fixtures: isolated sqlite:///:memory: stores per test
  - service fixtures (issuer, rotation, tracker, resolver, ...) wired like the app
  - make_user: factory that inserts a user and returns it
  - _make_test_stores() / _patch_lifespan(): wire in-memory stores into app.state
  - api_client: TestClient + a signed-in owner for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API fixture because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. Unit-test fixtures stay on plain :memory: (one thread).

DEBUG and ALLOWED_HOSTS must be set before any api/ import: api/main.py
reads get_settings() at import time for the middleware stack.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before importing api.main (module-level get_settings()).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, configure_services
from auth.credentials import CredentialIssuer, TokenRotationAuthority
from auth.models import User
from auth.sessions import DeviceSessionTracker
from auth.store import CredentialStore
from auth.tokens import hash_password
from auth.verification import EmailVerifier
from core.audit import AuditLog
from core.config import Settings
from workspace.invitations import InvitationService
from workspace.resolver import PermissionResolver
from workspace.service import WorkspaceService
from workspace.store import WorkspaceStore

TEST_PASSWORD = "correct-horse-battery"  # noqa: S105 # nosec B105 -- test fixture

# Computed once: bcrypt at 4 rounds is fast, but the suite creates many users.
_TEST_PASSWORD_HASH = hash_password(TEST_PASSWORD, rounds=4)

# ---------------------------------------------------------------------------
# Clock and settings
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock pinned to a fixed instant; advance() moves it forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": "access-secret-" + "a" * 32,
        "refresh_secret_key": "refresh-secret-" + "b" * 32,
        "invitation_secret_key": "invitation-secret-" + "c" * 32,
        "bcrypt_rounds": 4,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


# ---------------------------------------------------------------------------
# Stores (one fresh in-memory database per test)
# ---------------------------------------------------------------------------


@pytest.fixture
def credential_store() -> Generator[CredentialStore, None, None]:
    store = CredentialStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def workspace_store() -> Generator[WorkspaceStore, None, None]:
    store = WorkspaceStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def audit(clock) -> Generator[AuditLog, None, None]:
    log = AuditLog("sqlite:///:memory:", clock=clock)
    yield log
    log.close()


@pytest.fixture
def make_user(credential_store, clock) -> Callable[..., User]:
    """Factory: make_user("a@example.com") inserts and returns a User."""

    def _make(email: str, name: str | None = None, verified: bool = False) -> User:
        user_id = credential_store.create_user(
            User(
                email=email,
                name=name or email.split("@")[0],
                password_hash=_TEST_PASSWORD_HASH,
                email_verified=verified,
            ),
            clock(),
        )
        return credential_store.get_by_id(user_id)

    return _make


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture
def issuer(credential_store, settings, clock) -> CredentialIssuer:
    return CredentialIssuer(credential_store, settings, clock)


@pytest.fixture
def rotation(credential_store, issuer, clock) -> TokenRotationAuthority:
    return TokenRotationAuthority(credential_store, issuer, clock)


@pytest.fixture
def tracker(credential_store, clock) -> DeviceSessionTracker:
    return DeviceSessionTracker(credential_store, clock)


@pytest.fixture
def verifier(credential_store, settings, clock) -> EmailVerifier:
    return EmailVerifier(credential_store, settings, clock)


@pytest.fixture
def resolver(workspace_store, audit) -> PermissionResolver:
    return PermissionResolver(workspace_store, audit)


@pytest.fixture
def workspace_service(workspace_store, resolver, audit, clock) -> WorkspaceService:
    return WorkspaceService(workspace_store, resolver, audit, clock)


@pytest.fixture
def invitations(workspace_store, credential_store, settings, audit, clock) -> InvitationService:
    return InvitationService(workspace_store, credential_store, settings, audit, clock)


# ---------------------------------------------------------------------------
# API integration
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[CredentialStore, WorkspaceStore, AuditLog]:
    """Create isolated named shared-memory SQLite stores for one test module.

    Args:
        db_suffix: Unique string appended to the DB names so test modules
                   don't share state.
    """
    base = "sqlite:///file:test_{kind}_{suffix}?mode=memory&cache=shared&uri=true"
    return (
        CredentialStore(db_url=base.format(kind="auth", suffix=db_suffix)),
        WorkspaceStore(db_url=base.format(kind="workspace", suffix=db_suffix)),
        AuditLog(db_url=base.format(kind="audit", suffix=db_suffix)),
    )


def _patch_lifespan(settings: Settings, credential_store: CredentialStore, workspace_store: WorkspaceStore, audit: AuditLog):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-created test stores through the same configure_services()
    the real lifespan uses. The reaper is a long-sleeping task so shutdown
    has something real to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        configure_services(app, settings, credential_store, workspace_store, audit)
        app.state.reaper_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.reaper_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, access_token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use isolated in-memory stores. An owner user
    (owner@example.com / TEST_PASSWORD) is created before the client starts
    and signed in once the services exist.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    credential_store, workspace_store, audit = _make_test_stores(suffix)
    settings = make_settings()

    owner_id = credential_store.create_user(
        User(email="owner@example.com", name="Owner", password_hash=_TEST_PASSWORD_HASH),
        datetime.now(timezone.utc),
    )

    app.router.lifespan_context = _patch_lifespan(settings, credential_store, workspace_store, audit)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        pair = app.state.issuer.issue_tokens(owner_id, "owner@example.com")
        yield client, pair.access_token, owner_id

    limiter.enabled = True
    credential_store.close()
    workspace_store.close()
    audit.close()
