"""
auth/models.py -- Domain dataclasses for identity and credential entities.

Pattern: Data class (pure data container, zero logic). Stores and services do
the work; these only own the domain shape.

Layer rule: no imports from api/ or workspace/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class DeviceType(str, Enum):
    ios = "ios"
    android = "android"
    web = "web"


@dataclass
class User:
    """An identity known to workgate.

    email is unique and doubles as the login name. This core never deletes a
    user -- profile CRUD belongs to the users collaborator.
    """

    email: str
    name: str
    password_hash: str
    id: str = ""
    email_verified: bool = False
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class RefreshTokenRecord:
    """One row per issued refresh token.

    token starts as "" (provisional) while the row exists only to reserve an
    id for the tokenId claim, and is overwritten with the signed string before
    the issuing transaction commits.

    Rotation sets revoked_at and stores the child's token string in
    replaced_by. Following replaced_by from a login's first record walks the
    whole rotation chain.
    """

    id: str
    user_id: str
    token: str
    issued_at: datetime
    expires_at: datetime
    revoked_at: datetime | None = None
    replaced_by: str | None = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str


@dataclass
class DeviceSession:
    """A user-visible record of a client connection.

    Advisory state only: sessions never gate authorization. device_token is a
    best-effort fingerprint (see auth/sessions.derive_device_fingerprint), not
    a credential.
    """

    user_id: str
    device_token: str
    device_type: DeviceType
    ip_address: str
    id: str = ""
    device_name: str | None = None
    user_agent: str | None = None
    location: str | None = None
    is_active: bool = True
    created_at: datetime | None = None
    last_active: datetime | None = None
    expires_at: datetime | None = None
