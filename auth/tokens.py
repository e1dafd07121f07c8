"""
auth/tokens.py -- JWT codec, password hashing and login verification.

Security design decisions:
  JWT: python-jose with HS256. One JWTCodec per token class, each holding its
       OWN secret and lifetime: access tokens, refresh tokens and invitation
       tokens never share a key, so a leaked access key cannot mint refresh
       tokens or forge invitations. decode() returns None on any failure --
       the service layer turns that into the right domain error.

       Expiry is checked against the injected clock, not time.time(), and the
       boundary is inclusive: a token whose exp equals "now" is expired.
       python-jose's own exp check is disabled so there is exactly one clock.

  Passwords: bcrypt used directly (no passlib wrapper). dummy_hash(rounds)
       enables timing equalization in authenticate_user() so response
       time does not reveal whether an email is registered [C1].

Layer rule: no imports from api/ or workspace/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from functools import lru_cache
from typing import TYPE_CHECKING, Any

import bcrypt
from jose import JWTError, jwt

from core.clock import Clock, utc_now

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import CredentialStore

logger = logging.getLogger("workgate.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer
    caps password length well below that (Pydantic max_length).
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


@lru_cache(maxsize=4)
def dummy_hash(rounds: int = 12) -> str:
    """Timing equalization hash [C1], built with the same cost as real hashes.

    bcrypt time scales with the cost factor, so the dummy must use the
    configured rounds. The app warms this at startup so the first unknown-email
    login is not slower than later ones.
    """
    return hash_password("workgate_timing_dummy", rounds)


def authenticate_user(store: CredentialStore, email: str, password: str, rounds: int = 12) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against dummy_hash(rounds) (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, dummy_hash(rounds))
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


class JWTCodec:
    """Sign and verify one class of JWT with a dedicated secret and lifetime.

    Usage:
        access = JWTCodec(settings.secret_key, settings.access_token_ttl)
        token = access.encode({"sub": user.id, "email": user.email})
        payload = access.decode(token)   # dict, or None if invalid/expired
    """

    def __init__(self, secret: str, ttl: timedelta, clock: Clock = utc_now) -> None:
        if not secret:
            raise ValueError("JWTCodec requires a non-empty secret.")
        self._secret = secret
        self.ttl = ttl
        self._clock = clock

    def encode(self, claims: dict[str, Any], ttl: timedelta | None = None) -> str:
        """Sign `claims` with iat/exp derived from the injected clock.

        Caller-supplied iat/exp are overwritten: lifetime is a property of the
        codec (or the explicit ttl argument), never of the payload.
        """
        now = self._clock()
        payload = dict(claims)
        payload["iat"] = int(now.timestamp())
        payload["exp"] = int((now + (ttl or self.ttl)).timestamp())
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM)

    def decode(self, token: str) -> dict[str, Any] | None:
        """Verify signature and expiry. Returns the payload dict or None.

        Returning None (rather than raising) keeps callers simple: any invalid
        token is treated the same. Callers decide the domain error.
        """
        if not token or not isinstance(token, str):
            return None
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTError:
            return None
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            return None
        if exp <= self._clock().timestamp():
            return None
        return payload


def has_string_claims(payload: dict[str, Any], *names: str) -> bool:
    """True when every named claim is present and a non-empty str.

    A correctly signed token with the wrong shape is still rejected.
    """
    return all(isinstance(payload.get(name), str) and payload.get(name) for name in names)
