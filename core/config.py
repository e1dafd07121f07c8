"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for workgate happen here. No module should call
os.getenv() or os.environ.get() directly. The app builds one Settings instance
(get_settings()) and hands it to every service constructor -- services never
import get_settings() themselves, so tests can inject a Settings object with
pinned secrets and lifetimes.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  @field_validator(mode="before"): token lifetimes are written as short
      duration strings ("15m", "7d") in the environment and parsed ONCE here
      into datetime.timedelta. Nothing downstream re-parses a duration string.

  @model_validator(mode="after"): cross-field secret policy. Dev mode
      generates missing secrets with a warning, production refuses to start.

Security notes:
  [M6] Every secret shorter than 32 chars is rejected outright.

  [M7] In production mode (DEBUG not set or false), a missing secret is a hard
       startup failure.

  [S1] The access, refresh and invitation secrets must be pairwise distinct.
       A leaked access-token key must not let an attacker mint refresh tokens
       or forge workspace invitations.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or workspace/.
"""

import logging
import re
import secrets
from datetime import timedelta
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("workgate.config")

_DURATION_RE = re.compile(r"^\s*(\d+)\s*([smhd])\s*$")

_UNIT_SECONDS: dict[str, int] = {
    "s": 1,
    "m": 60,
    "h": 60 * 60,
    "d": 24 * 60 * 60,
}


def parse_duration(value: str) -> timedelta:
    """Parse a duration string such as "15m" or "7d" into a timedelta.

    Supported units: s (seconds), m (minutes), h (hours), d (days). The value
    must be a positive integer. Anything else raises ValueError -- a typo in a
    token lifetime should stop the process at startup, not silently fall back
    to some default.
    """
    match = _DURATION_RE.match(value)
    if match is None:
        raise ValueError(f"Invalid duration {value!r}: expected <int><s|m|h|d>, e.g. '15m' or '7d'.")
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError(f"Invalid duration {value!r}: must be greater than zero.")
    return timedelta(seconds=amount * _UNIT_SECONDS[match.group(2)])


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (with DEBUG=true). The validators
    enforce production-safety rules at startup.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `refresh_secret_key` reads from REFRESH_SECRET_KEY.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False

    # ------------------------------------------------------------------
    # Signing secrets -- empty string is the "not configured" sentinel
    # ------------------------------------------------------------------

    secret_key: str = ""  # access tokens + email verification tokens
    refresh_secret_key: str = ""
    invitation_secret_key: str = ""

    # ------------------------------------------------------------------
    # Lifetimes (parsed once from "15m"-style strings)
    # ------------------------------------------------------------------

    access_token_ttl: timedelta = timedelta(minutes=15)
    refresh_token_ttl: timedelta = timedelta(days=7)
    invitation_ttl: timedelta = timedelta(days=7)
    email_verification_ttl: timedelta = timedelta(hours=24)
    reaper_interval: timedelta = timedelta(hours=6)

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    self_registration_enabled: bool = True
    # When true, an invitation token can create exactly one membership.
    invitation_single_use: bool = True

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    refresh_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # HTTP (JSON lists in the environment, e.g. ALLOWED_HOSTS='["api.example.com"]')
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator(
        "access_token_ttl",
        "refresh_token_ttl",
        "invitation_ttl",
        "email_verification_ttl",
        "reaper_interval",
        mode="before",
    )
    @classmethod
    def parse_ttl(cls, value):
        """Accept "15m"-style strings in addition to native timedelta values."""
        if isinstance(value, str):
            return parse_duration(value)
        return value

    @field_validator("bcrypt_rounds")
    @classmethod
    def check_bcrypt_rounds(cls, value: int) -> int:
        # bcrypt.gensalt() only accepts 4..31
        if not 4 <= value <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return value

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret policy [M6] [M7] [S1].

        Dev mode (DEBUG=true): each missing secret is generated with a warning.
            Tokens will not survive a restart -- acceptable for local dev.

        Production mode: refuse to start when any secret is missing.
        """
        for field_name in ("secret_key", "refresh_secret_key", "invitation_secret_key"):
            value = getattr(self, field_name)
            if not value:
                if not self.debug:
                    raise ValueError(
                        f"{field_name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
                value = secrets.token_hex(32)
                setattr(self, field_name, value)
                logger.warning("Using auto-generated %s. Tokens will not persist across restarts.", field_name.upper())
            if len(value) < 32:
                raise ValueError(f"{field_name.upper()} must be at least 32 characters.")

        distinct = {self.secret_key, self.refresh_secret_key, self.invitation_secret_key}
        if len(distinct) != 3:
            raise ValueError("SECRET_KEY, REFRESH_SECRET_KEY and INVITATION_SECRET_KEY must all differ.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Only the application assembly (api/main.py lifespan) should call this.
    Services receive the instance through their constructor.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
