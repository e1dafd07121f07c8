"""
tests/test_config.py -- Unit tests for core/config.py.

Covers:
  - parse_duration(): supported units, whitespace, rejected inputs
  - Settings: TTL strings parsed once into timedelta
  - Secret policy: generated in debug, required in production, >= 32 chars,
    pairwise distinct
"""

from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from core.config import Settings, parse_duration

_A = "a" * 40
_B = "b" * 40
_C = "c" * 40


class TestParseDuration:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("30s", timedelta(seconds=30)),
            ("15m", timedelta(minutes=15)),
            ("24h", timedelta(hours=24)),
            ("7d", timedelta(days=7)),
            (" 7d ", timedelta(days=7)),
        ],
    )
    def test_valid(self, raw, expected):
        assert parse_duration(raw) == expected

    @pytest.mark.parametrize("raw", ["", "7", "d", "7w", "-1d", "1.5h", "0m", "15 minutes"])
    def test_invalid_raises(self, raw):
        with pytest.raises(ValueError):
            parse_duration(raw)


class TestSettings:
    def test_ttl_strings_become_timedeltas(self):
        settings = Settings(
            secret_key=_A,
            refresh_secret_key=_B,
            invitation_secret_key=_C,
            access_token_ttl="5m",
            refresh_token_ttl="30d",
        )
        assert settings.access_token_ttl == timedelta(minutes=5)
        assert settings.refresh_token_ttl == timedelta(days=30)
        assert settings.invitation_ttl == timedelta(days=7)

    def test_malformed_ttl_fails_at_construction(self):
        with pytest.raises(ValidationError):
            Settings(secret_key=_A, refresh_secret_key=_B, invitation_secret_key=_C, access_token_ttl="fifteen")

    def test_debug_generates_missing_secrets(self):
        settings = Settings(debug=True)
        secrets = {settings.secret_key, settings.refresh_secret_key, settings.invitation_secret_key}
        assert len(secrets) == 3
        assert all(len(s) >= 32 for s in secrets)

    def test_production_requires_secrets(self, monkeypatch):
        for name in ("SECRET_KEY", "REFRESH_SECRET_KEY", "INVITATION_SECRET_KEY"):
            monkeypatch.delenv(name, raising=False)
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            Settings(debug=False, _env_file=None)

    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError, match="at least 32"):
            Settings(secret_key="short", refresh_secret_key=_B, invitation_secret_key=_C)

    def test_shared_secrets_rejected(self):
        with pytest.raises(ValidationError, match="must all differ"):
            Settings(secret_key=_A, refresh_secret_key=_A, invitation_secret_key=_C)

    def test_invitation_secret_must_differ_from_access_secret(self):
        with pytest.raises(ValidationError, match="must all differ"):
            Settings(secret_key=_A, refresh_secret_key=_B, invitation_secret_key=_A)

    def test_bcrypt_rounds_bounds(self):
        with pytest.raises(ValidationError):
            Settings(debug=True, bcrypt_rounds=3)

    def test_single_use_invitations_default_on(self):
        assert Settings(debug=True).invitation_single_use is True
