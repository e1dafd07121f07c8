"""
tests/test_verification.py -- Unit tests for auth/verification.py (EmailVerifier).
"""

from __future__ import annotations

import pytest

from core.errors import BadRequest, NotFound


@pytest.fixture
def user(make_user):
    return make_user("alice@example.com")


def test_verify_marks_email_verified(verifier, credential_store, user):
    token = verifier.create_token(user.email)
    assert verifier.verify(token) is True
    assert credential_store.get_by_id(user.id).email_verified is True


def test_second_verify_reports_already_verified(verifier, user):
    token = verifier.create_token(user.email)
    verifier.verify(token)
    assert verifier.verify(token) is False


def test_create_for_verified_user_is_bad_request(verifier, make_user):
    verified = make_user("done@example.com", verified=True)
    with pytest.raises(BadRequest):
        verifier.create_token(verified.email)


def test_create_for_unknown_email(verifier):
    with pytest.raises(NotFound):
        verifier.create_token("nobody@example.com")


def test_access_token_is_not_a_verification_token(verifier, issuer, user):
    pair = issuer.issue_tokens(user.id, user.email)
    with pytest.raises(BadRequest):
        verifier.verify(pair.access_token)


def test_expired_token(verifier, settings, clock, user):
    token = verifier.create_token(user.email)
    clock.advance(seconds=settings.email_verification_ttl.total_seconds())
    with pytest.raises(BadRequest):
        verifier.verify(token)


def test_token_for_changed_email_is_rejected(verifier, credential_store, user):
    forged = verifier.codec.encode({"userId": user.id, "email": "old@example.com", "type": "email-verification"})
    with pytest.raises(BadRequest):
        verifier.verify(forged)
    assert credential_store.get_by_id(user.id).email_verified is False
