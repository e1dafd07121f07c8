"""
auth/verification.py -- Email verification tokens.

A verification token is a short-lived JWT signed with the access-token secret
and tagged type="email-verification", so an access token (which has no type
claim) can never be replayed as a verification token. The token carries the
email it was issued for; if the user's email changed since, it is rejected.

Delivery is out of scope: create_token() returns the token and the API layer
hands it back (or a mailer collaborator sends it).
"""

from __future__ import annotations

import logging

from auth.store import CredentialStore
from auth.tokens import JWTCodec, has_string_claims
from core.clock import Clock, utc_now
from core.config import Settings
from core.errors import BadRequest, NotFound

logger = logging.getLogger("workgate.auth")

_TOKEN_TYPE = "email-verification"


class EmailVerifier:
    def __init__(self, store: CredentialStore, settings: Settings, clock: Clock = utc_now) -> None:
        self.store = store
        self.codec = JWTCodec(settings.secret_key, settings.email_verification_ttl, clock)

    def create_token(self, email: str) -> str:
        user = self.store.get_by_email(email)
        if user is None:
            raise NotFound("User not found.")
        if user.email_verified:
            raise BadRequest("Email is already verified.")
        return self.codec.encode({"userId": user.id, "email": user.email, "type": _TOKEN_TYPE})

    def verify(self, token: str) -> bool:
        """Mark the user's email verified.

        Returns True if this call verified it, False if it already was.
        """
        payload = self.codec.decode(token)
        if (
            payload is None
            or payload.get("type") != _TOKEN_TYPE
            or not has_string_claims(payload, "userId", "email")
        ):
            raise BadRequest("Invalid or expired verification token.")

        user = self.store.get_by_id(payload["userId"])
        if user is None:
            raise NotFound("User not found.")
        if user.email != payload["email"]:
            raise BadRequest("Invalid or expired verification token.")
        if user.email_verified:
            return False
        self.store.set_email_verified(user.id)
        logger.info("Email verified for user %s", user.id)
        return True
