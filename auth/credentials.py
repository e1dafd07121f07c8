"""
auth/credentials.py -- Credential issuer and refresh-token rotation authority.

CredentialIssuer.issue_tokens() mints an access/refresh pair bound to one
refresh_tokens row:

  1. insert a provisional record (token="") to reserve a stable id
  2. sign the access token  {sub, email}            with the access secret
     sign the refresh token {sub, email, tokenId}   with the refresh secret
  3. write the signed refresh string back into the record

Each call starts a new rotation chain. Steps 1-3 run in one transaction.

TokenRotationAuthority.rotate() redeems a refresh token exactly once. Every
step is a hard gate, in this order:

  1. signature + exp against the refresh secret       -> InvalidRefreshToken
  2. payload carries string sub, email, tokenId        -> InvalidRefreshToken
  3. row found by the LITERAL token string, unrevoked  -> InvalidRefreshToken
     (a correctly signed but already-consumed token dies here: replay
     prevention rests on stored state, not on the signature)
  4. row.expires_at <= now: delete row                 -> RefreshTokenExpired
  5. row.id == payload tokenId                         -> InvalidRefreshToken
  6. mint the child pair and compare-and-swap the parent to
     revoked_at=now, replaced_by=<child refresh string>, same transaction.
     Losing the swap rolls the child back             -> InvalidRefreshToken

Both failure classes subclass Unauthorized, so the HTTP layer answers with
one generic 401; the specific reason is only logged.

Layer rule: no imports from api/ or workspace/.
"""

from __future__ import annotations

import logging

from sqlalchemy.engine import Connection

from auth.models import TokenPair
from auth.store import CredentialStore
from auth.tokens import JWTCodec, has_string_claims
from core.clock import Clock, utc_now
from core.config import Settings
from core.errors import InvalidRefreshToken, RefreshTokenExpired

logger = logging.getLogger("workgate.auth")


class CredentialIssuer:
    def __init__(self, store: CredentialStore, settings: Settings, clock: Clock = utc_now) -> None:
        self.store = store
        self._clock = clock
        self.access_codec = JWTCodec(settings.secret_key, settings.access_token_ttl, clock)
        self.refresh_codec = JWTCodec(settings.refresh_secret_key, settings.refresh_token_ttl, clock)

    def issue_tokens(self, user_id: str, email: str, conn: Connection | None = None) -> TokenPair:
        """Mint a new access/refresh pair and persist its refresh record.

        Pass `conn` to join an outer transaction (rotation does); otherwise
        the issuance commits on its own.
        """
        if conn is None:
            with self.store.transaction() as own:
                return self.issue_tokens(user_id, email, conn=own)

        now = self._clock()
        record = self.store.create_refresh_token(user_id, now, now + self.refresh_codec.ttl, conn=conn)
        access_token = self.access_codec.encode({"sub": user_id, "email": email})
        refresh_token = self.refresh_codec.encode({"sub": user_id, "email": email, "tokenId": record.id})
        self.store.set_refresh_token_string(record.id, refresh_token, conn=conn)
        return TokenPair(access_token=access_token, refresh_token=refresh_token)

    def decode_access_token(self, token: str) -> dict | None:
        """Verified access-token payload with string sub/email, or None."""
        payload = self.access_codec.decode(token)
        if payload is None or not has_string_claims(payload, "sub", "email"):
            return None
        return payload


class TokenRotationAuthority:
    """Verifies, rotates and revokes refresh tokens.

    Usage:
        authority = TokenRotationAuthority(store, issuer)
        pair = authority.rotate(presented_refresh_token)
        authority.revoke_all(user_id)
    """

    def __init__(self, store: CredentialStore, issuer: CredentialIssuer, clock: Clock = utc_now) -> None:
        self.store = store
        self.issuer = issuer
        self._clock = clock

    def verify_refresh_token(self, token: str) -> dict:
        """Gates 1 and 2: signature/exp and payload shape. Returns the payload."""
        payload = self.issuer.refresh_codec.decode(token)
        if payload is None:
            raise InvalidRefreshToken(reason="signature")
        if not has_string_claims(payload, "sub", "email", "tokenId"):
            raise InvalidRefreshToken(reason="malformed")
        return payload

    def rotate(self, presented: str) -> TokenPair:
        """Redeem a refresh token for a new pair. See module docstring for the gates."""
        payload = self.verify_refresh_token(presented)

        found = self.store.get_refresh_token(presented)
        if found is None:
            raise InvalidRefreshToken(reason="unknown")
        record, user = found
        if record.is_revoked:
            # Signature is fine but the token was already consumed: replay.
            logger.warning("Refresh token reuse detected for user %s (record %s)", record.user_id, record.id)
            raise InvalidRefreshToken(reason="reused")

        now = self._clock()
        # The JWT exp and the stored expiry are minted from the same instant, so a
        # naturally expired token is already refused at the signature gate and its
        # row is left for reap_expired(). This branch catches rows whose stored
        # expiry was shortened after issue.
        if record.expires_at <= now:
            self.store.delete_refresh_token(record.id)
            raise RefreshTokenExpired(reason="expired")

        if record.id != payload["tokenId"]:
            raise InvalidRefreshToken(reason="token_id_mismatch")

        with self.store.transaction() as conn:
            pair = self.issuer.issue_tokens(payload["sub"], payload["email"], conn=conn)
            if not self.store.mark_rotated(record.id, pair.refresh_token, now, conn=conn):
                # Lost the race to a concurrent rotation; raising rolls back the child.
                logger.warning("Concurrent rotation lost for record %s (user %s)", record.id, user.id)
                raise InvalidRefreshToken(reason="reused")
        return pair

    def revoke(self, token_id: str) -> bool:
        """Revoke one refresh record by id (logout). False if absent or already revoked."""
        return self.store.revoke_refresh_token(token_id, self._clock())

    def revoke_all(self, user_id: str) -> int:
        """Revoke every live refresh record for a user (logout-all, remote sign-out)."""
        count = self.store.revoke_all_refresh_tokens(user_id, self._clock())
        logger.info("Revoked %d refresh tokens for user %s", count, user_id)
        return count

    def reap_expired(self) -> int:
        """Delete expired-or-revoked records. Pure garbage collection.

        This is what removes naturally expired tokens: rotate() refuses them on
        the JWT exp before it ever reads the stored row.
        """
        return self.store.delete_dead_refresh_tokens(self._clock())
