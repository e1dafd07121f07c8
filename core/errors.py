"""
core/errors.py -- Domain exception taxonomy shared by auth/ and workspace/.

Services raise these; api/main.py maps every WorkgateError to the standard
error envelope with the class-level status_code and error_code.

Oracle resistance:
  Unauthorized and Forbidden have a FIXED public message. The specific cause
  (expired vs. reused refresh token, which permission was missing) travels in
  `reason` and is only ever written to server logs. A client cannot learn
  which branch of the credential check rejected it.
"""

from __future__ import annotations


class WorkgateError(Exception):
    """Base class for service-layer errors that map to an HTTP response."""

    status_code: int = 400
    error_code: str = "bad_request"
    public_message: str | None = None

    def __init__(self, message: str = "", *, reason: str | None = None) -> None:
        super().__init__(message or reason or self.error_code)
        self.message = message
        self.reason = reason

    @property
    def client_message(self) -> str:
        """The message that is safe to return to the caller."""
        return self.public_message or self.message or self.error_code


class Unauthorized(WorkgateError):
    """Missing, invalid, expired or reused credential (401)."""

    status_code = 401
    error_code = "unauthorized"
    public_message = "Invalid or expired credentials."


class InvalidRefreshToken(Unauthorized):
    """Refresh token failed signature, shape, storage or rotation checks."""


class RefreshTokenExpired(Unauthorized):
    """Stored refresh token record is past its expiry (row already deleted)."""


class Forbidden(WorkgateError):
    """Authenticated, but the role or permission check failed (403)."""

    status_code = 403
    error_code = "forbidden"
    public_message = "Insufficient permissions."


class NotFound(WorkgateError):
    """Target absent, or present but not owned by the caller (404)."""

    status_code = 404
    error_code = "not_found"


class Conflict(WorkgateError):
    status_code = 409
    error_code = "conflict"


class BadRequest(WorkgateError):
    """Malformed claim shape or a missing path parameter (400)."""

    status_code = 400
    error_code = "bad_request"


class InvalidInvitation(BadRequest):
    error_code = "invalid_invitation"
