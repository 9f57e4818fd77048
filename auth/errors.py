"""
auth/errors.py -- Exception taxonomy for the token lifecycle.

Decision errors (the credential is bad) derive from TokenError and carry a
stable `code` the transport layer can put in a response body, the same shape
as the {"code": ..., "message": ...} details used by HTTP collaborators.

Infrastructure errors (the service cannot decide) are NOT wrapped: SQLAlchemy
and redis exceptions propagate from the store unchanged, and key bootstrap
problems surface as KeyInitializationError. The one exception is a duplicate
refresh JTI: every store adapter reports it as DuplicateJTIError so the
service can draw again whichever backend is configured.

Layer rule: stdlib only.
"""

from __future__ import annotations

from typing import Any


class TokenError(Exception):
    """Base class for decisions about a presented credential."""

    code = "token_error"
    default_message = "Token error."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class UnauthorizedError(TokenError):
    """Signature invalid, CSRF mismatch, malformed, or revoked."""

    code = "unauthorized"
    default_message = "Unauthorized."


class ExpiredTokenError(TokenError):
    """Signature valid but the token is past its expiry.

    The codec attaches the decoded claims so renewal can tell an expired
    access token apart from a forged one without a second parse. Callers
    outside auth/ only ever see the bare error.
    """

    code = "expired_token"
    default_message = "The token is expired."

    def __init__(self, message: str | None = None, claims: Any = None) -> None:
        super().__init__(message)
        self.claims = claims


class RefreshTokenNotFoundInDatabaseError(TokenError):
    """The store has no record for the JTI, or records a different subject."""

    code = "refresh_token_not_found"
    default_message = "Refresh token not found in database."


class KeyInitializationError(Exception):
    """Signing key material could not be created, written, or loaded."""


class JTIGenerationError(RuntimeError):
    """Every attempt to draw an unused refresh-token identifier collided."""


class DuplicateJTIError(Exception):
    """The store already holds a refresh record under this JTI."""
