"""
auth/models.py -- Domain dataclasses for the token lifecycle.

Pattern: Data class (pure data container, zero logic). The codec owns the
mapping to and from JWT payloads; stores own the mapping to rows and keys.

Timestamps are integer Unix seconds (UTC), the same unit as the JWT `exp`
claim, so no conversion happens between a claim set and its durable record.

Layer rule: stdlib only.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple


@dataclass(frozen=True)
class AccessClaims:
    """Claims carried by a short-lived access token.

    csrf is a copy of the session's CSRF secret; renewal compares it against
    the secret the client presents. role and tenant are carried opaquely.
    """

    subject: str
    role: str
    tenant: str
    csrf: str
    expires_at: int


@dataclass(frozen=True)
class RefreshClaims:
    """Claims carried by a refresh token. jti is the revocation-store key."""

    csrf: str
    jti: str
    subject: str
    expires_at: int


@dataclass(frozen=True)
class RefreshRecord:
    """Durable proof that a refresh token was issued and not yet consumed."""

    jti: str
    subject: str


@dataclass(frozen=True)
class BlockedRecord:
    """An access token revoked before its natural expiry."""

    subject: str
    token: str
    expires_at: int


class IssuedTokens(NamedTuple):
    access_token: str
    refresh_token: str
    csrf_secret: str
    expires_at: int


class RenewedTokens(NamedTuple):
    access_token: str
    refresh_token: str
    csrf_secret: str
    expires_at: int
    subject: str
