"""
auth/codec.py -- Sign and parse the two claim shapes with python-jose.

One codec per key variant. decode() is called with algorithms=[<the variant's
algorithm>] only, so a token whose header names any other algorithm (an
HS256 token shown to an RS256 instance, an RS256 token shown to an HMAC
instance, alg=none) fails inside jose and surfaces as UnauthorizedError.

Expiry is checked here rather than inside jose so it can run against the
injected clock. jose still verifies the signature and claim types first; an
expired token is therefore always a correctly signed one, and the resulting
ExpiredTokenError carries its claims.

Layer rule: may import from auth.errors, auth.keys, auth.models only.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from jose import JWTError, jwt

from auth.errors import ExpiredTokenError, UnauthorizedError
from auth.keys import KeyMaterial
from auth.models import AccessClaims, RefreshClaims

logger = logging.getLogger("sessionguard.codec")

ACCESS_TYPE = "access"
REFRESH_TYPE = "refresh"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenCodec:
    """Encode/decode AccessClaims and RefreshClaims under one key variant."""

    def __init__(self, key: KeyMaterial, clock: Clock = utc_now) -> None:
        self.key = key
        self._clock = clock

    @property
    def algorithm(self) -> str:
        return self.key.algorithm

    def now(self) -> int:
        return int(self._clock().timestamp())

    # ------------------------------------------------------------------
    # Signing
    # ------------------------------------------------------------------

    def sign_access(self, claims: AccessClaims) -> str:
        return self._encode(
            {
                "sub": claims.subject,
                "role": claims.role,
                "tenant": claims.tenant,
                "csrf": claims.csrf,
                "exp": claims.expires_at,
                "type": ACCESS_TYPE,
            }
        )

    def sign_refresh(self, claims: RefreshClaims) -> str:
        return self._encode(
            {
                "sub": claims.subject,
                "jti": claims.jti,
                "csrf": claims.csrf,
                "exp": claims.expires_at,
                "type": REFRESH_TYPE,
            }
        )

    def _encode(self, payload: dict) -> str:
        return jwt.encode(payload, self.key.signing_key, algorithm=self.key.algorithm)

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse_access(self, token: str) -> AccessClaims:
        """Return verified access claims.

        Raises UnauthorizedError for anything but a well-formed, correctly
        signed access token, and ExpiredTokenError (claims attached) for one
        whose exp has passed.
        """
        payload = self._decode(token, ACCESS_TYPE)
        claims = AccessClaims(
            subject=_str_claim(payload, "sub"),
            role=_str_claim(payload, "role", allow_empty=True),
            tenant=_str_claim(payload, "tenant", allow_empty=True),
            csrf=_str_claim(payload, "csrf"),
            expires_at=_exp_claim(payload),
        )
        self._check_expiry(claims.expires_at, claims)
        return claims

    def parse_refresh(self, token: str) -> RefreshClaims:
        """Return verified refresh claims. Same error contract as parse_access()."""
        payload = self._decode(token, REFRESH_TYPE)
        claims = RefreshClaims(
            csrf=_str_claim(payload, "csrf"),
            jti=_str_claim(payload, "jti"),
            subject=_str_claim(payload, "sub"),
            expires_at=_exp_claim(payload),
        )
        self._check_expiry(claims.expires_at, claims)
        return claims

    def is_expired(self, expires_at: int) -> bool:
        return expires_at <= self.now()

    def _decode(self, token: str, expected_type: str) -> dict:
        if not token:
            raise UnauthorizedError("Empty token.")
        try:
            payload = jwt.decode(
                token,
                self.key.verification_key,
                algorithms=[self.key.algorithm],
                options={"verify_exp": False, "verify_aud": False},
            )
        except JWTError as e:
            logger.debug("Rejected %s token: %s", expected_type, e)
            raise UnauthorizedError() from e
        if payload.get("type") != expected_type:
            raise UnauthorizedError(f"Expected {expected_type} token.")
        return payload

    def _check_expiry(self, expires_at: int, claims) -> None:
        if self.is_expired(expires_at):
            raise ExpiredTokenError(claims=claims)


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _str_claim(payload: dict, name: str, allow_empty: bool = False) -> str:
    value = payload.get(name)
    if not isinstance(value, str) or (not value and not allow_empty):
        raise UnauthorizedError(f"Missing or invalid '{name}' claim.")
    return value


def _exp_claim(payload: dict) -> int:
    value = payload.get("exp")
    # bool is an int subclass; a literal true/false exp is malformed.
    if isinstance(value, bool) or not isinstance(value, int):
        raise UnauthorizedError("Missing or invalid 'exp' claim.")
    return value
