"""
auth/tokens.py -- Token lifecycle: issue, verify, renew, revoke.

TokenService is the one object callers depend on. It owns:
  - a TokenCodec (signing/parsing under one fixed key variant)
  - a RevocationStore (durable source of truth)
  - a RevocationCache (in-process mirror, hydrated at construction)

Ordering discipline:
  Every mutation writes the store first and the cache second. A crash in
  between leaves a durable record the cache does not know about yet; the
  next reload() picks it up. The cache never holds an entry the store lacks.

Hot path:
  verify_token() reads only the cache. Issuance, rotation and revocation
  talk to the store synchronously.

Concurrency:
  The cache locks internally. Refresh-record mutations for one JTI are also
  serialized through a striped lock, so two renewals presenting the same
  refresh token cannot both rotate it: the second finds the JTI gone and
  gets UnauthorizedError. reload() and prune_blocked_tokens() rebuild the
  cache inside RevocationCache.rebuilding(), so a revocation or issuance
  that lands while the store snapshot is read is not lost.

Renewal state machine (renew_token):
  1. no CSRF secret                      -> Unauthorized
  2. parse access token (expiry deferred)
  3. CSRF secret != access claims' csrf  -> Unauthorized
  4. access still valid                  -> rotate refresh JTI only; access
                                            token and CSRF returned unchanged
  5. access expired                      -> check refresh token:
       bad signature / malformed         -> Unauthorized
       JTI not in cache (revoked)        -> Unauthorized
       refresh expired                   -> revoke it, Unauthorized
       otherwise                         -> new CSRF, new access token,
                                            rotated refresh bound to new CSRF
  6. any other access-token failure      -> Unauthorized

Secrets (CSRF, JTI): secrets.token_urlsafe(32), i.e. 32 random bytes as
URL-safe base64.

Layer rule: no imports from main. Import from core/ and cache/ is allowed.
"""

from __future__ import annotations

import hmac
import logging
import secrets
import threading
from collections.abc import Sequence
from datetime import timedelta

from jose import jwt

from auth.codec import Clock, TokenCodec, utc_now
from auth.errors import (
    DuplicateJTIError,
    ExpiredTokenError,
    JTIGenerationError,
    RefreshTokenNotFoundInDatabaseError,
    TokenError,
    UnauthorizedError,
)
from auth.keys import KeyMaterial, key_material_from_settings
from auth.models import AccessClaims, BlockedRecord, IssuedTokens, RefreshClaims, RenewedTokens
from auth.redis_store import RedisRevocationStore
from auth.store import RevocationStore, SQLRevocationStore
from cache.store import RevocationCache

logger = logging.getLogger("sessionguard.auth")

_BEARER_PREFIX = "Bearer "
_SECRET_BYTES = 32
_LOCK_STRIPES = 64

DEFAULT_SCOPED_CHANNELS: tuple[str, ...] = ("personal:broadcast",)


def _random_secret() -> str:
    return secrets.token_urlsafe(_SECRET_BYTES)


def _strip_scheme(token: str) -> str:
    if token.startswith(_BEARER_PREFIX):
        return token[len(_BEARER_PREFIX) :].strip()
    return token.strip()


def _same_secret(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def _short(jti: str) -> str:
    return jti[:8]


# ---------------------------------------------------------------------------
# Channel-scoped tokens
# ---------------------------------------------------------------------------


def generate_scoped_token(
    subject: str,
    secret_key: str,
    channels: Sequence[str] = DEFAULT_SCOPED_CHANNELS,
    expires_in: timedelta | None = None,
    clock: Clock = utc_now,
) -> str:
    """Mint an HS256 token authorizing subject on a fixed set of pub/sub channels.

    Signed with secret_key, which is shared with the real-time server and
    independent of the TokenService signing key. Stateless: nothing is
    stored and the token cannot be revoked, only left to expire.

    Without expires_in the token carries no exp claim.
    """
    if not subject:
        raise ValueError("subject is required.")
    if not secret_key:
        raise ValueError("A scoped-token secret is required.")
    payload: dict = {"sub": subject, "channels": list(channels)}
    if expires_in is not None:
        payload["exp"] = int((clock() + expires_in).timestamp())
    return jwt.encode(payload, secret_key, algorithm="HS256")


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class TokenService:
    """Issuer, verifier and rotator for access/refresh token pairs.

    Construction loads every refresh record and blocked token from the store
    into the cache. A store error there propagates: a service that cannot
    see revocations must not accept traffic.
    """

    def __init__(
        self,
        key: KeyMaterial,
        store: RevocationStore,
        access_token_lifetime: timedelta,
        refresh_token_lifetime: timedelta,
        *,
        cache: RevocationCache | None = None,
        clock: Clock = utc_now,
        max_jti_attempts: int = 5,
        scoped_secret: str = "",
        scoped_channels: Sequence[str] = DEFAULT_SCOPED_CHANNELS,
    ) -> None:
        if access_token_lifetime <= timedelta(0):
            raise ValueError("access_token_lifetime must be positive.")
        if access_token_lifetime >= refresh_token_lifetime:
            raise ValueError("access_token_lifetime must be shorter than refresh_token_lifetime.")
        if max_jti_attempts < 1:
            raise ValueError("max_jti_attempts must be at least 1.")

        self.codec = TokenCodec(key, clock)
        self.store = store
        self.cache = cache if cache is not None else RevocationCache()
        self._clock = clock
        self._access_seconds = int(access_token_lifetime.total_seconds())
        self._refresh_seconds = int(refresh_token_lifetime.total_seconds())
        self._max_jti_attempts = max_jti_attempts
        self._scoped_secret = scoped_secret
        self._scoped_channels = tuple(scoped_channels)
        self._locks = [threading.Lock() for _ in range(_LOCK_STRIPES)]

        self.reload()

    @classmethod
    def from_settings(cls, settings, store: RevocationStore | None = None) -> "TokenService":
        """Build a service from Settings. Bootstraps RSA keys when RS256 is selected."""
        return cls(
            key_material_from_settings(settings),
            store if store is not None else build_store(settings),
            access_token_lifetime=timedelta(seconds=settings.access_token_expire_seconds),
            refresh_token_lifetime=timedelta(seconds=settings.refresh_token_expire_seconds),
            max_jti_attempts=settings.jti_max_attempts,
            scoped_secret=settings.scoped_token_secret,
            scoped_channels=settings.scoped_token_channels,
        )

    @property
    def algorithm(self) -> str:
        return self.codec.algorithm

    def reload(self) -> None:
        """Rebuild the cache from the store.

        Safe to call while other threads issue or revoke: mutations that land
        during the snapshot read are replayed on top of it.
        """
        with self.cache.rebuilding():
            refresh_records = self.store.find_all_refresh_tokens()
            blocked_tokens = self.store.find_all_blocked_tokens()
            self.cache.load(refresh_records, blocked_tokens)
        logger.info(
            "Revocation cache hydrated: %d refresh tokens, %d blocked tokens",
            len(refresh_records),
            len(blocked_tokens),
        )

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def generate_token(self, subject: str, role: str, tenant: str) -> IssuedTokens:
        """Issue an access token, a refresh token and the CSRF secret binding them.

        The refresh record is stored before anything is signed; a store
        failure aborts the whole issuance and propagates unchanged.
        """
        if not subject:
            raise ValueError("subject is required.")
        csrf_secret = _random_secret()
        refresh_token = self._create_refresh_token(subject, csrf_secret)
        access_token, expires_at = self._create_access_token(subject, role, tenant, csrf_secret)
        logger.debug("Issued token pair for subject %s", subject)
        return IssuedTokens(access_token, refresh_token, csrf_secret, expires_at)

    def _create_access_token(self, subject: str, role: str, tenant: str, csrf_secret: str) -> tuple[str, int]:
        expires_at = self.codec.now() + self._access_seconds
        claims = AccessClaims(subject=subject, role=role, tenant=tenant, csrf=csrf_secret, expires_at=expires_at)
        return self.codec.sign_access(claims), expires_at

    def _create_refresh_token(self, subject: str, csrf_secret: str) -> str:
        jti = self._store_refresh_record(subject)
        claims = RefreshClaims(
            csrf=csrf_secret,
            jti=jti,
            subject=subject,
            expires_at=self.codec.now() + self._refresh_seconds,
        )
        return self.codec.sign_refresh(claims)

    def _store_refresh_record(self, subject: str) -> str:
        """Draw a JTI unused in both cache and store, record it, and return it.

        A JTI the cache does not know may still exist in the store (written by
        another process); the store refuses it and we draw again.
        """
        for _ in range(self._max_jti_attempts):
            jti = _random_secret()
            if self.cache.has_refresh(jti):
                logger.warning("JTI collision on %s..., drawing again", _short(jti))
                continue
            try:
                self.store.store_refresh_token(subject, jti)
            except DuplicateJTIError:
                logger.warning("JTI %s... already in store, drawing again", _short(jti))
                continue
            self.cache.add_refresh(jti, subject)
            return jti
        raise JTIGenerationError(f"No unused JTI after {self._max_jti_attempts} attempts.")

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_token(self, presented: str) -> tuple[str, AccessClaims]:
        """Return (raw_token, claims) for a valid, unrevoked access token.

        presented may carry a "Bearer " prefix. Raises ExpiredTokenError for a
        correctly signed token past its expiry, UnauthorizedError otherwise.
        """
        raw = _strip_scheme(presented)
        try:
            claims = self.codec.parse_access(raw)
        except ExpiredTokenError:
            raise ExpiredTokenError() from None
        if self.cache.is_blocked(raw):
            raise UnauthorizedError("Token has been revoked.")
        return raw, claims

    # ------------------------------------------------------------------
    # Renewal
    # ------------------------------------------------------------------

    def renew_token(self, old_access: str, old_refresh: str, old_csrf: str) -> RenewedTokens:
        """Run the renewal state machine described in the module docstring."""
        if not old_csrf:
            raise UnauthorizedError("Missing CSRF secret.")

        old_access = _strip_scheme(old_access)
        try:
            access = self.codec.parse_access(old_access)
            access_expired = False
        except ExpiredTokenError as e:
            access = e.claims
            access_expired = True

        if not _same_secret(old_csrf, access.csrf):
            raise UnauthorizedError("CSRF secret does not match.")

        if not access_expired:
            if self.cache.is_blocked(old_access):
                raise UnauthorizedError("Token has been revoked.")
            refresh = self._checked_refresh(old_refresh, access)
            new_refresh = self._rotate_refresh(refresh, access.csrf)
            return RenewedTokens(old_access, new_refresh, access.csrf, access.expires_at, access.subject)

        refresh = self._checked_refresh(old_refresh, access)
        new_csrf = _random_secret()
        new_refresh = self._rotate_refresh(refresh, new_csrf)
        new_access, expires_at = self._create_access_token(access.subject, access.role, access.tenant, new_csrf)
        logger.debug("Renewed access token for subject %s", access.subject)
        return RenewedTokens(new_access, new_refresh, new_csrf, expires_at, access.subject)

    def _checked_refresh(self, token: str, access: AccessClaims) -> RefreshClaims:
        """Parse the refresh token and apply the revoked/expired checks.

        The refresh token must belong to the same session as the access token:
        same subject and same CSRF secret.
        """
        try:
            refresh = self.codec.parse_refresh(token)
            expired = False
        except ExpiredTokenError as e:
            refresh = e.claims
            expired = True

        if refresh.subject != access.subject or not _same_secret(refresh.csrf, access.csrf):
            raise UnauthorizedError("Refresh token does not belong to this session.")

        if not self._is_live(refresh):
            logger.info("Refresh token %s... has been revoked", _short(refresh.jti))
            raise UnauthorizedError("Refresh token has been revoked.")

        if expired:
            self._revoke_expired_refresh(refresh)
            raise UnauthorizedError("Refresh token has expired.")

        return refresh

    def _revoke_expired_refresh(self, refresh: RefreshClaims) -> None:
        with self._lock_for(refresh.jti):
            if not self._is_live(refresh):
                return
            try:
                self._delete_refresh_record(refresh)
            except RefreshTokenNotFoundInDatabaseError:
                logger.warning("Expired refresh token %s... had no matching store record", _short(refresh.jti))
        logger.info("Revoked expired refresh token %s...", _short(refresh.jti))

    def _rotate_refresh(self, refresh: RefreshClaims, csrf_secret: str) -> str:
        """Replace the refresh record with a new JTI and a fresh refresh lifetime.

        Delete-old then create-new, under the old JTI's lock: a replayed old
        refresh token finds its JTI gone.
        """
        with self._lock_for(refresh.jti):
            if not self._is_live(refresh):
                raise UnauthorizedError("Refresh token has been revoked.")
            self._delete_refresh_record(refresh)
            return self._create_refresh_token(refresh.subject, csrf_secret)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def delete_token(self, access_token: str, refresh_token: str) -> None:
        """Revoke a token pair.

        The refresh record is deleted from store and cache. The access token is
        added to the blocked set only if it still verifies (correct signature,
        unexpired, not already blocked) and belongs to the same subject; an
        expired access token needs no blocking.

        An expired refresh token is still accepted here so logout can clean up
        its record; its signature is verified all the same.
        """
        try:
            refresh = self.codec.parse_refresh(refresh_token)
        except ExpiredTokenError as e:
            refresh = e.claims

        with self._lock_for(refresh.jti):
            self._delete_refresh_record(refresh)

        try:
            raw, access = self.verify_token(access_token)
        except TokenError as e:
            logger.debug("Access token not blocked on revocation: %s", e.code)
            return

        if access.subject != refresh.subject:
            logger.warning("Access token subject differs from refresh token subject; not blocking it")
            return

        self._block(BlockedRecord(subject=access.subject, token=raw, expires_at=access.expires_at))
        logger.info("Revoked token pair for subject %s", access.subject)

    def _block(self, record: BlockedRecord) -> None:
        self.store.store_blocked_token(record.subject, record.token, record.expires_at)
        self.cache.block(record.token)

    def _delete_refresh_record(self, refresh: RefreshClaims) -> None:
        """Delete a refresh record after checking cache and store agree on its subject.

        Caller holds the JTI's lock.
        """
        cached = self.cache.refresh_subject(refresh.jti)
        if cached is not None and cached != refresh.subject:
            raise RefreshTokenNotFoundInDatabaseError()
        subject = self.store.find_refresh_token(refresh.jti)
        if subject is None or subject != refresh.subject:
            raise RefreshTokenNotFoundInDatabaseError()
        self.store.delete_refresh_token(refresh.jti)
        self.cache.remove_refresh(refresh.jti)

    def _is_live(self, refresh: RefreshClaims) -> bool:
        """True if the cache holds refresh.jti recorded for refresh.subject."""
        return self.cache.refresh_subject(refresh.jti) == refresh.subject

    def _lock_for(self, jti: str) -> threading.Lock:
        return self._locks[hash(jti) % _LOCK_STRIPES]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def prune_blocked_tokens(self) -> int:
        """Drop expired blocked tokens from the store, then reload the cache's blocked set."""
        with self.cache.rebuilding():
            removed = self.store.prune_blocked_tokens(self.codec.now())
            self.cache.replace_blocked(self.store.find_all_blocked_tokens())
        return removed

    # ------------------------------------------------------------------
    # Channel-scoped tokens
    # ------------------------------------------------------------------

    def generate_scoped_token(
        self,
        subject: str,
        secret_key: str | None = None,
        channels: Sequence[str] | None = None,
        expires_in: timedelta | None = None,
    ) -> str:
        """Delegate to generate_scoped_token() with this service's configured defaults."""
        return generate_scoped_token(
            subject,
            secret_key if secret_key is not None else self._scoped_secret,
            channels if channels is not None else self._scoped_channels,
            expires_in=expires_in,
            clock=self._clock,
        )


# ---------------------------------------------------------------------------
# Store selection
# ---------------------------------------------------------------------------


def build_store(settings) -> RevocationStore:
    """Return the RevocationStore named by settings.revocation_backend."""
    if settings.revocation_backend == "redis":
        return RedisRevocationStore.from_url(settings.redis_url, prefix=settings.redis_key_prefix)
    return SQLRevocationStore(settings.database_url)
