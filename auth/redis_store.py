"""
auth/redis_store.py -- Redis implementation of RevocationStore.

Key layout (prefix is optional, e.g. "myapp:"):
  <prefix>refresh_token:<jti>                               -> subject
  <prefix>blocked_token:<subject>:<digest>:<expires_at>     -> access token

digest is the first 16 hex chars of SHA-256(token), so two tokens revoked for
the same subject in the same second get separate keys. expires_at is always
the last segment; subjects may contain ':' and are never parsed back out.

Blocked keys are written with a TTL equal to their remaining lifetime, so
Redis expires them on its own. find_all_blocked_tokens() also deletes any
expired key it meets, which covers keys written before a clock correction.

Enumeration uses SCAN (scan_iter), never KEYS.

The client must be created with decode_responses=True.
"""

from __future__ import annotations

import hashlib
import logging
import time
from collections.abc import Callable

import redis

from auth.errors import DuplicateJTIError
from auth.models import RefreshRecord
from auth.store import RevocationStore

logger = logging.getLogger("sessionguard.store")

REFRESH_TOKEN_NAMESPACE = "refresh_token"
BLOCKED_TOKEN_NAMESPACE = "blocked_token"


class RedisRevocationStore(RevocationStore):
    def __init__(
        self,
        client: redis.Redis,
        prefix: str = "",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.r = client
        self.prefix = prefix
        self._clock = clock

    @classmethod
    def from_url(cls, url: str, prefix: str = "") -> "RedisRevocationStore":
        return cls(redis.from_url(url, decode_responses=True), prefix=prefix)

    # -------------------- helpers --------------------

    def _refresh_key(self, jti: str) -> str:
        return f"{self.prefix}{REFRESH_TOKEN_NAMESPACE}:{jti}"

    def _blocked_key(self, subject: str, token: str, expires_at: int) -> str:
        digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]
        return f"{self.prefix}{BLOCKED_TOKEN_NAMESPACE}:{subject}:{digest}:{expires_at}"

    @staticmethod
    def _expiry_of(key: str) -> int | None:
        try:
            return int(key.rsplit(":", 1)[1])
        except (IndexError, ValueError):
            return None

    def _blocked_keys(self):
        return self.r.scan_iter(match=f"{self.prefix}{BLOCKED_TOKEN_NAMESPACE}:*")

    # -------------------- refresh tokens --------------------

    def store_refresh_token(self, subject: str, jti: str) -> None:
        # SET NX: an existing record is never overwritten
        if not self.r.set(self._refresh_key(jti), subject, nx=True):
            raise DuplicateJTIError(f"Refresh record {jti[:8]}... already exists.")

    def delete_refresh_token(self, jti: str) -> None:
        self.r.delete(self._refresh_key(jti))

    def find_refresh_token(self, jti: str) -> str | None:
        return self.r.get(self._refresh_key(jti))

    def find_all_refresh_tokens(self) -> list[RefreshRecord]:
        head = f"{self.prefix}{REFRESH_TOKEN_NAMESPACE}:"
        records = []
        for key in self.r.scan_iter(match=f"{head}*"):
            subject = self.r.get(key)
            if subject is None:
                # deleted between SCAN and GET
                continue
            records.append(RefreshRecord(jti=key[len(head) :], subject=subject))
        return records

    # -------------------- blocked tokens --------------------

    def store_blocked_token(self, subject: str, token: str, expires_at: int) -> None:
        ttl = max(1, expires_at - int(self._clock()))
        self.r.set(self._blocked_key(subject, token, expires_at), token, ex=ttl)

    def find_all_blocked_tokens(self) -> list[str]:
        now = int(self._clock())
        tokens = []
        for key in self._blocked_keys():
            expires_at = self._expiry_of(key)
            if expires_at is None:
                logger.warning("Skipping blocked-token key with no expiry segment: %s", key)
                continue
            if expires_at <= now:
                self.r.delete(key)
                continue
            token = self.r.get(key)
            if token is not None:
                tokens.append(token)
        return tokens

    def prune_blocked_tokens(self, now: int | None = None) -> int:
        cutoff = int(self._clock()) if now is None else now
        expired = []
        for key in self._blocked_keys():
            expires_at = self._expiry_of(key)
            if expires_at is not None and expires_at <= cutoff:
                expired.append(key)
        if not expired:
            return 0
        removed = self.r.delete(*expired)
        logger.info("Pruned %d expired blocked tokens", removed)
        return removed

    def close(self) -> None:
        self.r.close()
