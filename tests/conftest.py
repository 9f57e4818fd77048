"""
tests/conftest.py -- Shared fixtures for sessionguard tests.

This module provides:
  - FrozenClock / clock: a settable clock injected into codec and service
  - MemoryRevocationStore: an in-process RevocationStore double that can be
    told to fail specific operations
  - sql_store: SQLRevocationStore on a temp-file SQLite DB
  - hs256_key / rs256_key: key material (the RSA pair is generated once per
    session, since 2048-bit generation is the slowest thing in the suite)
  - make_service: factory for TokenService over any store/key/clock

Design: the SQL store fixture uses a file in tmp_path rather than a
shared-cache in-memory URI. Service tests run worker threads, and SQLite's
shared-cache mode answers concurrent writers with SQLITE_LOCKED instead of
waiting; a WAL file DB waits on its busy timeout.

The DEBUG env var must be set before core.config is imported so Settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import threading
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest

from auth.errors import DuplicateJTIError
from auth.keys import HS256Key, RS256Key, load_or_generate_rsa_keys
from auth.models import RefreshRecord
from auth.store import RevocationStore, SQLRevocationStore
from auth.tokens import TokenService

SECRET = "s" * 48
ACCESS_LIFETIME = timedelta(hours=1)
REFRESH_LIFETIME = timedelta(days=30)


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FrozenClock:
    """Callable returning a fixed aware datetime until advanced."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime.now(timezone.utc).replace(microsecond=0))


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class MemoryRevocationStore(RevocationStore):
    """Dict-backed RevocationStore. `fail_on` names operations that raise."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.refresh: dict[str, str] = {}
        self.blocked: dict[str, tuple[str, int]] = {}
        self.fail_on: set[str] = set()
        self.now = 0

    def _maybe_fail(self, op: str) -> None:
        if op in self.fail_on:
            raise ConnectionError(f"store unavailable during {op}")

    def store_refresh_token(self, subject, jti):
        self._maybe_fail("store_refresh_token")
        with self._lock:
            if jti in self.refresh:
                raise DuplicateJTIError(jti)
            self.refresh[jti] = subject

    def delete_refresh_token(self, jti):
        self._maybe_fail("delete_refresh_token")
        with self._lock:
            self.refresh.pop(jti, None)

    def find_refresh_token(self, jti):
        self._maybe_fail("find_refresh_token")
        with self._lock:
            return self.refresh.get(jti)

    def find_all_refresh_tokens(self):
        self._maybe_fail("find_all_refresh_tokens")
        with self._lock:
            return [RefreshRecord(jti=j, subject=s) for j, s in self.refresh.items()]

    def store_blocked_token(self, subject, token, expires_at):
        self._maybe_fail("store_blocked_token")
        with self._lock:
            self.blocked[token] = (subject, expires_at)

    def find_all_blocked_tokens(self):
        self._maybe_fail("find_all_blocked_tokens")
        with self._lock:
            return [t for t, (_, exp) in self.blocked.items() if exp > self.now]

    def prune_blocked_tokens(self, now=None):
        cutoff = self.now if now is None else now
        with self._lock:
            expired = [t for t, (_, exp) in self.blocked.items() if exp <= cutoff]
            for t in expired:
                del self.blocked[t]
        return len(expired)


@pytest.fixture
def memory_store() -> MemoryRevocationStore:
    return MemoryRevocationStore()


@pytest.fixture
def sql_store(tmp_path) -> Generator[SQLRevocationStore, None, None]:
    store = SQLRevocationStore(f"sqlite:///{tmp_path / 'revocation.db'}")
    yield store
    store.close()


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


@pytest.fixture
def hs256_key() -> HS256Key:
    return HS256Key(secret=SECRET)


@pytest.fixture(scope="session")
def rs256_key(tmp_path_factory) -> RS256Key:
    return load_or_generate_rsa_keys(tmp_path_factory.mktemp("keys"), "test")


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@pytest.fixture
def make_service(hs256_key, clock) -> Callable[..., TokenService]:
    """Return a factory: make_service(store, key=hs256_key, clock=clock, **kwargs)."""

    def _make(store: RevocationStore, key=None, **kwargs) -> TokenService:
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("access_token_lifetime", ACCESS_LIFETIME)
        kwargs.setdefault("refresh_token_lifetime", REFRESH_LIFETIME)
        return TokenService(key if key is not None else hs256_key, store, **kwargs)

    return _make


@pytest.fixture
def service(make_service, sql_store) -> TokenService:
    return make_service(sql_store)
