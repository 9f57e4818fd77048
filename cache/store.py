"""
cache/store.py -- Process-local mirror of the revocation store.

Keeps the two collections the hot path needs in memory so verify_token() never
waits on a store round trip:
  - refresh tokens: JTI -> subject for every outstanding refresh token
  - blocked tokens: raw access-token strings revoked before expiry

The owning TokenService hydrates it once at construction and writes to it
only after the matching durable write succeeded (store, then cache). One
lock guards both collections; every method takes it, so readers never see a
half-applied load().

Rebuilding from the store:
  A snapshot read from the store is stale by the time it is applied. Any
  mutation made while the snapshot is being read is recorded and replayed on
  top of it, so load() / replace_blocked() never drop a write that landed in
  the store after the snapshot was taken. Wrap the read and the apply in
  rebuilding().

Usage:
    cache = RevocationCache()
    with cache.rebuilding():
        cache.load(store.find_all_refresh_tokens(), store.find_all_blocked_tokens())
    cache.add_refresh(jti, subject)
    cache.is_blocked(token)              # True / False
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager

from auth.models import RefreshRecord

_ADD_REFRESH = "add_refresh"
_REMOVE_REFRESH = "remove_refresh"
_BLOCK = "block"


class RevocationCache:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rebuild_lock = threading.Lock()
        self._refresh: dict[str, str] = {}
        self._blocked: set[str] = set()
        # mutations seen since rebuilding() started; None outside a rebuild
        self._journal: list[tuple[str, str, str]] | None = None

    @contextmanager
    def rebuilding(self) -> Iterator[None]:
        """Record mutations until the block exits. One rebuild at a time."""
        with self._rebuild_lock:
            with self._lock:
                self._journal = []
            try:
                yield
            finally:
                with self._lock:
                    self._journal = None

    def load(self, refresh_records: Iterable[RefreshRecord], blocked_tokens: Iterable[str]) -> None:
        """Replace both collections wholesale, then replay any journaled mutations."""
        refresh = {r.jti: r.subject for r in refresh_records}
        blocked = set(blocked_tokens)
        with self._lock:
            self._refresh = refresh
            self._blocked = blocked
            self._replay()

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def has_refresh(self, jti: str) -> bool:
        with self._lock:
            return jti in self._refresh

    def refresh_subject(self, jti: str) -> str | None:
        with self._lock:
            return self._refresh.get(jti)

    def add_refresh(self, jti: str, subject: str) -> None:
        with self._lock:
            self._apply(_ADD_REFRESH, jti, subject)
            self._record(_ADD_REFRESH, jti, subject)

    def remove_refresh(self, jti: str) -> None:
        with self._lock:
            self._apply(_REMOVE_REFRESH, jti)
            self._record(_REMOVE_REFRESH, jti)

    # ------------------------------------------------------------------
    # Blocked access tokens
    # ------------------------------------------------------------------

    def block(self, token: str) -> None:
        with self._lock:
            self._apply(_BLOCK, token)
            self._record(_BLOCK, token)

    def is_blocked(self, token: str) -> bool:
        with self._lock:
            return token in self._blocked

    def replace_blocked(self, tokens: Iterable[str]) -> None:
        """Replace the blocked set, then replay any journaled mutations."""
        blocked = set(tokens)
        with self._lock:
            self._blocked = blocked
            self._replay()

    def stats(self) -> dict:
        """Return {'refresh_tokens': n, 'blocked_tokens': m}."""
        with self._lock:
            return {"refresh_tokens": len(self._refresh), "blocked_tokens": len(self._blocked)}

    # ------------------------------------------------------------------
    # Journal (caller holds self._lock)
    # ------------------------------------------------------------------

    def _apply(self, op: str, key: str, value: str = "") -> None:
        if op == _ADD_REFRESH:
            self._refresh[key] = value
        elif op == _REMOVE_REFRESH:
            self._refresh.pop(key, None)
        else:
            self._blocked.add(key)

    def _record(self, op: str, key: str, value: str = "") -> None:
        if self._journal is not None:
            self._journal.append((op, key, value))

    def _replay(self) -> None:
        # Replaying in order leaves each key in its latest state, including
        # entries the replaced collection already had.
        for op, key, value in self._journal or ():
            self._apply(op, key, value)
