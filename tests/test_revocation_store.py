"""Unit tests for auth/store.py -- SQLRevocationStore.

Covers:
- refresh records: store, find, enumerate, delete (idempotent)
- duplicate JTI raises DuplicateJTIError rather than overwriting
- blocked tokens: enumeration prunes expired rows
- prune_blocked_tokens() returns the number of rows removed
- data survives reopening the same database file
"""

from __future__ import annotations

import pytest
from auth.errors import DuplicateJTIError
from auth.models import RefreshRecord
from auth.store import SQLRevocationStore

NOW = 1_700_000_000


@pytest.fixture
def store():
    """In-memory SQLRevocationStore with a fixed clock at NOW."""
    s = SQLRevocationStore("sqlite:///:memory:", clock=lambda: NOW)
    yield s
    s.close()


class TestRefreshTokens:
    def test_store_and_find(self, store) -> None:
        store.store_refresh_token("u1", "jti-1")
        assert store.find_refresh_token("jti-1") == "u1"

    def test_find_missing_returns_none(self, store) -> None:
        assert store.find_refresh_token("nope") is None

    def test_find_all(self, store) -> None:
        store.store_refresh_token("u1", "jti-1")
        store.store_refresh_token("u2", "jti-2")
        assert sorted(store.find_all_refresh_tokens(), key=lambda r: r.jti) == [
            RefreshRecord(jti="jti-1", subject="u1"),
            RefreshRecord(jti="jti-2", subject="u2"),
        ]

    def test_delete(self, store) -> None:
        store.store_refresh_token("u1", "jti-1")
        store.delete_refresh_token("jti-1")
        assert store.find_refresh_token("jti-1") is None
        assert store.find_all_refresh_tokens() == []

    def test_delete_missing_is_noop(self, store) -> None:
        store.delete_refresh_token("never-stored")

    def test_duplicate_jti_rejected(self, store) -> None:
        store.store_refresh_token("u1", "jti-1")
        with pytest.raises(DuplicateJTIError):
            store.store_refresh_token("u2", "jti-1")
        assert store.find_refresh_token("jti-1") == "u1"


class TestBlockedTokens:
    def test_unexpired_tokens_enumerated(self, store) -> None:
        store.store_blocked_token("u1", "tok-a", NOW + 60)
        store.store_blocked_token("u1", "tok-b", NOW + 120)
        assert sorted(store.find_all_blocked_tokens()) == ["tok-a", "tok-b"]

    def test_enumeration_prunes_expired(self, store) -> None:
        store.store_blocked_token("u1", "old", NOW - 1)
        store.store_blocked_token("u1", "edge", NOW)
        store.store_blocked_token("u1", "live", NOW + 1)
        assert store.find_all_blocked_tokens() == ["live"]
        # pruned rows are gone, so an explicit prune finds nothing left
        assert store.prune_blocked_tokens() == 0

    def test_prune_with_explicit_cutoff(self, store) -> None:
        store.store_blocked_token("u1", "a", NOW + 10)
        store.store_blocked_token("u2", "b", NOW + 20)
        store.store_blocked_token("u3", "c", NOW + 30)
        assert store.prune_blocked_tokens(now=NOW + 20) == 2
        assert store.find_all_blocked_tokens() == ["c"]


def test_records_persist_across_reopen(tmp_path) -> None:
    url = f"sqlite:///{tmp_path / 'revocation.db'}"
    first = SQLRevocationStore(url, clock=lambda: NOW)
    first.store_refresh_token("u1", "jti-1")
    first.store_blocked_token("u1", "tok", NOW + 60)
    first.close()

    second = SQLRevocationStore(url, clock=lambda: NOW)
    try:
        assert second.find_all_refresh_tokens() == [RefreshRecord(jti="jti-1", subject="u1")]
        assert second.find_all_blocked_tokens() == ["tok"]
    finally:
        second.close()
