"""Unit tests for auth/redis_store.py -- RedisRevocationStore on fakeredis.

Covers:
- key layout under the refresh_token / blocked_token namespaces
- refresh records: store, find, enumerate, delete; a taken JTI is never overwritten
- blocked tokens get a TTL and are lazily pruned during enumeration
- two tokens blocked for one subject in the same second do not collide
- prefixes isolate stores sharing one Redis
"""

from __future__ import annotations

import fakeredis
import pytest

from auth.errors import DuplicateJTIError
from auth.models import RefreshRecord
from auth.redis_store import RedisRevocationStore

NOW = 1_700_000_000


@pytest.fixture
def client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def store(client):
    return RedisRevocationStore(client, clock=lambda: NOW)


class TestRefreshTokens:
    def test_store_and_find(self, store, client) -> None:
        store.store_refresh_token("u1", "jti-1")
        assert client.get("refresh_token:jti-1") == "u1"
        assert store.find_refresh_token("jti-1") == "u1"

    def test_find_missing_returns_none(self, store) -> None:
        assert store.find_refresh_token("missing") is None

    def test_find_all(self, store) -> None:
        store.store_refresh_token("u1", "jti-1")
        store.store_refresh_token("user:with:colons", "jti-2")
        assert sorted(store.find_all_refresh_tokens(), key=lambda r: r.jti) == [
            RefreshRecord(jti="jti-1", subject="u1"),
            RefreshRecord(jti="jti-2", subject="user:with:colons"),
        ]

    def test_delete(self, store) -> None:
        store.store_refresh_token("u1", "jti-1")
        store.delete_refresh_token("jti-1")
        assert store.find_refresh_token("jti-1") is None

    def test_duplicate_jti_rejected(self, store, client) -> None:
        store.store_refresh_token("alice", "jti-1")
        with pytest.raises(DuplicateJTIError):
            store.store_refresh_token("mallory", "jti-1")
        assert client.get("refresh_token:jti-1") == "alice"

    def test_jti_reusable_after_delete(self, store) -> None:
        store.store_refresh_token("u1", "jti-1")
        store.delete_refresh_token("jti-1")
        store.store_refresh_token("u2", "jti-1")
        assert store.find_refresh_token("jti-1") == "u2"


class TestBlockedTokens:
    def test_blocked_key_has_ttl(self, store, client) -> None:
        store.store_blocked_token("u1", "tok", NOW + 300)
        (key,) = list(client.scan_iter(match="blocked_token:*"))
        assert key.startswith("blocked_token:u1:")
        assert key.endswith(f":{NOW + 300}")
        assert 0 < client.ttl(key) <= 300

    def test_same_subject_same_second_do_not_collide(self, store) -> None:
        store.store_blocked_token("u1", "tok-a", NOW + 60)
        store.store_blocked_token("u1", "tok-b", NOW + 60)
        assert sorted(store.find_all_blocked_tokens()) == ["tok-a", "tok-b"]

    def test_enumeration_prunes_expired(self, client) -> None:
        writer = RedisRevocationStore(client, clock=lambda: NOW - 100)
        writer.store_blocked_token("u1", "old", NOW - 1)
        writer.store_blocked_token("u1", "live", NOW + 60)

        reader = RedisRevocationStore(client, clock=lambda: NOW)
        assert reader.find_all_blocked_tokens() == ["live"]
        assert len(list(client.scan_iter(match="blocked_token:*"))) == 1

    def test_prune(self, store) -> None:
        store.store_blocked_token("u1", "a", NOW + 10)
        store.store_blocked_token("u2", "b", NOW + 20)
        assert store.prune_blocked_tokens(now=NOW + 15) == 1
        assert store.find_all_blocked_tokens() == ["b"]

    def test_prune_nothing(self, store) -> None:
        assert store.prune_blocked_tokens() == 0


def test_prefix_isolates_stores(client) -> None:
    a = RedisRevocationStore(client, prefix="a:", clock=lambda: NOW)
    b = RedisRevocationStore(client, prefix="b:", clock=lambda: NOW)
    a.store_refresh_token("u1", "jti-1")
    b.store_blocked_token("u2", "tok", NOW + 60)

    assert a.find_all_refresh_tokens() == [RefreshRecord(jti="jti-1", subject="u1")]
    assert b.find_all_refresh_tokens() == []
    assert a.find_all_blocked_tokens() == []
    assert b.find_all_blocked_tokens() == ["tok"]
