"""Unit tests for cache/store.py -- RevocationCache, including mutations made during a rebuild."""

from __future__ import annotations

import threading

from auth.models import RefreshRecord
from cache.store import RevocationCache


def test_load_replaces_contents() -> None:
    cache = RevocationCache()
    cache.add_refresh("stale", "u0")
    cache.block("stale-token")

    cache.load([RefreshRecord(jti="j1", subject="u1")], ["tok"])

    assert not cache.has_refresh("stale")
    assert not cache.is_blocked("stale-token")
    assert cache.refresh_subject("j1") == "u1"
    assert cache.is_blocked("tok")


def test_refresh_add_remove() -> None:
    cache = RevocationCache()
    cache.add_refresh("j1", "u1")
    assert cache.has_refresh("j1")
    cache.remove_refresh("j1")
    assert not cache.has_refresh("j1")
    assert cache.refresh_subject("j1") is None
    # removing twice is harmless
    cache.remove_refresh("j1")


def test_replace_blocked_keeps_refresh() -> None:
    cache = RevocationCache()
    cache.add_refresh("j1", "u1")
    cache.block("a")
    cache.replace_blocked(["b"])
    assert cache.stats() == {"refresh_tokens": 1, "blocked_tokens": 1}
    assert cache.is_blocked("b") and not cache.is_blocked("a")


def test_concurrent_writers() -> None:
    cache = RevocationCache()

    def worker(n: int) -> None:
        for i in range(200):
            cache.add_refresh(f"{n}-{i}", str(n))
            cache.block(f"tok-{n}-{i}")
            if i % 2:
                cache.remove_refresh(f"{n}-{i}")

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert cache.stats() == {"refresh_tokens": 8 * 100, "blocked_tokens": 8 * 200}


def test_block_during_rebuild_survives_replace() -> None:
    cache = RevocationCache()
    with cache.rebuilding():
        snapshot = ["old"]
        # lands in the store after the snapshot was read
        cache.block("new")
        cache.replace_blocked(snapshot)
    assert cache.is_blocked("old")
    assert cache.is_blocked("new")


def test_refresh_mutations_during_rebuild_survive_load() -> None:
    cache = RevocationCache()
    cache.add_refresh("gone", "u1")
    with cache.rebuilding():
        snapshot = [RefreshRecord(jti="gone", subject="u1")]
        cache.remove_refresh("gone")
        cache.add_refresh("fresh", "u2")
        cache.load(snapshot, [])
    assert not cache.has_refresh("gone")
    assert cache.refresh_subject("fresh") == "u2"


def test_journal_only_active_inside_rebuild() -> None:
    cache = RevocationCache()
    cache.block("before")
    with cache.rebuilding():
        cache.replace_blocked([])
    assert not cache.is_blocked("before")
