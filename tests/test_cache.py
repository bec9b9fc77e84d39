"""
RecordCache tests: snapshot publication, generation ordering, narrow
verification patches and the read helpers.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import threading

import pytest

from veil.cache import CacheStats, RecordCache
from veil.records import (
    AssetCategory,
    AssetRecord,
    PublicStatus,
    VerificationSnapshot,
    VerificationState,
)

VERIFIED = VerificationSnapshot(state=VerificationState.VERIFIED, attempts=1)
PENDING = VerificationSnapshot(state=VerificationState.PENDING, attempts=1)


def _record(record_id, name="Laptop", category=AssetCategory.ELECTRONICS, status_code=0,
            verification=None, clear_value=None):
    return AssetRecord(
        record_id=record_id,
        name=name,
        category=category,
        public_status=PublicStatus.decode(status_code),
        encoded_category=category.code,
        encoded_status=status_code,
        creator="0x" + "11" * 20,
        created_at=1_700_000_000,
        ciphertext_handle=f"0x{record_id}",
        verification=verification or VerificationSnapshot(),
        clear_value=clear_value,
    )


@pytest.fixture
def cache():
    return RecordCache(active_status_code=0)


class TestReplace:
    """Full replacement under a generation check."""

    def test_empty(self, cache):
        snapshot = cache.snapshot()
        assert len(snapshot) == 0
        assert snapshot.stats == CacheStats()
        assert snapshot.generation == 0

    def test_replace_publishes_new_snapshot(self, cache):
        old = cache.snapshot()
        generation = cache.next_generation()
        assert cache.replace([_record("a"), _record("b")], generation)
        assert len(old) == 0
        assert [r.record_id for r in cache.records()] == ["a", "b"]
        assert cache.snapshot().generation == generation

    def test_stats(self, cache):
        cache.replace([
            _record("a", status_code=0),
            _record("b", status_code=1),
            _record("c", status_code=0, verification=VERIFIED, clear_value=7),
        ], cache.next_generation())
        assert cache.stats() == CacheStats(total=3, verified=1, active=2)

    def test_active_status_configurable(self):
        cache = RecordCache(active_status_code=2)
        cache.replace([_record("a", status_code=0), _record("b", status_code=2)], cache.next_generation())
        assert cache.stats().active == 1

    def test_stale_generation_discarded(self, cache):
        older = cache.next_generation()
        newer = cache.next_generation()
        assert cache.replace([_record("a"), _record("b")], newer)
        assert not cache.replace([_record("a")], older)
        assert len(cache.snapshot()) == 2
        assert cache.metrics["discarded_reloads"] == 1

    def test_verified_never_downgraded(self, cache):
        cache.replace([_record("a", verification=VERIFIED, clear_value=42)], cache.next_generation())
        cache.replace([_record("a")], cache.next_generation())
        record = cache.get("a")
        assert record.is_verified
        assert record.clear_value == 42


class TestPatch:
    """Narrow verification-status patches."""

    def test_patch_pending(self, cache):
        cache.replace([_record("a"), _record("b")], cache.next_generation())
        assert cache.patch_verification("a", PENDING)
        assert cache.get("a").verification.state is VerificationState.PENDING
        assert cache.get("b").verification.state is VerificationState.UNVERIFIED

    def test_patch_verified_updates_stats(self, cache):
        cache.replace([_record("a")], cache.next_generation())
        cache.patch_verification("a", VERIFIED, 42)
        assert cache.get("a").clear_value == 42
        assert cache.stats().verified == 1

    def test_patch_unknown_record(self, cache):
        assert not cache.patch_verification("missing", PENDING)

    def test_patch_cannot_regress_verified(self, cache):
        cache.replace([_record("a", verification=VERIFIED, clear_value=1)], cache.next_generation())
        assert not cache.patch_verification("a", PENDING)
        assert cache.get("a").is_verified

    def test_reader_snapshot_unchanged_by_patch(self, cache):
        cache.replace([_record("a")], cache.next_generation())
        held = cache.snapshot()
        cache.patch_verification("a", VERIFIED, 3)
        assert not held.get("a").is_verified
        assert cache.get("a").is_verified


class TestReadHelpers:
    """Search and lookup over the current snapshot."""

    def test_search_by_name_and_category(self, cache):
        cache.replace([
            _record("a", name="Gold Ring", category=AssetCategory.JEWELRY),
            _record("b", name="Laptop"),
            _record("c", name="Painting", category=AssetCategory.ART),
        ], cache.next_generation())
        assert [r.record_id for r in cache.search("ring")] == ["a"]
        assert [r.record_id for r in cache.search("ART")] == ["c"]
        assert [r.record_id for r in cache.search("electronics")] == ["b"]
        assert len(cache.search("  ")) == 3

    def test_get_missing(self, cache):
        assert cache.get("nope") is None

    def test_snapshot_to_dict(self, cache):
        cache.replace([_record("a")], cache.next_generation())
        data = cache.snapshot().to_dict()
        assert data["stats"] == {"total": 1, "verified": 0, "active": 1}
        assert data["records"][0]["record_id"] == "a"


class TestConcurrentReaders:
    """Readers never observe a half-built snapshot."""

    def test_snapshot_consistent_under_writes(self, cache):
        errors = []
        stop = threading.Event()

        def writer():
            for i in range(200):
                records = [_record(f"r{j}") for j in range(i % 5 + 1)]
                cache.replace(records, cache.next_generation())
            stop.set()

        def reader():
            while not stop.is_set():
                snapshot = cache.snapshot()
                if snapshot.stats.total != len(snapshot.records):
                    errors.append(snapshot.generation)

        threads = [threading.Thread(target=writer)] + [threading.Thread(target=reader) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []

    @pytest.mark.slow
    def test_generation_never_regresses_under_racing_writers(self, cache):
        seen = []

        def writer():
            for _ in range(2000):
                cache.replace([_record("r0")], cache.next_generation())

        def reader():
            for _ in range(2000):
                seen.append(cache.snapshot().generation)

        threads = [threading.Thread(target=writer) for _ in range(4)]
        threads.append(threading.Thread(target=reader))
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert seen == sorted(seen)
        assert cache.metrics["replacements"] + cache.metrics["discarded_reloads"] == 8000
