"""
VEIL Record Cache

In-memory projection of ledger state, published as immutable snapshots.

    ┌────────────────────────────────────────────────────────────────────┐
    │                           RecordCache                               │
    │                                                                     │
    │   replace(records, generation)     patch_verification(id, ...)      │
    │            │                                  │                     │
    │            └──────────── lock ────────────────┘                     │
    │                           │                                         │
    │                    CacheSnapshot (frozen)                           │
    │        records · index · stats(total, verified, active) · gen       │
    └───────────────────────────┬────────────────────────────────────────┘
                                │ snapshot(), get(), records(), search()
                                ▼
                             readers

Writers build a complete new snapshot and swap it in under the lock, so a
reader holding a snapshot never sees it change. A reload carries the
generation number it was issued; a reload older than the one already applied
is discarded.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from veil.errors import FetchPartialFailure
from veil.observability import VeilLayer, get_logger
from veil.records import AssetRecord, VerificationSnapshot, VerificationState

logger = get_logger("cache", VeilLayer.CACHE)


# ════════════════════════════════════════════════════════════════════════════
# SNAPSHOT
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class CacheStats:
    """Aggregate counters over a snapshot."""
    total: int = 0
    verified: int = 0
    active: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {"total": self.total, "verified": self.verified, "active": self.active}


@dataclass(frozen=True)
class CacheSnapshot:
    """Immutable view of the record set at one generation."""
    records: Tuple[AssetRecord, ...] = ()
    index: Mapping[str, AssetRecord] = field(default_factory=lambda: MappingProxyType({}))
    stats: CacheStats = field(default_factory=CacheStats)
    generation: int = 0

    def __len__(self) -> int:
        return len(self.records)

    def get(self, record_id: str) -> Optional[AssetRecord]:
        return self.index.get(record_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generation": self.generation,
            "stats": self.stats.to_dict(),
            "records": [r.to_dict() for r in self.records],
        }


@dataclass
class ReloadReport:
    """Outcome of one reload."""
    generation: int
    loaded: List[str] = field(default_factory=list)
    failures: List[FetchPartialFailure] = field(default_factory=list)
    applied: bool = False
    stats: CacheStats = field(default_factory=CacheStats)

    @property
    def failed_ids(self) -> List[str]:
        return [f.record_id for f in self.failures]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generation": self.generation,
            "loaded": list(self.loaded),
            "failures": [str(f) for f in self.failures],
            "applied": self.applied,
            "stats": self.stats.to_dict(),
        }


# ════════════════════════════════════════════════════════════════════════════
# CACHE
# ════════════════════════════════════════════════════════════════════════════


class RecordCache:
    """
    Owner of the in-memory record set.

    Thread-safe. The only writes are a full ``replace`` and a narrow
    ``patch_verification``.
    """

    def __init__(self, active_status_code: Optional[int] = None):
        if active_status_code is None:
            from veil.config import get_config
            active_status_code = get_config().cache.active_status_code.get()
        self.active_status_code = active_status_code
        self._lock = threading.RLock()
        self._snapshot = CacheSnapshot()
        self._issued_generation = 0
        self._replacements = 0
        self._discarded = 0
        self._patches = 0

    # -- writes -------------------------------------------------------------

    def next_generation(self) -> int:
        """Issue the generation number for a reload about to start."""
        with self._lock:
            self._issued_generation += 1
            return self._issued_generation

    def _compute_stats(self, records: Iterable[AssetRecord]) -> CacheStats:
        total = verified = active = 0
        for record in records:
            total += 1
            if record.is_verified:
                verified += 1
            if record.encoded_status == self.active_status_code:
                active += 1
        return CacheStats(total=total, verified=verified, active=active)

    def _publish(self, records: List[AssetRecord], generation: int) -> CacheSnapshot:
        index = {r.record_id: r for r in records}
        self._snapshot = CacheSnapshot(
            records=tuple(records),
            index=MappingProxyType(index),
            stats=self._compute_stats(records),
            generation=generation,
        )
        return self._snapshot

    def replace(self, records: Iterable[AssetRecord], generation: int) -> bool:
        """
        Atomically replace the record set.

        Returns False, leaving the cache untouched, when a newer generation
        has already been applied. A record already VERIFIED in the cache is
        never replaced by an unverified copy.
        """
        with self._lock:
            current = self._snapshot
            if generation <= current.generation:
                self._discarded += 1
                logger.info(
                    "Discarding stale reload",
                    operation="replace",
                    generation=generation,
                    current_generation=current.generation,
                )
                return False

            merged: List[AssetRecord] = []
            for record in records:
                existing = current.get(record.record_id)
                if existing is not None and existing.is_verified and not record.is_verified:
                    merged.append(existing)
                else:
                    merged.append(record)

            snapshot = self._publish(merged, generation)
            self._replacements += 1

        logger.debug(
            "Cache replaced",
            operation="replace",
            generation=generation,
            **snapshot.stats.to_dict(),
        )
        return True

    def patch_verification(
        self,
        record_id: str,
        verification: VerificationSnapshot,
        clear_value: Optional[int] = None,
    ) -> bool:
        """
        Update one record's verification status in place.

        Returns False when the record is not cached, or when the patch would
        move a VERIFIED record backwards.
        """
        with self._lock:
            current = self._snapshot
            existing = current.get(record_id)
            if existing is None:
                return False
            if existing.is_verified and verification.state is not VerificationState.VERIFIED:
                return False

            patched = existing.with_verification(verification, clear_value)
            records = [patched if r.record_id == record_id else r for r in current.records]
            self._publish(records, current.generation)
            self._patches += 1
            return True

    # -- reads --------------------------------------------------------------

    def snapshot(self) -> CacheSnapshot:
        with self._lock:
            return self._snapshot

    def get(self, record_id: str) -> Optional[AssetRecord]:
        return self.snapshot().get(record_id)

    def records(self) -> Tuple[AssetRecord, ...]:
        return self.snapshot().records

    def stats(self) -> CacheStats:
        return self.snapshot().stats

    def search(self, term: str) -> List[AssetRecord]:
        """Records whose name or category contains ``term`` (case-insensitive)."""
        needle = term.strip().lower()
        records = self.snapshot().records
        if not needle:
            return list(records)
        return [
            r for r in records
            if needle in r.name.lower() or needle in r.category.value
        ]

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "generation": self._snapshot.generation,
                "issued_generation": self._issued_generation,
                "replacements": self._replacements,
                "discarded_reloads": self._discarded,
                "patches": self._patches,
                "size": len(self._snapshot),
            }
