"""
Fingerprint → artifact cache with a hard TTL ceiling and LRU budgets.

Entries expire once they are older than the TTL, measured from their creation
time, even if they were read a moment ago: when a template changes on disk the
outputs built from it must not be served forever. Within the TTL the cache
keeps at most ``max_entries`` entries (and, optionally, ``max_bytes`` of
artifacts), evicting the least recently accessed entry first and the oldest
one on ties.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from threading import Lock
from typing import Callable, Dict, List, Optional

from .models import Artifact

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    fingerprint: str
    artifact: Artifact
    created_at: float
    last_accessed_at: float


def cache_owner(fingerprint: str) -> str:
    """Pin owner name used for the artifact a cache entry points at."""
    return f"cache:{fingerprint}"


class ResultCache:
    """
    Thread-safe result cache.

    Every lookup, insertion and eviction happens under one lock, so a reader
    sees either the whole entry or no entry. Eviction callbacks run after the
    lock is released; they receive the removed entry and are used to drop the
    cache's pin on the artifact.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 256,
        max_bytes: Optional[int] = None,
        clock: Callable[[], float] = time.time,
        on_evict: Optional[Callable[[CacheEntry], None]] = None,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.max_bytes = max_bytes
        self._clock = clock
        self._on_evict = on_evict
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _is_stale(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self.ttl_seconds

    def _notify(self, evicted: List[CacheEntry]) -> None:
        for entry in evicted:
            logger.debug(f"Evicted cache entry {entry.fingerprint} -> {entry.artifact.ref}")
            if self._on_evict is not None:
                self._on_evict(entry)

    def get(self, fingerprint: str) -> Optional[Artifact]:
        """Return the cached artifact and refresh its access time, or None on miss/expiry."""
        evicted: List[CacheEntry] = []
        with self._lock:
            now = self._clock()
            entry = self._entries.get(fingerprint)
            if entry is None:
                return None
            if self._is_stale(entry, now):
                evicted.append(self._entries.pop(fingerprint))
                artifact = None
            else:
                entry.last_accessed_at = now
                artifact = entry.artifact
        self._notify(evicted)
        return artifact

    def put(self, fingerprint: str, artifact: Artifact) -> None:
        """Insert or replace the entry for a fingerprint, then enforce the budgets."""
        evicted: List[CacheEntry] = []
        with self._lock:
            now = self._clock()
            previous = self._entries.pop(fingerprint, None)
            if previous is not None and previous.artifact.ref != artifact.ref:
                evicted.append(previous)
            self._entries[fingerprint] = CacheEntry(
                fingerprint=fingerprint,
                artifact=artifact,
                created_at=now,
                last_accessed_at=now,
            )
            evicted.extend(self._enforce_budget(now))
        self._notify(evicted)

    def _enforce_budget(self, now: float) -> List[CacheEntry]:
        evicted = [entry for entry in self._entries.values() if self._is_stale(entry, now)]
        for entry in evicted:
            del self._entries[entry.fingerprint]

        def over_budget() -> bool:
            if len(self._entries) > self.max_entries:
                return True
            if self.max_bytes is not None:
                return sum(entry.artifact.size_bytes for entry in self._entries.values()) > self.max_bytes
            return False

        while self._entries and over_budget():
            victim = min(self._entries.values(), key=lambda entry: (entry.last_accessed_at, entry.created_at))
            evicted.append(self._entries.pop(victim.fingerprint))
        return evicted

    def evict_expired(self) -> int:
        evicted: List[CacheEntry] = []
        with self._lock:
            now = self._clock()
            for fingerprint, entry in list(self._entries.items()):
                if self._is_stale(entry, now):
                    evicted.append(self._entries.pop(fingerprint))
        self._notify(evicted)
        return len(evicted)

    def clear(self) -> int:
        with self._lock:
            evicted = list(self._entries.values())
            self._entries.clear()
        self._notify(evicted)
        if evicted:
            logger.info(f"Cleared {len(evicted)} cache entr{'y' if len(evicted) == 1 else 'ies'}")
        return len(evicted)

    def entries(self) -> List[CacheEntry]:
        """Snapshot of the current entries, most recently accessed first."""
        with self._lock:
            snapshot = [replace(entry) for entry in self._entries.values()]
        return sorted(snapshot, key=lambda entry: entry.last_accessed_at, reverse=True)
