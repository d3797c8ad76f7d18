"""In-memory response cache with per-entry TTL and glob invalidation.

Design:
- Dict-based store of CacheEntry objects guarded by a single lock
- Lazy expiry on read, optional eager sweep via purge_expired()
- Optional max_entries bound (expired entries first, then earliest expiry)
- delete_matching() compiles a glob ("*" only) into an anchored regex
"""

import logging
import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Pattern

logger = logging.getLogger(__name__)


class CacheConfigurationError(ValueError):
    """A cache call site is misconfigured (bad TTL, unknown tier)."""


class CachePatternError(CacheConfigurationError):
    """A glob pattern passed to delete_matching() cannot be compiled."""


class TTLTier(str, Enum):
    """Coarse TTL classes chosen per endpoint by the caller."""

    SHORT = "short"
    STANDARD = "standard"
    LONG = "long"


DEFAULT_TIER_SECONDS: Dict[TTLTier, int] = {
    TTLTier.SHORT: 30,
    TTLTier.STANDARD: 60,
    TTLTier.LONG: 300,
}


def validate_ttl(ttl_seconds: Any) -> int:
    """Return ttl_seconds if it is a positive integer, else raise.

    Raises:
        CacheConfigurationError: for bools, non-integers and values <= 0
    """
    if isinstance(ttl_seconds, bool) or not isinstance(ttl_seconds, int):
        raise CacheConfigurationError(
            f"ttl_seconds must be a positive integer, got {ttl_seconds!r}"
        )
    if ttl_seconds <= 0:
        raise CacheConfigurationError(f"ttl_seconds must be > 0, got {ttl_seconds}")
    return ttl_seconds


def resolve_tier_seconds(
    tier: TTLTier | str, tiers: Optional[Dict[TTLTier, int]] = None
) -> int:
    """Map a tier (or its name) to seconds; tiers missing from the table use defaults."""
    table = {**DEFAULT_TIER_SECONDS, **(tiers or {})}
    try:
        tier = TTLTier(tier)
    except ValueError:
        raise CacheConfigurationError(f"Unknown TTL tier: {tier!r}") from None
    return validate_ttl(table[tier])


def compile_pattern(pattern: str) -> Pattern[str]:
    """Compile a glob pattern into a whole-key regex.

    "*" matches any run of characters (including none); every other
    character is literal. Matching is case-sensitive and anchored at both
    ends of the key.

    Raises:
        CachePatternError: if pattern is not a non-empty string
    """
    if not isinstance(pattern, str):
        raise CachePatternError(f"Pattern must be a string, got {type(pattern).__name__}")
    if not pattern:
        raise CachePatternError("Pattern must not be empty")
    regex = ".*".join(re.escape(part) for part in pattern.split("*"))
    return re.compile(rf"\A{regex}\Z", re.DOTALL)


@dataclass
class CacheEntry:
    """A stored value and its expiry bookkeeping."""

    key: str
    value: Any
    created_at: float
    ttl_seconds: int

    @property
    def expires_at(self) -> float:
        return self.created_at + self.ttl_seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class CacheStats:
    """Counters for monitoring (GET /cache/stats)."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    evictions: int = 0
    size: int = 0
    max_entries: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "evictions": self.evictions,
            "size": self.size,
            "max_entries": self.max_entries,
        }


class CacheStore:
    """TTL-aware, thread-safe in-memory cache.

    Args:
        max_entries: Upper bound on stored entries (0 = unbounded)
        clock: Callable returning the current time in seconds
    """

    def __init__(self, max_entries: int = 0, clock: Callable[[], float] = time.time):
        if max_entries < 0:
            raise CacheConfigurationError(f"max_entries must be >= 0, got {max_entries}")
        self.max_entries = max_entries
        self._clock = clock
        self._store: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._stats = CacheStats(max_entries=max_entries)

    def _now(self) -> float:
        return self._clock()

    def _live_entry(self, key: str, now: float) -> Optional[CacheEntry]:
        # Caller holds the lock.
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.is_expired(now):
            del self._store[key]
            return None
        return entry

    def _purge_expired_locked(self, now: float) -> int:
        expired = [k for k, e in self._store.items() if e.is_expired(now)]
        for key in expired:
            del self._store[key]
        return len(expired)

    def _make_room_locked(self, now: float) -> None:
        self._purge_expired_locked(now)
        if len(self._store) < self.max_entries:
            return
        # Evict the entry closest to expiry.
        oldest_key = min(self._store, key=lambda k: self._store[k].expires_at)
        del self._store[oldest_key]
        self._stats.evictions += 1

    def get(self, key: str) -> Optional[Any]:
        """Return the live value for key, or None on a miss.

        Expired entries are removed as a side effect.
        """
        with self._lock:
            entry = self._live_entry(key, self._now())
            if entry is None:
                self._stats.misses += 1
                return None
            self._stats.hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl_seconds: int) -> None:
        """Insert or overwrite key.

        Raises:
            CacheConfigurationError: if ttl_seconds is not a positive integer
        """
        validate_ttl(ttl_seconds)
        with self._lock:
            now = self._now()
            if (
                self.max_entries > 0
                and key not in self._store
                and len(self._store) >= self.max_entries
            ):
                self._make_room_locked(now)
            self._store[key] = CacheEntry(
                key=key, value=value, created_at=now, ttl_seconds=ttl_seconds
            )
            self._stats.sets += 1

    def delete(self, key: str) -> bool:
        """Remove key; True if a live entry was removed."""
        with self._lock:
            entry = self._store.pop(key, None)
            if entry is None or entry.is_expired(self._now()):
                return False
            self._stats.deletes += 1
            return True

    def delete_matching(self, pattern: str) -> int:
        """Remove every key matching a glob pattern; returns the count.

        Raises:
            CachePatternError: if the pattern is malformed
        """
        matcher = compile_pattern(pattern)
        with self._lock:
            now = self._now()
            removed = 0
            for key in [k for k in self._store if matcher.match(k)]:
                entry = self._store.pop(key)
                if not entry.is_expired(now):
                    removed += 1
            self._stats.deletes += removed
            return removed

    def purge_expired(self) -> int:
        """Remove expired entries eagerly; returns the count."""
        with self._lock:
            return self._purge_expired_locked(self._now())

    def clear(self) -> None:
        """Drop every entry (explicit teardown)."""
        with self._lock:
            self._store.clear()

    def keys(self) -> List[str]:
        """Snapshot of the live keys."""
        with self._lock:
            now = self._now()
            return [k for k, e in self._store.items() if not e.is_expired(now)]

    def stats(self) -> CacheStats:
        with self._lock:
            now = self._now()
            size = sum(1 for e in self._store.values() if not e.is_expired(now))
            return CacheStats(
                hits=self._stats.hits,
                misses=self._stats.misses,
                sets=self._stats.sets,
                deletes=self._stats.deletes,
                evictions=self._stats.evictions,
                size=size,
                max_entries=self.max_entries,
            )

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return self._live_entry(key, self._now()) is not None

    def __len__(self) -> int:
        return len(self.keys())
