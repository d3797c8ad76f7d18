"""Request-layer view of the cache: lookup on read, save on 200, degrade on fault.

The cache is an accelerator only. Any exception from the store is logged
and turned into a miss (on lookup) or a skipped save, so a broken cache
behaves like no cache rather than failing the request.
"""

import copy
import logging
from typing import Any, Dict, Optional, Tuple

from .cache import CacheStore, TTLTier, resolve_tier_seconds
from .keys import KeyBuilder, QueryLike

logger = logging.getLogger(__name__)


class ResponseCache:
    """Per-user, per-day cached response bodies.

    Args:
        store: Backing CacheStore (None disables caching)
        key_builder: Shared KeyBuilder (same clock as the invalidator)
        tiers: TTL seconds per tier
    """

    def __init__(
        self,
        store: Optional[CacheStore],
        key_builder: KeyBuilder,
        tiers: Optional[Dict[TTLTier, int]] = None,
    ):
        self.store = store
        self.key_builder = key_builder
        self.tiers = tiers
        # Fail fast on a bad tier table rather than on first save.
        for tier in TTLTier:
            resolve_tier_seconds(tier, tiers)

    @property
    def enabled(self) -> bool:
        return self.store is not None

    def lookup(self, user_id: Any, path: str, query: QueryLike = None) -> Tuple[Optional[str], Optional[Any]]:
        """Return (key, cached body); body is None on a miss or fault."""
        if self.store is None:
            return None, None
        try:
            key = self.key_builder.read_key(user_id, path, query)
            value = self.store.get(key)
        except Exception as e:
            logger.error(f"[CACHE] Lookup failed, serving uncached: {e}")
            return None, None
        if value is None:
            logger.debug(f"[CACHE] MISS {key}")
            return key, None
        logger.debug(f"[CACHE] HIT {key}")
        return key, copy.deepcopy(value)

    def save(self, key: Optional[str], body: Any, tier: TTLTier) -> bool:
        """Store body under key with the tier's TTL; False if skipped."""
        if self.store is None or key is None:
            return False
        ttl = resolve_tier_seconds(tier, self.tiers)
        try:
            self.store.set(key, copy.deepcopy(body), ttl)
        except Exception as e:
            logger.error(f"[CACHE] Save failed for {key}: {e}")
            return False
        logger.debug(f"[CACHE] Stored {key} (TTL: {ttl}s)")
        return True
