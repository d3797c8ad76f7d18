"""Write-triggered cache invalidation.

After a committed write for a (resource, business date) pair:
1. take today's creation day from the KeyBuilder's clock
2. drop the acting user's own cached view (exact key)
3. sweep every user's views under each affected resource scope (glob)

Invalidation is best effort. It never raises into the write path.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence

from .cache import CacheStore
from .keys import KeyBuilder, QueryLike

logger = logging.getLogger(__name__)


@dataclass
class InvalidationResult:
    """What one invalidation pass removed."""

    creation_day: str
    own_key: Optional[str] = None
    own_key_removed: bool = False
    patterns: List[str] = field(default_factory=list)
    pattern_removed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def total_removed(self) -> int:
        return int(self.own_key_removed) + self.pattern_removed

    @property
    def ok(self) -> bool:
        return not self.errors


class CacheInvalidator:
    """Applies the invalidation policy against a CacheStore.

    入力：resource_scopes, acting_user_id, acting view (path + query)
    出力：InvalidationResult
    副作用：CacheStore からのキー削除、ログ出力
    失敗モード：ストア例外はログと errors に記録するのみ（再送出しない）
    """

    def __init__(self, store: CacheStore, key_builder: KeyBuilder):
        self.store = store
        self.key_builder = key_builder

    def invalidate(
        self,
        resource_scopes: Sequence[str],
        acting_user_id: Optional[Any] = None,
        acting_path: Optional[str] = None,
        acting_query: QueryLike = None,
    ) -> InvalidationResult:
        """Remove cached views made stale by a write.

        Args:
            resource_scopes: Path prefixes whose cached views are affected
            acting_user_id: User who performed the write (optional)
            acting_path: Path of the acting user's own view (optional)
            acting_query: Query of the acting user's own view

        Returns:
            InvalidationResult with per-step counts and any swallowed errors
        """
        creation_day = self.key_builder.today()
        result = InvalidationResult(creation_day=creation_day)

        if acting_user_id is not None and acting_path:
            try:
                result.own_key = self.key_builder.read_key(
                    acting_user_id, acting_path, acting_query, creation_day=creation_day
                )
                result.own_key_removed = self.store.delete(result.own_key)
            except Exception as e:
                logger.error(f"[CACHE] Failed to drop own view for user {acting_user_id}: {e}")
                result.errors.append(f"own_key: {e}")

        for scope in resource_scopes:
            try:
                pattern = self.key_builder.invalidation_pattern(scope, creation_day=creation_day)
                result.patterns.append(pattern)
                result.pattern_removed += self.store.delete_matching(pattern)
            except Exception as e:
                logger.error(f"[CACHE] Failed to invalidate scope {scope!r}: {e}")
                result.errors.append(f"{scope}: {e}")

        logger.info(
            f"[CACHE] Invalidated {result.total_removed} key(s) for {creation_day} "
            f"(own={result.own_key_removed}, patterns={result.patterns})"
        )
        return result
