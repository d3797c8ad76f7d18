"""
Ibex attendance API

In-process response cache for the attendance endpoints, with per-user,
per-day keys and write-triggered invalidation.
"""

__version__ = "0.1.0"

from .cache import CacheConfigurationError, CachePatternError, CacheStore, TTLTier
from .invalidation import CacheInvalidator, InvalidationResult
from .keys import CreationDayClock, KeyBuilder, build_invalidation_pattern, build_read_key

__all__ = [
    "CacheConfigurationError",
    "CachePatternError",
    "CacheStore",
    "TTLTier",
    "CacheInvalidator",
    "InvalidationResult",
    "CreationDayClock",
    "KeyBuilder",
    "build_invalidation_pattern",
    "build_read_key",
]
