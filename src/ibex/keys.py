"""Cache key and invalidation-pattern composition.

Read keys and invalidation patterns share one layout:

    date:{creation_day}:user:{user_id}:{path}[?{sorted query}]

The creation day is the calendar day on which the entry is written (not any
date carried in the query string), computed by a single CreationDayClock.
KeyBuilder pulls the day for both reads and invalidations from the same
clock so the two sides cannot drift apart.
"""

import re
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Tuple, Union
from urllib.parse import parse_qsl, urlencode
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .cache import CacheConfigurationError

QueryLike = Union[None, str, Mapping[str, Any], Iterable[Tuple[str, Any]]]
DayLike = Union[str, date]

_DAY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CreationDayClock:
    """The one rule for "which day is it" used by cache reads and writes.

    Args:
        tz_name: IANA timezone the day is computed in (default UTC)
        now: Callable returning an aware datetime (injectable for tests)
    """

    def __init__(self, tz_name: str = "UTC", now: Callable[[], datetime] = _utc_now):
        try:
            self.tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise CacheConfigurationError(f"Unknown timezone: {tz_name!r}") from e
        self.tz_name = tz_name
        self._now = now

    def now(self) -> datetime:
        current = self._now()
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return current.astimezone(self.tz)

    def today(self) -> str:
        """Current creation day as YYYY-MM-DD."""
        return self.now().date().isoformat()


def format_day(day: DayLike) -> str:
    """Render a creation day; strings must already be YYYY-MM-DD."""
    if isinstance(day, datetime):
        return day.date().isoformat()
    if isinstance(day, date):
        return day.isoformat()
    if isinstance(day, str) and _DAY_RE.match(day):
        return day
    raise CacheConfigurationError(f"Creation day must be YYYY-MM-DD, got {day!r}")


def _normalize_path(path: str) -> str:
    path = path.strip() or "/"
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


def _query_pairs(query: QueryLike) -> list:
    if query is None:
        return []
    if isinstance(query, str):
        return parse_qsl(query.lstrip("?"), keep_blank_values=True)
    items = query.items() if isinstance(query, Mapping) else query
    pairs = []
    for name, value in items:
        if isinstance(value, (list, tuple)):
            pairs.extend((str(name), "" if v is None else str(v)) for v in value)
        else:
            pairs.append((str(name), "" if value is None else str(value)))
    return pairs


def normalize_path_and_query(path: str, query: QueryLike = None) -> str:
    """Canonical "path?query" string: no trailing slash, sorted parameters.

    A query embedded in path is used when query is not given separately.
    """
    if query is None and "?" in path:
        path, query = path.split("?", 1)
    pairs = sorted(_query_pairs(query))
    normalized = _normalize_path(path)
    if pairs:
        normalized += "?" + urlencode(pairs)
    return normalized


def _check_user_id(user_id: Any) -> str:
    user_id = str(user_id)
    if not user_id:
        raise CacheConfigurationError("user_id must not be empty")
    return user_id


def build_read_key(creation_day: DayLike, user_id: Any, path: str, query: QueryLike = None) -> str:
    """Key for one user's cached view of path+query, written on creation_day."""
    return (
        f"date:{format_day(creation_day)}"
        f":user:{_check_user_id(user_id)}"
        f":{normalize_path_and_query(path, query)}"
    )


def build_invalidation_pattern(creation_day: DayLike, resource_scope: str) -> str:
    """Glob matching every user's read key under resource_scope on creation_day."""
    if not resource_scope:
        raise CacheConfigurationError("resource_scope must not be empty")
    return f"date:{format_day(creation_day)}:user:*:{_normalize_path(resource_scope)}*"


class KeyBuilder:
    """Builds read keys and invalidation patterns off one CreationDayClock."""

    def __init__(self, clock: Optional[CreationDayClock] = None):
        self.clock = clock or CreationDayClock()

    def today(self) -> str:
        return self.clock.today()

    def read_key(
        self,
        user_id: Any,
        path: str,
        query: QueryLike = None,
        creation_day: Optional[DayLike] = None,
    ) -> str:
        day = creation_day if creation_day is not None else self.today()
        return build_read_key(day, user_id, path, query)

    def invalidation_pattern(
        self, resource_scope: str, creation_day: Optional[DayLike] = None
    ) -> str:
        day = creation_day if creation_day is not None else self.today()
        return build_invalidation_pattern(day, resource_scope)
