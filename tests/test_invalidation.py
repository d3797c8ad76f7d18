"""Tests for write-triggered cache invalidation."""

from datetime import datetime, timedelta, timezone

import pytest

from ibex.cache import CacheStore
from ibex.invalidation import CacheInvalidator
from ibex.keys import CreationDayClock, KeyBuilder


class MutableNow:
    def __init__(self, current: datetime):
        self.current = current

    def __call__(self) -> datetime:
        return self.current


class BrokenStore(CacheStore):
    """Store whose deletes always fail."""

    def delete(self, key):
        raise RuntimeError("store unavailable")

    def delete_matching(self, pattern):
        raise RuntimeError("store unavailable")


@pytest.fixture
def now():
    return MutableNow(datetime(2025, 9, 7, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def builder(now):
    return KeyBuilder(CreationDayClock("UTC", now=now))


@pytest.fixture
def store():
    return CacheStore()


@pytest.fixture
def invalidator(store, builder):
    return CacheInvalidator(store, builder)


class TestInvalidate:
    def test_removes_own_view_and_every_user_view(self, store, builder, invalidator):
        """Test: own key removed exactly, other users swept by pattern.

        入力：3 ユーザーの /api/attendance ビュー、1 件は書き込みユーザー
        出力：own_key_removed True、pattern_removed 2
        副作用：ストアからキー削除
        失敗モード：なし
        """
        own = builder.read_key("teacher-1", "/api/attendance", {"grade_section_id": "g1", "date": "2025-09-07"})
        other = builder.read_key("admin-1", "/api/attendance", {"grade_section_id": "g1", "date": "2025-09-07"})
        daily = builder.read_key("admin-1", "/api/attendance/grade-sections/daily", {"date": "2025-09-07"})
        unrelated = builder.read_key("admin-1", "/api/homework")
        for key in (own, other, daily, unrelated):
            store.set(key, {"cached": True}, 60)

        result = invalidator.invalidate(
            ["/api/attendance"],
            acting_user_id="teacher-1",
            acting_path="/api/attendance",
            acting_query={"date": "2025-09-07", "grade_section_id": "g1"},
        )

        assert result.own_key == own
        assert result.own_key_removed is True
        assert result.pattern_removed == 2
        assert result.total_removed == 3
        assert result.ok
        assert store.get(unrelated) == {"cached": True}

    def test_business_date_differs_from_creation_day(self, store, builder, invalidator):
        """Writing for an old date still sweeps views cached today."""
        key = builder.read_key("user-a", "/api/attendance", {"date": "2025-01-01"})
        store.set(key, [1, 2, 3], 30)

        result = invalidator.invalidate(["/api/attendance"])

        assert result.creation_day == "2025-09-07"
        assert result.pattern_removed == 1
        assert store.get(key) is None

    def test_next_day_write_leaves_yesterday_alone(self, store, builder, invalidator, now):
        """Test: a write on the next day does not touch yesterday's partition."""
        key = builder.read_key("user-a", "/api/attendance", {"date": "2025-01-01"})
        store.set(key, [1], 30)

        now.current += timedelta(days=1)
        result = invalidator.invalidate(["/api/attendance"], acting_user_id="user-a", acting_path="/api/attendance", acting_query={"date": "2025-01-01"})

        assert result.creation_day == "2025-09-08"
        assert result.own_key_removed is False
        assert result.pattern_removed == 0
        assert store.get(key) == [1]

    def test_nothing_cached_is_normal(self, invalidator):
        """Test: zero matches is a successful pass with no errors."""
        result = invalidator.invalidate(["/api/attendance", "/api/grade-sections"], acting_user_id="u", acting_path="/api/attendance")
        assert result.total_removed == 0
        assert result.ok
        assert result.patterns == [
            "date:2025-09-07:user:*:/api/attendance*",
            "date:2025-09-07:user:*:/api/grade-sections*",
        ]

    def test_own_key_skipped_without_path(self, invalidator):
        """Test: without an acting path only the pattern sweep runs."""
        result = invalidator.invalidate(["/api/attendance"], acting_user_id="u")
        assert result.own_key is None

    def test_store_failures_are_reported_not_raised(self, builder):
        """Test: store exceptions end up in result.errors."""
        invalidator = CacheInvalidator(BrokenStore(), builder)
        result = invalidator.invalidate(["/api/attendance"], acting_user_id="u", acting_path="/api/attendance")
        assert not result.ok
        assert len(result.errors) == 2
        assert result.total_removed == 0

    def test_bad_scope_does_not_stop_other_scopes(self, store, builder, invalidator):
        """Test: one failing scope does not stop the remaining scopes."""
        key = builder.read_key("u", "/api/grade-sections/overview")
        store.set(key, {}, 60)
        result = invalidator.invalidate(["", "/api/grade-sections"])
        assert len(result.errors) == 1
        assert result.pattern_removed == 1
