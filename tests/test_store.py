"""Tests for the in-memory attendance store."""

import threading
from datetime import date

import pytest

from ibex.auth import User
from ibex.errors import NotFoundError, PermissionDeniedError, ValidationError
from ibex.store import AttendanceStore, GradeSection, Student, load_seed

DAY = date(2025, 9, 7)

ADMIN = User(id="admin-1", role="admin")
TEACHER = User(id="teacher-1", role="teacher")
OTHER_TEACHER = User(id="teacher-2", role="teacher")


@pytest.fixture
def store():
    store = AttendanceStore()
    store.add_grade_section(GradeSection("g1", "Grade 1 Crimson", 1, "Crimson", teacher_id="teacher-1"))
    store.add_grade_section(GradeSection("g2", "Grade 2 Azure", 2, "Azure", teacher_id="teacher-2"))
    store.add_grade_section(GradeSection("g0", "Closed", 1, "Old", is_active=False))
    store.enroll(Student("s1", "Ada", "g1"))
    store.enroll(Student("s2", "Ben", "g1"))
    store.enroll(Student("s3", "Cy", "g2"))
    return store


class TestAccess:
    """Test section visibility and teacher assignment checks."""

    def test_teacher_sees_own_sections(self, store):
        """Test: teachers only list sections assigned to them."""
        assert [s.id for s in store.list_grade_sections(TEACHER)] == ["g1"]

    def test_admin_sees_all_active_sections(self, store):
        assert [s.id for s in store.list_grade_sections(ADMIN)] == ["g1", "g2"]

    def test_teacher_denied_foreign_section(self, store):
        """Test: check_access refuses a teacher on another teacher's section."""
        with pytest.raises(PermissionDeniedError):
            store.check_access(OTHER_TEACHER, "g1")

    def test_inactive_section_not_found(self, store):
        """Test: inactive sections behave as missing."""
        with pytest.raises(NotFoundError):
            store.check_access(ADMIN, "g0")

    def test_enroll_unknown_section(self, store):
        with pytest.raises(NotFoundError):
            store.enroll(Student("s9", "Zed", "missing"))


class TestReads:
    """Test roster, overview and stats reads."""

    def test_unmarked_by_default(self, store):
        rows = store.section_attendance("g1", DAY)
        assert [(r["student_id"], r["status"]) for r in rows] == [("s1", "unmarked"), ("s2", "unmarked")]

    def test_daily_overview_counts(self, store):
        """Test: overview rows follow OVERVIEW_FIELDS with per-status counts.

        入力：s1=present を記録
        出力：g1 行は total 2, present 1, unmarked 1
        副作用：なし
        失敗モード：なし
        """
        store.bulk_mark("g1", DAY, [{"student_id": "s1", "status": "present"}], marked_by="teacher-1")
        rows = store.daily_overview(ADMIN, DAY)
        assert rows[0] == ["g1", "Grade 1 Crimson", 2, 1, 0, 0, 0, 1]
        assert rows[1] == ["g2", "Grade 2 Azure", 1, 0, 0, 0, 0, 1]

    def test_stats_range(self, store):
        """Test: stats include only days inside the range, with unmarked filled in."""
        store.bulk_mark("g1", date(2025, 9, 1), [{"student_id": "s1", "status": "late"}], marked_by="a")
        store.bulk_mark("g1", DAY, [{"student_id": "s2", "status": "absent"}], marked_by="a")
        store.bulk_mark("g1", date(2025, 10, 1), [{"student_id": "s2", "status": "absent"}], marked_by="a")

        days = store.stats("g1", date(2025, 9, 1), date(2025, 9, 30))

        assert [d["date"] for d in days] == ["2025-09-01", "2025-09-07"]
        assert days[0]["late"] == 1
        assert days[0]["unmarked"] == 1
        assert days[1]["absent"] == 1
        assert days[1]["total"] == 2

    def test_stats_inverted_range(self, store):
        with pytest.raises(ValidationError):
            store.stats("g1", date(2025, 9, 30), date(2025, 9, 1))


class TestWrites:
    """Test bulk_mark and reset."""

    def test_bulk_mark_creates_then_updates(self, store):
        """Test: first mark creates, second mark updates and notifies marked students only.

        入力：s1=present → s1=late(notes), s2=unmarked
        出力：created/updated カウント、notified_student_ids == ["s1"]
        副作用：レコード上書き
        失敗モード：なし
        """
        first = store.bulk_mark("g1", DAY, [{"student_id": "s1", "status": "present"}], marked_by="t")
        second = store.bulk_mark(
            "g1",
            DAY,
            [{"student_id": "s1", "status": "late", "notes": "bus"}, {"student_id": "s2", "status": "unmarked"}],
            marked_by="t",
        )
        assert (first.created, first.updated) == (1, 0)
        assert (second.created, second.updated, second.marked) == (1, 1, 2)
        assert second.notified_student_ids == ["s1"]
        rows = {r["student_id"]: r for r in store.section_attendance("g1", DAY)}
        assert rows["s1"]["status"] == "late"
        assert rows["s1"]["notes"] == "bus"

    def test_invalid_status_rejected(self, store):
        """Test: unknown statuses are returned as invalid_records."""
        with pytest.raises(ValidationError) as exc:
            store.bulk_mark("g1", DAY, [{"student_id": "s1", "status": "sleeping"}], marked_by="t")
        assert exc.value.details["invalid_records"] == [{"student_id": "s1", "status": "sleeping"}]

    def test_missing_student_id_rejected(self, store):
        with pytest.raises(ValidationError):
            store.bulk_mark("g1", DAY, [{"status": "present"}], marked_by="t")

    def test_student_outside_section_rejected(self, store):
        """Test: a student of another section rejects the whole batch."""
        with pytest.raises(ValidationError):
            store.bulk_mark("g1", DAY, [{"student_id": "s3", "status": "present"}], marked_by="t")
        assert store.section_attendance("g1", DAY)[0]["status"] == "unmarked"

    def test_duplicate_student_rejected(self, store):
        """Test: a student listed twice fails before anything is written.

        入力：s1=present, s1=absent
        出力：ValidationError（invalid_records に 2 件目）
        副作用：なし（ストア未変更）
        失敗モード：重複を許すと created/updated が二重計上される
        """
        records = [{"student_id": "s1", "status": "present"}, {"student_id": "s1", "status": "absent"}]
        with pytest.raises(ValidationError) as exc:
            store.bulk_mark("g1", DAY, records, marked_by="t")
        assert exc.value.details["invalid_records"] == [{"student_id": "s1", "status": "absent"}]
        assert store.section_attendance("g1", DAY)[0]["status"] == "unmarked"

    def test_reset(self, store):
        """Test: reset reports how many records it dropped."""
        store.bulk_mark("g1", DAY, [{"student_id": "s1", "status": "present"}], marked_by="t")
        assert store.reset("g1", DAY, reset_by="admin-1") == 1
        assert store.reset("g1", DAY, reset_by="admin-1") == 0
        assert store.section_attendance("g1", DAY)[0]["status"] == "unmarked"


class TestConcurrency:
    def test_listing_while_sections_are_added(self, store):
        """Test: listing sections is safe while another thread adds sections."""
        errors = []

        def add_sections():
            for i in range(2000):
                store.add_grade_section(GradeSection(f"extra-{i}", f"Extra {i}", 3, str(i)))

        def list_sections():
            try:
                for _ in range(200):
                    store.list_grade_sections(ADMIN)
            except RuntimeError as e:
                errors.append(e)

        threads = [threading.Thread(target=add_sections), threading.Thread(target=list_sections)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(store.list_grade_sections(ADMIN)) == 2002


class TestLoadSeed:
    def test_load_seed(self, tmp_path):
        path = tmp_path / "seed.yaml"
        path.write_text(
            "grade_sections:\n"
            "  - {id: g1, name: Grade 1, grade_level: 1, section: A, teacher_id: t1}\n"
            "students:\n"
            "  - {id: s1, name: Ada, grade_section_id: g1}\n"
        )
        store = load_seed(str(path))
        assert store.get_grade_section("g1").teacher_id == "t1"
        assert len(store.section_attendance("g1", DAY)) == 1

    def test_missing_seed(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_seed(str(tmp_path / "missing.yaml"))
