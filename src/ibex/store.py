"""Authoritative attendance data (in-memory).

Stands in for the hosted database: grade sections, enrollments and
per-day attendance records, plus the read/write operations the attendance
endpoints need. Every operation takes the store lock, so a bulk mark is
visible all at once.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from .auth import User
from .errors import NotFoundError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)

STATUSES = ("present", "absent", "late", "excused", "unmarked")

OVERVIEW_FIELDS = ["id", "name", "student_count", "present", "absent", "late", "excused", "unmarked"]


@dataclass
class GradeSection:
    id: str
    name: str
    grade_level: int
    section: str
    teacher_id: Optional[str] = None
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "grade_level": self.grade_level,
            "section": self.section,
            "teacher_id": self.teacher_id,
        }


@dataclass
class Student:
    id: str
    name: str
    grade_section_id: str


@dataclass
class AttendanceRecord:
    student_id: str
    status: str
    notes: str = ""
    marked_by: Optional[str] = None
    marked_at: Optional[datetime] = None


@dataclass
class MarkResult:
    """Outcome of one bulk mark."""

    grade_section_id: str
    date: str
    marked: int = 0
    created: int = 0
    updated: int = 0
    notified_student_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "grade_section_id": self.grade_section_id,
            "date": self.date,
            "marked": self.marked,
            "created": self.created,
            "updated": self.updated,
        }


def _count_statuses(statuses: Iterable[str]) -> Dict[str, int]:
    counts = {status: 0 for status in STATUSES}
    for status in statuses:
        counts[status] += 1
    counts["total"] = sum(counts[s] for s in STATUSES)
    return counts


class AttendanceStore:
    """Thread-safe in-memory attendance database."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sections: Dict[str, GradeSection] = {}
        self._students: Dict[str, Student] = {}
        self._records: Dict[Tuple[str, str], Dict[str, AttendanceRecord]] = {}

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def add_grade_section(self, section: GradeSection) -> GradeSection:
        with self._lock:
            self._sections[section.id] = section
        return section

    def enroll(self, student: Student) -> Student:
        with self._lock:
            if student.grade_section_id not in self._sections:
                raise NotFoundError(f"Grade section not found: {student.grade_section_id}")
            self._students[student.id] = student
        return student

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def get_grade_section(self, grade_section_id: str) -> GradeSection:
        section = self._sections.get(grade_section_id)
        if section is None or not section.is_active:
            raise NotFoundError(f"Grade section not found: {grade_section_id}")
        return section

    def check_access(self, user: User, grade_section_id: str) -> GradeSection:
        """Teachers may only touch sections assigned to them.

        Raises:
            NotFoundError: unknown or inactive section
            PermissionDeniedError: teacher not assigned to the section
        """
        with self._lock:
            section = self.get_grade_section(grade_section_id)
        if user.role == "teacher" and section.teacher_id != user.id:
            raise PermissionDeniedError("Access denied to this grade section")
        return section

    def list_grade_sections(self, user: User) -> List[GradeSection]:
        with self._lock:
            return self._visible_sections(user)

    def _visible_sections(self, user: User) -> List[GradeSection]:
        sections = [s for s in self._sections.values() if s.is_active]
        if user.role == "teacher":
            sections = [s for s in sections if s.teacher_id == user.id]
        return sorted(sections, key=lambda s: (s.grade_level, s.section))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _roster(self, grade_section_id: str) -> List[Student]:
        students = [s for s in self._students.values() if s.grade_section_id == grade_section_id]
        return sorted(students, key=lambda s: s.name)

    def section_attendance(self, grade_section_id: str, day: date) -> List[Dict[str, Any]]:
        """Every enrolled student with their status on day (default unmarked)."""
        with self._lock:
            self.get_grade_section(grade_section_id)
            records = self._records.get((grade_section_id, day.isoformat()), {})
            rows = []
            for student in self._roster(grade_section_id):
                record = records.get(student.id)
                rows.append(
                    {
                        "student_id": student.id,
                        "name": student.name,
                        "status": record.status if record else "unmarked",
                        "notes": record.notes if record else "",
                        "marked_at": record.marked_at.isoformat() if record and record.marked_at else None,
                    }
                )
            return rows

    def daily_overview(self, user: User, day: date) -> List[List[Any]]:
        """One row per visible section, laid out as OVERVIEW_FIELDS."""
        with self._lock:
            rows = []
            for section in self._visible_sections(user):
                records = self._records.get((section.id, day.isoformat()), {})
                statuses = [
                    records[s.id].status if s.id in records else "unmarked"
                    for s in self._roster(section.id)
                ]
                counts = _count_statuses(statuses)
                rows.append(
                    [
                        section.id,
                        section.name,
                        counts["total"],
                        counts["present"],
                        counts["absent"],
                        counts["late"],
                        counts["excused"],
                        counts["unmarked"],
                    ]
                )
            return rows

    def stats(self, grade_section_id: str, start: date, end: date) -> List[Dict[str, Any]]:
        """Per-day status counts for days in [start, end] that have records."""
        if start > end:
            raise ValidationError("start_date must not be after end_date")
        with self._lock:
            self.get_grade_section(grade_section_id)
            roster_ids = {s.id for s in self._roster(grade_section_id)}
            days = []
            for (section_id, day_iso), records in sorted(self._records.items()):
                if section_id != grade_section_id:
                    continue
                if not start.isoformat() <= day_iso <= end.isoformat():
                    continue
                statuses = [records[sid].status if sid in records else "unmarked" for sid in roster_ids]
                days.append({"date": day_iso, **_count_statuses(statuses)})
            return days

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def bulk_mark(
        self,
        grade_section_id: str,
        day: date,
        records: List[Dict[str, Any]],
        marked_by: str,
    ) -> MarkResult:
        """Upsert attendance for many students in one step.

        Raises:
            ValidationError: a record has no student_id, an unknown status,
                a student outside the section, or a student listed twice
        """
        invalid = [r for r in records if not r.get("student_id") or r.get("status") not in STATUSES]
        if invalid:
            raise ValidationError("Invalid attendance records", {"invalid_records": invalid})
        seen = set()
        duplicates = []
        for r in records:
            if r["student_id"] in seen:
                duplicates.append(r)
            seen.add(r["student_id"])
        if duplicates:
            raise ValidationError(
                "Each student may appear only once per bulk mark",
                {"invalid_records": duplicates},
            )

        now = datetime.now(timezone.utc)
        with self._lock:
            self.get_grade_section(grade_section_id)
            roster_ids = {s.id for s in self._roster(grade_section_id)}
            outsiders = [r for r in records if r["student_id"] not in roster_ids]
            if outsiders:
                raise ValidationError(
                    "Students are not enrolled in this grade section",
                    {"invalid_records": outsiders},
                )

            day_records = self._records.setdefault((grade_section_id, day.isoformat()), {})
            result = MarkResult(grade_section_id=grade_section_id, date=day.isoformat())
            for r in records:
                if r["student_id"] in day_records:
                    result.updated += 1
                else:
                    result.created += 1
                day_records[r["student_id"]] = AttendanceRecord(
                    student_id=r["student_id"],
                    status=r["status"],
                    notes=r.get("notes") or "",
                    marked_by=marked_by,
                    marked_at=now,
                )
                if r["status"] != "unmarked":
                    result.notified_student_ids.append(r["student_id"])
            result.marked = len(records)

        logger.info(
            f"[ATTENDANCE] Marked {result.marked} student(s) in {grade_section_id} on {result.date}"
        )
        return result

    def reset(self, grade_section_id: str, day: date, reset_by: str) -> int:
        """Drop every record of a section for a day; returns how many."""
        with self._lock:
            self.get_grade_section(grade_section_id)
            removed = self._records.pop((grade_section_id, day.isoformat()), {})
        logger.info(
            f"[ATTENDANCE] {reset_by} reset {len(removed)} record(s) in {grade_section_id} on {day}"
        )
        return len(removed)


def load_seed(path: str, store: Optional[AttendanceStore] = None) -> AttendanceStore:
    """Populate a store from a YAML seed file.

    Expected layout::

        grade_sections:
          - {id: gs-1, name: Grade 1 Crimson, grade_level: 1, section: A, teacher_id: t-1}
        students:
          - {id: s-1, name: Ada, grade_section_id: gs-1}

    Raises:
        FileNotFoundError: If path does not exist
    """
    seed_path = Path(path)
    if not seed_path.exists():
        raise FileNotFoundError(f"Seed file not found: {path}")
    with open(seed_path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    store = store or AttendanceStore()
    for item in data.get("grade_sections", []):
        store.add_grade_section(
            GradeSection(
                id=str(item["id"]),
                name=item["name"],
                grade_level=int(item.get("grade_level", 0)),
                section=str(item.get("section", "")),
                teacher_id=item.get("teacher_id"),
                is_active=bool(item.get("is_active", True)),
            )
        )
    for item in data.get("students", []):
        store.enroll(
            Student(id=str(item["id"]), name=item["name"], grade_section_id=str(item["grade_section_id"]))
        )
    logger.info(f"Loaded seed {seed_path}: {len(data.get('grade_sections', []))} section(s)")
    return store
