"""Smoke check: a bulk mark must invalidate the cached daily overview.

Run against a live gateway (uvicorn ibex.gateway:app):

    python scripts/check_cache_invalidation.py --base-url http://localhost:8000
"""

import argparse
import sys

import httpx


def _row(data: dict, grade_section_id: str):
    for row in data.get("rows", []):
        if row[0] == grade_section_id:
            return row
    return None


def main() -> int:
    parser = argparse.ArgumentParser(description="Verify cache invalidation after bulk mark")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--token", default="demo-jwt-token-12345")
    parser.add_argument("--grade-section-id", default="gs-1-crimson")
    parser.add_argument("--student-id", default="stu-001")
    parser.add_argument("--date", default="2025-09-07")
    args = parser.parse_args()

    headers = {"Authorization": f"Bearer {args.token}"}
    overview_url = f"{args.base_url}/api/attendance/grade-sections/daily"
    params = {"date": args.date}

    with httpx.Client(headers=headers, timeout=30) as client:
        # Prime the cache
        client.get(overview_url, params=params).raise_for_status()
        primed = client.get(overview_url, params=params)
        print(f"1. primed overview X-Cache: {primed.headers.get('X-Cache')}")
        before = _row(primed.json(), args.grade_section_id)
        if before is None:
            print(f"Grade section {args.grade_section_id} not in overview")
            return 1

        mark = client.post(
            f"{args.base_url}/api/attendance/bulk-mark",
            json={
                "grade_section_id": args.grade_section_id,
                "date": args.date,
                "attendance_records": [{"student_id": args.student_id, "status": "present"}],
            },
        )
        mark.raise_for_status()
        print(f"2. bulk mark invalidated {mark.json().get('cache_invalidated')} key(s)")

        fresh = client.get(overview_url, params=params)
        after = _row(fresh.json(), args.grade_section_id)
        print(f"3. fresh overview X-Cache: {fresh.headers.get('X-Cache')} row: {after}")
        if fresh.headers.get("X-Cache") != "MISS":
            print("FAIL: overview served from stale cache")
            return 1

        again = client.get(overview_url, params=params)
        print(f"4. repeated overview X-Cache: {again.headers.get('X-Cache')}")

    print("OK: cache invalidated on write")
    return 0


if __name__ == "__main__":
    sys.exit(main())
