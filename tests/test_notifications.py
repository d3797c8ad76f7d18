"""Tests for attendance notification dispatch."""

import json

import httpx
import pytest

from ibex.notifications import (
    AttendanceNotification,
    HttpNotificationDispatcher,
    NotificationDispatcher,
    RecordingNotificationDispatcher,
    dispatch_attendance_notifications,
)

RECORDS = [
    {"student_id": "s1", "status": "present"},
    {"student_id": "s2", "status": "unmarked"},
    {"student_id": "s3", "status": "absent"},
]


class FlakyDispatcher(NotificationDispatcher):
    """Fails for one student, records the rest."""

    def __init__(self, failing_id: str):
        self.failing_id = failing_id
        self.sent = []

    async def send(self, notification):
        if notification.student_id == self.failing_id:
            raise RuntimeError("push service down")
        self.sent.append(notification.student_id)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_skips_unmarked(self):
        """Test: unmarked students are not notified."""
        dispatcher = RecordingNotificationDispatcher()
        sent = await dispatch_attendance_notifications(dispatcher, RECORDS, "2025-09-07", "Grade 1", "t1")
        assert sent == 2
        assert [n.student_id for n in dispatcher.sent] == ["s1", "s3"]
        assert dispatcher.sent[0].grade_section_name == "Grade 1"

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_others(self):
        """Test: one failed send is logged and the rest still go out."""
        dispatcher = FlakyDispatcher("s1")
        sent = await dispatch_attendance_notifications(dispatcher, RECORDS, "2025-09-07", "Grade 1", "t1")
        assert sent == 1
        assert dispatcher.sent == ["s3"]


class TestHttpDispatcher:
    @pytest.mark.asyncio
    async def test_posts_action_payload(self):
        """Test: the HTTP dispatcher posts the send-attendance-notification action.

        入力：AttendanceNotification（s1, late）
        出力：{action, data{studentId, status, date, gradeSectionName, markedBy}}
        副作用：HTTP POST（MockTransport）
        失敗モード：なし
        """
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": True})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        dispatcher = HttpNotificationDispatcher("https://push.example/functions/push", client=client)
        notification = AttendanceNotification("s1", "late", "2025-09-07", "Grade 1", "t1")

        await dispatcher.send(notification)
        await dispatcher.aclose()

        assert seen == [
            {
                "action": "send-attendance-notification",
                "data": {
                    "studentId": "s1",
                    "status": "late",
                    "date": "2025-09-07",
                    "gradeSectionName": "Grade 1",
                    "markedBy": "t1",
                },
            }
        ]

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        """Test: non-2xx responses raise from send."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(502)))
        dispatcher = HttpNotificationDispatcher("https://push.example/functions/push", client=client)
        with pytest.raises(httpx.HTTPStatusError):
            await dispatcher.send(AttendanceNotification("s1", "late", "2025-09-07", "G", "t1"))
        await dispatcher.aclose()

    @pytest.mark.asyncio
    async def test_http_error_swallowed_by_dispatch(self):
        """Test: dispatch counts failed HTTP sends as not sent."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        dispatcher = HttpNotificationDispatcher("https://push.example/functions/push", client=client)
        sent = await dispatch_attendance_notifications(dispatcher, RECORDS, "2025-09-07", "G", "t1")
        assert sent == 0
        await dispatcher.aclose()
