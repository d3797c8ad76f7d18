"""Attendance notification dispatch.

Push delivery lives in a hosted function; this module only hands it one
"send-attendance-notification" action per student after a committed bulk
mark. Failures are logged and never reach the write that triggered them.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class AttendanceNotification:
    student_id: str
    status: str
    date: str
    grade_section_name: str
    marked_by: str

    def to_payload(self) -> Dict[str, Any]:
        return {
            "action": "send-attendance-notification",
            "data": {
                "studentId": self.student_id,
                "status": self.status,
                "date": self.date,
                "gradeSectionName": self.grade_section_name,
                "markedBy": self.marked_by,
            },
        }


class NotificationDispatcher:
    """Abstract base for notification sinks."""

    async def send(self, notification: AttendanceNotification) -> None:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


class RecordingNotificationDispatcher(NotificationDispatcher):
    """Keeps sent notifications in memory and logs them.

    Default dispatcher when no push endpoint is configured.
    """

    def __init__(self):
        self.sent: List[AttendanceNotification] = []

    async def send(self, notification: AttendanceNotification) -> None:
        self.sent.append(notification)
        logger.info(
            f"[NOTIFY] {notification.student_id} marked {notification.status} "
            f"on {notification.date} ({notification.grade_section_name})"
        )


class HttpNotificationDispatcher(NotificationDispatcher):
    """POST notifications to a hosted push function.

    Args:
        url: Push function endpoint
        timeout_seconds: Per-request timeout
        headers: Extra headers (e.g. Authorization for the function)
        client: Pre-built httpx.AsyncClient (tests inject a MockTransport)
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds, headers=headers)

    async def send(self, notification: AttendanceNotification) -> None:
        response = await self._client.post(self.url, json=notification.to_payload())
        response.raise_for_status()

    async def aclose(self) -> None:
        await self._client.aclose()


async def dispatch_attendance_notifications(
    dispatcher: NotificationDispatcher,
    records: List[Dict[str, Any]],
    date: str,
    grade_section_name: str,
    marked_by: str,
) -> int:
    """Send one notification per marked (non-"unmarked") record.

    入力：bulk mark の records
    出力：送信成功件数
    副作用：dispatcher への送信、ログ出力
    失敗モード：個別の送信失敗は警告ログのみ（例外は再送出しない）
    """
    sent = 0
    for record in records:
        if record.get("status") == "unmarked":
            continue
        notification = AttendanceNotification(
            student_id=record["student_id"],
            status=record["status"],
            date=date,
            grade_section_name=grade_section_name,
            marked_by=marked_by,
        )
        try:
            await dispatcher.send(notification)
            sent += 1
        except Exception as e:
            logger.warning(f"[NOTIFY] Failed to notify student {notification.student_id}: {e}")
    return sent
