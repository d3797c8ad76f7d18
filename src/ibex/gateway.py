"""Attendance API Gateway - cached reads, invalidating writes.

Design:
- Read endpoints go through ResponseCache (per user, per creation day)
- Writes commit to the store, then invalidate, then notify out of band
- Per-client rate limiting (RateLimit-* headers) and JSONL request log in HTTP middleware
- Responses over 1 KiB are gzip-compressed
- create_app() owns every stateful component (no module-level cache)
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from pydantic import BaseModel, Field

from .auth import TokenAuthenticator, User, get_current_user
from .cache import CacheStore, TTLTier
from .config import Settings, load_settings
from .errors import (
    PermissionDeniedError,
    RateLimitedError,
    ValidationError,
    error_response,
    register_error_handlers,
)
from .invalidation import CacheInvalidator
from .keys import CreationDayClock, KeyBuilder
from .notifications import (
    HttpNotificationDispatcher,
    NotificationDispatcher,
    RecordingNotificationDispatcher,
    dispatch_attendance_notifications,
)
from .rate_limiter import ClientRateLimiter
from .response_cache import ResponseCache
from .store import OVERVIEW_FIELDS, AttendanceStore, load_seed

# Path prefixes whose cached views depend on attendance records.
ATTENDANCE_SCOPES = ("/api/attendance", "/api/grade-sections")

STATS_DEFAULT_DAYS = 30

# ============================================================================
# DATA MODELS
# ============================================================================


class AttendanceRecordIn(BaseModel):
    """Single student entry in a bulk mark."""

    student_id: str = Field(..., description="Student user id")
    status: str = Field(..., description="present, absent, late, excused, unmarked")
    notes: Optional[str] = Field(default=None, description="Free-form note")


class BulkMarkRequest(BaseModel):
    """Request to mark attendance for many students of one grade section.

    入力：
        - grade_section_id：対象クラス
        - date：出欠日（業務日付）
        - attendance_records：生徒ごとのステータス

    副作用：ストア更新、キャッシュ無効化、通知送信（非同期）
    失敗モード：不正ステータス時は 400（invalid_records 付き）
    """

    grade_section_id: str
    date: date
    attendance_records: List[AttendanceRecordIn]


class ResetRequest(BaseModel):
    grade_section_id: str
    date: date


# ============================================================================
# LOGGING
# ============================================================================

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _write_jsonl_log(log_entry: dict, log_path: Path) -> None:
    """Append JSON log entry to JSONL file.

    入力：log_entry dict, log_path
    出力：ファイル追記
    副作用：ディスク I/O
    失敗モード：ファイル書き込み失敗時は例外発生
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "a") as f:
        f.write(json.dumps(log_entry) + "\n")


# ============================================================================
# HELPERS
# ============================================================================


def _serve_cached(
    request: Request,
    response: Response,
    user: User,
    tier: TTLTier,
    compute: Callable[[], Any],
) -> Any:
    """Return the cached body for this user's view, or compute and cache it."""
    cache: ResponseCache = request.app.state.response_cache
    key, cached = cache.lookup(user.id, request.url.path, request.url.query)
    if cached is not None:
        response.headers["X-Cache"] = "HIT"
        return cached
    if cache.enabled:
        response.headers["X-Cache"] = "MISS"
    body = compute()
    cache.save(key, body, tier)
    return body


def _today(request: Request) -> date:
    clock: CreationDayClock = request.app.state.key_builder.clock
    return clock.now().date()


def _invalidate_attendance(request: Request, user: User, grade_section_id: str, day: date) -> int:
    invalidator: CacheInvalidator = request.app.state.invalidator
    result = invalidator.invalidate(
        ATTENDANCE_SCOPES,
        acting_user_id=user.id,
        acting_path="/api/attendance",
        acting_query={"grade_section_id": grade_section_id, "date": day.isoformat()},
    )
    return result.total_removed


def _build_dispatcher(settings: Settings) -> NotificationDispatcher:
    if settings.notifications_url:
        return HttpNotificationDispatcher(
            settings.notifications_url, timeout_seconds=settings.notifications_timeout_seconds
        )
    return RecordingNotificationDispatcher()


# ============================================================================
# FASTAPI APP
# ============================================================================


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[AttendanceStore] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
    day_clock: Optional[CreationDayClock] = None,
    cache_clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Build the gateway with its own cache, store and collaborators.

    Args:
        settings: Resolved settings (loaded from configs/default.yaml if omitted)
        store: Attendance store (seeded from settings.seed_path if omitted)
        dispatcher: Notification sink (HTTP if notifications_url is set)
        day_clock: Creation-day clock shared by cache reads and invalidation
        cache_clock: Time source for cache TTLs
    """
    settings = settings or load_settings()
    if store is None:
        store = load_seed(settings.seed_path) if settings.seed_path else AttendanceStore()
    dispatcher = dispatcher or _build_dispatcher(settings)
    key_builder = KeyBuilder(day_clock or CreationDayClock(settings.cache_timezone))
    cache_store = (
        CacheStore(max_entries=settings.cache_max_entries, clock=cache_clock)
        if settings.cache_enabled
        else None
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Gateway started (cache_enabled={settings.cache_enabled})")
        yield
        if cache_store is not None:
            cache_store.clear()
        await dispatcher.aclose()
        logger.info("Gateway stopped, cache cleared")

    app = FastAPI(title="Ibex Attendance Gateway", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.dispatcher = dispatcher
    app.state.key_builder = key_builder
    app.state.cache_store = cache_store
    app.state.response_cache = ResponseCache(cache_store, key_builder, settings.cache_tiers)
    app.state.invalidator = (
        CacheInvalidator(cache_store, key_builder) if cache_store is not None else None
    )
    app.state.authenticator = TokenAuthenticator(settings.tokens)
    app.state.rate_limiter = ClientRateLimiter(
        settings.rate_limit_max_requests, settings.rate_limit_window_seconds
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
        expose_headers=["X-Cache", "X-Request-ID", "RateLimit-Limit", "RateLimit-Remaining", "RateLimit-Reset"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    register_error_handlers(app)

    @app.middleware("http")
    async def observe_request(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        client_id = request.client.host if request.client else "unknown"
        start_time = time.time()

        limiter: ClientRateLimiter = app.state.rate_limiter
        limit = await limiter.acquire(client_id)
        if limit.allowed:
            response = await call_next(request)
        else:
            logger.warning(f"[{request_id}] Rate limited client {client_id}")
            response = error_response(RateLimitedError())

        latency_ms = (time.time() - start_time) * 1000
        if limiter.enabled:
            response.headers.update(limit.headers())
        response.headers["X-Request-ID"] = request_id
        user = getattr(request.state, "user", None)
        cache_status = response.headers.get("X-Cache", "NO-CACHE")
        logger.info(
            f"[{request_id}] {request.method} {request.url.path} [{response.status_code}] "
            f"{latency_ms:.1f}ms User:{user.id if user else None} Cache:{cache_status}"
        )

        if settings.request_log_enabled:
            log_entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "query": request.url.query,
                "status_code": response.status_code,
                "latency_ms": latency_ms,
                "user_id": user.id if user else None,
                "role": user.role if user else None,
                "cache": cache_status,
                "client": client_id,
            }
            try:
                _write_jsonl_log(log_entry, Path(settings.log_dir) / "gateway.jsonl")
            except Exception as e:
                logger.error(f"Failed to write log: {e}")

        return response

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @app.get("/api/attendance/grade-sections")
    def list_attendance_grade_sections(
        request: Request, response: Response, user: User = Depends(get_current_user)
    ):
        """Grade sections available for marking (teachers see their own)."""
        return _serve_cached(
            request,
            response,
            user,
            TTLTier.STANDARD,
            lambda: [s.to_dict() for s in store.list_grade_sections(user)],
        )

    @app.get("/api/attendance")
    def get_section_attendance(
        request: Request,
        response: Response,
        grade_section_id: Optional[str] = None,
        date: Optional[date] = None,
        user: User = Depends(get_current_user),
    ):
        """Students of a grade section with their status on a date.

        入力：grade_section_id, date（クエリ）
        出力：{students, statistics, date, grade_section_id}
        副作用：キャッシュ（SHORT tier）
        失敗モード：パラメータ欠落 400、担当外の教員 403
        """
        if not grade_section_id or date is None:
            raise ValidationError("Missing required parameters: grade_section_id and date")
        store.check_access(user, grade_section_id)

        def compute():
            students = store.section_attendance(grade_section_id, date)
            statistics = {"total": len(students)}
            for status in ("present", "absent", "late", "excused", "unmarked"):
                statistics[status] = sum(1 for s in students if s["status"] == status)
            return {
                "students": students,
                "statistics": statistics,
                "date": date.isoformat(),
                "grade_section_id": grade_section_id,
            }

        return _serve_cached(request, response, user, TTLTier.SHORT, compute)

    @app.get("/api/attendance/grade-sections/daily")
    def get_daily_overview(
        request: Request,
        response: Response,
        date: Optional[date] = None,
        user: User = Depends(get_current_user),
    ):
        """Per-section attendance counts for one business date (default today)."""
        day = date or _today(request)
        return _serve_cached(
            request,
            response,
            user,
            TTLTier.SHORT,
            lambda: {
                "date": day.isoformat(),
                "fields": OVERVIEW_FIELDS,
                "rows": store.daily_overview(user, day),
            },
        )

    @app.get("/api/grade-sections/overview")
    def get_grade_sections_overview(
        request: Request, response: Response, user: User = Depends(get_current_user)
    ):
        """Today's attendance overview for every visible grade section."""
        day = _today(request)
        return _serve_cached(
            request,
            response,
            user,
            TTLTier.STANDARD,
            lambda: {
                "date": day.isoformat(),
                "fields": OVERVIEW_FIELDS,
                "rows": store.daily_overview(user, day),
            },
        )

    @app.get("/api/attendance/stats")
    def get_attendance_stats(
        request: Request,
        response: Response,
        grade_section_id: Optional[str] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        user: User = Depends(get_current_user),
    ):
        """Per-day counts over a date range (default: last 30 days)."""
        if not grade_section_id:
            raise ValidationError("Missing grade_section_id parameter")
        store.check_access(user, grade_section_id)
        end = end_date or _today(request)
        start = start_date or end - timedelta(days=STATS_DEFAULT_DAYS)

        return _serve_cached(
            request,
            response,
            user,
            TTLTier.LONG,
            lambda: {
                "statistics": store.stats(grade_section_id, start, end),
                "date_range": {"start_date": start.isoformat(), "end_date": end.isoformat()},
                "grade_section_id": grade_section_id,
            },
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @app.post("/api/attendance/bulk-mark")
    def bulk_mark_attendance(
        payload: BulkMarkRequest,
        request: Request,
        background_tasks: BackgroundTasks,
        user: User = Depends(get_current_user),
    ):
        """Mark attendance for many students, then invalidate and notify.

        入力：BulkMarkRequest
        出力：{message, result, marked_at, cache_invalidated}
        副作用：
            - ストア更新（コミット後に無効化）
            - キャッシュ無効化（本日の作成日キー）
            - 通知送信（レスポンス後、失敗しても書き込みは成功扱い）
        失敗モード：不正レコード 400、担当外 403
        """
        section = store.check_access(user, payload.grade_section_id)
        records = [r.model_dump() for r in payload.attendance_records]
        result = store.bulk_mark(payload.grade_section_id, payload.date, records, marked_by=user.id)

        invalidated = 0
        if app.state.invalidator is not None:
            invalidated = _invalidate_attendance(request, user, payload.grade_section_id, payload.date)

        statuses = {r["student_id"]: r["status"] for r in records}
        notify = [{"student_id": sid, "status": statuses[sid]} for sid in result.notified_student_ids]
        background_tasks.add_task(
            dispatch_attendance_notifications,
            dispatcher,
            notify,
            payload.date.isoformat(),
            section.name,
            user.id,
        )

        return {
            "message": "Attendance marked successfully",
            "result": result.to_dict(),
            "marked_at": datetime.now(timezone.utc).isoformat(),
            "cache_invalidated": invalidated,
        }

    @app.post("/api/attendance/reset")
    def reset_attendance(
        payload: ResetRequest, request: Request, user: User = Depends(get_current_user)
    ):
        """Clear a section's attendance for a date (admins only)."""
        if not user.is_admin:
            raise PermissionDeniedError("Only admins can reset attendance")
        removed = store.reset(payload.grade_section_id, payload.date, reset_by=user.id)

        invalidated = 0
        if app.state.invalidator is not None:
            invalidated = _invalidate_attendance(request, user, payload.grade_section_id, payload.date)

        return {
            "message": "Attendance reset successfully",
            "result": {"reset": removed},
            "cache_invalidated": invalidated,
        }

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    @app.get("/health")
    async def health():
        return {"status": "ok", "cache_enabled": cache_store is not None}

    @app.get("/cache/stats")
    async def cache_stats(user: User = Depends(get_current_user)):
        """Cache and rate limiter counters (admins only)."""
        if not user.is_admin:
            raise PermissionDeniedError("Only admins can view cache statistics")
        return {
            "cache": cache_store.stats().to_dict() if cache_store is not None else None,
            "rate_limiter": await app.state.rate_limiter.get_stats(),
        }

    return app


app = create_app()
