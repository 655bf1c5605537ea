from datetime import date, datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Body, Query, Request
from fastapi.responses import PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, Gauge, generate_latest
from pydantic import BaseModel, ConfigDict, Field

from playback_reporting.backup import export_backup, import_backup
from playback_reporting.config import settings
from playback_reporting.database import db
from playback_reporting.jellyfin_client import jellyfin_api, jellyfin_client
from playback_reporting.models import BreakdownDimension
from playback_reporting.reports import (
    LABELS_USER,
    ReportingEngine,
    sort_breakdown,
    sort_by_display_name,
)

router = APIRouter()
stats = APIRouter(prefix="/user_usage_stats")

ACTIVE_SESSIONS = Gauge("playback_reporting_active_sessions", "Tracked playback sessions")
TOTAL_RECORDS = Gauge("playback_reporting_total_records", "Stored playback records")
WS_CONNECTED = Gauge("playback_reporting_ws_connected", "Jellyfin websocket connected")
LAST_WS_MESSAGE = Gauge(
    "playback_reporting_ws_last_message_timestamp", "Last websocket message unix timestamp"
)

UNKNOWN_USER = "Not Known"


class CustomQueryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    custom_query_string: str = Field("", alias="CustomQueryString")
    replace_user_id: bool = Field(False, alias="ReplaceUserId")


def _time_part(value: int, name: str) -> str:
    return f"{value} {name}{'s' if value > 1 else ''}"


def format_time_span(seconds: float) -> str:
    """Format a span as e.g. ``1 week 2 days 3 hours``; empty under a minute."""
    seconds = int(seconds)
    days, remainder = divmod(seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes = remainder // 60

    parts = []
    years, days = divmod(days, 365)
    weeks, days = divmod(days, 7)
    for value, name in ((years, "year"), (weeks, "week"), (days, "day"), (hours, "hour"),
                        (minutes, "minute")):
        if value > 0:
            parts.append(_time_part(value, name))
    return " ".join(parts)


def offset_minutes(hours: Optional[float]) -> int:
    """``timezoneOffset`` arrives in hours east of UTC, possibly fractional."""
    return int(round((hours or 0) * 60))


def _engine() -> ReportingEngine:
    return ReportingEngine(db)


async def _user_names() -> dict[str, str]:
    return await jellyfin_api.get_user_names()


@stats.get("/type_filter_list")
async def type_filter_list():
    return await _engine().type_filter_list()


@stats.get("/user_activity")
async def user_activity(
    days: int = 7,
    end_date: Optional[date] = Query(None, alias="endDate"),
    timezone_offset: Optional[float] = Query(None, alias="timezoneOffset"),
):
    """Per-user totals with display names and relative last-seen strings."""
    report = await _engine().user_activity_report(
        days, end_date, offset_minutes(timezone_offset)
    )
    names = await _user_names()
    now = datetime.now(timezone.utc)
    result = []
    for entry in report:
        row = entry.model_dump(mode="json")
        row["user_name"] = names.get(entry.user_id, UNKNOWN_USER)
        row["last_seen"] = format_time_span((now - entry.latest_date).total_seconds()) or "just now"
        row["total_play_time"] = format_time_span(entry.total_time) or "< 1 minute"
        result.append(row)
    return result


@stats.get("/user_manage/prune")
async def prune_unknown_users() -> bool:
    names = await _user_names()
    await db.remove_unknown_users(list(names))
    return True


@stats.get("/user_manage/add")
async def ignore_list_add(id: str) -> bool:
    await db.manage_user_list("add", id)
    return True


@stats.get("/user_manage/remove")
async def ignore_list_remove(id: str) -> bool:
    await db.manage_user_list("remove", id)
    return True


@stats.get("/user_list")
async def user_list():
    ignored = set(await db.get_user_list())
    names = await _user_names()
    return [
        {"name": name, "id": user_id, "in_list": user_id in ignored}
        for user_id, name in names.items()
    ]


@stats.get("/{user_id}/{day}/GetItems")
async def user_items(
    user_id: str,
    day: date,
    filter: Optional[str] = None,
    timezone_offset: Optional[float] = Query(None, alias="timezoneOffset"),
):
    items = await _engine().usage_for_user(user_id, day, filter, offset_minutes(timezone_offset))
    return [item.model_dump() for item in items]


@stats.get("/PlayActivity")
async def play_activity(
    days: int = 7,
    end_date: Optional[date] = Query(None, alias="endDate"),
    filter: Optional[str] = None,
    data_type: str = Query("count", alias="dataType"),
    timezone_offset: Optional[float] = Query(None, alias="timezoneOffset"),
):
    usage = await _engine().usage_for_days(
        days, end_date, filter, data_type, offset_minutes(timezone_offset)
    )
    names = await _user_names()
    for entry in usage:
        if entry.user_id != LABELS_USER:
            entry.user_name = names.get(entry.user_id, UNKNOWN_USER)
    return [entry.model_dump() for entry in sort_by_display_name(usage)]


@stats.get("/HourlyReport")
async def hourly_report(
    days: int = 7,
    end_date: Optional[date] = Query(None, alias="endDate"),
    filter: Optional[str] = None,
    timezone_offset: Optional[float] = Query(None, alias="timezoneOffset"),
):
    return await _engine().hourly_report(days, end_date, filter, offset_minutes(timezone_offset))


@stats.get("/{breakdown_type}/BreakdownReport")
async def breakdown_report(
    breakdown_type: str,
    days: int = 7,
    end_date: Optional[date] = Query(None, alias="endDate"),
    timezone_offset: Optional[float] = Query(None, alias="timezoneOffset"),
):
    report = await _engine().breakdown_report(
        breakdown_type, days, end_date, offset_minutes(timezone_offset)
    )
    if breakdown_type == BreakdownDimension.USER_ID.value:
        names = await _user_names()
        for row in report:
            row.label = names.get(row.label, row.label)
        report = sort_breakdown(report)
    return [row.model_dump() for row in report]


@stats.get("/DurationHistogramReport")
async def duration_histogram(
    days: int = 7,
    end_date: Optional[date] = Query(None, alias="endDate"),
    filter: Optional[str] = None,
    timezone_offset: Optional[float] = Query(None, alias="timezoneOffset"),
    bucket_seconds: Optional[int] = None,
):
    return await _engine().duration_histogram(
        days,
        end_date,
        filter,
        offset_minutes(timezone_offset),
        bucket_seconds or settings.duration_bucket_seconds,
    )


@stats.get("/GetTvShowsReport")
async def tv_shows_report(
    days: int = 7,
    end_date: Optional[date] = Query(None, alias="endDate"),
    timezone_offset: Optional[float] = Query(None, alias="timezoneOffset"),
):
    report = await _engine().tv_shows_report(days, end_date, offset_minutes(timezone_offset))
    return [row.model_dump() for row in report]


@stats.get("/MoviesReport")
async def movies_report(
    days: int = 7,
    end_date: Optional[date] = Query(None, alias="endDate"),
    timezone_offset: Optional[float] = Query(None, alias="timezoneOffset"),
):
    report = await _engine().movies_report(days, end_date, offset_minutes(timezone_offset))
    return [row.model_dump() for row in report]


@stats.post("/submit_custom_query")
async def custom_query(data: CustomQueryRequest) -> dict[str, Any]:
    result = await _engine().run_custom_query(data.custom_query_string)
    columns = list(result.columns)
    rows = result.results
    if data.replace_user_id and "UserId" in columns:
        index = columns.index("UserId")
        columns[index] = "UserName"
        names = await _user_names()
        for row in rows:
            row[index] = names.get(row[index], row[index])
    return {"columns": columns, "results": rows, "message": result.message}


@stats.get("/export_backup")
async def save_backup():
    return Response(await export_backup(db), media_type="application/json")


@stats.post("/import_backup")
async def load_backup(payload: list[dict[str, Any]] = Body(...)) -> list[str]:
    count = await import_backup(db, payload)
    return [f"Backup loaded {count} items"]


router.include_router(stats)


@router.get("/health")
async def health():
    """Basic health check."""
    status = jellyfin_client.status()
    try:
        _ = db.conn
        db_connected = True
    except RuntimeError:
        db_connected = False
    return {
        "status": "ok",
        "db_connected": db_connected,
        "ws_connected": status["connected"],
        "ws_last_message_at": status["last_message_at"],
    }


@router.get("/metrics")
async def metrics(request: Request):
    """Prometheus metrics endpoint."""
    monitor = request.app.state.monitor
    status = jellyfin_client.status()

    ACTIVE_SESSIONS.set(monitor.active_sessions if monitor is not None else 0)
    TOTAL_RECORDS.set(await db.get_record_count())
    WS_CONNECTED.set(1 if status["connected"] else 0)
    if status["last_message_at"]:
        LAST_WS_MESSAGE.set(datetime.fromisoformat(status["last_message_at"]).timestamp())
    else:
        LAST_WS_MESSAGE.set(0)

    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)
