import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Mapping, Optional, Sequence, Union

from .database import from_db_time
from .exceptions import ReportParameterError
from .models import (
    BreakdownDimension,
    BreakdownRow,
    CustomQueryResult,
    ReportWindow,
    UsageDataType,
    UsageItem,
    UserActivity,
    UserUsage,
)

logger = logging.getLogger(__name__)

LABELS_USER = "labels_user"
UNKNOWN_LABEL = "unknown"

DateLike = Union[date, datetime, str, None]


def shift_timestamp(value: datetime, timezone_offset: int) -> datetime:
    """Express a timestamp in the local time ``timezone_offset`` minutes from UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone(timedelta(minutes=timezone_offset)))


def resolve_end_date(end_date: DateLike, timezone_offset: int = 0) -> date:
    if end_date is None:
        return shift_timestamp(datetime.now(timezone.utc), timezone_offset).date()
    if isinstance(end_date, datetime):
        return end_date.date()
    if isinstance(end_date, date):
        return end_date
    try:
        return date.fromisoformat(end_date[:10])
    except ValueError as e:
        raise ReportParameterError(f"Invalid date: {end_date}") from e


def report_window(days: int, end_date: DateLike, timezone_offset: int = 0) -> ReportWindow:
    """Inclusive ``[end_date - days + 1, end_date]`` range."""
    if days < 1:
        raise ReportParameterError(f"Number of days must be at least 1, got {days}")
    end = resolve_end_date(end_date, timezone_offset)
    return ReportWindow(start=end - timedelta(days=days - 1), end=end)


def utc_bounds(window: ReportWindow, timezone_offset: int = 0) -> tuple[datetime, datetime]:
    """UTC instants covering the local dates of ``window``; the end is exclusive."""
    offset = timedelta(minutes=timezone_offset)
    start = datetime.combine(window.start, time.min, tzinfo=timezone.utc) - offset
    end = datetime.combine(window.end + timedelta(days=1), time.min, tzinfo=timezone.utc) - offset
    return start, end


def parse_type_filter(value: Union[str, Sequence[str], None]) -> list[str]:
    """Turn ``"Movie,Episode"`` into ``["Movie", "Episode"]``."""
    if not value:
        return []
    tokens = value.split(",") if isinstance(value, str) else value
    return [token.strip() for token in tokens if token and token.strip()]


def normalize_label(value: Optional[str]) -> str:
    if value is None or str(value).strip() == "":
        return UNKNOWN_LABEL
    return str(value)


def zero_fill_dates(usage: Mapping[str, int], window: ReportWindow) -> dict[str, int]:
    return {day.isoformat(): usage.get(day.isoformat(), 0) for day in window.dates}


def zero_fill_hourly(counts: Mapping[tuple[int, int], int]) -> dict[str, int]:
    """All 7x24 ``"{weekday}-{hour:02d}"`` buckets, weekday 0 being Sunday."""
    return {
        f"{weekday}-{hour:02d}": counts.get((weekday, hour), 0)
        for weekday in range(7)
        for hour in range(24)
    }


def zero_fill_histogram(counts: Mapping[int, int]) -> dict[int, int]:
    if not counts:
        return {}
    return {bucket: counts.get(bucket, 0) for bucket in range(max(counts) + 1)}


def sort_breakdown(rows: Iterable[BreakdownRow]) -> list[BreakdownRow]:
    return sorted(rows, key=lambda row: (-row.count, row.label))


def sort_by_display_name(usage: Iterable[UserUsage]) -> list[UserUsage]:
    return sorted(usage, key=lambda entry: (entry.user_name or entry.user_id).lower())


def _merge_rows(rows) -> list[BreakdownRow]:
    merged: dict[str, BreakdownRow] = {}
    for row in rows:
        label = normalize_label(row["label"])
        existing = merged.get(label)
        if existing is None:
            merged[label] = BreakdownRow(label=label, count=row["count"], time=row["time"] or 0)
        else:
            existing.count += row["count"]
            existing.time += row["time"] or 0
    return sort_breakdown(merged.values())


class ReportingEngine:
    """Read-side reports over the playback record store."""

    def __init__(self, store):
        self.store = store

    async def usage_for_user(
        self,
        user_id: str,
        day: DateLike,
        types: Union[str, Sequence[str], None] = None,
        timezone_offset: int = 0,
    ) -> list[UsageItem]:
        window = report_window(1, day, timezone_offset)
        start, end = utc_bounds(window, timezone_offset)
        rows = await self.store.get_usage_for_user(
            user_id, start, end, parse_type_filter(types), timezone_offset
        )
        return [
            UsageItem(
                time=row["Time"],
                id=row["ItemId"] or "",
                name=row["ItemName"] or "",
                type=row["ItemType"] or "",
                client=row["ClientName"] or "",
                method=row["PlaybackMethod"] or "",
                device=row["DeviceName"] or "",
                duration=row["PlayDuration"] or 0,
                row_id=row["RowId"],
            )
            for row in rows
        ]

    async def usage_for_days(
        self,
        days: int,
        end_date: DateLike = None,
        types: Union[str, Sequence[str], None] = None,
        data_type: Union[str, UsageDataType] = UsageDataType.COUNT,
        timezone_offset: int = 0,
    ) -> list[UserUsage]:
        """Per-user daily counts or seconds, one entry per date in the window."""
        try:
            data_type = UsageDataType(data_type or UsageDataType.COUNT)
        except ValueError as e:
            raise ReportParameterError(f"Unsupported data type: {data_type}") from e
        window = report_window(days, end_date, timezone_offset)
        start, end = utc_bounds(window, timezone_offset)
        rows = await self.store.get_usage_for_days(
            start, end, parse_type_filter(types), data_type, timezone_offset
        )

        by_user: dict[str, dict[str, int]] = {}
        for row in rows:
            user_id = row["user_id"] or UNKNOWN_LABEL
            by_user.setdefault(user_id, {})[row["date"]] = row["value"] or 0

        usage = [
            UserUsage(user_id=user_id, user_usage=zero_fill_dates(values, window))
            for user_id, values in sorted(by_user.items())
        ]
        # empty group used by charts for the date axis
        usage.append(
            UserUsage(
                user_id=LABELS_USER,
                user_name=LABELS_USER,
                user_usage=zero_fill_dates({}, window),
            )
        )
        return usage

    async def hourly_report(
        self,
        days: int,
        end_date: DateLike = None,
        types: Union[str, Sequence[str], None] = None,
        timezone_offset: int = 0,
    ) -> dict[str, int]:
        window = report_window(days, end_date, timezone_offset)
        start, end = utc_bounds(window, timezone_offset)
        rows = await self.store.get_hourly_usage(
            start, end, parse_type_filter(types), timezone_offset
        )
        counts = {(row["weekday"], row["hour"]): row["count"] for row in rows}
        return zero_fill_hourly(counts)

    async def breakdown_report(
        self,
        dimension: Union[str, BreakdownDimension],
        days: int,
        end_date: DateLike = None,
        timezone_offset: int = 0,
        types: Union[str, Sequence[str], None] = None,
    ) -> list[BreakdownRow]:
        try:
            dimension = BreakdownDimension(dimension)
        except ValueError as e:
            supported = ", ".join(d.value for d in BreakdownDimension)
            raise ReportParameterError(
                f"Unsupported breakdown type: {dimension} (expected one of {supported})"
            ) from e
        window = report_window(days, end_date, timezone_offset)
        start, end = utc_bounds(window, timezone_offset)
        rows = await self.store.get_breakdown(dimension, start, end, parse_type_filter(types))
        return _merge_rows(rows)

    async def tv_shows_report(
        self, days: int, end_date: DateLike = None, timezone_offset: int = 0
    ) -> list[BreakdownRow]:
        window = report_window(days, end_date, timezone_offset)
        start, end = utc_bounds(window, timezone_offset)
        return _merge_rows(await self.store.get_series_breakdown(start, end))

    async def movies_report(
        self, days: int, end_date: DateLike = None, timezone_offset: int = 0
    ) -> list[BreakdownRow]:
        window = report_window(days, end_date, timezone_offset)
        start, end = utc_bounds(window, timezone_offset)
        return _merge_rows(await self.store.get_movie_breakdown(start, end))

    async def duration_histogram(
        self,
        days: int,
        end_date: DateLike = None,
        types: Union[str, Sequence[str], None] = None,
        timezone_offset: int = 0,
        bucket_seconds: int = 1,
    ) -> dict[int, int]:
        """Play counts per duration bucket, filled from 0 to the largest bucket seen."""
        if bucket_seconds < 1:
            raise ReportParameterError(f"Bucket size must be at least 1, got {bucket_seconds}")
        window = report_window(days, end_date, timezone_offset)
        start, end = utc_bounds(window, timezone_offset)
        rows = await self.store.get_duration_histogram(
            start, end, parse_type_filter(types), bucket_seconds
        )
        return zero_fill_histogram({row["bucket"]: row["count"] for row in rows})

    async def user_activity_report(
        self, days: int, end_date: DateLike = None, timezone_offset: int = 0
    ) -> list[UserActivity]:
        window = report_window(days, end_date, timezone_offset)
        start, end = utc_bounds(window, timezone_offset)
        rows = await self.store.get_user_report(start, end)
        return [
            UserActivity(
                user_id=row["user_id"] or UNKNOWN_LABEL,
                latest_date=from_db_time(row["latest_date"]),
                total_count=row["total_count"],
                total_time=row["total_time"] or 0,
                item_count=row["item_count"],
            )
            for row in rows
        ]

    async def type_filter_list(self) -> list[str]:
        return await self.store.get_type_filter_list()

    async def run_custom_query(self, query: str) -> CustomQueryResult:
        logger.info(f"Custom query: {query}")
        columns, results, message = await self.store.run_custom_query(query)
        return CustomQueryResult(columns=columns, results=results, message=message)
