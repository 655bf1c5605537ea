import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

import aiosqlite

from .config import settings
from .exceptions import ReportParameterError, StoreUnavailableError
from .models import BreakdownDimension, PlaybackRecord, UsageDataType

logger = logging.getLogger(__name__)

DB_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

BREAKDOWN_EXPRESSIONS = {
    BreakdownDimension.USER_ID: "UserId",
    BreakdownDimension.ITEM_TYPE: "ItemType",
    # Transcode rows carry codec details, e.g. "Transcode (v:h264 a:aac)"
    BreakdownDimension.PLAYBACK_METHOD: (
        "CASE WHEN instr(PlaybackMethod, ' (') > 0 "
        "THEN substr(PlaybackMethod, 1, instr(PlaybackMethod, ' (') - 1) "
        "ELSE PlaybackMethod END"
    ),
    BreakdownDimension.CLIENT_NAME: "ClientName",
    BreakdownDimension.DEVICE_NAME: "DeviceName",
}

SERIES_NAME_EXPRESSION = (
    "CASE WHEN instr(ItemName, ' - s') > 0 "
    "THEN substr(ItemName, 1, instr(ItemName, ' - s') - 1) "
    "ELSE ItemName END"
)


def to_db_time(value: datetime) -> str:
    """Format a timestamp as stored: UTC, second precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(DB_TIME_FORMAT)


def from_db_time(value: str) -> datetime:
    return datetime.fromisoformat(value).replace(tzinfo=timezone.utc)


def offset_modifier(timezone_offset: int) -> str:
    """SQLite date modifier shifting UTC into the caller's local time."""
    return f"{int(timezone_offset):+d} minutes"


class Database:
    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or settings.database_path_resolved
        self._connection: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        """Connect to the database and create tables if needed."""
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._create_tables()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._connection:
            raise StoreUnavailableError("Database not connected")
        return self._connection

    def _build_filter_clause(self, types: Optional[Sequence[str]]) -> tuple[str, list[str]]:
        clauses = ["(UserId IS NULL OR UserId NOT IN (SELECT UserId FROM UserList))"]
        params: list[str] = []
        if types:
            placeholders = ", ".join("?" for _ in types)
            clauses.append(f"ItemType IN ({placeholders})")
            params.extend(types)
        return " AND " + " AND ".join(clauses), params

    async def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS PlaybackActivity (
                Id TEXT PRIMARY KEY,
                DateCreated TEXT NOT NULL,
                UserId TEXT,
                ItemId TEXT,
                ItemType TEXT,
                ItemName TEXT,
                PlaybackMethod TEXT,
                ClientName TEXT,
                DeviceName TEXT,
                PlayDuration INTEGER DEFAULT 0
            )
        """)
        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS UserList (
                UserId TEXT PRIMARY KEY
            )
        """)
        await self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_activity_date ON PlaybackActivity(DateCreated)"
        )
        await self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_activity_user ON PlaybackActivity(UserId)"
        )
        await self.conn.commit()

    async def add_playback_action(self, record: PlaybackRecord) -> None:
        """Insert a confirmed playback record."""
        await self.conn.execute(
            """
            INSERT INTO PlaybackActivity (Id, DateCreated, UserId, ItemId, ItemType, ItemName,
                                          PlaybackMethod, ClientName, DeviceName, PlayDuration)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            self._record_params(record),
        )
        await self.conn.commit()

    async def update_playback_action(self, record: PlaybackRecord) -> None:
        """Push the latest duration of a committed record."""
        await self.conn.execute(
            "UPDATE PlaybackActivity SET PlayDuration = ? WHERE Id = ?",
            (record.play_duration, record.id),
        )
        await self.conn.commit()

    async def import_records(self, records: Iterable[PlaybackRecord]) -> int:
        """Insert records whose id is not stored yet; returns the number added."""
        imported = 0
        for record in records:
            cursor = await self.conn.execute(
                """
                INSERT OR IGNORE INTO PlaybackActivity (Id, DateCreated, UserId, ItemId, ItemType,
                                                        ItemName, PlaybackMethod, ClientName,
                                                        DeviceName, PlayDuration)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._record_params(record),
            )
            imported += cursor.rowcount
        await self.conn.commit()
        return imported

    async def get_record(self, record_id: str) -> Optional[PlaybackRecord]:
        cursor = await self.conn.execute(
            "SELECT * FROM PlaybackActivity WHERE Id = ?",
            (record_id,),
        )
        row = await cursor.fetchone()
        if row:
            return self._row_to_record(row)
        return None

    async def get_all_records(self) -> list[PlaybackRecord]:
        cursor = await self.conn.execute("SELECT * FROM PlaybackActivity ORDER BY DateCreated")
        rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    async def get_record_count(self) -> int:
        cursor = await self.conn.execute("SELECT COUNT(1) FROM PlaybackActivity")
        row = await cursor.fetchone()
        return row[0]

    async def get_type_filter_list(self) -> list[str]:
        cursor = await self.conn.execute(
            """
            SELECT DISTINCT ItemType FROM PlaybackActivity
            WHERE ItemType IS NOT NULL
            ORDER BY ItemType
            """
        )
        rows = await cursor.fetchall()
        return [row["ItemType"] for row in rows]

    async def get_usage_for_user(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        types: Optional[Sequence[str]],
        timezone_offset: int = 0,
    ) -> list[aiosqlite.Row]:
        """Rows for one user between UTC ``start`` (inclusive) and ``end``."""
        filters, params = self._build_filter_clause(types)
        cursor = await self.conn.execute(
            f"""
            SELECT
                rowid AS RowId,
                time(DateCreated, ?) AS Time,
                ItemId,
                ItemName,
                ItemType,
                ClientName,
                PlaybackMethod,
                DeviceName,
                PlayDuration
            FROM PlaybackActivity
            WHERE UserId = ? AND DateCreated >= ? AND DateCreated < ?{filters}
            ORDER BY DateCreated
            """,
            (offset_modifier(timezone_offset), user_id, to_db_time(start), to_db_time(end), *params),
        )
        return await cursor.fetchall()

    async def get_usage_for_days(
        self,
        start: datetime,
        end: datetime,
        types: Optional[Sequence[str]],
        data_type: UsageDataType,
        timezone_offset: int = 0,
    ) -> list[aiosqlite.Row]:
        """Per user and local date: play count or summed duration."""
        aggregate = "COUNT(1)" if data_type == UsageDataType.COUNT else "SUM(PlayDuration)"
        filters, params = self._build_filter_clause(types)
        cursor = await self.conn.execute(
            f"""
            SELECT
                UserId AS user_id,
                date(DateCreated, ?) AS date,
                {aggregate} AS value
            FROM PlaybackActivity
            WHERE DateCreated >= ? AND DateCreated < ?{filters}
            GROUP BY user_id, date
            ORDER BY user_id, date
            """,
            (offset_modifier(timezone_offset), to_db_time(start), to_db_time(end), *params),
        )
        return await cursor.fetchall()

    async def get_hourly_usage(
        self,
        start: datetime,
        end: datetime,
        types: Optional[Sequence[str]],
        timezone_offset: int = 0,
    ) -> list[aiosqlite.Row]:
        """Play counts per local weekday (0 = Sunday) and hour."""
        modifier = offset_modifier(timezone_offset)
        filters, params = self._build_filter_clause(types)
        cursor = await self.conn.execute(
            f"""
            SELECT
                CAST(strftime('%w', DateCreated, ?) AS INTEGER) AS weekday,
                CAST(strftime('%H', DateCreated, ?) AS INTEGER) AS hour,
                COUNT(1) AS count
            FROM PlaybackActivity
            WHERE DateCreated >= ? AND DateCreated < ?{filters}
            GROUP BY weekday, hour
            ORDER BY weekday, hour
            """,
            (modifier, modifier, to_db_time(start), to_db_time(end), *params),
        )
        return await cursor.fetchall()

    async def get_breakdown(
        self,
        dimension: BreakdownDimension,
        start: datetime,
        end: datetime,
        types: Optional[Sequence[str]] = None,
    ) -> list[aiosqlite.Row]:
        expression = BREAKDOWN_EXPRESSIONS.get(dimension)
        if expression is None:
            raise ReportParameterError(f"Unsupported breakdown type: {dimension}")
        return await self._grouped_counts(expression, start, end, types)

    async def get_series_breakdown(self, start: datetime, end: datetime) -> list[aiosqlite.Row]:
        return await self._grouped_counts(SERIES_NAME_EXPRESSION, start, end, ["Episode"])

    async def get_movie_breakdown(self, start: datetime, end: datetime) -> list[aiosqlite.Row]:
        return await self._grouped_counts("ItemName", start, end, ["Movie"])

    async def _grouped_counts(
        self,
        expression: str,
        start: datetime,
        end: datetime,
        types: Optional[Sequence[str]],
    ) -> list[aiosqlite.Row]:
        filters, params = self._build_filter_clause(types)
        cursor = await self.conn.execute(
            f"""
            SELECT
                {expression} AS label,
                COUNT(1) AS count,
                COALESCE(SUM(PlayDuration), 0) AS time
            FROM PlaybackActivity
            WHERE DateCreated >= ? AND DateCreated < ?{filters}
            GROUP BY label
            """,
            (to_db_time(start), to_db_time(end), *params),
        )
        return await cursor.fetchall()

    async def get_duration_histogram(
        self,
        start: datetime,
        end: datetime,
        types: Optional[Sequence[str]],
        bucket_seconds: int,
    ) -> list[aiosqlite.Row]:
        filters, params = self._build_filter_clause(types)
        cursor = await self.conn.execute(
            f"""
            SELECT
                CAST(COALESCE(PlayDuration, 0) / ? AS INTEGER) AS bucket,
                COUNT(1) AS count
            FROM PlaybackActivity
            WHERE DateCreated >= ? AND DateCreated < ?{filters}
            GROUP BY bucket
            ORDER BY bucket
            """,
            (bucket_seconds, to_db_time(start), to_db_time(end), *params),
        )
        return await cursor.fetchall()

    async def get_user_report(self, start: datetime, end: datetime) -> list[aiosqlite.Row]:
        filters, params = self._build_filter_clause(None)
        cursor = await self.conn.execute(
            f"""
            SELECT
                UserId AS user_id,
                MAX(DateCreated) AS latest_date,
                COUNT(1) AS total_count,
                COALESCE(SUM(PlayDuration), 0) AS total_time,
                COUNT(DISTINCT ItemId) AS item_count
            FROM PlaybackActivity
            WHERE DateCreated >= ? AND DateCreated < ?{filters}
            GROUP BY UserId
            ORDER BY total_time DESC
            """,
            (to_db_time(start), to_db_time(end), *params),
        )
        return await cursor.fetchall()

    async def get_user_list(self) -> list[str]:
        """User ids on the ignore list."""
        cursor = await self.conn.execute("SELECT UserId FROM UserList ORDER BY UserId")
        rows = await cursor.fetchall()
        return [row["UserId"] for row in rows]

    async def manage_user_list(self, action: str, user_id: str) -> None:
        if action == "add":
            await self.conn.execute(
                "INSERT OR IGNORE INTO UserList (UserId) VALUES (?)", (user_id,)
            )
        elif action == "remove":
            await self.conn.execute("DELETE FROM UserList WHERE UserId = ?", (user_id,))
        else:
            raise ReportParameterError(f"Unknown user list action: {action}")
        await self.conn.commit()

    async def remove_unknown_users(self, known_user_ids: Sequence[str]) -> int:
        """Delete activity of users that no longer exist on the server."""
        placeholders = ", ".join("?" for _ in known_user_ids)
        where = f"UserId NOT IN ({placeholders})" if known_user_ids else "1 = 1"
        cursor = await self.conn.execute(
            f"DELETE FROM PlaybackActivity WHERE {where}",
            tuple(known_user_ids),
        )
        await self.conn.commit()
        return cursor.rowcount

    async def run_custom_query(self, query: str) -> tuple[list[str], list[list[Any]], str]:
        """Run a caller supplied query on a read-only connection."""
        columns: list[str] = []
        results: list[list[Any]] = []
        try:
            async with aiosqlite.connect(f"file:{self.db_path}?mode=ro", uri=True) as conn:
                cursor = await conn.execute(query)
                if cursor.description:
                    columns = [column[0] for column in cursor.description]
                rows = await cursor.fetchall()
                results = [list(row) for row in rows]
        except aiosqlite.Error as e:
            logger.warning(f"Custom query failed: {e}")
            return [], [], str(e)
        return columns, results, ""

    def _record_params(self, record: PlaybackRecord) -> tuple:
        return (
            record.id,
            to_db_time(record.date),
            record.user_id,
            record.item_id,
            record.item_type,
            record.item_name,
            record.playback_method,
            record.client_name,
            record.device_name,
            record.play_duration,
        )

    def _row_to_record(self, row: aiosqlite.Row) -> PlaybackRecord:
        """Convert a database row to a PlaybackRecord model."""
        return PlaybackRecord(
            id=row["Id"],
            date=from_db_time(row["DateCreated"]),
            user_id=row["UserId"] or "",
            item_id=row["ItemId"] or "",
            item_name=row["ItemName"] or "",
            item_type=row["ItemType"] or "",
            client_name=row["ClientName"] or "",
            device_name=row["DeviceName"] or "",
            playback_method=row["PlaybackMethod"] or "",
            play_duration=row["PlayDuration"] or 0,
        )


# Global database instance
db = Database()
