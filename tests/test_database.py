from datetime import datetime, timezone

import pytest
import pytest_asyncio

from playback_reporting.database import Database, from_db_time, offset_modifier, to_db_time
from playback_reporting.exceptions import ReportParameterError, StoreUnavailableError
from playback_reporting.models import PlaybackRecord


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "test.db")
    await database.connect()
    try:
        yield database
    finally:
        await database.close()


def _build_record(
    record_id: str = "record-1",
    user_id: str = "user-1",
    date: datetime = datetime(2024, 1, 1, 20, 15, 30, tzinfo=timezone.utc),
    item_type: str = "Movie",
    play_duration: int = 0,
) -> PlaybackRecord:
    return PlaybackRecord(
        id=record_id,
        date=date,
        user_id=user_id,
        item_id="item-1",
        item_name="Test Movie",
        item_type=item_type,
        client_name="Jellyfin Web",
        device_name="Firefox",
        playback_method="DirectPlay",
        play_duration=play_duration,
    )


def test_db_time_round_trip_is_utc():
    local = datetime.fromisoformat("2024-01-02T01:30:00+02:00")
    assert to_db_time(local) == "2024-01-01 23:30:00"
    assert from_db_time("2024-01-01 23:30:00") == datetime(2024, 1, 1, 23, 30, tzinfo=timezone.utc)


def test_offset_modifier():
    assert offset_modifier(120) == "+120 minutes"
    assert offset_modifier(-300) == "-300 minutes"
    assert offset_modifier(0) == "+0 minutes"


@pytest.mark.asyncio
async def test_add_and_fetch_record(db):
    await db.add_playback_action(_build_record())

    fetched = await db.get_record("record-1")
    assert fetched is not None
    assert fetched.item_name == "Test Movie"
    assert fetched.date == datetime(2024, 1, 1, 20, 15, 30, tzinfo=timezone.utc)
    assert await db.get_record_count() == 1
    assert await db.get_record("missing") is None


@pytest.mark.asyncio
async def test_update_playback_duration(db):
    record = _build_record()
    await db.add_playback_action(record)

    record.play_duration = 1800
    await db.update_playback_action(record)

    fetched = await db.get_record("record-1")
    assert fetched.play_duration == 1800


@pytest.mark.asyncio
async def test_import_skips_existing_ids(db):
    await db.add_playback_action(_build_record("record-1"))

    imported = await db.import_records(
        [_build_record("record-1"), _build_record("record-2"), _build_record("record-3")]
    )

    assert imported == 2
    assert [r.id for r in await db.get_all_records()] == ["record-1", "record-2", "record-3"]


@pytest.mark.asyncio
async def test_type_filter_list(db):
    await db.add_playback_action(_build_record("a", item_type="Movie"))
    await db.add_playback_action(_build_record("b", item_type="Episode"))
    await db.add_playback_action(_build_record("c", item_type="Movie"))

    assert await db.get_type_filter_list() == ["Episode", "Movie"]


@pytest.mark.asyncio
async def test_manage_user_list(db):
    await db.manage_user_list("add", "user-2")
    await db.manage_user_list("add", "user-2")
    await db.manage_user_list("add", "user-1")
    assert await db.get_user_list() == ["user-1", "user-2"]

    await db.manage_user_list("remove", "user-1")
    assert await db.get_user_list() == ["user-2"]

    with pytest.raises(ReportParameterError):
        await db.manage_user_list("toggle", "user-2")


@pytest.mark.asyncio
async def test_remove_unknown_users(db):
    await db.add_playback_action(_build_record("a", user_id="user-1"))
    await db.add_playback_action(_build_record("b", user_id="deleted-user"))

    removed = await db.remove_unknown_users(["user-1"])

    assert removed == 1
    assert [r.user_id for r in await db.get_all_records()] == ["user-1"]


@pytest.mark.asyncio
async def test_custom_query_returns_columns_and_rows(db):
    await db.add_playback_action(_build_record(play_duration=60))

    columns, results, message = await db.run_custom_query(
        "SELECT UserId, SUM(PlayDuration) AS total FROM PlaybackActivity GROUP BY UserId"
    )

    assert columns == ["UserId", "total"]
    assert results == [["user-1", 60]]
    assert message == ""


@pytest.mark.asyncio
async def test_custom_query_cannot_write(db):
    await db.add_playback_action(_build_record())

    columns, results, message = await db.run_custom_query("DELETE FROM PlaybackActivity")

    assert columns == []
    assert results == []
    assert message
    assert await db.get_record_count() == 1


@pytest.mark.asyncio
async def test_custom_query_reports_syntax_errors(db):
    _, _, message = await db.run_custom_query("SELEC nonsense")
    assert "syntax error" in message


@pytest.mark.asyncio
async def test_disconnected_store_raises(tmp_path):
    database = Database(tmp_path / "unused.db")
    with pytest.raises(StoreUnavailableError):
        await database.get_all_records()
