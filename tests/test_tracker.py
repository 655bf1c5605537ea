from datetime import datetime, timedelta, timezone

import pytest

from playback_reporting.models import (
    MediaItem,
    PlaybackProgress,
    PlaybackRecord,
    PlaybackStart,
    PlaybackStop,
    TrackerState,
)
from playback_reporting.tracker import SessionTracker

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _start(at: datetime = T0, users=("user-1",)) -> PlaybackStart:
    return PlaybackStart(
        device_id="device-1",
        device_name="Living Room",
        client_name="Jellyfin Web",
        users=list(users),
        item=MediaItem(id="item-1", name="Test Movie", type="Movie"),
        timestamp=at,
    )


def _progress(seconds: float, is_paused: bool = False) -> PlaybackProgress:
    return PlaybackProgress(
        device_id="device-1",
        user_id="user-1",
        item_id="item-1",
        position_ticks=int(seconds * 10_000_000),
        is_paused=is_paused,
        timestamp=T0 + timedelta(seconds=seconds),
    )


def _stop(seconds: float) -> PlaybackStop:
    return PlaybackStop(
        device_id="device-1",
        user_id="user-1",
        item_id="item-1",
        timestamp=T0 + timedelta(seconds=seconds),
    )


def _record() -> PlaybackRecord:
    return PlaybackRecord(
        date=T0,
        user_id="user-1",
        item_id="item-1",
        item_name="Test Movie",
        item_type="Movie",
        client_name="Jellyfin Web",
        device_name="Living Room",
        playback_method="DirectPlay",
    )


def test_key_combines_device_user_and_item():
    tracker = SessionTracker(_start())
    assert str(tracker.key) == "device-1-user-1-item-1"
    assert tracker.state is TrackerState.NEW
    assert tracker.created_at == T0


def test_start_without_user_is_rejected():
    with pytest.raises(ValueError):
        SessionTracker(_start(users=()))


def test_progress_inside_debounce_window_is_ignored():
    tracker = SessionTracker(_start())
    accepted = [tracker.process_progress(_progress(s)) for s in (5, 10, 15, 19)]
    assert accepted == [False, False, False, False]
    assert tracker.duration_seconds == 0
    assert tracker.last_updated == T0


def test_progress_burst_yields_at_most_one_update():
    tracker = SessionTracker(_start())
    accepted = [tracker.process_progress(_progress(s)) for s in (5, 10, 15, 20, 25, 30, 35)]
    assert accepted.count(True) == 1
    assert tracker.duration_seconds == 20


def test_duration_accumulates_between_accepted_samples():
    tracker = SessionTracker(_start())
    assert tracker.process_progress(_progress(30))
    assert tracker.process_progress(_progress(60, is_paused=True))
    assert tracker.duration_seconds == 60


def test_duration_never_decreases():
    tracker = SessionTracker(_start())
    tracker.calculate_duration(T0 + timedelta(seconds=40))
    tracker.calculate_duration(T0 + timedelta(seconds=10))
    assert tracker.duration_seconds == 40
    assert tracker.last_updated == T0 + timedelta(seconds=40)


def test_stop_closes_tracker():
    tracker = SessionTracker(_start())
    tracker.process_stop(_stop(45))
    assert tracker.state is TrackerState.CLOSED
    assert tracker.duration_seconds == 45

    with pytest.raises(RuntimeError):
        tracker.process_progress(_progress(90))
    with pytest.raises(RuntimeError):
        tracker.process_stop(_stop(90))


def test_confirm_attaches_record_once():
    tracker = SessionTracker(_start())
    tracker.calculate_duration(T0 + timedelta(seconds=20))
    record = _record()

    assert tracker.confirm(record) is True
    assert tracker.is_confirmed
    assert tracker.state is TrackerState.CONFIRMED
    assert record.play_duration == 20

    assert tracker.confirm(_record()) is False
    assert tracker.tracked_record is record


def test_closed_tracker_cannot_be_confirmed():
    tracker = SessionTracker(_start())
    tracker.process_stop(_stop(10))
    assert tracker.confirm(_record()) is False
    assert tracker.tracked_record is None


def test_confirmed_tracker_pushes_duration_into_record():
    tracker = SessionTracker(_start())
    record = _record()
    tracker.confirm(record)
    tracker.process_progress(_progress(25))
    assert record.play_duration == 25
    tracker.process_stop(_stop(70))
    assert record.play_duration == 70
    assert any(line.startswith("stop") for line in tracker.playback_log)
