import asyncio
from datetime import datetime, timezone

import pytest

from playback_reporting.models import MediaItem, PlaybackStart
from playback_reporting.registry import SessionRegistry
from playback_reporting.tracker import SessionTracker


def _tracker(item_id: str = "item-1") -> SessionTracker:
    return SessionTracker(
        PlaybackStart(
            device_id="device-1",
            users=["user-1"],
            item=MediaItem(id=item_id, name="Test", type="Movie"),
            timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )
    )


def test_upsert_get_remove():
    registry = SessionRegistry()
    tracker = _tracker()

    registry.upsert(tracker.key, tracker)
    assert len(registry) == 1
    assert tracker.key in registry
    assert registry.get(str(tracker.key)) is tracker
    assert registry.keys() == ["device-1-user-1-item-1"]

    assert registry.remove(tracker.key) is tracker
    assert registry.get(tracker.key) is None
    assert registry.remove(tracker.key) is None


def test_drain_discards_all_trackers():
    registry = SessionRegistry()
    for item_id in ("a", "b", "c"):
        tracker = _tracker(item_id)
        registry.upsert(tracker.key, tracker)

    assert registry.drain() == 3
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_same_key_is_serialized():
    registry = SessionRegistry()
    order = []
    release = asyncio.Event()

    async def first():
        async with registry.locked("key-1"):
            order.append("first-in")
            await release.wait()
            order.append("first-out")

    async def second():
        async with registry.locked("key-1"):
            order.append("second-in")

    task_a = asyncio.create_task(first())
    await asyncio.sleep(0)
    task_b = asyncio.create_task(second())
    await asyncio.sleep(0.01)
    assert order == ["first-in"]

    release.set()
    await asyncio.gather(task_a, task_b)
    assert order == ["first-in", "first-out", "second-in"]


@pytest.mark.asyncio
async def test_different_keys_do_not_block():
    registry = SessionRegistry()
    release = asyncio.Event()
    entered = []

    async def holder():
        async with registry.locked("key-1"):
            await release.wait()

    task = asyncio.create_task(holder())
    await asyncio.sleep(0)
    async with registry.locked("key-2"):
        entered.append("key-2")
    assert entered == ["key-2"]

    release.set()
    await task


@pytest.mark.asyncio
async def test_locks_are_released_after_use():
    registry = SessionRegistry()
    async with registry.locked("key-1"):
        pass
    assert registry._locks == {}
    assert registry._lock_users == {}
