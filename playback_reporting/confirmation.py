import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .models import LiveSession, PlaybackRecord, SessionKey
from .registry import SessionRegistry
from .tracker import SessionTracker

logger = logging.getLogger(__name__)

SessionLookup = Callable[[str], Awaitable[Optional[LiveSession]]]


class ConfirmationScheduler:
    """Runs the delayed check that a started session really is playing.

    One task is spawned per accepted start. After the delay the live session
    for the device is fetched; the start is counted only when both the item
    and the user playing there still match. A stop before the delay only
    unlinks the task, which then finds its tracker gone and does nothing.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        store,
        session_lookup: SessionLookup,
        delay_seconds: float = 20.0,
    ):
        self.registry = registry
        self.store = store
        self.session_lookup = session_lookup
        self.delay_seconds = delay_seconds
        self._pending: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def schedule(self, tracker: SessionTracker) -> asyncio.Task:
        name = str(tracker.key)
        logger.info(f"Scheduling playback confirmation for {name}")
        task = asyncio.create_task(self._run(tracker), name=f"confirm-{name}")
        self._pending[name] = task
        self._tasks.add(task)
        task.add_done_callback(lambda t, n=name: self._forget(n, t))
        return task

    def unlink(self, key: SessionKey) -> None:
        """Stop tracking the task for ``key`` without cancelling it."""
        self._pending.pop(str(key), None)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()

    def _forget(self, name: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._pending.get(name) is task:
            del self._pending[name]

    async def _run(self, tracker: SessionTracker) -> None:
        await asyncio.sleep(self.delay_seconds)
        try:
            await self.confirm(tracker)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Playback confirmation failed for {tracker.key}")

    async def confirm(self, tracker: SessionTracker) -> Optional[PlaybackRecord]:
        """Check the live session and commit the record when it matches."""
        start = tracker.start
        key = tracker.key
        session = await self.session_lookup(start.device_id)
        if session is None:
            logger.info(f"Confirmation: session not found for device {start.device_id}")
            return None

        logger.debug(
            f"Confirmation {key}: live item={session.now_playing_item_id} "
            f"live user={session.user_id} method={session.playback_method()}"
        )
        if session.now_playing_item_id != key.item_id or session.user_id != key.user_id:
            logger.info(f"Confirmation: details do not match for {key}, not counting playback")
            return None

        async with self.registry.locked(key):
            if self.registry.get(key) is not tracker:
                logger.info(f"Confirmation: tracker for {key} no longer active")
                return None
            if tracker.is_confirmed:
                return None
            record = PlaybackRecord(
                date=tracker.created_at,
                user_id=key.user_id,
                item_id=key.item_id,
                item_name=start.item.display_name(),
                item_type=start.item.type,
                client_name=start.client_name,
                device_name=start.device_name,
                playback_method=session.playback_method(),
                play_duration=tracker.duration_seconds,
            )
            await self.store.add_playback_action(record)
            tracker.confirm(record)
            logger.info(f"Confirmation: playback registered for {key} as {record.id}")
            return record
