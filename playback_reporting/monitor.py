import asyncio
import logging
from typing import Optional

import aiosqlite

from .confirmation import ConfirmationScheduler, SessionLookup
from .exceptions import StoreUnavailableError, TrackerProcessingError
from .models import PlaybackProgress, PlaybackStart, PlaybackStop
from .registry import SessionRegistry
from .tracker import DEFAULT_DEBOUNCE_SECONDS, SessionTracker

logger = logging.getLogger(__name__)


class PlaybackMonitor:
    """Turns start/progress/stop events into committed playback records."""

    def __init__(
        self,
        store,
        session_lookup: SessionLookup,
        registry: Optional[SessionRegistry] = None,
        *,
        confirmation_delay_seconds: float = 20.0,
        progress_debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        self.store = store
        self.registry = registry or SessionRegistry()
        self.progress_debounce_seconds = progress_debounce_seconds
        self.confirmations = ConfirmationScheduler(
            self.registry, store, session_lookup, delay_seconds=confirmation_delay_seconds
        )
        self._tasks: set[asyncio.Task] = set()

    @property
    def active_sessions(self) -> int:
        return len(self.registry)

    def dispatch(self, event) -> asyncio.Task:
        """Handle an event on its own task."""
        task = asyncio.create_task(self.handle(event))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Playback event failed: {exc}")

    async def handle(self, event) -> None:
        if isinstance(event, PlaybackStart):
            await self.handle_start(event)
        elif isinstance(event, PlaybackProgress):
            await self.handle_progress(event)
        elif isinstance(event, PlaybackStop):
            await self.handle_stop(event)
        else:
            raise TypeError(f"Unsupported playback event: {type(event).__name__}")

    async def handle_start(self, event: PlaybackStart) -> Optional[SessionTracker]:
        if event.item is None:
            return None
        if event.item.is_theme_media:
            # theme songs, theme videos and trailers are not reported
            return None
        key = event.key
        if key is None:
            return None

        async with self.registry.locked(key):
            existing = self.registry.get(key)
            if existing is not None:
                logger.info(f"Existing tracker found: {key}")
                try:
                    if existing.is_confirmed:
                        existing.calculate_duration(event.timestamp)
                        logger.info("Saving existing playback tracking activity")
                        await self._update(existing)
                finally:
                    logger.info(f"Removing existing tracker: {key}")
                    self.registry.remove(key)
                    self.confirmations.unlink(key)

            logger.info(f"Adding playback tracker: {key}")
            tracker = SessionTracker(event)
            self.registry.upsert(key, tracker)
            self.confirmations.schedule(tracker)
            return tracker

    async def handle_progress(self, event: PlaybackProgress) -> bool:
        key = event.key
        async with self.registry.locked(key):
            tracker = self.registry.get(key)
            if tracker is None:
                logger.debug(f"Playback progress did not have a tracker: {key}")
                return False
            try:
                accepted = tracker.process_progress(event, self.progress_debounce_seconds)
                if not accepted:
                    return False
                logger.info(f"Processed playback tracker: {key}")
                if tracker.is_confirmed:
                    await self._update(tracker)
                return True
            except Exception as e:
                self.registry.remove(key)
                self.confirmations.unlink(key)
                raise TrackerProcessingError(str(key), str(e)) from e

    async def handle_stop(self, event: PlaybackStop) -> Optional[SessionTracker]:
        key = event.key
        async with self.registry.locked(key):
            tracker = self.registry.get(key)
            if tracker is None:
                logger.info(f"Playback stop did not have a tracker: {key}")
                return None
            logger.info(f"Playback stop tracker found, processing stop: {key}")
            try:
                tracker.process_stop(event)
                if tracker.is_confirmed:
                    logger.info("Saving playback tracking activity")
                    await self._update(tracker)
                else:
                    logger.info(f"Playback stop for unconfirmed session {key}, nothing stored")
            finally:
                self.registry.remove(key)
                self.confirmations.unlink(key)
            return tracker

    async def _update(self, tracker: SessionTracker) -> None:
        try:
            await self.store.update_playback_action(tracker.tracked_record)
        except aiosqlite.Error as e:
            raise StoreUnavailableError(f"Failed to update playback record: {e}") from e

    async def close(self) -> None:
        # event tasks first, they may still schedule confirmations
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.confirmations.close()
        self.registry.drain()
