import logging
from datetime import datetime
from typing import Optional

from .models import (
    PlaybackProgress,
    PlaybackRecord,
    PlaybackStart,
    PlaybackStop,
    SessionKey,
    TICKS_PER_SECOND,
    TrackerState,
)

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 20.0


class SessionTracker:
    """State of one playback session between its start and stop events.

    A tracker starts ``NEW``. The confirmation task attaches a record and moves
    it to ``CONFIRMED``; from then on every accepted progress sample and the
    final stop push the accumulated duration into that record. ``CLOSED`` is
    terminal.

    Duration is the wall time between accepted samples. Pauses are not tracked
    separately, so a paused client keeps accruing time until it stops.
    """

    def __init__(self, start: PlaybackStart):
        key = start.key
        if key is None:
            raise ValueError("Playback start has no user or item")
        self.key: SessionKey = key
        self.start = start
        self.created_at: datetime = start.timestamp
        self.last_updated: datetime = start.timestamp
        self.state = TrackerState.NEW
        self.playback_log: list[str] = []
        self.tracked_record: Optional[PlaybackRecord] = None
        self._elapsed = 0.0
        self._position_ticks = start.position_ticks
        self._log(f"start item={key.item_id} position={self._position_seconds()}s")

    @property
    def duration_seconds(self) -> int:
        return int(self._elapsed)

    @property
    def is_confirmed(self) -> bool:
        return self.tracked_record is not None

    def process_progress(
        self, event: PlaybackProgress, debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS
    ) -> bool:
        """Accept a progress sample unless it falls inside the debounce window."""
        self._ensure_open()
        since_last = (event.timestamp - self.last_updated).total_seconds()
        if since_last < debounce_seconds:
            return False
        self._position_ticks = event.position_ticks
        self.calculate_duration(event.timestamp)
        self._log(
            f"progress position={self._position_seconds()}s paused={event.is_paused} "
            f"duration={self.duration_seconds}s"
        )
        return True

    def process_stop(self, event: PlaybackStop) -> None:
        self._ensure_open()
        self._position_ticks = event.position_ticks or self._position_ticks
        self.calculate_duration(event.timestamp)
        self.state = TrackerState.CLOSED
        self._log(f"stop position={self._position_seconds()}s duration={self.duration_seconds}s")

    def calculate_duration(self, now: datetime) -> int:
        """Add the time since the last accepted sample and move the sample mark."""
        delta = (now - self.last_updated).total_seconds()
        if delta > 0:
            self._elapsed += delta
            self.last_updated = now
        if self.tracked_record is not None:
            self.tracked_record.play_duration = self.duration_seconds
        return self.duration_seconds

    def confirm(self, record: PlaybackRecord) -> bool:
        if self.state is not TrackerState.NEW:
            return False
        record.play_duration = self.duration_seconds
        self.tracked_record = record
        self.state = TrackerState.CONFIRMED
        self._log(f"confirmed record={record.id}")
        return True

    def _ensure_open(self) -> None:
        if self.state is TrackerState.CLOSED:
            raise RuntimeError(f"Tracker {self.key} is closed")

    def _position_seconds(self) -> int:
        return self._position_ticks // TICKS_PER_SECOND

    def _log(self, message: str) -> None:
        self.playback_log.append(message)
        logger.debug(f"{self.key}: {message}")
