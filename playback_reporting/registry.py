import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Union

from .models import SessionKey
from .tracker import SessionTracker

logger = logging.getLogger(__name__)


def _key(key: Union[SessionKey, str]) -> str:
    return str(key)


class SessionRegistry:
    """Active session trackers with one lock per session key.

    Callers hold ``locked(key)`` around every read-modify-write of a key so
    that events for one session apply in order, while other keys proceed
    concurrently.
    """

    def __init__(self):
        self._trackers: dict[str, SessionTracker] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._trackers)

    def __contains__(self, key: object) -> bool:
        return str(key) in self._trackers

    def keys(self) -> list[str]:
        return list(self._trackers)

    def get(self, key: Union[SessionKey, str]) -> Optional[SessionTracker]:
        return self._trackers.get(_key(key))

    def upsert(self, key: Union[SessionKey, str], tracker: SessionTracker) -> None:
        self._trackers[_key(key)] = tracker

    def remove(self, key: Union[SessionKey, str]) -> Optional[SessionTracker]:
        return self._trackers.pop(_key(key), None)

    @asynccontextmanager
    async def locked(self, key: Union[SessionKey, str]) -> AsyncIterator[None]:
        name = _key(key)
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        self._lock_users[name] = self._lock_users.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[name] -= 1
            if self._lock_users[name] == 0:
                del self._lock_users[name]
                del self._locks[name]

    def drain(self) -> int:
        """Drop every tracker; unconfirmed sessions are lost."""
        count = len(self._trackers)
        if count:
            logger.info(f"Discarding {count} active playback tracker(s)")
        self._trackers.clear()
        return count
