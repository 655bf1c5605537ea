import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
import websockets

from .config import settings
from .models import (
    LiveSession,
    MediaItem,
    PlaybackProgress,
    PlaybackStart,
    PlaybackStop,
    SessionKey,
    TranscodingInfo,
)

logger = logging.getLogger(__name__)

EventHandler = Callable[[object], object]


def parse_media_item(data: dict) -> MediaItem:
    artists = [
        artist.get("Name", "") if isinstance(artist, dict) else str(artist)
        for artist in data.get("AlbumArtists") or []
    ]
    return MediaItem(
        id=data.get("Id", ""),
        name=data.get("Name") or "Not Known",
        type=data.get("Type") or "Unknown",
        series_name=data.get("SeriesName"),
        season_number=data.get("ParentIndexNumber"),
        episode_number=data.get("IndexNumber"),
        album=data.get("Album"),
        album_artists=[artist for artist in artists if artist],
        extra_type=data.get("ExtraType"),
    )


def parse_live_session(data: dict) -> LiveSession:
    now_playing = data.get("NowPlayingItem") or {}
    play_state = data.get("PlayState") or {}
    transcoding = data.get("TranscodingInfo")
    return LiveSession(
        device_id=data.get("DeviceId", ""),
        client_name=data.get("Client") or "Unknown",
        user_id=data.get("UserId") or None,
        now_playing_item_id=now_playing.get("Id"),
        play_method=play_state.get("PlayMethod"),
        transcoding=(
            TranscodingInfo(
                is_video_direct=bool(transcoding.get("IsVideoDirect", True)),
                is_audio_direct=bool(transcoding.get("IsAudioDirect", True)),
                video_codec=transcoding.get("VideoCodec"),
                audio_codec=transcoding.get("AudioCodec"),
            )
            if transcoding
            else None
        ),
    )


class JellyfinApiClient:
    """REST lookups against the Jellyfin server."""

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.base_url = base_url or settings.jellyfin_url
        self.api_key = api_key if api_key is not None else settings.jellyfin_api_key

    async def get_sessions(self, device_id: Optional[str] = None) -> list[dict]:
        params = {"api_key": self.api_key}
        if device_id:
            params["deviceId"] = device_id
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{self.base_url}/Sessions",
                params=params,
                timeout=10.0,
            )
        if response.status_code != 200:
            logger.warning(f"Failed to fetch sessions: {response.status_code}")
            return []
        return response.json()

    async def get_session(self, device_id: str) -> Optional[LiveSession]:
        """Live session playing on ``device_id``, if any."""
        for session in await self.get_sessions(device_id):
            if session.get("DeviceId") == device_id:
                return parse_live_session(session)
        return None

    async def get_user_names(self) -> dict[str, str]:
        """Get mapping of user IDs to names."""
        async with httpx.AsyncClient() as client:
            response = await client.get(
                f"{self.base_url}/Users",
                params={"api_key": self.api_key},
                timeout=30.0,
            )
        if response.status_code != 200:
            logger.warning(f"Failed to fetch users: {response.status_code}")
            return {}
        return {user["Id"]: user["Name"] for user in response.json()}


class JellyfinWebSocketClient:
    """Turns Jellyfin session snapshots into playback start/progress/stop events.

    Jellyfin pushes the full session list every two seconds. A session key
    appearing in a snapshot is a start, one still present is progress and one
    that disappeared is a stop carrying its last known position.
    """

    def __init__(self, api: Optional[JellyfinApiClient] = None):
        self.ws = None
        self.api = api or JellyfinApiClient()
        self._running = False
        self._reconnect_delay = 1
        self._max_reconnect_delay = 60
        self._on_event: Optional[EventHandler] = None
        self._connected = False
        self._last_message_at: Optional[datetime] = None
        self._playing: dict[str, tuple[SessionKey, int]] = {}

    def set_event_handler(self, handler: EventHandler) -> None:
        """Set callback receiving every derived playback event."""
        self._on_event = handler

    async def start(self) -> None:
        """Start the WebSocket client with auto-reconnect."""
        self._running = True
        while self._running:
            try:
                await self._connect()
            except Exception as e:
                logger.error(f"WebSocket error: {e}")
                if self._running:
                    await asyncio.sleep(self._reconnect_delay)
                    self._reconnect_delay = min(
                        self._reconnect_delay * 2, self._max_reconnect_delay
                    )

    async def stop(self) -> None:
        """Stop the WebSocket client."""
        self._running = False
        if self.ws:
            await self.ws.close()

    async def _connect(self) -> None:
        ws_url = settings.jellyfin_ws_url
        logger.info(f"Connecting to Jellyfin WebSocket: {ws_url.split('?')[0]}...")

        async with websockets.connect(ws_url, max_size=16 * 1024 * 1024) as ws:
            self.ws = ws
            self._reconnect_delay = 1
            self._connected = True
            logger.info("Connected to Jellyfin WebSocket")

            await ws.send(json.dumps({"MessageType": "SessionsStart", "Data": "0,2000"}))
            logger.info("Subscribed to session updates")

            try:
                await self._refresh_sessions()
                async for message in ws:
                    await self._handle_message(message)
            finally:
                self._connected = False

    async def _handle_message(self, message: str) -> None:
        try:
            data = json.loads(message)
            self._last_message_at = datetime.now(timezone.utc)
            if data.get("MessageType", "") == "Sessions":
                self.handle_sessions(data.get("Data") or [])
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON message: {message[:100]}")
        except Exception as e:
            logger.error(f"Error handling message: {e}")

    def handle_sessions(self, sessions: list[dict], now: Optional[datetime] = None) -> list:
        """Diff a session snapshot against the previous one and emit events."""
        now = now or datetime.now(timezone.utc)
        events = []
        current: dict[str, tuple[SessionKey, int]] = {}

        for session_data in sessions:
            now_playing = session_data.get("NowPlayingItem")
            user_id = session_data.get("UserId")
            device_id = session_data.get("DeviceId")
            if not now_playing or not user_id or not device_id:
                continue

            key = SessionKey(
                device_id=device_id, user_id=user_id, item_id=now_playing.get("Id", "")
            )
            play_state = session_data.get("PlayState") or {}
            position_ticks = play_state.get("PositionTicks") or 0
            current[str(key)] = (key, position_ticks)

            if str(key) in self._playing:
                events.append(
                    PlaybackProgress(
                        device_id=key.device_id,
                        user_id=key.user_id,
                        item_id=key.item_id,
                        position_ticks=position_ticks,
                        is_paused=bool(play_state.get("IsPaused", False)),
                        timestamp=now,
                    )
                )
            else:
                additional = [
                    user.get("UserId")
                    for user in session_data.get("AdditionalUsers") or []
                    if user.get("UserId")
                ]
                events.append(
                    PlaybackStart(
                        device_id=device_id,
                        device_name=session_data.get("DeviceName") or "Unknown",
                        client_name=session_data.get("Client") or "Unknown",
                        users=[user_id, *additional],
                        item=parse_media_item(now_playing),
                        position_ticks=position_ticks,
                        timestamp=now,
                    )
                )

        for name, (key, position_ticks) in self._playing.items():
            if name not in current:
                events.append(
                    PlaybackStop(
                        device_id=key.device_id,
                        user_id=key.user_id,
                        item_id=key.item_id,
                        position_ticks=position_ticks,
                        timestamp=now,
                    )
                )

        self._playing = current
        if self._on_event:
            for event in events:
                self._on_event(event)
        return events

    async def _refresh_sessions(self) -> None:
        """Refresh session list via REST to catch up after reconnect."""
        sessions = await self.api.get_sessions()
        self.handle_sessions(sessions)

    def status(self) -> dict:
        """Expose client status for health/metrics."""
        return {
            "connected": self._connected,
            "last_message_at": (
                self._last_message_at.isoformat() if self._last_message_at else None
            ),
            "playing": len(self._playing),
        }


# Global client instances
jellyfin_api = JellyfinApiClient()
jellyfin_client = JellyfinWebSocketClient(jellyfin_api)
