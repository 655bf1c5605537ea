import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

THEME_EXTRA_TYPES = {"ThemeSong", "ThemeVideo", "Trailer"}
TICKS_PER_SECOND = 10_000_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TrackerState(str, Enum):
    NEW = "new"
    CONFIRMED = "confirmed"
    CLOSED = "closed"


class UsageDataType(str, Enum):
    COUNT = "count"
    TIME = "time"


class BreakdownDimension(str, Enum):
    """Columns a breakdown report may group by."""

    USER_ID = "UserId"
    ITEM_TYPE = "ItemType"
    PLAYBACK_METHOD = "PlaybackMethod"
    CLIENT_NAME = "ClientName"
    DEVICE_NAME = "DeviceName"


class SessionKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_id: str
    user_id: str
    item_id: str

    def __str__(self) -> str:
        return f"{self.device_id}-{self.user_id}-{self.item_id}"


class MediaItem(BaseModel):
    id: str
    name: str = "Not Known"
    type: str = "Unknown"
    series_name: Optional[str] = None
    season_number: Optional[int] = None
    episode_number: Optional[int] = None
    album: Optional[str] = None
    album_artists: list[str] = Field(default_factory=list)
    extra_type: Optional[str] = None

    @property
    def is_theme_media(self) -> bool:
        return self.extra_type in THEME_EXTRA_TYPES

    def display_name(self) -> str:
        """Name stored on the playback record."""
        if self.type == "Episode":
            season = f"{self.season_number:02d}" if self.season_number is not None else "00"
            episode = f"{self.episode_number:02d}" if self.episode_number is not None else "00"
            return f"{self.series_name} - s{season}e{episode} - {self.name}"
        if self.type == "Audio":
            artist = ", ".join(self.album_artists) if self.album_artists else "Not Known"
            album = self.album or "Not Known"
            return f"{artist} - {self.name} ({album})"
        return self.name


class PlaybackStart(BaseModel):
    kind: Literal["start"] = "start"
    device_id: str
    device_name: str = "Unknown"
    client_name: str = "Unknown"
    users: list[str] = Field(default_factory=list)
    item: Optional[MediaItem] = None
    position_ticks: int = 0
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> Optional[SessionKey]:
        if not self.users or self.item is None:
            return None
        return SessionKey(device_id=self.device_id, user_id=self.users[0], item_id=self.item.id)


class PlaybackProgress(BaseModel):
    kind: Literal["progress"] = "progress"
    device_id: str
    user_id: str
    item_id: str
    position_ticks: int = 0
    is_paused: bool = False
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> SessionKey:
        return SessionKey(device_id=self.device_id, user_id=self.user_id, item_id=self.item_id)


class PlaybackStop(BaseModel):
    kind: Literal["stop"] = "stop"
    device_id: str
    user_id: str
    item_id: str
    position_ticks: int = 0
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> SessionKey:
        return SessionKey(device_id=self.device_id, user_id=self.user_id, item_id=self.item_id)


PlaybackEvent = Annotated[
    Union[PlaybackStart, PlaybackProgress, PlaybackStop], Field(discriminator="kind")
]


class TranscodingInfo(BaseModel):
    is_video_direct: bool = True
    is_audio_direct: bool = True
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None


class LiveSession(BaseModel):
    """Server-side view of a session, used to confirm a start."""

    device_id: str
    client_name: str = "Unknown"
    user_id: Optional[str] = None
    now_playing_item_id: Optional[str] = None
    play_method: Optional[str] = None
    transcoding: Optional[TranscodingInfo] = None

    def playback_method(self) -> str:
        method = self.play_method or "na"
        if self.play_method == "Transcode" and self.transcoding is not None:
            video = "direct" if self.transcoding.is_video_direct else self.transcoding.video_codec
            audio = "direct" if self.transcoding.is_audio_direct else self.transcoding.audio_codec
            method += f" (v:{video} a:{audio})"
        return method


class PlaybackRecord(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    date: datetime
    user_id: str
    item_id: str
    item_name: str
    item_type: str
    client_name: str
    device_name: str
    playback_method: str
    play_duration: int = 0


class UsageItem(BaseModel):
    """One row of a user's activity on a given day."""

    time: str
    id: str
    name: str
    type: str
    client: str
    method: str
    device: str
    duration: int
    row_id: int


class UserUsage(BaseModel):
    user_id: str
    user_name: Optional[str] = None
    user_usage: dict[str, int]


class UserActivity(BaseModel):
    user_id: str
    latest_date: datetime
    total_count: int
    total_time: int
    item_count: int


class BreakdownRow(BaseModel):
    label: str
    count: int
    time: int


class CustomQueryResult(BaseModel):
    columns: list[str]
    results: list[list[Any]]
    message: str = ""


class ReportWindow(BaseModel):
    """Inclusive local-date range of a report."""

    start: date
    end: date

    @property
    def dates(self) -> list[date]:
        return [
            date.fromordinal(ordinal)
            for ordinal in range(self.start.toordinal(), self.end.toordinal() + 1)
        ]
