"""Pydantic models shared across the application."""

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Fixed-point duration unit shared with Jellyfin: 100-nanosecond intervals
TICKS_PER_SECOND = 10_000_000
TICKS_PER_MILLISECOND = TICKS_PER_SECOND // 1000


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Probe models ────────────────────────────────────────────────

class MediaStream(ApiModel):
    """One decoded track inside a file. Index is only stable for that file."""
    model_config = ConfigDict(frozen=True)

    index: int
    codec_type: Literal["video", "audio", "subtitle"]
    codec_name: str = "unknown"
    width: Optional[int] = None
    height: Optional[int] = None
    channels: Optional[int] = None
    channel_layout: Optional[str] = None
    language: Optional[str] = None
    title: Optional[str] = None
    is_default: bool = False
    is_forced: bool = False
    is_external: bool = False
    external_path: Optional[str] = None  # sidecar subtitle file


class MediaFormat(ApiModel):
    duration_ticks: int = 0
    size: int = 0
    container: str = ""
    bit_rate: int = 0

    @property
    def duration_ms(self) -> int:
        return self.duration_ticks // TICKS_PER_MILLISECOND


class ProbeResult(ApiModel):
    path: str
    format: MediaFormat
    streams: list[MediaStream] = []

    def _of_type(self, codec_type: str) -> list[MediaStream]:
        return [s for s in self.streams if s.codec_type == codec_type]

    @property
    def video_streams(self) -> list[MediaStream]:
        return self._of_type("video")

    @property
    def audio_streams(self) -> list[MediaStream]:
        return self._of_type("audio")

    @property
    def subtitle_streams(self) -> list[MediaStream]:
        return self._of_type("subtitle")


# ── Playback contract ───────────────────────────────────────────

class Strategy(str, Enum):
    DIRECT = "direct"
    REMUX = "remux"
    TRANSCODE = "transcode"


class MediaInfo(ApiModel):
    width: int = 0
    height: int = 0
    video_codec: str = ""
    audio_codec: str = ""
    container: str = ""


class AudioTrack(ApiModel):
    id: int  # dense display order
    stream_index: int  # container index, used for track switching
    language: str
    language_code: str
    display_title: str
    codec: str
    channels: int
    selected: bool = False


class SubtitleTrack(ApiModel):
    id: int
    stream_index: int
    language: str
    language_code: str
    display_title: str
    format: str
    is_external: bool = False
    is_text: bool = True
    url: Optional[str] = None  # None when the track can only be burned in


class PlaybackInfo(ApiModel):
    found: bool = True
    title: str = ""
    type: Optional[Literal["movie", "episode"]] = None
    file_path: str = Field(default="", exclude=True)
    file_size: int = 0
    duration: int = 0  # milliseconds
    media_info: Optional[MediaInfo] = None
    strategy: Optional[Strategy] = None
    needs_transcode: bool = False
    stream_url: str = ""
    direct_stream_url: Optional[str] = None
    play_session_id: Optional[str] = None
    item_id: Optional[str] = None
    media_source_id: Optional[str] = None
    audio_tracks: list[AudioTrack] = []
    subtitles: list[SubtitleTrack] = []
    message: Optional[str] = None

    @classmethod
    def unavailable(cls, message: str) -> "PlaybackInfo":
        return cls(found=False, message=message)

    def absolutized(self, base_url: str) -> "PlaybackInfo":
        """Prefix every relative URL with ``base_url``."""
        base = base_url.rstrip("/")

        def _abs(url: Optional[str]) -> Optional[str]:
            if url and url.startswith("/"):
                return f"{base}{url}"
            return url

        return self.model_copy(update={
            "stream_url": _abs(self.stream_url) or "",
            "direct_stream_url": _abs(self.direct_stream_url),
            "subtitles": [
                s.model_copy(update={"url": _abs(s.url)}) for s in self.subtitles
            ],
        })


class MediaStatus(ApiModel):
    enabled: bool
    backend: str
    radarr: bool
    sonarr: bool
    jellyfin: bool


# ── Streaming session models ────────────────────────────────────

Quality = Literal["original", "1080p", "720p", "480p"]


class StartSessionRequest(ApiModel):
    path: str
    client_id: str
    audio_stream_index: Optional[int] = None
    quality: Quality = "original"
    position: float = 0.0


class SeekRequest(ApiModel):
    position: float = Field(ge=0.0)


class SessionInfo(ApiModel):
    session_id: str
    state: str
    position: float
    quality: str
    audio_stream_index: Optional[int] = None
    playlist_url: str


class ProgressReport(ApiModel):
    """Player position update forwarded to the media server."""
    item_id: str
    media_source_id: Optional[str] = None
    play_session_id: Optional[str] = None
    position_ms: int = 0
    is_paused: bool = False
    event: Literal["start", "progress", "stopped"] = "progress"
