"""Playback backend that delegates streaming to Jellyfin.

The only link between the library manager's world and Jellyfin's is the
file path: the resolver gives us a path, we look for the Jellyfin item
recorded with that path, then let Jellyfin decide direct play vs. remux vs.
transcode for our device profile.
"""

import asyncio
import logging
import time
from typing import Optional

from errors import NotFound, PlaybackError
from models import (
    TICKS_PER_MILLISECOND,
    MediaInfo,
    MediaStream,
    PlaybackInfo,
    ProgressReport,
    Strategy,
    SubtitleTrack,
)
from services.compatibility import from_media_source
from services.jellyfin import SUBTITLE_METHODS, JellyfinClient, PathMapper
from services.playback import (
    TEXT_SUBTITLE_CODECS,
    PlaybackBackend,
    build_audio_tracks,
    container_for,
)
from services.resolver import IdentifierResolver, ResolvedMedia

logger = logging.getLogger(__name__)

_STREAM_TYPES = {"Video": "video", "Audio": "audio", "Subtitle": "subtitle"}


def to_media_stream(raw: dict) -> Optional[MediaStream]:
    """Jellyfin MediaStream -> our MediaStream. EmbeddedImage etc. are skipped."""
    codec_type = _STREAM_TYPES.get(raw.get("Type", ""))
    if codec_type is None:
        return None
    return MediaStream(
        index=raw.get("Index", 0),
        codec_type=codec_type,
        codec_name=(raw.get("Codec") or "unknown").lower(),
        width=raw.get("Width"),
        height=raw.get("Height"),
        channels=raw.get("Channels"),
        channel_layout=raw.get("ChannelLayout"),
        language=raw.get("Language"),
        title=raw.get("DisplayTitle") or raw.get("Title"),
        is_default=bool(raw.get("IsDefault")),
        is_forced=bool(raw.get("IsForced")),
        is_external=bool(raw.get("IsExternal")),
        external_path=raw.get("Path") if raw.get("IsExternal") else None,
    )


class JellyfinPlaybackBackend(PlaybackBackend):
    name = "jellyfin"

    def __init__(
        self,
        resolver: IdentifierResolver,
        client: JellyfinClient,
        path_mapper: Optional[PathMapper] = None,
        max_streaming_bitrate: int = 20_000_000,
        subtitle_delivery: str = "sidecar",
        rescan_cooldown: float = 60.0,
    ):
        super().__init__(resolver)
        self.client = client
        self.map_path = path_mapper or PathMapper()
        self.max_streaming_bitrate = max_streaming_bitrate
        self.subtitle_method = SUBTITLE_METHODS.get(subtitle_delivery, "Hls")
        self.rescan_cooldown = rescan_cooldown
        self._last_rescan = 0.0
        self._background: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return super().enabled and self.client.enabled

    # ── Rescan ──────────────────────────────────────────────────

    def schedule_rescan(self) -> Optional[asyncio.Task]:
        """Kick off a library refresh without waiting for it. Debounced."""
        now = time.monotonic()
        if self._last_rescan and now - self._last_rescan < self.rescan_cooldown:
            logger.debug("Jellyfin rescan requested %.0fs ago, skipping", now - self._last_rescan)
            return None
        self._last_rescan = now

        task = asyncio.create_task(self._rescan())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _rescan(self) -> None:
        try:
            await self.client.refresh_library()
            logger.info("Jellyfin library rescan triggered")
        except PlaybackError as e:
            logger.warning("Jellyfin library rescan failed: %s", e)

    # ── Build ───────────────────────────────────────────────────

    async def build(
        self,
        media: ResolvedMedia,
        audio_stream_index: Optional[int] = None,
        subtitle_stream_index: Optional[int] = None,
    ) -> PlaybackInfo:
        server_path = self.map_path(media.path)
        item = await self.client.find_item_by_path(server_path, media.search_term)
        if item is None:
            logger.info("%s (%s) is not indexed by Jellyfin yet", media.title, server_path)
            self.schedule_rescan()
            raise NotFound(f"{server_path} is not indexed by Jellyfin", reason="not_indexed")

        item_id = item.get("Id")
        if not item_id:
            raise PlaybackError(f"Jellyfin item for {server_path} has no Id")
        info = await self.client.get_playback_info(
            item_id,
            self.max_streaming_bitrate,
            audio_stream_index=audio_stream_index,
            subtitle_stream_index=subtitle_stream_index,
        )
        if info.get("ErrorCode"):
            raise PlaybackError(f"Jellyfin refused playback of {item_id}: {info['ErrorCode']}")

        sources = [s for s in info.get("MediaSources") or [] if isinstance(s, dict)]
        if not sources:
            raise PlaybackError(f"Jellyfin returned no media source for {item_id}")
        source = sources[0]
        source_id = source.get("Id", item_id)
        play_session_id = info.get("PlaySessionId", "")

        streams = [s for s in map(to_media_stream, source.get("MediaStreams") or []) if s]
        video = next((s for s in streams if s.codec_type == "video"), None)
        if video is None:
            raise PlaybackError(f"No video stream in Jellyfin item {item_id}")
        audio_streams = [s for s in streams if s.codec_type == "audio"]
        subtitle_streams = [s for s in streams if s.codec_type == "subtitle"]

        if audio_stream_index is None:
            audio_stream_index = source.get("DefaultAudioStreamIndex")
        audio_tracks = build_audio_tracks(audio_streams, audio_stream_index)
        selected = next((t for t in audio_tracks if t.selected), None)

        container = container_for(media.path, (source.get("Container") or "").split(",")[0])
        strategy = from_media_source(source)
        direct_url = self.client.direct_stream_url(item_id, source_id, container, play_session_id)
        hls_url = self.client.hls_url(
            item_id,
            source_id,
            play_session_id,
            self.max_streaming_bitrate,
            audio_stream_index=selected.stream_index if selected else None,
            subtitle_stream_index=subtitle_stream_index,
            subtitle_method=self.subtitle_method,
        )

        logger.info(
            "%s: Jellyfin item %s, %s (direct play %s)",
            media.title, item_id, strategy.value, bool(source.get("SupportsDirectPlay")),
        )

        return PlaybackInfo(
            found=True,
            title=media.title,
            type=media.kind,
            file_path=media.path,
            file_size=source.get("Size") or 0,
            duration=(source.get("RunTimeTicks") or 0) // TICKS_PER_MILLISECOND,
            media_info=MediaInfo(
                width=video.width or 0,
                height=video.height or 0,
                video_codec=video.codec_name,
                audio_codec=selected.codec if selected else "unknown",
                container=container,
            ),
            strategy=strategy,
            needs_transcode=strategy is not Strategy.DIRECT,
            stream_url=direct_url if strategy is Strategy.DIRECT else hls_url,
            direct_stream_url=direct_url,
            play_session_id=play_session_id,
            item_id=item_id,
            media_source_id=source_id,
            audio_tracks=audio_tracks,
            subtitles=self._subtitle_tracks(subtitle_streams, item_id, source_id),
        )

    def _subtitle_tracks(self, streams: list[MediaStream], item_id: str, source_id: str) -> list[SubtitleTrack]:
        """Sidecar files are served as-is, embedded text tracks via Jellyfin's VTT conversion."""
        tracks = []
        for i, s in enumerate(streams):
            is_text = s.codec_name in TEXT_SUBTITLE_CODECS
            if s.is_external:
                url = self.client.subtitle_url(item_id, source_id, s.index, s.codec_name)
            elif is_text:
                url = self.client.converted_subtitle_url(item_id, source_id, s.index)
            else:
                # Bitmap subtitles can only be burned into the HLS stream
                url = None
            tracks.append(SubtitleTrack(
                id=i,
                stream_index=s.index,
                language=s.language or "Unknown",
                language_code=s.language or "und",
                display_title=s.title or s.language or f"Subtitle {i + 1}",
                format=s.codec_name,
                is_external=s.is_external,
                is_text=is_text,
                url=url,
            ))
        return tracks

    # ── Progress ────────────────────────────────────────────────

    async def report_progress(self, report: ProgressReport) -> None:
        """Best effort: a failed report never interrupts playback."""
        payload = {
            "ItemId": report.item_id,
            "MediaSourceId": report.media_source_id or report.item_id,
            "PlaySessionId": report.play_session_id,
            "PositionTicks": report.position_ms * TICKS_PER_MILLISECOND,
            "IsPaused": report.is_paused,
        }
        report_fn = {
            "start": self.client.report_playback_start,
            "stopped": self.client.report_playback_stopped,
        }.get(report.event, self.client.report_playback_progress)
        try:
            await report_fn(payload)
        except PlaybackError as e:
            logger.warning("Jellyfin progress report for %s failed: %s", report.item_id, e)

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        await self.client.aclose()
