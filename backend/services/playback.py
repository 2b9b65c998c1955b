"""Playback info builder. Resolves a catalog id into a playback contract.

Two backends produce the same ``PlaybackInfo``: ``LocalPlaybackBackend``
probes the file and serves it from this process, ``JellyfinPlaybackBackend``
(services/jellyfin_playback.py) hands streaming to the media server.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional
from urllib.parse import quote

from errors import PlaybackError
from models import (
    AudioTrack,
    MediaInfo,
    MediaStream,
    PlaybackInfo,
    ProgressReport,
    Strategy,
    SubtitleTrack,
)
from services.compatibility import classify
from services.ffprobe import FFprobeRunner
from services.resolver import IdentifierResolver, ResolvedMedia

logger = logging.getLogger(__name__)

# Subtitle codecs ffmpeg can convert to WebVTT; bitmap formats cannot
TEXT_SUBTITLE_CODECS = frozenset({
    "subrip", "srt", "webvtt", "vtt", "ass", "ssa", "mov_text", "text", "ttml",
})


def encode_path(path: str) -> str:
    """Percent-encode a filesystem path for use as a single URL segment."""
    return quote(path, safe="")


def is_allowed_path(path: str, roots: list[str]) -> bool:
    """True when ``path`` sits below one of ``roots``. No roots means nothing is served."""
    if not roots:
        return False
    resolved = Path(path).resolve()
    return any(resolved.is_relative_to(Path(root).resolve()) for root in roots)


def subtitle_ref(stream_index: int, path: str) -> str:
    """Composite ``index:path`` reference, parsed back by the subtitle route."""
    return encode_path(f"{stream_index}:{path}")


def container_for(path: str, reported: str = "") -> str:
    return reported or Path(path).suffix.lstrip(".").lower() or "mkv"


def build_audio_tracks(streams: list[MediaStream], selected_index: Optional[int] = None) -> list[AudioTrack]:
    """Dense-indexed audio tracks; exactly one selected when any exist.

    ``selected_index`` is a container index the player asked for; otherwise
    the source-marked default wins, then the first track.
    """
    tracks = [
        AudioTrack(
            id=i,
            stream_index=s.index,
            language=s.language or "Unknown",
            language_code=s.language or "und",
            display_title=s.title or s.language or f"Audio {i + 1}",
            codec=s.codec_name,
            channels=s.channels or 2,
        )
        for i, s in enumerate(streams)
    ]
    if tracks:
        chosen = next((i for i, s in enumerate(streams) if s.index == selected_index), None)
        if chosen is None:
            chosen = next((i for i, s in enumerate(streams) if s.is_default), 0)
        tracks[chosen].selected = True
    return tracks


def build_subtitle_tracks(streams: list[MediaStream], file_path: str) -> list[SubtitleTrack]:
    """Dense-indexed subtitle tracks with a local VTT URL for text formats.

    Sidecar files are addressed by their own path and index, embedded tracks
    by the video path and container index.
    """
    tracks = []
    for i, s in enumerate(streams):
        is_text = s.codec_name.lower() in TEXT_SUBTITLE_CODECS
        source = s.external_path if s.is_external and s.external_path else file_path
        tracks.append(SubtitleTrack(
            id=i,
            stream_index=s.index,
            language=s.language or "Unknown",
            language_code=s.language or "und",
            display_title=s.title or s.language or f"Subtitle {i + 1}",
            format=s.codec_name,
            is_external=s.is_external,
            is_text=is_text,
            url=f"/api/media/subtitle/{subtitle_ref(s.index, source)}" if is_text else None,
        ))
    return tracks


class PlaybackBackend(ABC):
    """
    One interface, two implementations chosen by ``settings.playback_backend``.

    ``resolve_*`` raise the ``errors`` taxonomy so callers can tell the user
    why; ``get_*_playback`` collapse every failure to None.
    """

    name = "base"

    def __init__(self, resolver: IdentifierResolver):
        self.resolver = resolver

    @property
    def enabled(self) -> bool:
        return self.resolver.radarr.enabled or self.resolver.sonarr.enabled

    async def resolve_movie(
        self,
        tmdb_id: int,
        audio_stream_index: Optional[int] = None,
        subtitle_stream_index: Optional[int] = None,
    ) -> PlaybackInfo:
        media = await self.resolver.resolve_movie_path(tmdb_id)
        return await self.build(media, audio_stream_index, subtitle_stream_index)

    async def resolve_episode(
        self,
        tmdb_id: int,
        season: int,
        episode: int,
        audio_stream_index: Optional[int] = None,
        subtitle_stream_index: Optional[int] = None,
    ) -> PlaybackInfo:
        media = await self.resolver.resolve_episode_path(tmdb_id, season, episode)
        return await self.build(media, audio_stream_index, subtitle_stream_index)

    async def get_movie_playback(self, tmdb_id: int) -> Optional[PlaybackInfo]:
        try:
            return await self.resolve_movie(tmdb_id)
        except PlaybackError as e:
            logger.info("Movie %s unavailable: %s", tmdb_id, e)
            return None

    async def get_episode_playback(self, tmdb_id: int, season: int, episode: int) -> Optional[PlaybackInfo]:
        try:
            return await self.resolve_episode(tmdb_id, season, episode)
        except PlaybackError as e:
            logger.info("Episode %s S%sE%s unavailable: %s", tmdb_id, season, episode, e)
            return None

    @abstractmethod
    async def build(
        self,
        media: ResolvedMedia,
        audio_stream_index: Optional[int] = None,
        subtitle_stream_index: Optional[int] = None,
    ) -> PlaybackInfo:
        """Turn a resolved file into a playback contract."""

    async def report_progress(self, report: ProgressReport) -> None:
        """Forward player position somewhere that tracks it. Nothing does locally."""

    async def aclose(self) -> None:
        pass


class LocalPlaybackBackend(PlaybackBackend):
    """Probe the file here; stream it directly or through a local transcode."""

    name = "local"

    def __init__(self, resolver: IdentifierResolver, prober: FFprobeRunner):
        super().__init__(resolver)
        self.prober = prober

    async def build(
        self,
        media: ResolvedMedia,
        audio_stream_index: Optional[int] = None,
        subtitle_stream_index: Optional[int] = None,
    ) -> PlaybackInfo:
        # Local subtitles are always separate WebVTT tracks; the transcode never burns them in
        probe = await self.prober.probe(media.path)

        video = next(iter(probe.video_streams), None)
        if video is None:
            logger.warning("No video stream in %s", media.path)
            raise PlaybackError(f"No video stream in {media.path}")

        audio_streams = probe.audio_streams
        primary = audio_streams[0] if audio_streams else None
        requested = next((s for s in audio_streams if s.index == audio_stream_index), None)

        active = requested or primary
        audio_codec = active.codec_name if active else "unknown"
        strategy = classify(active.codec_name if active else None)
        # Browsers always play the first audio track of a direct stream
        if requested is not None and requested is not primary:
            strategy = Strategy.TRANSCODE

        encoded = encode_path(media.path)
        if strategy is Strategy.DIRECT:
            stream_url = f"/api/media/stream/{encoded}"
        else:
            stream_url = f"/api/transcode/play/{encoded}"
            if requested is not None:
                stream_url += f"?audio={requested.index}"

        subtitles = build_subtitle_tracks(probe.subtitle_streams, media.path)
        logger.info(
            "%s: video %s %sx%s, audio %s (%s), %d subtitle tracks",
            media.title, video.codec_name, video.width, video.height,
            audio_codec, strategy.value, len(subtitles),
        )

        return PlaybackInfo(
            found=True,
            title=media.title,
            type=media.kind,
            file_path=media.path,
            file_size=probe.format.size,
            duration=probe.format.duration_ms,
            media_info=MediaInfo(
                width=video.width or 0,
                height=video.height or 0,
                video_codec=video.codec_name,
                audio_codec=audio_codec,
                container=container_for(media.path, probe.format.container),
            ),
            strategy=strategy,
            needs_transcode=strategy is not Strategy.DIRECT,
            stream_url=stream_url,
            audio_tracks=build_audio_tracks(audio_streams, audio_stream_index),
            subtitles=subtitles,
        )
