"""Cinema playback — FastAPI application entrypoint."""

import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import Settings, settings
from routers import media, transcode
from services.ffprobe import FFprobeRunner
from services.jellyfin import JellyfinClient, PathMapper
from services.jellyfin_playback import JellyfinPlaybackBackend
from services.playback import LocalPlaybackBackend, PlaybackBackend
from services.radarr import RadarrClient
from services.resolver import IdentifierResolver
from services.session_manager import TranscodeSessionManager
from services.sonarr import SonarrClient
from services.subtitles import SubtitleService

logger = logging.getLogger(__name__)


def create_playback_backend(cfg: Settings) -> PlaybackBackend:
    """Build the collaborators once and pick the backend from configuration."""
    resolver = IdentifierResolver(
        RadarrClient(cfg.radarr_url, cfg.radarr_api_key, timeout=cfg.http_timeout),
        SonarrClient(cfg.sonarr_url, cfg.sonarr_api_key, timeout=cfg.http_timeout),
    )
    if cfg.uses_jellyfin:
        client = JellyfinClient(
            cfg.jellyfin_url,
            cfg.jellyfin_api_key,
            user_id=cfg.jellyfin_user_id,
            device_id=cfg.jellyfin_device_id,
            timeout=cfg.http_timeout,
        )
        return JellyfinPlaybackBackend(
            resolver,
            client,
            path_mapper=PathMapper(cfg.media_path_map),
            max_streaming_bitrate=cfg.max_streaming_bitrate,
            subtitle_delivery=cfg.subtitle_delivery,
        )
    if cfg.playback_backend == "jellyfin":
        logger.warning("PLAYBACK_BACKEND=jellyfin but Jellyfin is not configured, using local playback")
    if not cfg.media_roots:
        logger.warning("MEDIA_ROOTS is empty, local streams and subtitles will be refused")
    return LocalPlaybackBackend(resolver, FFprobeRunner(cfg.ffprobe_path))


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    Path(settings.transcode_dir).mkdir(parents=True, exist_ok=True)

    playback = create_playback_backend(settings)
    sessions = TranscodeSessionManager(
        settings.ffmpeg_path,
        settings.transcode_dir,
        max_sessions=settings.max_transcode_sessions,
        idle_timeout=settings.session_idle_timeout,
        reap_interval=settings.session_reap_interval,
        segment_seconds=settings.hls_segment_seconds,
    )
    sessions.start()

    app.state.settings = settings
    app.state.playback = playback
    app.state.sessions = sessions
    app.state.subtitles = SubtitleService(settings.ffmpeg_path, settings.media_roots)
    logger.info("Playback backend: %s", playback.name)
    yield
    # Shutdown: no transcoder may outlive the server
    await sessions.shutdown()
    await playback.resolver.radarr.aclose()
    await playback.resolver.sonarr.aclose()
    await playback.aclose()


app = FastAPI(
    title="Cinema Playback",
    description="Playback info and streaming for a self-hosted media dashboard",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.cors_origin.split(",")],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(media.router, prefix="/api")
if not settings.uses_jellyfin:
    app.include_router(transcode.router, prefix="/api")


@app.get("/api/health")
async def health():
    return {"status": "ok"}
