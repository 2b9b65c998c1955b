"""Media router — playback info, direct streams, subtitles, progress."""

import logging
import os

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import FileResponse, Response

from errors import NotFound, PlaybackError, ProbeFailure, ResourceExhausted
from models import MediaStatus, PlaybackInfo, ProgressReport
from services.playback import PlaybackBackend, is_allowed_path

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/media", tags=["media"])


def _backend(request: Request) -> PlaybackBackend:
    return request.app.state.playback


def base_url(request: Request) -> str:
    return request.app.state.settings.public_base_url or str(request.base_url)


async def _respond(request: Request, pending) -> PlaybackInfo:
    """Every failure becomes ``found: false`` with a message, except a full server."""
    try:
        info = await pending
    except ResourceExhausted as e:
        raise HTTPException(503, e.user_message, headers={"Retry-After": "10"})
    except PlaybackError as e:
        logger.info("Playback unavailable: %s", e)
        return PlaybackInfo.unavailable(e.user_message)
    return info.absolutized(base_url(request))


@router.get("/status", response_model=MediaStatus)
async def media_status(request: Request):
    settings = request.app.state.settings
    backend = _backend(request)
    return MediaStatus(
        enabled=backend.enabled,
        backend=backend.name,
        radarr=settings.radarr_enabled,
        sonarr=settings.sonarr_enabled,
        jellyfin=settings.jellyfin_enabled,
    )


@router.get("/movie/{tmdb_id}", response_model=PlaybackInfo)
async def movie_playback(
    request: Request,
    tmdb_id: int,
    audio: int | None = Query(None, description="Container index of the audio track"),
    subtitle: int | None = Query(
        None,
        description="Jellyfin only: container index of a subtitle for the HLS stream. "
        "Local playback serves subtitles as separate WebVTT tracks and ignores it.",
    ),
):
    return await _respond(request, _backend(request).resolve_movie(tmdb_id, audio, subtitle))


@router.get("/episode/{tmdb_id}/{season}/{episode}", response_model=PlaybackInfo)
async def episode_playback(
    request: Request,
    tmdb_id: int,
    season: int,
    episode: int,
    audio: int | None = Query(None),
    subtitle: int | None = Query(None, description="Jellyfin only, see the movie route"),
):
    return await _respond(
        request, _backend(request).resolve_episode(tmdb_id, season, episode, audio, subtitle),
    )


@router.get("/stream/{path:path}")
async def stream_file(request: Request, path: str):
    """Byte-range stream of the original file (direct play)."""
    settings = request.app.state.settings
    if not os.path.isabs(path) or not is_allowed_path(path, settings.media_roots):
        raise HTTPException(404, "File not found")
    if not os.path.isfile(path):
        raise HTTPException(404, "File not found")
    return FileResponse(path)


@router.get("/subtitle/{ref:path}")
async def subtitle_vtt(request: Request, ref: str):
    """One subtitle stream as WebVTT; ``ref`` is ``<stream index>:<file path>``."""
    try:
        content = await request.app.state.subtitles.fetch_vtt(ref)
    except ValueError as e:
        raise HTTPException(400, str(e))
    except NotFound:
        raise HTTPException(404, "Subtitle not found")
    except ProbeFailure as e:
        raise HTTPException(422, e.user_message)
    return Response(
        content=content,
        media_type="text/vtt",
        headers={"Cache-Control": "public, max-age=3600"},
    )


@router.post("/progress")
async def report_progress(request: Request, report: ProgressReport):
    """Best effort; the player never sees a failure from here."""
    await _backend(request).report_progress(report)
    return {"status": "ok"}
