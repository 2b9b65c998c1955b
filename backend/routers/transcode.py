"""Transcode router for local HLS sessions (start, seek, stop, playlist/segments).

Only mounted when playback isn't delegated to Jellyfin.
"""

import os
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import FileResponse, RedirectResponse

from errors import NotFound, PlaybackError, ResourceExhausted
from models import Quality, SeekRequest, SessionInfo, StartSessionRequest
from services.ffmpeg import PLAYLIST_NAME
from services.playback import is_allowed_path
from services.session_manager import StreamingSession, TranscodeSessionManager

router = APIRouter(prefix="/transcode", tags=["transcode"])

_MEDIA_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
}


def _manager(request: Request) -> TranscodeSessionManager:
    return request.app.state.sessions


def _client_id(request: Request, explicit: Optional[str]) -> str:
    if explicit:
        return explicit
    header = request.headers.get("X-Client-Id")
    if header:
        return header
    return request.client.host if request.client else "anonymous"


def _check_path(request: Request, path: str) -> None:
    roots = request.app.state.settings.media_roots
    if not os.path.isabs(path) or not is_allowed_path(path, roots) or not os.path.isfile(path):
        raise HTTPException(404, "File not found")


def _session_info(request: Request, session: StreamingSession) -> SessionInfo:
    return SessionInfo(
        session_id=session.session_id,
        state=session.state.value,
        position=session.checkpoint,
        quality=session.quality,
        audio_stream_index=session.audio_stream_index,
        playlist_url=str(request.url_for("session_file", session_id=session.session_id, name=PLAYLIST_NAME)),
    )


def _busy(e: ResourceExhausted) -> HTTPException:
    return HTTPException(503, e.user_message, headers={"Retry-After": "10"})


@router.get("/play/{path:path}")
async def play(
    request: Request,
    path: str,
    audio: Optional[int] = Query(None),
    quality: Quality = Query("original"),
    client: Optional[str] = Query(None),
):
    """Create or reuse this client's session for ``path`` and redirect to its playlist."""
    _check_path(request, path)
    try:
        session = await _manager(request).start_session(_client_id(request, client), path, audio, quality)
    except ResourceExhausted as e:
        raise _busy(e)
    return RedirectResponse(
        request.url_for("session_file", session_id=session.session_id, name=PLAYLIST_NAME),
        status_code=307,
    )


@router.post("/sessions", response_model=SessionInfo)
async def start_session(request: Request, req: StartSessionRequest):
    _check_path(request, req.path)
    try:
        session = await _manager(request).start_session(
            req.client_id, req.path, req.audio_stream_index, req.quality, req.position,
        )
    except ResourceExhausted as e:
        raise _busy(e)
    return _session_info(request, session)


@router.post("/sessions/{session_id}/seek", response_model=SessionInfo)
async def seek_session(request: Request, session_id: str, req: SeekRequest):
    try:
        session = await _manager(request).seek(session_id, req.position)
    except NotFound:
        raise HTTPException(404, "Session not found")
    except PlaybackError as e:
        raise HTTPException(500, f"Seek failed: {e}")
    return _session_info(request, session)


@router.delete("/sessions/{session_id}")
async def stop_session(request: Request, session_id: str):
    try:
        await _manager(request).stop_session(session_id)
    except NotFound:
        raise HTTPException(404, "Session not found")
    return {"stopped": session_id}


@router.get("/sessions/{session_id}/{name}", name="session_file")
async def session_file(request: Request, session_id: str, name: str):
    """Playlist or segment. The first request starts the transcoder."""
    try:
        target = await _manager(request).wait_for_file(session_id, name)
    except NotFound:
        raise HTTPException(404, "Not found")
    except PlaybackError as e:
        raise HTTPException(500, f"Transcode failed: {e}")

    headers = {"Cache-Control": "no-cache"} if name == PLAYLIST_NAME else {}
    return FileResponse(target, media_type=_MEDIA_TYPES.get(target.suffix), headers=headers)
