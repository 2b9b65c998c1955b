"""Local transcode session manager.

Lifecycle per session: created -> running -> (seeking -> running)* -> stopped.
A session owns at most one ffmpeg process; spawning a new one always stops
the previous one first. Each client has at most one session, and the number
of live sessions is capped so transcodes never oversubscribe the machine.
"""

import asyncio
import logging
import shutil
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from errors import NotFound, PlaybackError, ResourceExhausted
from services.ffmpeg import PLAYLIST_NAME, TranscoderProcess, build_hls_command

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.2


class SessionState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    SEEKING = "seeking"
    STOPPED = "stopped"


@dataclass
class StreamingSession:
    session_id: str
    client_id: str
    path: str
    workdir: Path
    audio_stream_index: Optional[int] = None
    quality: str = "original"
    position: float = 0.0  # offset the current transcoder started from
    checkpoint: float = 0.0  # last playback position the player asked for
    state: SessionState = SessionState.CREATED
    process: Optional[TranscoderProcess] = None
    created_at: float = field(default_factory=time.time)
    last_access: float = field(default_factory=time.monotonic)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def touch(self) -> None:
        self.last_access = time.monotonic()

    @property
    def failed(self) -> bool:
        """The transcoder exited on its own with an error."""
        return (
            self.process is not None
            and self.process.proc is not None
            and self.process.proc.returncode not in (None, 0)
            and self.state is not SessionState.STOPPED
        )

    def matches(self, path: str, audio_stream_index: Optional[int], quality: str) -> bool:
        return (
            self.path == path
            and self.audio_stream_index == audio_stream_index
            and self.quality == quality
        )

    @property
    def playlist_path(self) -> Path:
        return self.workdir / PLAYLIST_NAME

    def segment_count(self) -> int:
        return sum(1 for _ in self.workdir.glob("segment_*.ts"))


class TranscodeSessionManager:
    def __init__(
        self,
        ffmpeg_path: str,
        transcode_dir: str,
        max_sessions: int = 2,
        idle_timeout: float = 120.0,
        reap_interval: float = 15.0,
        segment_seconds: int = 4,
        kill_timeout: float = 5.0,
        file_wait_timeout: float = 20.0,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.transcode_dir = Path(transcode_dir)
        self.max_sessions = max_sessions
        self.idle_timeout = idle_timeout
        self.reap_interval = reap_interval
        self.segment_seconds = segment_seconds
        self.kill_timeout = kill_timeout
        self.file_wait_timeout = file_wait_timeout

        self._sessions: dict[str, StreamingSession] = {}
        self._by_client: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._reaper: Optional[asyncio.Task] = None

    # ── Lookup ──────────────────────────────────────────────────

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    def get(self, session_id: str) -> StreamingSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFound(f"No transcode session {session_id}")
        return session

    def live_processes(self) -> int:
        return sum(1 for s in self._sessions.values() if s.process and s.process.running)

    # ── Create / supersede ──────────────────────────────────────

    async def start_session(
        self,
        client_id: str,
        path: str,
        audio_stream_index: Optional[int] = None,
        quality: str = "original",
        position: float = 0.0,
    ) -> StreamingSession:
        """
        Reuse the client's session when it asks for the same thing, otherwise
        supersede it. Raises ResourceExhausted at the session cap.
        """
        async with self._lock:
            existing_id = self._by_client.get(client_id)
            existing = self._sessions.get(existing_id) if existing_id else None
            if existing is not None:
                if existing.matches(path, audio_stream_index, quality) and not existing.failed:
                    existing.touch()
                    return existing
                if existing.failed:
                    logger.info("Session %s transcoder failed, replacing it for client %s", existing.session_id, client_id)
                else:
                    logger.info("Session %s superseded for client %s", existing.session_id, client_id)
                await self._stop_locked(existing)

            if self.active_count >= self.max_sessions:
                logger.warning(
                    "Transcode cap reached (%d sessions), rejecting %s", self.max_sessions, path,
                )
                raise ResourceExhausted(f"{self.max_sessions} transcode sessions already running")

            session_id = uuid.uuid4().hex
            workdir = self.transcode_dir / session_id
            workdir.mkdir(parents=True, exist_ok=True)
            session = StreamingSession(
                session_id=session_id,
                client_id=client_id,
                path=path,
                workdir=workdir,
                audio_stream_index=audio_stream_index,
                quality=quality,
                position=position,
                checkpoint=position,
            )
            self._sessions[session_id] = session
            self._by_client[client_id] = session_id

        logger.info("Session %s created for %s (client %s)", session_id, path, client_id)
        return session

    # ── Process control ─────────────────────────────────────────

    async def _spawn(self, session: StreamingSession, offset: float) -> None:
        """Replace the session's transcoder with one starting at ``offset``. Caller holds session.lock."""
        if session.process is not None:
            await session.process.stop()
            session.process = None

        shutil.rmtree(session.workdir, ignore_errors=True)
        session.workdir.mkdir(parents=True, exist_ok=True)

        cmd = build_hls_command(
            self.ffmpeg_path,
            session.path,
            str(session.workdir),
            start_seconds=offset,
            audio_stream_index=session.audio_stream_index,
            quality=session.quality,
            segment_seconds=self.segment_seconds,
        )
        process = TranscoderProcess(
            cmd, log_path=str(session.workdir / "ffmpeg.log"), kill_timeout=self.kill_timeout,
        )
        try:
            await process.start()
        except OSError as e:
            logger.error("Could not start ffmpeg for session %s: %s", session.session_id, e)
            raise PlaybackError(f"Could not start ffmpeg: {e}") from e
        session.process = process
        session.position = offset
        session.checkpoint = offset
        session.state = SessionState.RUNNING
        logger.info("Session %s transcoding from %.1fs (pid %s)", session.session_id, offset, process.pid)

    async def ensure_running(self, session_id: str) -> StreamingSession:
        """Created -> running on the first playlist or segment request."""
        session = self.get(session_id)
        async with session.lock:
            if session.state is SessionState.STOPPED:
                raise NotFound(f"Transcode session {session_id} was stopped")
            # A failed session is not touched, so the reaper frees its slot
            if session.failed:
                diagnostics = session.process.diagnostics()
                logger.error(
                    "Session %s transcoder exited with code %s: %s",
                    session_id, session.process.proc.returncode, diagnostics,
                )
                raise PlaybackError(f"Transcoder for session {session_id} failed")
            session.touch()

            if session.process is not None:
                return session

            await self._spawn(session, session.position)
        return session

    def buffered_until(self, session: StreamingSession) -> float:
        return session.position + session.segment_count() * self.segment_seconds

    async def seek(self, session_id: str, position: float) -> StreamingSession:
        """
        Seeking inside what's already transcoded only records the new
        checkpoint; anything else restarts ffmpeg at the new offset.
        """
        session = self.get(session_id)
        async with session.lock:
            if session.state is SessionState.STOPPED:
                raise NotFound(f"Transcode session {session_id} was stopped")
            session.touch()

            if (
                session.state is SessionState.RUNNING
                and not session.failed
                and session.position <= position <= self.buffered_until(session)
            ):
                session.checkpoint = position
                return session

            session.state = SessionState.SEEKING
            try:
                await self._spawn(session, position)
            except BaseException:
                session.state = SessionState.CREATED
                raise
        return session

    async def touch(self, session_id: str) -> None:
        self.get(session_id).touch()

    async def wait_for_file(self, session_id: str, name: str) -> Path:
        """
        Wait until ffmpeg has written ``name`` (playlist or segment).

        Starts the transcoder on first use. Raises NotFound if the file doesn't
        show up in time or can never exist.
        """
        if "/" in name or "\\" in name or name.startswith("."):
            raise NotFound(f"Invalid session file {name!r}")
        if name != PLAYLIST_NAME and not (name.startswith("segment_") and name.endswith(".ts")):
            raise NotFound(f"Invalid session file {name!r}")

        session = await self.ensure_running(session_id)
        target = session.workdir / name
        deadline = time.monotonic() + self.file_wait_timeout
        while not target.exists():
            if session.state is SessionState.STOPPED:
                raise NotFound(f"Transcode session {session_id} was stopped")
            process = session.process
            if process is not None and not process.running:
                raise NotFound(f"{name} was never produced for session {session_id}")
            if time.monotonic() > deadline:
                raise NotFound(f"Timed out waiting for {name} in session {session_id}")
            await asyncio.sleep(_POLL_INTERVAL)
            session.touch()
        return target

    # ── Teardown ────────────────────────────────────────────────

    async def _stop_locked(self, session: StreamingSession) -> None:
        """Stop and forget a session. Caller holds self._lock."""
        self._sessions.pop(session.session_id, None)
        if self._by_client.get(session.client_id) == session.session_id:
            del self._by_client[session.client_id]

        async with session.lock:
            if session.process is not None:
                await session.process.stop()
            session.state = SessionState.STOPPED
        shutil.rmtree(session.workdir, ignore_errors=True)
        logger.info("Session %s stopped", session.session_id)

    async def stop_session(self, session_id: str) -> None:
        async with self._lock:
            session = self.get(session_id)
            await self._stop_locked(session)

    async def reap_idle(self) -> int:
        """Stop sessions nobody has requested anything from for idle_timeout."""
        now = time.monotonic()
        async with self._lock:
            stale = [s for s in self._sessions.values() if now - s.last_access > self.idle_timeout]
            for session in stale:
                logger.info("Session %s idle for %.0fs, stopping", session.session_id, now - session.last_access)
                await self._stop_locked(session)
        return len(stale)

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self.reap_interval)
            try:
                await self.reap_idle()
            except Exception as e:
                logger.error("Error reaping idle sessions: %s", e)

    def start(self) -> None:
        if self._reaper is None or self._reaper.done():
            self._reaper = asyncio.create_task(self._reap_loop())

    async def shutdown(self) -> None:
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None
        async with self._lock:
            for session in list(self._sessions.values()):
                await self._stop_locked(session)
