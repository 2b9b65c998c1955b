"""FFmpeg wrapper for HLS transcoding and subtitle extraction."""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

from errors import ProbeFailure

logger = logging.getLogger(__name__)

PLAYLIST_NAME = "index.m3u8"
SEGMENT_PATTERN = "segment_%05d.ts"

# quality tier -> (output height, video bitrate); None passes video through
QUALITY_TIERS: dict[str, Optional[tuple[int, str]]] = {
    "original": None,
    "1080p": (1080, "8M"),
    "720p": (720, "4M"),
    "480p": (480, "1500k"),
}


def _seconds_to_timecode(seconds: float) -> str:
    """Convert seconds to HH:MM:SS.mmm timecode."""
    h = int(seconds // 3600)
    m = int((seconds % 3600) // 60)
    s = seconds % 60
    return f"{h:02d}:{m:02d}:{s:06.3f}"


def build_hls_command(
    ffmpeg_path: str,
    media_path: str,
    output_dir: str,
    start_seconds: float = 0.0,
    audio_stream_index: Optional[int] = None,
    quality: str = "original",
    segment_seconds: int = 4,
) -> list[str]:
    """
    Build an ffmpeg command that writes an HLS event playlist into output_dir.

    Seeks with an input-level -ss (fast keyframe jump) and shifts output
    timestamps back by the same amount so the player's timeline stays
    absolute. Audio is always re-encoded to stereo AAC, which is the reason
    the file needed transcoding in the first place.
    """
    audio_map = f"0:{audio_stream_index}" if audio_stream_index is not None else "0:a:0?"
    tier = QUALITY_TIERS.get(quality)

    cmd = [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel", "error",
        "-nostdin",
    ]
    if start_seconds > 0:
        cmd += ["-ss", _seconds_to_timecode(start_seconds)]
    cmd += [
        "-i", media_path,
        "-map", "0:v:0",
        "-map", audio_map,
    ]

    if tier is None:
        cmd += ["-c:v", "copy"]
    else:
        height, bitrate = tier
        cmd += [
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-vf", f"scale=-2:'min({height},ih)'",
            "-b:v", bitrate,
            "-maxrate", bitrate,
            "-bufsize", bitrate,
            "-force_key_frames", f"expr:gte(t,n_forced*{segment_seconds})",
        ]

    cmd += [
        "-c:a", "aac",
        "-ac", "2",
        "-b:a", "192k",
        "-sn",
    ]
    if start_seconds > 0:
        cmd += ["-output_ts_offset", f"{start_seconds:.3f}"]
    cmd += [
        "-f", "hls",
        # Segment names differ across seeks so players never reuse a stale one
        "-start_number", str(int(start_seconds // segment_seconds)),
        "-hls_time", str(segment_seconds),
        "-hls_playlist_type", "event",
        "-hls_flags", "independent_segments+temp_file",
        "-hls_segment_filename", os.path.join(output_dir, SEGMENT_PATTERN),
        os.path.join(output_dir, PLAYLIST_NAME),
    ]
    return cmd


class TranscoderProcess:
    """
    One ffmpeg child process, owned by exactly one streaming session.

    ``stop()`` always reaps the child (SIGTERM, then SIGKILL after
    ``kill_timeout``) and is safe to call more than once. Use as an async
    context manager so every exit path stops it. Diagnostics go to
    ``log_path`` so a chatty ffmpeg can never block on a full pipe.
    """

    def __init__(self, cmd: list[str], log_path: Optional[str] = None, kill_timeout: float = 5.0):
        self.cmd = cmd
        self.log_path = log_path
        self.kill_timeout = kill_timeout
        self.proc: Optional[asyncio.subprocess.Process] = None
        self._log_file = None

    @property
    def running(self) -> bool:
        return self.proc is not None and self.proc.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self.proc.pid if self.proc else None

    async def start(self) -> "TranscoderProcess":
        if self.proc is not None:
            raise RuntimeError("Transcoder already started")
        logger.info("FFmpeg transcode: %s", " ".join(self.cmd))
        if self.log_path:
            self._log_file = open(self.log_path, "ab")
        try:
            self.proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=self._log_file or asyncio.subprocess.DEVNULL,
            )
        except BaseException:
            self._close_log()
            raise
        return self

    async def stop(self) -> None:
        proc = self.proc
        try:
            if proc is None or proc.returncode is not None:
                return
            try:
                proc.terminate()
            except ProcessLookupError:
                return
            try:
                await asyncio.wait_for(proc.wait(), self.kill_timeout)
            except asyncio.TimeoutError:
                logger.warning("FFmpeg pid %s ignored SIGTERM, killing", proc.pid)
                try:
                    proc.kill()
                except ProcessLookupError:
                    return
                await proc.wait()
            logger.info("FFmpeg pid %s stopped (code %s)", proc.pid, proc.returncode)
        finally:
            self._close_log()

    def _close_log(self) -> None:
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None

    def diagnostics(self, limit: int = 4096) -> str:
        """Tail of ffmpeg's error output."""
        if not self.log_path or not os.path.exists(self.log_path):
            return ""
        with open(self.log_path, "rb") as f:
            data = f.read()
        return data[-limit:].decode(errors="replace").strip()

    async def __aenter__(self) -> "TranscoderProcess":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


async def extract_subtitle_vtt(
    ffmpeg_path: str,
    media_path: str,
    stream_index: int,
    timeout: float = 120.0,
) -> bytes:
    """
    Convert one subtitle stream of a file to WebVTT and return it.

    Works for embedded tracks (``stream_index`` = container index) and
    sidecar files (``stream_index`` = 0).
    """
    if not Path(media_path).exists():
        raise FileNotFoundError(media_path)

    cmd = [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel", "error",
        "-nostdin",
        "-i", media_path,
        "-map", f"0:{stream_index}",
        "-c:s", "webvtt",
        "-f", "webvtt",
        "pipe:1",
    ]

    logger.info("FFmpeg subtitle: %s stream %d -> vtt", media_path, stream_index)
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ProbeFailure(f"Subtitle extraction timed out: {media_path}")
    except asyncio.CancelledError:
        proc.kill()
        await proc.wait()
        raise

    if proc.returncode != 0:
        err = stderr.decode(errors="replace").strip()
        logger.error("FFmpeg failed (code %d): %s", proc.returncode, err)
        raise ProbeFailure(f"Subtitle extraction failed for {media_path}", err)

    return stdout
