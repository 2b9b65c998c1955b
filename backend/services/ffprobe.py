"""FFprobe wrapper that extracts container and stream metadata from a file."""

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Optional

from errors import NotFound, ProbeFailure
from models import TICKS_PER_SECOND, MediaFormat, MediaStream, ProbeResult

logger = logging.getLogger(__name__)

SIDECAR_SUBTITLE_EXTENSIONS = {".srt", ".vtt", ".ass", ".ssa"}

# ffprobe codec names for sidecar files, keyed by extension
_SIDECAR_CODECS = {".srt": "subrip", ".vtt": "webvtt", ".ass": "ass", ".ssa": "ssa"}

_LANG_TAG = re.compile(r"^[a-z]{2,3}(-[a-z]{2})?$", re.IGNORECASE)


def _to_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _parse_stream(raw: dict) -> Optional[MediaStream]:
    codec_type = raw.get("codec_type")
    if codec_type not in ("video", "audio", "subtitle"):
        return None
    # Cover art is reported as a video stream
    if codec_type == "video" and raw.get("disposition", {}).get("attached_pic"):
        return None

    tags = raw.get("tags") or {}
    disposition = raw.get("disposition") or {}
    return MediaStream(
        index=int(raw.get("index", 0)),
        codec_type=codec_type,
        codec_name=raw.get("codec_name") or "unknown",
        width=raw.get("width"),
        height=raw.get("height"),
        channels=raw.get("channels"),
        channel_layout=raw.get("channel_layout"),
        language=tags.get("language"),
        title=tags.get("title") or tags.get("handler_name"),
        is_default=bool(disposition.get("default")),
        is_forced=bool(disposition.get("forced")),
    )


def parse_probe_output(path: str, raw: dict) -> ProbeResult:
    """Turn ffprobe's ``-show_format -show_streams`` JSON into a ProbeResult."""
    fmt = raw.get("format") or {}
    streams = [s for s in (_parse_stream(r) for r in raw.get("streams", [])) if s]

    duration_seconds = float(fmt.get("duration") or 0)
    # format_name is a comma list for some demuxers (e.g. "mov,mp4,m4a,3gp")
    names = [n for n in (fmt.get("format_name") or "").split(",") if n]
    extension = Path(path).suffix.lstrip(".").lower()
    container = extension if extension in names else (names[0] if names else extension)

    return ProbeResult(
        path=path,
        format=MediaFormat(
            duration_ticks=int(duration_seconds * TICKS_PER_SECOND),
            size=_to_int(fmt.get("size")),
            container=container,
            bit_rate=_to_int(fmt.get("bit_rate")),
        ),
        streams=streams,
    )


def find_sidecar_subtitles(path: str) -> list[MediaStream]:
    """
    Find subtitle files stored next to the video.

    ``Movie.mkv`` picks up ``Movie.srt``, ``Movie.en.srt`` and
    ``Movie.eng.forced.vtt``. Each sidecar is its own single-stream file, so
    its index is always 0.
    """
    video = Path(path)
    try:
        siblings = sorted(video.parent.iterdir())
    except OSError:
        return []

    found: list[MediaStream] = []
    for candidate in siblings:
        suffix = candidate.suffix.lower()
        if suffix not in SIDECAR_SUBTITLE_EXTENSIONS:
            continue
        if not candidate.name.startswith(video.stem + "."):
            continue

        labels = candidate.name[len(video.stem) + 1:-len(suffix)].split(".")
        labels = [label for label in labels if label]
        language = next((label.lower() for label in labels if _LANG_TAG.match(label)), None)
        forced = any(label.lower() == "forced" for label in labels)

        found.append(MediaStream(
            index=0,
            codec_type="subtitle",
            codec_name=_SIDECAR_CODECS[suffix],
            language=language,
            title=candidate.name,
            is_forced=forced,
            is_external=True,
            external_path=str(candidate),
        ))
    return found


class FFprobeRunner:
    """Runs ffprobe once per call. No retry: probing is deterministic."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout: float = 30.0):
        self.ffprobe_path = ffprobe_path
        self.timeout = timeout

    async def probe(self, path: str) -> ProbeResult:
        if not os.path.exists(path):
            logger.warning("Probe: file not found: %s", path)
            raise NotFound(f"File not found: {path}", reason="no_file")

        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            path,
        ]

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error("ffprobe could not be started: %s", e)
            raise ProbeFailure(f"ffprobe could not be started: {e}", str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error("ffprobe timed out after %.0fs: %s", self.timeout, path)
            raise ProbeFailure(f"ffprobe timed out: {path}")

        if proc.returncode != 0:
            err = stderr.decode(errors="replace").strip()
            logger.error("ffprobe failed (code %d) for %s: %s", proc.returncode, path, err)
            raise ProbeFailure(f"ffprobe failed for {path}", err)

        try:
            raw = json.loads(stdout)
        except ValueError as e:
            logger.error("ffprobe output for %s is not JSON: %s", path, e)
            raise ProbeFailure(f"Unparsable ffprobe output for {path}", str(e)) from e
        if not isinstance(raw, dict):
            raise ProbeFailure(f"Unexpected ffprobe output for {path}")

        result = parse_probe_output(path, raw)
        sidecars = find_sidecar_subtitles(path)
        if sidecars:
            result = result.model_copy(update={"streams": result.streams + sidecars})

        logger.debug(
            "Probed %s: %d streams, %dms",
            path, len(result.streams), result.format.duration_ms,
        )
        return result
