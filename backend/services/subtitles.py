"""Local subtitle delivery: one subtitle stream converted to WebVTT."""

import logging

from errors import NotFound
from services.ffmpeg import extract_subtitle_vtt
from services.playback import is_allowed_path

logger = logging.getLogger(__name__)


def parse_subtitle_ref(ref: str) -> tuple[int, str]:
    """
    Split a composite ``index:path`` reference.

    The router has already percent-decoded it. Only the first colon
    separates, so paths may contain colons.
    """
    index, sep, path = ref.partition(":")
    if not sep or not path:
        raise ValueError(f"Malformed subtitle reference: {ref!r}")
    try:
        stream_index = int(index)
    except ValueError:
        raise ValueError(f"Malformed subtitle stream index: {index!r}") from None
    if stream_index < 0:
        raise ValueError(f"Negative subtitle stream index: {stream_index}")
    return stream_index, path


class SubtitleService:
    def __init__(self, ffmpeg_path: str = "ffmpeg", media_roots: list[str] | None = None):
        self.ffmpeg_path = ffmpeg_path
        self.media_roots = media_roots or []

    async def fetch_vtt(self, ref: str) -> bytes:
        stream_index, path = parse_subtitle_ref(ref)
        if not is_allowed_path(path, self.media_roots):
            logger.warning("Subtitle request outside media roots: %s", path)
            raise NotFound(f"{path} is outside the media roots")
        try:
            return await extract_subtitle_vtt(self.ffmpeg_path, path, stream_index)
        except FileNotFoundError:
            raise NotFound(f"Subtitle source not found: {path}", reason="no_file") from None
