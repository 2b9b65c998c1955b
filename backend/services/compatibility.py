"""Browser compatibility classification."""

from typing import Optional

from models import Strategy

# Audio codecs a browser <video> element decodes natively
BROWSER_COMPATIBLE_AUDIO = frozenset({
    "aac",
    "mp3",
    "opus",
    "vorbis",
    "flac",
    "pcm_s16le",
    "pcm_s24le",
    "pcm_f32le",
})


def classify(audio_codec: Optional[str]) -> Strategy:
    """Local path: only audio decides. Video is passed through untouched."""
    if not audio_codec:
        # No audio track, nothing to re-encode
        return Strategy.DIRECT
    if audio_codec.lower() in BROWSER_COMPATIBLE_AUDIO:
        return Strategy.DIRECT
    return Strategy.TRANSCODE


def from_media_source(source: dict) -> Strategy:
    """Propagate a Jellyfin MediaSource verdict instead of recomputing it."""
    if source.get("SupportsDirectPlay"):
        return Strategy.DIRECT
    if source.get("SupportsDirectStream"):
        return Strategy.REMUX
    return Strategy.TRANSCODE
