"""Failure taxonomy for playback resolution and streaming.

Everything here is scoped to a single request or session. The playback
boundary collapses these into ``found: false`` plus a message.
"""

from typing import Optional


class PlaybackError(Exception):
    """Base class for every expected playback failure."""

    user_message = "This title is not available right now."


class NotFound(PlaybackError):
    """Catalog entry absent, present without a file, or not yet indexed."""

    _MESSAGES = {
        "not_in_library": "This title is not in your library.",
        "no_file": "This title has not been downloaded yet.",
        "not_indexed": "This title was just downloaded and is not available yet. Try again shortly.",
        "not_configured": "Playback is not configured for this kind of title.",
    }

    def __init__(self, detail: str, reason: str = "not_found"):
        super().__init__(detail)
        self.reason = reason

    @property
    def user_message(self) -> str:  # type: ignore[override]
        return self._MESSAGES.get(self.reason, PlaybackError.user_message)


class ProbeFailure(PlaybackError):
    """The file exists but its media info could not be determined."""

    user_message = "Could not determine media info for this file."

    def __init__(self, detail: str, diagnostics: str = ""):
        super().__init__(detail)
        self.diagnostics = diagnostics


class UpstreamUnavailable(PlaybackError):
    """A library manager or media server was unreachable or returned an error."""

    def __init__(self, service: str, detail: str, status_code: Optional[int] = None):
        super().__init__(f"{service}: {detail}")
        self.service = service
        self.status_code = status_code


class ResourceExhausted(PlaybackError):
    """The transcode session cap has been reached."""

    user_message = "The server is busy transcoding. Try again shortly."
