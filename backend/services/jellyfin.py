"""Jellyfin API client — item lookup, playback negotiation, session reporting."""

import logging
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

# What our browser player can handle. Jellyfin uses this to pick direct play,
# direct stream (remux) or transcode for each media source.
DEVICE_PROFILE: dict[str, Any] = {
    "Name": "Cinema Web Player",
    "MaxStreamingBitrate": 120_000_000,
    "MaxStaticBitrate": 100_000_000,
    "MusicStreamingTranscodingBitrate": 384_000,
    "DirectPlayProfiles": [
        {
            "Container": "mp4,m4v",
            "Type": "Video",
            "VideoCodec": "h264,hevc,av1,vp9",
            "AudioCodec": "aac,mp3,opus,flac,vorbis",
        },
        {
            "Container": "webm",
            "Type": "Video",
            "VideoCodec": "vp8,vp9,av1",
            "AudioCodec": "vorbis,opus",
        },
    ],
    "TranscodingProfiles": [
        {
            "Container": "ts",
            "Type": "Video",
            "VideoCodec": "h264",
            "AudioCodec": "aac,mp3",
            "Protocol": "hls",
            "Context": "Streaming",
            "MaxAudioChannels": "2",
            "MinSegments": "1",
            "BreakOnNonKeyFrames": True,
        },
    ],
    "ContainerProfiles": [],
    "CodecProfiles": [
        {
            "Type": "Video",
            "Codec": "h264",
            "Conditions": [
                {"Condition": "LessThanEqual", "Property": "VideoLevel", "Value": "51", "IsRequired": False},
                {"Condition": "NotEquals", "Property": "IsInterlaced", "Value": "true", "IsRequired": False},
            ],
        },
    ],
    "SubtitleProfiles": [
        {"Format": "vtt", "Method": "External"},
        {"Format": "srt", "Method": "External"},
        {"Format": "ass", "Method": "External"},
        {"Format": "ssa", "Method": "External"},
        {"Format": "vtt", "Method": "Hls"},
        {"Format": "pgssub", "Method": "Encode"},
        {"Format": "dvdsub", "Method": "Encode"},
        {"Format": "dvbsub", "Method": "Encode"},
    ],
}

# settings.subtitle_delivery -> Jellyfin SubtitleMethod for the HLS stream
SUBTITLE_METHODS = {"sidecar": "Hls", "burn_in": "Encode"}


class PathMapper:
    """Rewrites library-manager paths into the media server's view (``"/data:/media"``)."""

    def __init__(self, mapping: str = ""):
        self.source, self.target = "", ""
        if mapping and ":" in mapping:
            self.source, self.target = (p.rstrip("/") for p in mapping.split(":", 1))

    def __call__(self, path: str) -> str:
        if self.source and (path == self.source or path.startswith(self.source + "/")):
            return self.target + path[len(self.source):]
        return path


class JellyfinClient:
    """One long-lived ``httpx.AsyncClient`` against a Jellyfin server."""

    service = "jellyfin"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        user_id: str = "",
        device_id: str = "cinema-playback",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.user_id = user_id
        self.device_id = device_id
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers={"X-Emby-Token": api_key},
            timeout=timeout,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.base_url and self.api_key)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Jellyfin %s %s failed: %s", method, path, e)
            raise UpstreamUnavailable(self.service, str(e)) from e
        if resp.is_error:
            logger.warning("Jellyfin %s %s returned HTTP %d", method, path, resp.status_code)
            raise UpstreamUnavailable(
                self.service, f"HTTP {resp.status_code} from {path}", resp.status_code,
            )
        return resp

    def _json(self, resp: httpx.Response, path: str) -> dict:
        """Decode a JSON object body; anything else means the server is not answering as Jellyfin."""
        try:
            data = resp.json()
        except ValueError as e:
            logger.warning("Jellyfin %s returned a non-JSON body", path)
            raise UpstreamUnavailable(self.service, f"invalid JSON from {path}") from e
        if not isinstance(data, dict):
            raise UpstreamUnavailable(self.service, f"unexpected response shape from {path}")
        return data

    # ── Catalog ─────────────────────────────────────────────────

    async def find_item_by_path(self, path: str, search_term: str = "") -> Optional[dict]:
        """
        Find the library item whose source file is ``path``.

        Jellyfin can't filter by path, so we search by name and compare the
        recorded ``Path`` of each hit. Titles differ between Jellyfin and the
        library managers often enough (localized or accented names) that a
        miss by name is retried over the whole library. Returns None when the
        file hasn't been indexed yet.
        """
        if search_term:
            item = await self._find_item(path, search_term)
            if item is not None:
                return item
            logger.debug("No Jellyfin item named %r at %s, scanning the library", search_term, path)
        return await self._find_item(path)

    async def _find_item(self, path: str, search_term: str = "") -> Optional[dict]:
        params = {
            "Recursive": "true",
            "IncludeItemTypes": "Movie,Episode",
            "Fields": "Path,MediaSources",
        }
        if search_term:
            params["searchTerm"] = search_term
        if self.user_id:
            params["userId"] = self.user_id

        resp = await self._request("GET", "/Items", params=params)
        for item in self._json(resp, "/Items").get("Items") or []:
            if not isinstance(item, dict):
                continue
            if item.get("Path") == path:
                return item
            sources = item.get("MediaSources") or []
            if any(isinstance(s, dict) and s.get("Path") == path for s in sources):
                return item
        return None

    async def refresh_library(self) -> None:
        await self._request("POST", "/Library/Refresh")

    # ── Playback ────────────────────────────────────────────────

    async def get_playback_info(
        self,
        item_id: str,
        max_streaming_bitrate: int,
        audio_stream_index: Optional[int] = None,
        subtitle_stream_index: Optional[int] = None,
        start_ticks: int = 0,
    ) -> dict:
        """Negotiate a media source and play session for our device profile."""
        body: dict[str, Any] = {
            "DeviceProfile": DEVICE_PROFILE,
            "MaxStreamingBitrate": max_streaming_bitrate,
            "StartTimeTicks": start_ticks,
            "IsPlayback": True,
            "AutoOpenLiveStream": True,
            "EnableDirectPlay": True,
            "EnableDirectStream": True,
            "EnableTranscoding": True,
        }
        if self.user_id:
            body["UserId"] = self.user_id
        if audio_stream_index is not None:
            body["AudioStreamIndex"] = audio_stream_index
        if subtitle_stream_index is not None:
            body["SubtitleStreamIndex"] = subtitle_stream_index

        path = f"/Items/{item_id}/PlaybackInfo"
        resp = await self._request("POST", path, json=body)
        return self._json(resp, path)

    async def report_playback_start(self, payload: dict) -> None:
        await self._request("POST", "/Sessions/Playing", json=payload)

    async def report_playback_progress(self, payload: dict) -> None:
        await self._request("POST", "/Sessions/Playing/Progress", json=payload)

    async def report_playback_stopped(self, payload: dict) -> None:
        await self._request("POST", "/Sessions/Playing/Stopped", json=payload)

    # ── URLs handed to the browser ──────────────────────────────

    def _url(self, path: str, params: dict) -> str:
        params = {k: v for k, v in params.items() if v is not None}
        params["api_key"] = self.api_key
        return f"{self.base_url}{path}?{urlencode(params)}"

    def hls_url(
        self,
        item_id: str,
        media_source_id: str,
        play_session_id: str,
        max_streaming_bitrate: int,
        audio_stream_index: Optional[int] = None,
        subtitle_stream_index: Optional[int] = None,
        subtitle_method: str = "Hls",
    ) -> str:
        return self._url(f"/Videos/{item_id}/master.m3u8", {
            "DeviceId": self.device_id,
            "MediaSourceId": media_source_id,
            "PlaySessionId": play_session_id,
            "VideoCodec": "h264",
            "AudioCodec": "aac",
            "SegmentContainer": "ts",
            "TranscodingMaxAudioChannels": 2,
            "BreakOnNonKeyFrames": "true",
            "MaxStreamingBitrate": max_streaming_bitrate,
            "AudioStreamIndex": audio_stream_index,
            "SubtitleStreamIndex": subtitle_stream_index,
            "SubtitleMethod": subtitle_method if subtitle_stream_index is not None else None,
        })

    def direct_stream_url(self, item_id: str, media_source_id: str, container: str, play_session_id: str = "") -> str:
        return self._url(f"/Videos/{item_id}/stream.{container}", {
            "Static": "true",
            "MediaSourceId": media_source_id,
            "DeviceId": self.device_id,
            "PlaySessionId": play_session_id or None,
        })

    def subtitle_url(self, item_id: str, media_source_id: str, stream_index: int, fmt: str) -> str:
        """Serve a subtitle stream as-is in ``fmt`` (sidecar files)."""
        return self._url(f"/Videos/{item_id}/{media_source_id}/Subtitles/{stream_index}/Stream.{fmt}", {})

    def converted_subtitle_url(self, item_id: str, media_source_id: str, stream_index: int) -> str:
        """Extract an embedded text subtitle and convert it to WebVTT."""
        return self._url(f"/Videos/{item_id}/{media_source_id}/Subtitles/{stream_index}/0/Stream.vtt", {})

    async def aclose(self) -> None:
        await self._client.aclose()
