"""Tests for the Jellyfin-backed playback adapter."""

import asyncio
import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from conftest import mock_client
from errors import NotFound, UpstreamUnavailable
from models import ProgressReport, Strategy
from services.jellyfin import JellyfinClient, PathMapper
from services.jellyfin_playback import JellyfinPlaybackBackend
from services.resolver import ResolvedMedia

SERVER_PATH = "/media/movies/Fight Club (1999)/Fight Club.mkv"

MEDIA_SOURCE = {
    "Id": "src-1",
    "Path": SERVER_PATH,
    "Container": "mkv",
    "Size": 4_200_000_000,
    "RunTimeTicks": 83_940_000_000,
    "SupportsDirectPlay": False,
    "SupportsDirectStream": False,
    "SupportsTranscoding": True,
    "DefaultAudioStreamIndex": 1,
    "MediaStreams": [
        {"Index": 0, "Type": "Video", "Codec": "h264", "Width": 1920, "Height": 1080},
        {"Index": 1, "Type": "Audio", "Codec": "eac3", "Channels": 6, "Language": "eng",
         "DisplayTitle": "English - Dolby Digital+ - 5.1", "IsDefault": True},
        {"Index": 2, "Type": "Subtitle", "Codec": "subrip", "Language": "eng"},
        {"Index": 3, "Type": "Subtitle", "Codec": "PGSSUB", "Language": "fre"},
        {"Index": 4, "Type": "Subtitle", "Codec": "srt", "Language": "spa", "IsExternal": True,
         "Path": "/media/movies/Fight Club (1999)/Fight Club.es.srt"},
        {"Index": 5, "Type": "EmbeddedImage", "Codec": "mjpeg"},
    ],
}


class JellyfinFake:
    def __init__(self, items=None, source=None, fail_reports=False, fail_refresh=False, name_search_misses=False):
        self.name_search_misses = name_search_misses
        self.items = items if items is not None else [{"Id": "item-1", "Name": "Fight Club", "Path": SERVER_PATH}]
        self.source = source or MEDIA_SOURCE
        self.fail_reports = fail_reports
        self.fail_refresh = fail_refresh
        self.requests: list[httpx.Request] = []

    def paths(self) -> list[str]:
        return [f"{r.method} {r.url.path}" for r in self.requests]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == "/Items":
            if self.name_search_misses and "searchTerm" in request.url.params:
                return httpx.Response(200, json={"Items": [], "TotalRecordCount": 0})
            return httpx.Response(200, json={"Items": self.items, "TotalRecordCount": len(self.items)})
        if path.endswith("/PlaybackInfo"):
            return httpx.Response(200, json={"MediaSources": [self.source], "PlaySessionId": "play-9"})
        if path == "/Library/Refresh":
            return httpx.Response(500 if self.fail_refresh else 204)
        if path.startswith("/Sessions/Playing"):
            return httpx.Response(500 if self.fail_reports else 204)
        return httpx.Response(404)


def make_backend(fake: JellyfinFake, media: ResolvedMedia = None, **kwargs) -> JellyfinPlaybackBackend:
    media = media or ResolvedMedia(
        path="/data/movies/Fight Club (1999)/Fight Club.mkv",
        title="Fight Club", kind="movie", search_term="Fight Club",
    )

    class Resolver:
        radarr = sonarr = type("Arr", (), {"enabled": True})()

        async def resolve_movie_path(self, tmdb_id):
            return media

        async def resolve_episode_path(self, tmdb_id, season, episode):
            return media

    client = JellyfinClient(
        "http://jellyfin:8096", "jf-key", user_id="user-1",
        client=mock_client(fake, "http://jellyfin:8096"),
    )
    kwargs.setdefault("path_mapper", PathMapper("/data:/media"))
    return JellyfinPlaybackBackend(Resolver(), client, **kwargs)


def query(url: str) -> dict:
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestPathMapper:
    def test_maps_prefix(self):
        assert PathMapper("/data:/media")("/data/movies/a.mkv") == "/media/movies/a.mkv"

    def test_leaves_other_paths(self):
        assert PathMapper("/data:/media")("/database/a.mkv") == "/database/a.mkv"

    def test_empty_mapping(self):
        assert PathMapper("")("/data/a.mkv") == "/data/a.mkv"


class TestBuild:
    @pytest.mark.asyncio
    async def test_playback_info(self):
        fake = JellyfinFake()
        info = await make_backend(fake).get_movie_playback(550)

        assert info is not None
        assert info.item_id == "item-1"
        assert info.media_source_id == "src-1"
        assert info.play_session_id == "play-9"
        assert info.strategy is Strategy.TRANSCODE
        assert info.duration == 8_394_000
        assert info.media_info.width == 1920
        assert info.media_info.audio_codec == "eac3"
        assert info.media_info.container == "mkv"
        assert [t.selected for t in info.audio_tracks] == [True]
        assert info.audio_tracks[0].display_title == "English - Dolby Digital+ - 5.1"

        hls = urlparse(info.stream_url)
        assert hls.path == "/Videos/item-1/master.m3u8"
        params = query(info.stream_url)
        assert params["MediaSourceId"] == "src-1"
        assert params["PlaySessionId"] == "play-9"
        assert params["AudioStreamIndex"] == "1"
        assert params["api_key"] == "jf-key"
        assert "SubtitleMethod" not in params
        assert "/data/" not in info.stream_url

        assert urlparse(info.direct_stream_url).path == "/Videos/item-1/stream.mkv"
        assert query(info.direct_stream_url)["Static"] == "true"

    @pytest.mark.asyncio
    async def test_item_lookup_by_mapped_path(self):
        fake = JellyfinFake()
        await make_backend(fake).get_movie_playback(550)

        lookup = fake.requests[0]
        assert lookup.url.path == "/Items"
        assert lookup.url.params["searchTerm"] == "Fight Club"
        assert lookup.url.params["userId"] == "user-1"

    @pytest.mark.asyncio
    async def test_device_profile_is_sent(self):
        fake = JellyfinFake()
        await make_backend(fake, max_streaming_bitrate=8_000_000).get_movie_playback(550)

        negotiate = fake.requests[1]
        assert negotiate.method == "POST"
        assert negotiate.url.path == "/Items/item-1/PlaybackInfo"
        body = json.loads(negotiate.content)
        assert body["MaxStreamingBitrate"] == 8_000_000
        assert body["DeviceProfile"]["TranscodingProfiles"][0]["Protocol"] == "hls"

    @pytest.mark.asyncio
    async def test_subtitles(self):
        info = await make_backend(JellyfinFake()).get_movie_playback(550)

        assert [s.id for s in info.subtitles] == [0, 1, 2]
        assert [s.stream_index for s in info.subtitles] == [2, 3, 4]
        embedded, bitmap, sidecar = info.subtitles
        assert urlparse(embedded.url).path == "/Videos/item-1/src-1/Subtitles/2/0/Stream.vtt"
        assert bitmap.url is None
        assert not bitmap.is_text
        assert sidecar.is_external
        assert urlparse(sidecar.url).path == "/Videos/item-1/src-1/Subtitles/4/Stream.srt"

    @pytest.mark.asyncio
    async def test_direct_play_verdict(self):
        source = dict(MEDIA_SOURCE, SupportsDirectPlay=True)
        info = await make_backend(JellyfinFake(source=source)).get_movie_playback(550)

        assert info.strategy is Strategy.DIRECT
        assert info.stream_url == info.direct_stream_url

    @pytest.mark.asyncio
    async def test_remux_verdict(self):
        source = dict(MEDIA_SOURCE, SupportsDirectStream=True)
        info = await make_backend(JellyfinFake(source=source)).get_movie_playback(550)
        assert info.strategy is Strategy.REMUX

    @pytest.mark.asyncio
    async def test_burn_in_subtitles(self):
        backend = make_backend(JellyfinFake(), subtitle_delivery="burn_in")
        info = await backend.resolve_movie(550, subtitle_stream_index=3)

        params = query(info.stream_url)
        assert params["SubtitleStreamIndex"] == "3"
        assert params["SubtitleMethod"] == "Encode"

    @pytest.mark.asyncio
    async def test_path_must_match_exactly(self):
        fake = JellyfinFake(items=[{"Id": "other", "Path": "/media/movies/Fight Club 2.mkv"}])
        backend = make_backend(fake)
        assert await backend.get_movie_playback(550) is None
        await asyncio.gather(*backend._background)


class TestNotIndexed:
    @pytest.mark.asyncio
    async def test_triggers_rescan_and_reports_not_found(self):
        fake = JellyfinFake(items=[])
        backend = make_backend(fake)

        with pytest.raises(NotFound) as exc:
            await backend.resolve_movie(550)
        assert exc.value.reason == "not_indexed"
        # the request returned before the rescan ran
        assert "POST /Library/Refresh" not in fake.paths()

        await asyncio.gather(*backend._background)
        assert "POST /Library/Refresh" in fake.paths()

    @pytest.mark.asyncio
    async def test_rescans_are_debounced(self):
        fake = JellyfinFake(items=[])
        backend = make_backend(fake)

        for _ in range(3):
            assert await backend.get_movie_playback(550) is None
        await asyncio.gather(*backend._background)

        assert fake.paths().count("POST /Library/Refresh") == 1

    @pytest.mark.asyncio
    async def test_rescan_failure_is_swallowed(self):
        fake = JellyfinFake(items=[], fail_refresh=True)
        backend = make_backend(fake)

        assert await backend.get_movie_playback(550) is None
        await asyncio.gather(*backend._background)


class TestProgress:
    @pytest.mark.asyncio
    async def test_progress_is_forwarded(self):
        fake = JellyfinFake()
        backend = make_backend(fake)
        await backend.report_progress(ProgressReport(
            item_id="item-1", media_source_id="src-1", play_session_id="play-9", position_ms=60_000,
        ))

        request = fake.requests[-1]
        assert request.url.path == "/Sessions/Playing/Progress"
        assert json.loads(request.content)["PositionTicks"] == 600_000_000

    @pytest.mark.asyncio
    async def test_stop_and_start_events(self):
        fake = JellyfinFake()
        backend = make_backend(fake)
        await backend.report_progress(ProgressReport(item_id="item-1", event="start"))
        await backend.report_progress(ProgressReport(item_id="item-1", event="stopped"))
        assert fake.paths()[-2:] == ["POST /Sessions/Playing", "POST /Sessions/Playing/Stopped"]

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self):
        backend = make_backend(JellyfinFake(fail_reports=True))
        await backend.report_progress(ProgressReport(item_id="item-1", position_ms=1000))


class TestTitleMismatch:
    @pytest.mark.asyncio
    async def test_falls_back_to_unfiltered_search(self):
        fake = JellyfinFake(name_search_misses=True)
        backend = make_backend(fake, media=ResolvedMedia(
            path="/data/movies/Fight Club (1999)/Fight Club.mkv",
            title="El club de la lucha", kind="movie", search_term="El club de la lucha",
        ))

        info = await backend.get_movie_playback(550)

        assert info is not None
        assert info.item_id == "item-1"
        lookups = [r for r in fake.requests if r.url.path == "/Items"]
        assert [("searchTerm" in r.url.params) for r in lookups] == [True, False]
        assert not backend._background


class TestMalformedResponses:
    @pytest.mark.asyncio
    async def test_non_json_item_listing(self):
        def login_page(request):
            return httpx.Response(200, text="<html>login</html>")

        client = JellyfinClient("http://jellyfin:8096", "jf-key", client=mock_client(login_page, "http://jellyfin:8096"))
        backend = JellyfinPlaybackBackend(make_backend(JellyfinFake()).resolver, client)

        assert await backend.get_movie_playback(550) is None
        with pytest.raises(UpstreamUnavailable):
            await backend.resolve_movie(550)

    @pytest.mark.asyncio
    async def test_non_json_playback_info(self):
        fake = JellyfinFake()

        def handler(request):
            if request.url.path.endswith("/PlaybackInfo"):
                return httpx.Response(200, text="Service Unavailable")
            return fake(request)

        client = JellyfinClient("http://jellyfin:8096", "jf-key", client=mock_client(handler, "http://jellyfin:8096"))
        backend = JellyfinPlaybackBackend(
            make_backend(fake).resolver, client, path_mapper=PathMapper("/data:/media"),
        )
        assert await backend.get_movie_playback(550) is None

    @pytest.mark.asyncio
    async def test_item_without_id(self):
        fake = JellyfinFake(items=[{"Name": "Fight Club", "Path": SERVER_PATH}])
        assert await make_backend(fake).get_movie_playback(550) is None

    @pytest.mark.asyncio
    async def test_listing_that_is_not_an_object(self):
        def as_list(request):
            return httpx.Response(200, json=[{"Id": "item-1", "Path": SERVER_PATH}])

        client = JellyfinClient("http://jellyfin:8096", "jf-key", client=mock_client(as_list, "http://jellyfin:8096"))
        with pytest.raises(UpstreamUnavailable):
            await client.find_item_by_path(SERVER_PATH, "Fight Club")
