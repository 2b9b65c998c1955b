"""Sonarr API client: series cross-reference, episodes and episode files.

Sonarr keys series by TVDB id, so a TMDB show id has to go through the
lookup endpoint before anything else can be fetched.
"""

from typing import Optional

from pydantic import BaseModel

from services.arr import ArrClient


class SonarrEpisode(BaseModel):
    id: int
    season: int
    episode: int
    title: str = ""
    has_file: bool = False
    file_id: Optional[int] = None


class SonarrSeries(BaseModel):
    id: int
    title: str
    tvdb_id: Optional[int] = None


class SonarrClient(ArrClient):
    service = "sonarr"

    async def lookup_series_by_tmdb_id(self, tmdb_id: int) -> Optional[SonarrSeries]:
        """Translate a TMDB show id into Sonarr's internal series.

        The lookup endpoint only carries ``id`` for series already in the
        library; otherwise we follow its TVDB id to the series list.
        """
        results = await self._get("/api/v3/series/lookup", params={"term": f"tmdb:{tmdb_id}"})
        if not results:
            return None

        # The lookup is a search; an unrelated hit must never stand in for the show
        match = next((r for r in results if r.get("tmdbId") == tmdb_id), None)
        if match is None:
            return None
        if match.get("id"):
            return SonarrSeries(id=match["id"], title=match.get("title", ""), tvdb_id=match.get("tvdbId"))

        tvdb_id = match.get("tvdbId")
        if not tvdb_id:
            return None
        return await self.get_series_by_tvdb_id(tvdb_id)

    async def get_series_by_tvdb_id(self, tvdb_id: int) -> Optional[SonarrSeries]:
        data = await self._get("/api/v3/series", params={"tvdbId": tvdb_id})
        if not data:
            return None
        candidates = data if isinstance(data, list) else [data]
        series = next((s for s in candidates if s.get("tvdbId") == tvdb_id), None)
        if series is None:
            return None
        return SonarrSeries(id=series["id"], title=series.get("title", ""), tvdb_id=series.get("tvdbId"))

    async def get_episodes(self, series_id: int) -> list[SonarrEpisode]:
        data = await self._get("/api/v3/episode", params={"seriesId": series_id}) or []
        return [
            SonarrEpisode(
                id=ep["id"],
                season=ep.get("seasonNumber", 0),
                episode=ep.get("episodeNumber", 0),
                title=ep.get("title", ""),
                has_file=bool(ep.get("hasFile")),
                file_id=ep.get("episodeFileId") or None,
            )
            for ep in data
        ]

    async def get_episode_file_path(self, file_id: int) -> Optional[str]:
        """The episode listing carries no usable path; the file endpoint does."""
        data = await self._get(f"/api/v3/episodefile/{file_id}", allow_404=True)
        if not data:
            return None
        return data.get("path") or None
