"""Resolve TMDB ids to files on disk via Radarr and Sonarr."""

import logging
from dataclasses import dataclass
from typing import Literal

from errors import NotFound
from services.radarr import RadarrClient
from services.sonarr import SonarrClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedMedia:
    path: str
    title: str
    kind: Literal["movie", "episode"]
    # Name the media server indexes this file under, used to narrow path lookups
    search_term: str = ""


def episode_title(series: str, season: int, episode: int, name: str) -> str:
    label = f"{series} - S{season:02d}E{episode:02d}"
    return f"{label} - {name}" if name else label


class IdentifierResolver:
    """
    Maps catalog ids to file paths.

    Nothing is cached: library contents change as downloads complete, so
    every call goes back to the library manager. A title that exists but has
    no file raises ``NotFound(reason="no_file")``, distinct from
    ``"not_in_library"``.
    """

    def __init__(self, radarr: RadarrClient, sonarr: SonarrClient):
        self.radarr = radarr
        self.sonarr = sonarr

    async def resolve_movie_path(self, tmdb_id: int) -> ResolvedMedia:
        if not self.radarr.enabled:
            raise NotFound("Radarr is not configured", reason="not_configured")

        movie = await self.radarr.get_movie_by_tmdb_id(tmdb_id)
        if movie is None:
            logger.info("Movie with TMDB ID %s not found in Radarr", tmdb_id)
            raise NotFound(f"TMDB movie {tmdb_id} is not in Radarr", reason="not_in_library")

        if not movie.has_file or not movie.file_path:
            logger.info("Movie %r (TMDB %s) has no file", movie.title, tmdb_id)
            raise NotFound(f"{movie.title} has no file", reason="no_file")

        return ResolvedMedia(path=movie.file_path, title=movie.title, kind="movie", search_term=movie.title)

    async def resolve_episode_path(self, tmdb_id: int, season: int, episode: int) -> ResolvedMedia:
        if not self.sonarr.enabled:
            raise NotFound("Sonarr is not configured", reason="not_configured")

        series = await self.sonarr.lookup_series_by_tmdb_id(tmdb_id)
        if series is None:
            logger.info("Series with TMDB ID %s not found in Sonarr", tmdb_id)
            raise NotFound(f"TMDB show {tmdb_id} is not in Sonarr", reason="not_in_library")

        episodes = await self.sonarr.get_episodes(series.id)
        target = next(
            (ep for ep in episodes if ep.season == season and ep.episode == episode),
            None,
        )
        if target is None:
            logger.info("%s S%02dE%02d not found in Sonarr", series.title, season, episode)
            raise NotFound(f"{series.title} S{season}E{episode} is not in Sonarr", reason="not_in_library")

        if not target.has_file or not target.file_id:
            logger.info("%s S%02dE%02d has no file", series.title, season, episode)
            raise NotFound(f"{series.title} S{season}E{episode} has no file", reason="no_file")

        path = await self.sonarr.get_episode_file_path(target.file_id)
        if not path:
            logger.warning("Episode file %s for %s has no path", target.file_id, series.title)
            raise NotFound(f"Episode file {target.file_id} has no path", reason="no_file")

        return ResolvedMedia(
            path=path,
            title=episode_title(series.title, season, episode, target.title),
            kind="episode",
            search_term=target.title or series.title,
        )
