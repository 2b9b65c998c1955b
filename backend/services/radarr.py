"""Radarr API client — maps TMDB movie ids to library entries."""

from typing import Optional

from pydantic import BaseModel

from services.arr import ArrClient


class RadarrMovie(BaseModel):
    id: int
    title: str
    tmdb_id: int
    has_file: bool = False
    file_path: Optional[str] = None


class RadarrClient(ArrClient):
    service = "radarr"

    async def get_movie_by_tmdb_id(self, tmdb_id: int) -> Optional[RadarrMovie]:
        """Return the library entry for a TMDB id, or None if Radarr doesn't track it."""
        data = await self._get("/api/v3/movie", params={"tmdbId": tmdb_id})
        if not data:
            return None

        movies = data if isinstance(data, list) else [data]
        # Older Radarr builds ignore the tmdbId filter and list everything
        movie = next((m for m in movies if m.get("tmdbId") == tmdb_id), None)
        if movie is None:
            return None
        movie_file = movie.get("movieFile") or {}
        return RadarrMovie(
            id=movie["id"],
            title=movie.get("title", ""),
            tmdb_id=tmdb_id,
            has_file=bool(movie.get("hasFile")),
            file_path=movie_file.get("path") or None,
        )
