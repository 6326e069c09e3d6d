"""
TMDB API client used by the matching engine.

@description Thin synchronous wrapper over the TMDB v3 endpoints the matcher
needs: direct lookup by TMDB id, /find by IMDb or TVDB id, and /search/movie.
Results are normalized to Candidate objects.

Requests are not retried here. Every request must be paid for with a
rate-limiter reservation, so retries belong to the caller.
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
import httpx
import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

EXTERNAL_SOURCES = {
    "imdb": "imdb_id",
    "tvdb": "tvdb_id",
}


@dataclass
class Candidate:
    catalog_id: int
    title: str
    original_title: Optional[str] = None
    year: Optional[int] = None
    popularity: float = 0.0


def _parse_year(date_value: Optional[str]) -> Optional[int]:
    if date_value and len(date_value) >= 4 and date_value[:4].isdigit():
        return int(date_value[:4])
    return None


def _to_candidate(result: Dict[str, Any]) -> Candidate:
    return Candidate(
        catalog_id=int(result["id"]),
        title=result.get("title") or "",
        original_title=result.get("original_title"),
        year=_parse_year(result.get("release_date")),
        popularity=float(result.get("popularity") or 0.0),
    )


class TMDBClient:
    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout: Optional[float] = None, transport: Optional[httpx.BaseTransport] = None):
        self.api_key = api_key or settings.TMDB_API_KEY
        self.base_url = (base_url or settings.TMDB_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.TMDB_TIMEOUT
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Accept": "application/json",
        }

    def _request_sync(self, endpoint: str, **params) -> Any:
        with httpx.Client(timeout=self.timeout, headers=self._headers(), transport=self._transport) as client:
            try:
                response = client.get(f"{self.base_url}{endpoint}", params=params)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                logger.error(f"TMDB HTTP error for {endpoint}: {e}")
                raise
            except httpx.HTTPError as e:
                logger.error(f"TMDB request failed for {endpoint}: {e}")
                raise

    def get_movie(self, tmdb_id: int) -> Optional[Candidate]:
        """
        Fetch one movie by TMDB id.

        @returns Candidate or None if TMDB does not know the id
        """
        try:
            return _to_candidate(self._request_sync(f"/movie/{tmdb_id}"))
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise

    def search_by_external_id(self, external_id: str, source: str) -> List[Candidate]:
        """
        Resolve an id embedded in a Plex GUID.

        @param external_id The id value (e.g. "603", "tt0133093")
        @param source "tmdb", "imdb" or "tvdb"
        @returns Matching candidates, empty if none
        """
        if source == "tmdb":
            movie = self.get_movie(int(external_id))
            return [movie] if movie else []

        external_source = EXTERNAL_SOURCES.get(source)
        if not external_source:
            raise ValueError(f"Unsupported external id source: {source}")

        data = self._request_sync(f"/find/{external_id}", external_source=external_source)
        # show results would resolve to a non-movie id
        return [_to_candidate(r) for r in data.get("movie_results", [])]

    def search_by_title_year(self, title: str, year: int) -> List[Candidate]:
        data = self._request_sync("/search/movie", query=title, year=year, include_adult="false")
        return [_to_candidate(r) for r in data.get("results", [])]

    def search_by_title(self, title: str) -> List[Candidate]:
        data = self._request_sync("/search/movie", query=title, include_adult="false")
        return [_to_candidate(r) for r in data.get("results", [])]
