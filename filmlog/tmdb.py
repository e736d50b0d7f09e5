import logging
from dataclasses import dataclass, field
from typing import Literal

import httpx
from fastapi import Request

from .config import Settings

logger = logging.getLogger(__name__)

YOUTUBE_WATCH_URL = "https://www.youtube.com/watch?v="

EnrichmentStatus = Literal["enriched", "no_match", "failed", "disabled"]


class TMDBClient:
    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.themoviedb.org/3",
        image_base_url: str = "https://image.tmdb.org/t/p",
        poster_size: str = "w500",
        backdrop_size: str = "w1280",
        timeout: float = 10,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.image_base_url = image_base_url.rstrip("/")
        self.poster_size = poster_size
        self.backdrop_size = backdrop_size
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_settings(cls, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> "TMDBClient":
        return cls(
            settings.tmdb_api_key,
            base_url=settings.tmdb_base_url,
            image_base_url=settings.tmdb_image_base_url,
            poster_size=settings.tmdb_poster_size,
            backdrop_size=settings.tmdb_backdrop_size,
            timeout=settings.tmdb_timeout,
            transport=transport,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str, params: dict | None = None) -> dict:
        if not self.enabled:
            raise RuntimeError("TMDB_API_KEY environment variable not set.")
        query = {key: value for key, value in (params or {}).items() if value is not None}
        query["api_key"] = self.api_key
        client = await self._get_client()
        resp = await client.get(f"{self.base_url}{path}", params=query)
        resp.raise_for_status()
        return resp.json()

    async def search_movie(self, query: str, year: int | None = None) -> dict:
        return await self._get(
            "/search/movie",
            {"query": query, "year": year, "primary_release_year": year},
        )

    async def get_movie_details(self, movie_id: int | str) -> dict:
        return await self._get(f"/movie/{movie_id}", {"append_to_response": "credits,videos"})

    def image_url(self, path: str | None, size: str) -> str | None:
        if not path:
            return None
        return f"{self.image_base_url}/{size}{path}"


@dataclass(frozen=True)
class EnrichmentResult:
    status: EnrichmentStatus
    fields: dict = field(default_factory=dict)
    tmdb_title: str | None = None
    error: str | None = None

    @property
    def enriched(self) -> bool:
        return self.status == "enriched" and bool(self.fields)


def _dicts(value) -> list[dict]:
    if not isinstance(value, list):
        return []
    return [entry for entry in value if isinstance(entry, dict)]


def _nested_dicts(data: dict, section: str, key: str) -> list[dict]:
    container = data.get(section)
    return _dicts(container.get(key)) if isinstance(container, dict) else []


def _release_year(candidate: dict) -> int | None:
    head = str(candidate.get("release_date") or "").strip()[:4]
    return int(head) if head.isdigit() else None


def pick_best_match(results: list[dict], year: int | None) -> dict | None:
    if not results:
        return None
    if year:
        for candidate in results:
            if _release_year(candidate) == year:
                return candidate
    return results[0]


def _first_director(details: dict) -> str | None:
    for person in _nested_dicts(details, "credits", "crew"):
        if person.get("job") == "Director" and _text(person.get("name")):
            return person["name"]
    return None


def _first_trailer(details: dict) -> str | None:
    for video in _nested_dicts(details, "videos", "results"):
        if video.get("type") == "Trailer" and video.get("site") == "YouTube" and _text(video.get("key")):
            return f"{YOUTUBE_WATCH_URL}{video['key']}"
    return None


def _text(value) -> str | None:
    return value if isinstance(value, str) and value else None


def _amount(value) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value or None


def extract_movie_fields(client: TMDBClient, data: dict) -> dict:
    countries = _dicts(data.get("production_countries"))
    fields = {
        "poster_url": client.image_url(_text(data.get("poster_path")), client.poster_size),
        "backdrop_url": client.image_url(_text(data.get("backdrop_path")), client.backdrop_size),
        "tmdb_id": str(data["id"]) if data.get("id") else None,
        "plot_summary": _text(data.get("overview")),
        "country": _text(countries[0].get("iso_3166_1")) if countries else None,
        "language": _text(data.get("original_language")),
        "budget": _amount(data.get("budget")),
        "box_office": _amount(data.get("revenue")),
        "director": _first_director(data),
        "genres": [genre["name"] for genre in _dicts(data.get("genres")) if _text(genre.get("name"))],
        "trailer_url": _first_trailer(data),
    }
    return {key: value for key, value in fields.items() if value not in (None, "", [])}


async def enrich_movie(client: TMDBClient | None, title: str, year: int | None) -> EnrichmentResult:
    """Look a movie up on TMDB and return the fields worth storing.

    Never raises: an unusable answer of any kind comes back as a result
    with no fields and a status telling why.
    """
    if client is None or not client.enabled:
        return EnrichmentResult(status="disabled")

    logger.info("Enriching with TMDB: %s (%s)", title, year)
    try:
        search = await client.search_movie(title, year)
    except Exception as exc:
        logger.warning("TMDB search failed for %r (%s): %s", title, year, exc)
        return EnrichmentResult(status="failed", error=str(exc))
    if not isinstance(search, dict):
        logger.warning("Unexpected TMDB search body for %r (%s): %r", title, year, type(search).__name__)
        return EnrichmentResult(status="failed", error="Unexpected TMDB search response")

    candidate = pick_best_match(_dicts(search.get("results")), year)
    if candidate is None:
        logger.info("Movie not found on TMDB: %s (%s)", title, year)
        return EnrichmentResult(status="no_match")

    details = candidate
    try:
        fetched = await client.get_movie_details(candidate["id"])
    except Exception as exc:
        # The search hit still carries images and overview.
        logger.warning("TMDB details failed for id %s, using search result: %s", candidate.get("id"), exc)
    else:
        if isinstance(fetched, dict):
            details = fetched
        else:
            logger.warning("Unexpected TMDB details body for id %s, using search result", candidate.get("id"))

    try:
        fields = extract_movie_fields(client, details)
    except Exception as exc:
        logger.warning("Unusable TMDB data for id %s: %s", candidate.get("id"), exc)
        return EnrichmentResult(status="failed", error=str(exc))

    logger.info(
        "Found TMDB movie %r (id=%s), fields: %s",
        candidate.get("title"),
        candidate.get("id"),
        ", ".join(sorted(fields)) or "none",
    )
    status: EnrichmentStatus = "enriched" if fields else "no_match"
    return EnrichmentResult(status=status, fields=fields, tmdb_title=candidate.get("title"))


def get_tmdb(request: Request) -> TMDBClient | None:
    return getattr(request.app.state, "tmdb", None)
