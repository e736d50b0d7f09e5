import httpx

from filmlog import database
from filmlog.models import Base
from filmlog.tmdb import TMDBClient

SQLITE_URL = "sqlite+aiosqlite://"

MATRIX_SEARCH_HIT = {
    "id": 603,
    "title": "The Matrix",
    "release_date": "1999-03-30",
    "poster_path": "/matrix-poster.jpg",
    "backdrop_path": "/matrix-backdrop.jpg",
    "overview": "A hacker learns the truth about his reality.",
}

MATRIX_DETAILS = {
    **MATRIX_SEARCH_HIT,
    "production_countries": [{"iso_3166_1": "US", "name": "United States of America"}],
    "original_language": "en",
    "budget": 63000000,
    "revenue": 463517383,
    "genres": [{"id": 28, "name": "Action"}, {"id": 878, "name": "Science Fiction"}],
    "credits": {
        "crew": [
            {"job": "Producer", "name": "Joel Silver"},
            {"job": "Director", "name": "Lana Wachowski"},
            {"job": "Director", "name": "Lilly Wachowski"},
        ]
    },
    "videos": {
        "results": [
            {"type": "Teaser", "site": "YouTube", "key": "teaser-key"},
            {"type": "Trailer", "site": "Vimeo", "key": "vimeo-key"},
            {"type": "Trailer", "site": "YouTube", "key": "m8e-FF8MsqU"},
        ]
    },
}


class FakeTMDB:
    """Canned TMDB answers served through httpx.MockTransport."""

    def __init__(self, searches: dict | None = None, details: dict | None = None, status: int = 200):
        self.searches = searches if searches is not None else {"The Matrix": [MATRIX_SEARCH_HIT]}
        self.details = details if details is not None else {603: MATRIX_DETAILS}
        self.status = status
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status != 200:
            return httpx.Response(self.status, json={"status_message": "boom"})
        path = request.url.path
        if path.endswith("/search/movie"):
            query = request.url.params.get("query")
            return httpx.Response(200, json={"page": 1, "results": self.searches.get(query, [])})
        if "/movie/" in path:
            movie_id = int(path.rsplit("/", 1)[-1])
            if movie_id in self.details:
                return httpx.Response(200, json=self.details[movie_id])
            return httpx.Response(404, json={"status_message": "not found"})
        return httpx.Response(404, json={})

    def client(self, api_key: str = "test-key") -> TMDBClient:
        return TMDBClient(api_key, transport=httpx.MockTransport(self.handler))

    def paths(self) -> list[str]:
        return [request.url.path for request in self.requests]


async def make_session_factory():
    engine = database.build_engine(SQLITE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, database.build_session_factory(engine)
