import unittest
import uuid
from unittest import mock

import httpx

from fastapi.testclient import TestClient
from sqlalchemy.exc import DataError

from filmlog import database
from filmlog.config import Settings, get_settings
from filmlog.database import get_db
from filmlog.main import app, limiter
from filmlog.tmdb import TMDBClient

from helpers import MATRIX_SEARCH_HIT, SQLITE_URL, FakeTMDB

MATRIX_WEBHOOK = {
    "item": {
        "id": "letterboxd-review-1",
        "title": "The Matrix, 1999",
        "content": "<p>★★★★☆ Still holds up.</p>",
        "link": "https://letterboxd.com/neo/film/the-matrix/",
        "guid": "letterboxd-review-1",
        "pubDate": "2024-09-15T12:00:00Z",
    }
}


def _letterboxd(title: str, year: int, slug: str, stars: str = "", pub_date: str = "2024-01-01T00:00:00Z") -> dict:
    return {
        "item": {
            "title": f"{title}, {year}",
            "content": f"<p>{stars}</p>",
            "link": f"https://letterboxd.com/neo/film/{slug}/",
            "guid": f"letterboxd-{slug}-{pub_date}",
            "pubDate": pub_date,
        }
    }


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        database.configure(SQLITE_URL)
        limiter.reset()
        self.fake = FakeTMDB()
        app.state.tmdb = self.fake.client()
        self.client = TestClient(app)
        self.client.__enter__()

    def tearDown(self) -> None:
        self.client.__exit__(None, None, None)
        app.dependency_overrides.clear()

    def post_webhook(self, payload: dict):
        return self.client.post("/api/movies", json=payload)


class TestWebhook(ApiTestCase):
    def test_letterboxd_webhook_records_enriched_watch(self) -> None:
        resp = self.post_webhook(MATRIX_WEBHOOK)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertTrue(body["enriched"])
        self.assertEqual(body["message"], "Successfully processed movie: The Matrix")

        result = body["result"]
        self.assertEqual(result["action"], "movie_watch_recorded")
        self.assertTrue(result["created"])
        self.assertEqual(result["enrichment"], "enriched")
        movie = result["movie"]
        self.assertEqual(movie["title"], "The Matrix")
        self.assertEqual(movie["year"], 1999)
        self.assertEqual(movie["letterboxd_id"], "the-matrix")
        self.assertEqual(movie["tmdb_id"], "603")
        self.assertEqual(movie["poster_url"], "https://image.tmdb.org/t/p/w500/matrix-poster.jpg")
        watch = result["watch"]
        self.assertEqual(watch["movie_id"], movie["id"])
        self.assertEqual(watch["personal_rating"], 4)
        self.assertEqual(watch["source"], "letterboxd")
        self.assertEqual(watch["review_text"], "★★★★☆ Still holds up.")

    def test_repeat_webhook_adds_watch_to_same_movie(self) -> None:
        first = self.post_webhook(MATRIX_WEBHOOK).json()["result"]
        second = self.post_webhook(MATRIX_WEBHOOK).json()["result"]

        self.assertEqual(first["movie"]["id"], second["movie"]["id"])
        self.assertFalse(second["created"])
        self.assertEqual(second["enrichment"], "skipped")

        detail = self.client.get(f"/api/movies/movie/{first['movie']['id']}").json()
        self.assertEqual(len(detail["movie_watches"]), 2)

    def test_flat_payload_is_accepted(self) -> None:
        resp = self.post_webhook({"id": "tag:trakt.tv,2024:Movie/555/watch", "title": "Arrival (2016)", "content": "8/10"})
        self.assertEqual(resp.status_code, 200)
        result = resp.json()["result"]
        self.assertEqual(result["movie"]["trakt_id"], "555")
        self.assertEqual(result["watch"]["source"], "trakt")
        self.assertEqual(result["watch"]["personal_rating"], 8)

    def test_tmdb_outage_still_records_watch(self) -> None:
        app.state.tmdb = FakeTMDB(status=500).client()
        resp = self.post_webhook(MATRIX_WEBHOOK)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["success"])
        self.assertFalse(body["enriched"])
        self.assertEqual(body["result"]["enrichment"], "failed")
        self.assertIsNone(body["result"]["movie"]["poster_url"])

    def test_no_tmdb_match_is_not_enriched(self) -> None:
        app.state.tmdb = FakeTMDB(searches={}).client()
        resp = self.post_webhook(MATRIX_WEBHOOK)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertIs(body["enriched"], False)
        self.assertEqual(body["result"]["enrichment"], "no_match")
        self.assertTrue(body["result"]["created"])

    def test_malformed_tmdb_answers_still_record_watch(self) -> None:
        broken_details = {**MATRIX_SEARCH_HIT, "genres": ["Drama"], "production_countries": ["US"]}
        for label, fake in [
            ("list search body", None),
            ("string-typed details", FakeTMDB(details={603: broken_details})),
        ]:
            with self.subTest(label):
                if fake is None:
                    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=[]))
                    app.state.tmdb = TMDBClient("test-key", transport=transport)
                else:
                    app.state.tmdb = fake.client()
                resp = self.post_webhook(MATRIX_WEBHOOK)
                self.assertEqual(resp.status_code, 200)
                self.assertTrue(resp.json()["success"])

        watches = self.client.get("/api/movies/watches").json()
        self.assertEqual(watches["count"], 2)
        movie = watches["watches"][0]["movies"]
        self.assertEqual(movie["poster_url"], "https://image.tmdb.org/t/p/w500/matrix-poster.jpg")
        self.assertIsNone(movie["genres"])

    def test_unexpected_failure_uses_error_envelope(self) -> None:
        class UnavailableSession:
            async def execute(self, *args, **kwargs):
                raise RuntimeError("store unavailable")

        async def unavailable_db():
            yield UnavailableSession()

        app.dependency_overrides[get_db] = unavailable_db
        resp = self.post_webhook(MATRIX_WEBHOOK)
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(
            resp.json(),
            {"success": False, "error": "Failed to process webhook", "details": "store unavailable"},
        )

    def test_payload_without_item_is_rejected(self) -> None:
        resp = self.post_webhook({"content": "no title or id"})
        self.assertEqual(resp.status_code, 400)
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertEqual(body["error"], "Failed to process webhook")
        self.assertIn("No valid feed item", body["details"])

    def test_out_of_range_rating_is_rejected(self) -> None:
        resp = self.post_webhook(
            {"item": {"title": "Arrival (2016)", "content": "12/10", "link": "https://trakt.tv/movies/arrival-2016"}}
        )
        self.assertEqual(resp.status_code, 422)
        self.assertFalse(resp.json()["success"])

        watches = self.client.get("/api/movies/watches").json()
        self.assertEqual(watches["count"], 0)

    def test_numeric_overflow_is_rejected_like_a_constraint(self) -> None:
        overflow = DataError("INSERT INTO movie_watches", {}, Exception("numeric field overflow"))
        with mock.patch("filmlog.ingest.record_watch", side_effect=overflow):
            resp = self.post_webhook(
                {"item": {"title": "Arrival (2016)", "content": "100/10", "link": "https://trakt.tv/movies/arrival-2016"}}
            )
        self.assertEqual(resp.status_code, 422)
        body = resp.json()
        self.assertFalse(body["success"])
        self.assertIn("numeric field overflow", body["details"])

    def test_debug_echoes_payload(self) -> None:
        resp = self.client.post("/api/movies/debug", json=MATRIX_WEBHOOK)
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["payload"], MATRIX_WEBHOOK)
        self.assertEqual(body["keys"], ["item"])
        self.assertTrue(body["hasItem"])
        self.assertFalse(body["hasTitle"])
        self.assertFalse(body["hasId"])


class TestQueries(ApiTestCase):
    def test_list_search_and_poster_filter(self) -> None:
        self.post_webhook(MATRIX_WEBHOOK)
        self.post_webhook(MATRIX_WEBHOOK)
        self.post_webhook(_letterboxd("Obscure Film", 2001, "obscure-film"))

        movies = self.client.get("/api/movies").json()
        self.assertEqual(movies["count"], 2)
        by_title = {movie["title"]: movie for movie in movies["movies"]}
        self.assertEqual(by_title["The Matrix"]["watch_count"], 2)
        self.assertTrue(by_title["The Matrix"]["has_poster"])
        self.assertFalse(by_title["Obscure Film"]["has_poster"])

        found = self.client.get("/api/movies", params={"search": "matrix"}).json()
        self.assertEqual([movie["title"] for movie in found["movies"]], ["The Matrix"])

        with_posters = self.client.get("/api/movies", params={"posters": "true"}).json()
        self.assertEqual([movie["title"] for movie in with_posters["movies"]], ["The Matrix"])

        page = self.client.get("/api/movies", params={"limit": 1, "offset": 1}).json()
        self.assertEqual(page["count"], 1)

    def test_movie_detail(self) -> None:
        movie_id = self.post_webhook(MATRIX_WEBHOOK).json()["result"]["movie"]["id"]
        detail = self.client.get(f"/api/movies/movie/{movie_id}").json()
        self.assertEqual(detail["director"], "Lana Wachowski")
        self.assertEqual(detail["genres"], ["Action", "Science Fiction"])
        self.assertEqual(detail["movie_watches"][0]["external_id"], "letterboxd-review-1")

    def test_unknown_movie_is_404(self) -> None:
        resp = self.client.get(f"/api/movies/movie/{uuid.uuid4()}")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json()["detail"], "Movie not found")

    def test_watches_newest_first(self) -> None:
        self.post_webhook(_letterboxd("Heat", 1995, "heat", pub_date="2024-01-01T20:00:00Z"))
        self.post_webhook(_letterboxd("Alien", 1979, "alien", pub_date="2024-06-01T20:00:00Z"))
        self.post_webhook(
            {"item": {"title": "Arrival (2016)", "link": "https://trakt.tv/movies/arrival-2016", "pubDate": "2024-03-01T20:00:00Z"}}
        )

        watches = self.client.get("/api/movies/watches").json()["watches"]
        self.assertEqual([watch["movies"]["title"] for watch in watches], ["Alien", "Arrival", "Heat"])

        trakt = self.client.get("/api/movies/watches", params={"source": "trakt"}).json()
        self.assertEqual(trakt["count"], 1)
        self.assertEqual(trakt["watches"][0]["source"], "trakt")

        limited = self.client.get("/api/movies/watches", params={"limit": 2}).json()
        self.assertEqual(limited["count"], 2)

    def test_stats(self) -> None:
        empty = self.client.get("/api/movies/stats").json()
        self.assertEqual(
            empty,
            {
                "total_movies": 0,
                "total_watches": 0,
                "movies_with_posters": 0,
                "poster_coverage": 0,
                "average_rating": 0,
            },
        )

        self.post_webhook(MATRIX_WEBHOOK)
        self.post_webhook(_letterboxd("Obscure Film", 2001, "obscure-film", stars="★★★½"))
        stats = self.client.get("/api/movies/stats").json()
        self.assertEqual(stats["total_movies"], 2)
        self.assertEqual(stats["total_watches"], 2)
        self.assertEqual(stats["movies_with_posters"], 1)
        self.assertEqual(stats["poster_coverage"], 50)
        self.assertEqual(stats["average_rating"], 3.8)

    def test_index_and_headers(self) -> None:
        resp = self.client.get("/")
        self.assertEqual(resp.status_code, 200)
        self.assertIn("POST /api/movies", resp.json()["endpoints"])
        self.assertEqual(resp.headers["X-Content-Type-Options"], "nosniff")
        self.assertEqual(resp.headers["X-Frame-Options"], "DENY")


class TestCleanup(ApiTestCase):
    def _seed(self) -> tuple[str, str]:
        matrix = self.post_webhook(MATRIX_WEBHOOK).json()["result"]["movie"]["id"]
        self.post_webhook(MATRIX_WEBHOOK)
        heat = self.post_webhook(_letterboxd("Heat", 1995, "heat")).json()["result"]["movie"]["id"]
        return matrix, heat

    def test_cleanup_deletes_movies_and_watches(self) -> None:
        matrix, heat = self._seed()
        resp = self.client.request("DELETE", "/api/movies/cleanup", json={"movieIds": [matrix]})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"success": True, "deleted": {"watches": 2, "movies": 1}})

        self.assertEqual(self.client.get(f"/api/movies/movie/{matrix}").status_code, 404)
        self.assertEqual(self.client.get(f"/api/movies/movie/{heat}").status_code, 200)
        self.assertEqual(self.client.get("/api/movies/stats").json()["total_watches"], 1)

    def test_post_alias(self) -> None:
        _, heat = self._seed()
        resp = self.client.post("/api/movies/cleanup", json={"movieIds": [heat]})
        self.assertEqual(resp.json()["deleted"], {"watches": 1, "movies": 1})

    def test_cleanup_requires_id_list(self) -> None:
        for payload in ({}, {"movieIds": "abc"}, {"movieIds": ["not-a-uuid"]}):
            with self.subTest(payload=payload):
                resp = self.client.request("DELETE", "/api/movies/cleanup", json=payload)
                self.assertEqual(resp.status_code, 400)

    def test_empty_id_list_deletes_nothing(self) -> None:
        self._seed()
        resp = self.client.request("DELETE", "/api/movies/cleanup", json={"movieIds": []})
        self.assertEqual(resp.json()["deleted"], {"watches": 0, "movies": 0})
        self.assertEqual(self.client.get("/api/movies/stats").json()["total_movies"], 2)

    def test_admin_token_is_enforced_when_configured(self) -> None:
        matrix, _ = self._seed()
        app.dependency_overrides[get_settings] = lambda: Settings(admin_token="s3cret")
        body = {"movieIds": [matrix]}

        missing = self.client.request("DELETE", "/api/movies/cleanup", json=body)
        self.assertEqual(missing.status_code, 401)
        wrong = self.client.request("DELETE", "/api/movies/cleanup", json=body, headers={"X-Admin-Token": "nope"})
        self.assertEqual(wrong.status_code, 403)
        ok = self.client.request(
            "DELETE", "/api/movies/cleanup", json=body, headers={"Authorization": "Bearer s3cret"}
        )
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.json()["deleted"]["movies"], 1)
