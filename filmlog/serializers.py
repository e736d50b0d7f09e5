from datetime import datetime

from .models import Movie, Watch

MOVIE_SUMMARY_FIELDS = ("title", "year", "director", "poster_url", "backdrop_url", "genres")


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def serialize_movie(movie: Movie, watches: list[Watch] | None = None) -> dict:
    data = {
        "id": str(movie.id),
        "title": movie.title,
        "year": movie.year,
        "director": movie.director,
        "letterboxd_id": movie.letterboxd_id,
        "trakt_id": movie.trakt_id,
        "tmdb_id": movie.tmdb_id,
        "poster_url": movie.poster_url,
        "backdrop_url": movie.backdrop_url,
        "plot_summary": movie.plot_summary,
        "genres": list(movie.genres) if movie.genres else None,
        "country": movie.country,
        "language": movie.language,
        "budget": movie.budget,
        "box_office": movie.box_office,
        "trailer_url": movie.trailer_url,
        "created_at": _iso(movie.created_at),
        "updated_at": _iso(movie.updated_at),
    }
    if watches is not None:
        data["movie_watches"] = [serialize_watch(watch) for watch in watches]
    return data


def serialize_movie_summary(movie: Movie) -> dict:
    data = {"id": str(movie.id)}
    for name in MOVIE_SUMMARY_FIELDS:
        data[name] = getattr(movie, name)
    data["genres"] = list(movie.genres) if movie.genres else None
    return data


def serialize_watch(watch: Watch, movie: Movie | None = None) -> dict:
    data = {
        "id": str(watch.id),
        "movie_id": str(watch.movie_id),
        "watched_at": _iso(watch.watched_at),
        "personal_rating": watch.personal_rating,
        "review_text": watch.review_text,
        "source": watch.source,
        "source_url": watch.source_url,
        "external_id": watch.external_id,
        "metadata": watch.metadata_,
        "created_at": _iso(watch.created_at),
        "updated_at": _iso(watch.updated_at),
    }
    if movie is not None:
        data["movies"] = serialize_movie_summary(movie)
    return data
