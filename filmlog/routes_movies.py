import math
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .database import get_db
from .models import Movie, Watch
from .serializers import serialize_movie, serialize_watch

router = APIRouter(prefix="/api/movies", tags=["movies"])


def _round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


@router.get("")
async def list_movies(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    search: str | None = Query(None, max_length=200),
    posters: bool = False,
    db: AsyncSession = Depends(get_db),
):
    watch_count = func.count(Watch.id).label("watch_count")
    stmt = (
        select(Movie, watch_count)
        .outerjoin(Watch, Watch.movie_id == Movie.id)
        .group_by(Movie.id)
        .order_by(Movie.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    normalized_search = (search or "").strip()
    if normalized_search:
        stmt = stmt.where(Movie.title.ilike(f"%{normalized_search}%"))
    if posters:
        stmt = stmt.where(Movie.poster_url.is_not(None))

    rows = (await db.execute(stmt)).all()
    movies = []
    for movie, count in rows:
        data = serialize_movie(movie)
        data["watch_count"] = int(count or 0)
        data["has_poster"] = bool(movie.poster_url)
        data["has_backdrop"] = bool(movie.backdrop_url)
        movies.append(data)
    return {"count": len(movies), "movies": movies}


@router.get("/movie/{movie_id}")
async def get_movie(movie_id: uuid.UUID, db: AsyncSession = Depends(get_db)):
    movie = (
        await db.execute(
            select(Movie).options(selectinload(Movie.watches)).where(Movie.id == movie_id)
        )
    ).scalar_one_or_none()
    if not movie:
        raise HTTPException(status_code=404, detail="Movie not found")
    return serialize_movie(movie, watches=list(movie.watches))


@router.get("/watches")
async def list_watches(
    limit: int = Query(20, ge=1, le=500),
    offset: int = Query(0, ge=0),
    source: str | None = Query(None, max_length=50),
    db: AsyncSession = Depends(get_db),
):
    stmt = (
        select(Watch, Movie)
        .join(Movie, Movie.id == Watch.movie_id)
        .order_by(Watch.watched_at.desc())
        .offset(offset)
        .limit(limit)
    )
    if source:
        stmt = stmt.where(Watch.source == source.strip().lower())
    rows = (await db.execute(stmt)).all()
    watches = [serialize_watch(watch, movie) for watch, movie in rows]
    return {"count": len(watches), "watches": watches}


@router.get("/stats")
async def movie_stats(db: AsyncSession = Depends(get_db)):
    total_movies = int(await db.scalar(select(func.count()).select_from(Movie)) or 0)
    total_watches = int(await db.scalar(select(func.count()).select_from(Watch)) or 0)
    movies_with_posters = int(
        await db.scalar(select(func.count()).select_from(Movie).where(Movie.poster_url.is_not(None))) or 0
    )
    average = await db.scalar(select(func.avg(Watch.personal_rating)).where(Watch.personal_rating.is_not(None)))

    poster_coverage = 0
    if total_movies > 0:
        poster_coverage = int(_round_half_up(movies_with_posters / total_movies * 100))
    return {
        "total_movies": total_movies,
        "total_watches": total_watches,
        "movies_with_posters": movies_with_posters,
        "poster_coverage": poster_coverage,
        "average_rating": _round_half_up(float(average), 1) if average is not None else 0,
    }
