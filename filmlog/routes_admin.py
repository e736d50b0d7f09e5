import logging
import uuid

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import require_admin
from .database import get_db
from .models import Movie, Watch

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/movies", tags=["admin"])


def _parse_movie_ids(payload) -> list[uuid.UUID]:
    raw_ids = payload.get("movieIds") if isinstance(payload, dict) else None
    if not isinstance(raw_ids, list):
        raise HTTPException(status_code=400, detail="movieIds array is required")
    movie_ids: list[uuid.UUID] = []
    for raw in raw_ids:
        try:
            movie_ids.append(uuid.UUID(str(raw)))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid movie id: {raw}")
    return movie_ids


@router.delete("/cleanup")
async def cleanup_movies(
    payload=Body(None),
    _admin: None = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    movie_ids = _parse_movie_ids(payload)
    if not movie_ids:
        return {"success": True, "deleted": {"watches": 0, "movies": 0}}

    logger.info("Cleaning up movies: %s", ", ".join(str(movie_id) for movie_id in movie_ids))
    deleted_watches = await db.execute(delete(Watch).where(Watch.movie_id.in_(movie_ids)))
    deleted_movies = await db.execute(delete(Movie).where(Movie.id.in_(movie_ids)))
    await db.commit()

    watches = max(deleted_watches.rowcount or 0, 0)
    movies = max(deleted_movies.rowcount or 0, 0)
    logger.info("Deleted %d watches and %d movies", watches, movies)
    return {"success": True, "deleted": {"watches": watches, "movies": movies}}


@router.post("/cleanup")
async def cleanup_movies_post(
    payload=Body(None),
    _admin: None = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await cleanup_movies(payload, _admin, db)
