import logging

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.exc import DataError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .database import get_db
from .extractors import FeedItemError, parse_webhook_payload
from .ingest import process_feed_item
from .serializers import serialize_movie, serialize_watch
from .tmdb import TMDBClient, get_tmdb

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/movies", tags=["webhook"])


def _error(status_code: int, details: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": "Failed to process webhook", "details": details},
    )


@router.post("")
async def receive_webhook(
    payload=Body(None),
    db: AsyncSession = Depends(get_db),
    tmdb: TMDBClient | None = Depends(get_tmdb),
):
    try:
        item = parse_webhook_payload(payload)
    except FeedItemError as exc:
        logger.warning("Rejected webhook payload: %s", exc)
        return _error(400, str(exc))

    try:
        result = await process_feed_item(db, item, tmdb)
    except FeedItemError as exc:
        logger.warning("Rejected feed item %r: %s", item.raw_title, exc)
        return _error(400, str(exc))
    except (IntegrityError, DataError) as exc:
        logger.error("Constraint violation while recording %r: %s", item.raw_title, exc.orig)
        return _error(422, f"Constraint violation: {exc.orig}")
    except SQLAlchemyError as exc:
        logger.exception("Webhook processing error for %r", item.raw_title)
        return _error(500, str(exc))
    except Exception as exc:
        logger.exception("Unexpected webhook failure for %r", item.raw_title)
        return _error(500, str(exc) or type(exc).__name__)

    return {
        "success": True,
        "message": f"Successfully processed movie: {result.movie.title}",
        "enriched": result.enriched,
        "result": {
            "action": "movie_watch_recorded",
            "created": result.created,
            "enrichment": result.enrichment.status if result.enrichment else "skipped",
            "movie": serialize_movie(result.movie),
            "watch": serialize_watch(result.watch),
        },
    }


@router.post("/debug")
async def debug_webhook(payload=Body(None)):
    logger.info("Debug webhook payload: %r", payload)
    is_object = isinstance(payload, dict)
    return {
        "message": "Debug payload logged",
        "payload": payload,
        "keys": list(payload.keys()) if is_object else [],
        "hasItem": bool(is_object and payload.get("item")),
        "hasTitle": bool(is_object and payload.get("title")),
        "hasId": bool(is_object and payload.get("id")),
    }
