import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import DataError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .extractors import FeedItem, MovieDraft, extract_movie_data
from .models import EXTERNAL_ID_FIELDS, Movie, Watch
from .tmdb import EnrichmentResult, TMDBClient, enrich_movie

logger = logging.getLogger(__name__)


@dataclass
class ResolvedMovie:
    movie: Movie
    created: bool
    matched_by: str | None = None
    enrichment: EnrichmentResult | None = None


@dataclass
class IngestResult:
    movie: Movie
    watch: Watch
    created: bool
    enrichment: EnrichmentResult | None

    @property
    def enriched(self) -> bool:
        return bool(self.movie.poster_url)


async def _find_by_external_id(db: AsyncSession, name: str, value: str) -> Movie | None:
    column = getattr(Movie, name)
    return (await db.execute(select(Movie).where(column == value))).scalar_one_or_none()


async def find_movie(
    db: AsyncSession,
    title: str | None,
    year: int | None,
    external_ids: dict[str, str],
) -> tuple[Movie | None, str | None]:
    for name in EXTERNAL_ID_FIELDS:
        value = external_ids.get(name)
        if not value:
            continue
        movie = await _find_by_external_id(db, name, value)
        if movie is not None:
            return movie, name

    if title and year:
        movie = (
            await db.execute(
                select(Movie)
                .where(Movie.title == title, Movie.year == year)
                .order_by(Movie.created_at.asc())
                .limit(1)
            )
        ).scalar_one_or_none()
        if movie is not None:
            return movie, "title_year"
    return None, None


async def _id_owned_elsewhere(db: AsyncSession, name: str, value: str, movie_id: uuid.UUID | None) -> bool:
    column = getattr(Movie, name)
    stmt = select(Movie.id).where(column == value)
    if movie_id is not None:
        stmt = stmt.where(Movie.id != movie_id)
    return (await db.execute(stmt.limit(1))).scalar_one_or_none() is not None


async def _attach_new_external_ids(db: AsyncSession, movie: Movie, external_ids: dict[str, str]) -> bool:
    changed = False
    for name in EXTERNAL_ID_FIELDS:
        value = external_ids.get(name)
        if not value or getattr(movie, name):
            continue
        if await _id_owned_elsewhere(db, name, value, movie.id):
            logger.warning("Not attaching %s=%s to movie %s: already held by another movie", name, value, movie.id)
            continue
        setattr(movie, name, value)
        changed = True
        logger.info("Attached newly discovered %s=%s to movie %s", name, value, movie.id)
    return changed


async def _apply_enrichment(db: AsyncSession, movie: Movie, fields: dict) -> list[str]:
    applied: list[str] = []
    for key, value in fields.items():
        if key in EXTERNAL_ID_FIELDS:
            if getattr(movie, key) or await _id_owned_elsewhere(db, key, value, movie.id):
                continue
        setattr(movie, key, value)
        applied.append(key)
    return applied


async def _use_existing(
    db: AsyncSession,
    movie: Movie,
    draft: MovieDraft,
    matched_by: str,
    tmdb: TMDBClient | None,
) -> ResolvedMovie:
    logger.info("Found existing movie %s (%s) by %s", movie.id, movie.title, matched_by)
    changed = await _attach_new_external_ids(db, movie, draft.external_ids)

    enrichment = None
    if not movie.poster_url and tmdb is not None and tmdb.enabled:
        logger.info("Existing movie %s missing poster, enriching", movie.id)
        enrichment = await enrich_movie(tmdb, movie.title, movie.year)
        if enrichment.enriched:
            applied = await _apply_enrichment(db, movie, enrichment.fields)
            changed = changed or bool(applied)
            logger.info("Enriched existing movie %s: %s", movie.id, ", ".join(applied))

    if changed:
        await db.commit()
    return ResolvedMovie(movie=movie, created=False, matched_by=matched_by, enrichment=enrichment)


async def resolve_movie(db: AsyncSession, draft: MovieDraft, tmdb: TMDBClient | None = None) -> ResolvedMovie:
    """Find the stored movie a draft refers to, or create it.

    Lookup order is external id (letterboxd, trakt, tmdb), then the exact
    (title, year) pair. New movies are enriched before the insert when both
    title and year are known.
    """
    movie, matched_by = await find_movie(db, draft.title, draft.year, draft.external_ids)
    if movie is not None:
        return await _use_existing(db, movie, draft, matched_by, tmdb)

    enrichment = None
    if draft.title and draft.year:
        enrichment = await enrich_movie(tmdb, draft.title, draft.year)
    fields = dict(enrichment.fields) if enrichment and enrichment.enriched else {}

    tmdb_id = fields.get("tmdb_id")
    if tmdb_id:
        owner = await _find_by_external_id(db, "tmdb_id", tmdb_id)
        if owner is not None:
            resolved = await _use_existing(db, owner, draft, "tmdb_id", tmdb)
            resolved.enrichment = enrichment
            return resolved

    values = {
        "title": draft.title,
        "year": draft.year,
        "director": draft.director,
        **{name: draft.external_ids.get(name) for name in EXTERNAL_ID_FIELDS if draft.external_ids.get(name)},
    }
    values.update(fields)
    movie = Movie(**values)
    db.add(movie)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        # A concurrent delivery inserted the same movie first.
        ids = dict(draft.external_ids)
        if tmdb_id:
            ids.setdefault("tmdb_id", tmdb_id)
        winner, matched_by = await find_movie(db, draft.title, draft.year, ids)
        if winner is None:
            raise
        logger.info("Lost insert race for %r, using movie %s", draft.title, winner.id)
        return ResolvedMovie(movie=winner, created=False, matched_by=matched_by, enrichment=enrichment)

    status = enrichment.status if enrichment else "skipped"
    logger.info(
        "Created new movie %s: %s (%s), enrichment %s%s",
        movie.id,
        movie.title,
        movie.year,
        status,
        f" ({', '.join(sorted(fields))})" if fields else "",
    )
    return ResolvedMovie(movie=movie, created=True, enrichment=enrichment)


async def record_watch(db: AsyncSession, movie_id: uuid.UUID, item: FeedItem, draft: MovieDraft) -> Watch:
    watch = Watch(
        movie_id=movie_id,
        watched_at=draft.watched_at,
        personal_rating=draft.rating,
        review_text=draft.review,
        source=draft.source,
        source_url=draft.source_url,
        external_id=item.guid or item.link,
        metadata_={
            "feed_title": item.title,
            "feed_content": item.content,
            "processed_at": datetime.now(timezone.utc).isoformat(),
        },
    )
    db.add(watch)
    try:
        await db.commit()
    except (IntegrityError, DataError):
        await db.rollback()
        logger.error("Rejected watch for movie %s (rating=%s, source=%s)", movie_id, draft.rating, draft.source)
        raise
    logger.info("Created watch record %s for movie %s", watch.id, movie_id)
    return watch


async def process_feed_item(db: AsyncSession, item: FeedItem, tmdb: TMDBClient | None = None) -> IngestResult:
    logger.info("Processing feed item: %s", item.raw_title)
    draft = extract_movie_data(item)
    resolved = await resolve_movie(db, draft, tmdb)
    watch = await record_watch(db, resolved.movie.id, item, draft)
    return IngestResult(
        movie=resolved.movie,
        watch=watch,
        created=resolved.created,
        enrichment=resolved.enrichment,
    )
