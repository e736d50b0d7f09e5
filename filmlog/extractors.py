"""Turn webhook feed items into normalized movie drafts.

Items arrive from an RSS-to-webhook relay watching Letterboxd and Trakt.tv
activity feeds. Each platform writes titles, ratings and ids its own way,
so the item is classified by an ordered list of (predicate, parser) pairs
and the first matching parser builds the draft. Items no predicate claims
fall through to the generic parser.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .models import SOURCE_GENERIC, SOURCE_LETTERBOXD, SOURCE_TRAKT

logger = logging.getLogger(__name__)

HTML_TAG_RE = re.compile(r"<[^>]*>")
LETTERBOXD_TITLE_RE = re.compile(r"^(?P<title>.+),\s*(?P<year>\d{4})(?:\s*-\s*[★☆½]+)?$")
LETTERBOXD_FILM_RE = re.compile(r"/film/(?P<slug>[^/?#]+)")
STAR_RUN_RE = re.compile(r"[★☆]+½?")
TRAKT_TITLE_PATTERNS = (
    re.compile(r"^(?P<title>.+?)\s*\((?P<year>\d{4})\)$"),
    re.compile(r"^(?P<title>.+),\s*(?P<year>\d{4})$"),
)
TRAKT_RATING_RE = re.compile(r"(?P<rating>\d+(?:\.\d+)?)\s*/\s*10")
TRAKT_TAG_ID_RE = re.compile(r"Movie/(?P<id>\d+)/")
TRAKT_MOVIE_LINK_RE = re.compile(r"/movies/(?P<slug>[^/?#]+)")
GENERIC_TITLE_RE = re.compile(r"^(?P<title>.+?)\s*\((?P<year>\d{4})\)\s*$")


class FeedItemError(ValueError):
    """The webhook payload holds nothing that can be recorded."""


class FeedItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str | None = None
    title: str | None = None
    content: str | None = None
    summary: str | None = None
    link: str | None = None
    guid: str | None = None
    pub_date: str | None = Field(default=None, alias="pubDate")
    date: str | None = None
    trakt_id: str | None = None
    film_title: str | None = Field(default=None, alias="filmTitle")
    film_year: str | None = Field(default=None, alias="filmYear")
    member_rating: float | None = Field(default=None, alias="memberRating")

    @field_validator("id", "guid", "trakt_id", "film_year", mode="before")
    @classmethod
    def _coerce_identifier(cls, value):
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(int(value)) if float(value).is_integer() else str(value)
        return value

    @field_validator("member_rating", mode="before")
    @classmethod
    def _lenient_rating(cls, value):
        if value is None or isinstance(value, bool):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @property
    def raw_title(self) -> str | None:
        if self.title and self.title.strip():
            return self.title
        if self.film_title and self.film_title.strip():
            return self.film_title
        return None


@dataclass
class MovieDraft:
    title: str
    year: int | None = None
    director: str | None = None
    rating: float | None = None
    review: str | None = None
    source: str = SOURCE_GENERIC
    source_url: str | None = None
    watched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    external_ids: dict[str, str] = field(default_factory=dict)


def parse_webhook_payload(payload) -> FeedItem:
    if not isinstance(payload, dict):
        raise FeedItemError("Webhook payload must be a JSON object")

    if isinstance(payload.get("item"), dict):
        raw_item = payload["item"]
    elif payload.get("id") or payload.get("title"):
        raw_item = payload
    else:
        raise FeedItemError(
            "No valid feed item found in webhook payload. "
            "Expected either payload.item or direct payload with id/title fields"
        )

    try:
        item = FeedItem.model_validate(raw_item)
    except ValidationError as exc:
        raise FeedItemError(f"Malformed feed item: {exc.errors()[0].get('msg')}") from exc

    if item.raw_title is None:
        raise FeedItemError("No usable feed item: missing title")
    return item


def strip_markup(value: str | None) -> str | None:
    if not value:
        return None
    return HTML_TAG_RE.sub("", value).strip()


def _coerce_year(value: str | int | None) -> int | None:
    if isinstance(value, int):
        return value if 1870 <= value <= 2200 else None
    raw = str(value or "").strip()
    match = re.search(r"(\d{4})", raw)
    if not match:
        return None
    year = int(match.group(1))
    return year if 1870 <= year <= 2200 else None


def parse_watched_at(value: str | None) -> datetime:
    raw = (value or "").strip()
    if not raw:
        return datetime.now(timezone.utc)
    parsed: datetime | None = None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(raw)
        except (TypeError, ValueError):
            parsed = None
    if parsed is None:
        logger.warning("Unparseable feed timestamp %r, using current time", raw)
        return datetime.now(timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def split_letterboxd_title(value: str) -> tuple[str, int | None]:
    match = LETTERBOXD_TITLE_RE.match(value)
    if not match:
        return value, None
    return match.group("title").strip(), int(match.group("year"))


def split_trakt_title(value: str) -> tuple[str, int | None]:
    text = value.strip()
    for pattern in TRAKT_TITLE_PATTERNS:
        match = pattern.match(text)
        if match:
            return match.group("title").strip(), int(match.group("year"))
    return text, None


def split_generic_title(value: str) -> tuple[str, int | None]:
    match = GENERIC_TITLE_RE.match(value)
    if not match:
        return value, None
    return match.group("title").strip(), int(match.group("year"))


def parse_star_rating(content: str | None) -> float | None:
    if not content:
        return None
    match = STAR_RUN_RE.search(content)
    if not match:
        return None
    run = match.group(0)
    rating = float(run.count("★"))
    if run.endswith("½"):
        rating += 0.5
    return rating


def parse_trakt_rating(content: str | None) -> float | None:
    if not content:
        return None
    match = TRAKT_RATING_RE.search(content)
    if not match:
        return None
    return float(match.group("rating"))


def trakt_id_from_tag(item: FeedItem) -> str | None:
    for value in (item.id, item.guid):
        if not value:
            continue
        match = TRAKT_TAG_ID_RE.search(value)
        if match:
            return match.group("id")
    return None


def _link(item: FeedItem) -> str:
    return (item.link or "").lower()


def _is_letterboxd(item: FeedItem, external_ids: dict[str, str]) -> bool:
    return "letterboxd.com" in _link(item)


def _is_trakt_link(item: FeedItem, external_ids: dict[str, str]) -> bool:
    return "trakt.tv" in _link(item)


def _has_trakt_id(item: FeedItem, external_ids: dict[str, str]) -> bool:
    return "trakt_id" in external_ids


def extract_letterboxd(item: FeedItem, draft: MovieDraft) -> MovieDraft:
    draft.source = SOURCE_LETTERBOXD
    raw_title = item.film_title if item.film_title and item.film_title.strip() else item.raw_title
    draft.title, draft.year = split_letterboxd_title(raw_title)
    film_year = _coerce_year(item.film_year)
    if film_year:
        draft.year = film_year

    draft.rating = parse_star_rating(item.content)
    if draft.rating is None and item.member_rating is not None:
        draft.rating = item.member_rating
    draft.review = strip_markup(item.content)

    match = LETTERBOXD_FILM_RE.search(item.link or "")
    if match:
        draft.external_ids["letterboxd_id"] = match.group("slug")
    return draft


def extract_trakt(item: FeedItem, draft: MovieDraft) -> MovieDraft:
    draft.source = SOURCE_TRAKT
    draft.title, draft.year = split_trakt_title(item.raw_title)

    if item.content:
        draft.review = strip_markup(item.content)
        draft.rating = parse_trakt_rating(item.content)
    elif item.summary:
        draft.review = strip_markup(item.summary)

    if "trakt_id" not in draft.external_ids:
        match = TRAKT_MOVIE_LINK_RE.search(item.link or "")
        if match:
            draft.external_ids["trakt_id"] = match.group("slug")
    return draft


def extract_generic(item: FeedItem, draft: MovieDraft) -> MovieDraft:
    draft.source = SOURCE_GENERIC
    draft.title, draft.year = split_generic_title(item.raw_title)
    draft.review = strip_markup(item.content)
    return draft


EXTRACTORS: list[tuple[Callable[[FeedItem, dict[str, str]], bool], Callable[[FeedItem, MovieDraft], MovieDraft]]] = [
    (_is_letterboxd, extract_letterboxd),
    (_is_trakt_link, extract_trakt),
    (_has_trakt_id, extract_trakt),
]


def extract_movie_data(item: FeedItem) -> MovieDraft:
    if item.raw_title is None:
        raise FeedItemError("No usable feed item: missing title")

    external_ids: dict[str, str] = {}
    if item.trakt_id and item.trakt_id.strip():
        external_ids["trakt_id"] = item.trakt_id.strip()
    else:
        tag_id = trakt_id_from_tag(item)
        if tag_id:
            external_ids["trakt_id"] = tag_id

    draft = MovieDraft(
        title=item.raw_title,
        source_url=item.link,
        watched_at=parse_watched_at(item.pub_date or item.date),
        external_ids=external_ids,
    )

    parser = extract_generic
    for predicate, candidate in EXTRACTORS:
        if predicate(item, external_ids):
            parser = candidate
            break
    logger.info(
        "Extracting feed item with %s (title=%r, link=%r, trakt_id=%s)",
        parser.__name__,
        item.raw_title,
        item.link,
        external_ids.get("trakt_id"),
    )
    draft = parser(item, draft)
    logger.info(
        "Extracted %s draft: title=%r year=%s rating=%s ids=%s",
        draft.source,
        draft.title,
        draft.year,
        draft.rating,
        draft.external_ids,
    )
    return draft
