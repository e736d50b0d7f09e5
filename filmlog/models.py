import uuid
from datetime import datetime, timezone
from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import ARRAY, JSONB

RATING_MIN = 0
RATING_MAX = 10

SOURCE_LETTERBOXD = "letterboxd"
SOURCE_TRAKT = "trakt"
SOURCE_GENERIC = "generic"

EXTERNAL_ID_FIELDS = ("letterboxd_id", "trakt_id", "tmdb_id")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class Movie(Base):
    __tablename__ = "movies"
    __table_args__ = (Index("idx_movies_title_year", "title", "year"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    year: Mapped[int | None] = mapped_column(Integer, nullable=True)
    director: Mapped[str | None] = mapped_column(String(255), nullable=True)
    letterboxd_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    trakt_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    tmdb_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    poster_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    backdrop_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    plot_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    genres: Mapped[list[str] | None] = mapped_column(
        JSON().with_variant(ARRAY(String), "postgresql"), nullable=True
    )
    country: Mapped[str | None] = mapped_column(String(10), nullable=True)
    language: Mapped[str | None] = mapped_column(String(10), nullable=True)
    budget: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    box_office: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    trailer_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    watches: Mapped[list["Watch"]] = relationship(
        back_populates="movie",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Watch.watched_at.desc()",
    )

    def external_ids(self) -> dict[str, str]:
        return {name: getattr(self, name) for name in EXTERNAL_ID_FIELDS if getattr(self, name)}


class Watch(Base):
    __tablename__ = "movie_watches"
    __table_args__ = (
        CheckConstraint(
            f"personal_rating >= {RATING_MIN} AND personal_rating <= {RATING_MAX}",
            name="ck_movie_watches_personal_rating_range",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    movie_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("movies.id", ondelete="CASCADE"), nullable=False, index=True
    )
    watched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    personal_rating: Mapped[float | None] = mapped_column(Numeric(3, 1, asdecimal=False), nullable=True)
    review_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    source: Mapped[str] = mapped_column(String(50), nullable=False)
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    # "metadata" is reserved on declarative classes.
    metadata_: Mapped[dict | None] = mapped_column(
        "metadata", JSON().with_variant(JSONB, "postgresql"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    movie: Mapped["Movie"] = relationship(back_populates="watches")
