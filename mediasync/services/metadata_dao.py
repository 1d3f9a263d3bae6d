"""Persistence helpers for provider movies and GUID mappings."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from mediasync.core.types import TmdbMovie
from mediasync.db import session_scope
from mediasync.models import ExternalIdMapping, Movie
from mediasync.utils.time import utcnow


@dataclass(slots=True, frozen=True)
class MovieRow:
    id: int
    tmdb_id: int
    title: str
    year: int | None
    poster_url: str | None


@dataclass(slots=True, frozen=True)
class MappingRow:
    id: int
    guid: str
    metadata_id: int
    rating_key: str | None
    title: str | None
    year: int | None
    strategy: str | None
    created_at: datetime
    updated_at: datetime


def _movie_row(record: Movie) -> MovieRow:
    return MovieRow(
        id=int(record.id),
        tmdb_id=int(record.tmdb_id),
        title=record.title,
        year=record.year,
        poster_url=record.poster_url,
    )


def _mapping_row(record: ExternalIdMapping) -> MappingRow:
    return MappingRow(
        id=int(record.id),
        guid=record.guid,
        metadata_id=int(record.metadata_id),
        rating_key=record.rating_key,
        title=record.title,
        year=record.year,
        strategy=record.strategy,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


class MetadataDao:
    """Local movie records and the GUID to metadata-id cache."""

    def __init__(self, *, now_factory: Callable[[], datetime] | None = None) -> None:
        self._now_factory = now_factory or utcnow

    def _now(self) -> datetime:
        return self._now_factory().replace(tzinfo=None)

    def get_movie(self, tmdb_id: int) -> MovieRow | None:
        with session_scope() as session:
            record = session.execute(
                select(Movie).where(Movie.tmdb_id == int(tmdb_id))
            ).scalar_one_or_none()
            return _movie_row(record) if record is not None else None

    def upsert_movie(self, movie: TmdbMovie, *, image_base_url: str) -> MovieRow:
        """Insert ``movie`` or refresh the stored copy of it."""

        for attempt in range(2):
            try:
                with session_scope() as session:
                    record = session.execute(
                        select(Movie).where(Movie.tmdb_id == movie.id)
                    ).scalar_one_or_none()
                    if record is None:
                        record = Movie(tmdb_id=movie.id)
                        session.add(record)
                    record.title = movie.title or record.title or str(movie.id)
                    if movie.year is not None:
                        record.year = movie.year
                    if movie.overview:
                        record.overview = movie.overview
                    poster_url = movie.poster_url(image_base_url)
                    if poster_url:
                        record.poster_url = poster_url
                    if movie.runtime is not None:
                        record.runtime = movie.runtime
                    if movie.genres:
                        record.genres = list(movie.genres)
                    session.flush()
                    return _movie_row(record)
            except IntegrityError:
                if attempt == 0:
                    continue
                raise
        raise RuntimeError("Movie upsert failed after retries.")

    def get_mapping(self, guid: str) -> MappingRow | None:
        """Return the most recently confirmed mapping for ``guid``."""

        with session_scope() as session:
            record = (
                session.execute(
                    select(ExternalIdMapping)
                    .where(ExternalIdMapping.guid == guid)
                    .order_by(ExternalIdMapping.updated_at.desc(), ExternalIdMapping.id.desc())
                    .limit(1)
                )
                .scalars()
                .first()
            )
            return _mapping_row(record) if record is not None else None

    def mappings_for(self, metadata_id: int) -> list[MappingRow]:
        with session_scope() as session:
            records = session.execute(
                select(ExternalIdMapping)
                .where(ExternalIdMapping.metadata_id == int(metadata_id))
                .order_by(ExternalIdMapping.id.asc())
            ).scalars()
            return [_mapping_row(record) for record in records]

    def upsert_mapping(
        self,
        guid: str,
        metadata_id: int,
        *,
        title: str | None,
        year: int | None,
        rating_key: str | None,
        strategy: str | None,
    ) -> MappingRow:
        timestamp = self._now()
        for attempt in range(2):
            try:
                with session_scope() as session:
                    record = session.execute(
                        select(ExternalIdMapping).where(
                            ExternalIdMapping.guid == guid,
                            ExternalIdMapping.metadata_id == int(metadata_id),
                        )
                    ).scalar_one_or_none()
                    if record is None:
                        record = ExternalIdMapping(
                            guid=guid,
                            metadata_id=int(metadata_id),
                            created_at=timestamp,
                        )
                        session.add(record)
                    record.title = title
                    record.year = year
                    if rating_key:
                        record.rating_key = rating_key
                    if strategy:
                        record.strategy = strategy
                    record.updated_at = timestamp
                    session.flush()
                    return _mapping_row(record)
            except IntegrityError:
                if attempt == 0:
                    continue
                raise
        raise RuntimeError("Mapping upsert failed after retries.")


__all__ = ["MappingRow", "MetadataDao", "MovieRow"]
