"""Resolve media-server GUIDs to metadata provider movie ids."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any

from mediasync.core.errors import JobCancelledError
from mediasync.core.types import TmdbMovie
from mediasync.logging import get_logger
from mediasync.services.metadata_dao import MappingRow, MetadataDao
from mediasync.services.rate_limiter import RateLimiterStoppedError
from mediasync.utils.cancellation import CancellationToken, raise_if_cancelled

logger = get_logger(__name__)


class GuidScheme(str, Enum):
    TMDB = "tmdb"
    IMDB = "imdb"
    TVDB = "tvdb"
    PLEX = "plex"
    UNKNOWN = "unknown"


class MatchStrategy(str, Enum):
    CACHE = "cache"
    TMDB = "tmdb"
    EXTERNAL_ID = "external_id"
    TITLE_SEARCH = "title_search"


# agent forms first; the plain forms would also match inside them
_GUID_PATTERNS: tuple[tuple[GuidScheme, re.Pattern[str]], ...] = (
    (GuidScheme.TMDB, re.compile(r"com\.plexapp\.agents\.themoviedb://(\d+)")),
    (GuidScheme.TMDB, re.compile(r"tmdb://(\d+)")),
    (GuidScheme.IMDB, re.compile(r"com\.plexapp\.agents\.imdb://(tt\d+)")),
    (GuidScheme.IMDB, re.compile(r"imdb://(tt\d+)")),
    (GuidScheme.TVDB, re.compile(r"com\.plexapp\.agents\.thetvdb://(\d+)")),
    (GuidScheme.TVDB, re.compile(r"tvdb://(\d+)")),
    (GuidScheme.PLEX, re.compile(r"plex://movie/([a-f0-9]{24})")),
)

_FIND_SOURCES = {GuidScheme.IMDB: "imdb_id", GuidScheme.TVDB: "tvdb_id"}


@dataclass(slots=True, frozen=True)
class ParsedGuid:
    scheme: GuidScheme
    value: str | None = None


@dataclass(slots=True, frozen=True)
class MatchResult:
    metadata_id: int
    strategy: MatchStrategy


def parse_guid(guid: str | None) -> ParsedGuid:
    """Classify ``guid`` into one of the known identifier schemes."""

    if not guid:
        return ParsedGuid(GuidScheme.UNKNOWN)
    for scheme, pattern in _GUID_PATTERNS:
        match = pattern.search(guid)
        if match:
            return ParsedGuid(scheme, match.group(1))
    return ParsedGuid(GuidScheme.UNKNOWN)


def pick_search_result(results: list[TmdbMovie], year: int | None) -> TmdbMovie | None:
    """Prefer an exact release-year match, otherwise the top result."""

    if not results:
        return None
    if year is not None:
        for movie in results:
            if movie.year == year:
                return movie
    return results[0]


class IdMatcher:
    """Map a media-server item to a metadata provider movie id.

    Every provider call is funnelled through the shared rate limiter; confirmed
    matches are cached in ``external_id_mappings`` so a GUID is resolved at most
    once.
    """

    def __init__(
        self,
        tmdb_client: Any,
        rate_limiter: Any,
        *,
        image_base_url: str = "https://image.tmdb.org/t/p/w500",
        priority: int = 0,
        dao: MetadataDao | None = None,
    ) -> None:
        self._tmdb = tmdb_client
        self._limiter = rate_limiter
        self._image_base_url = image_base_url
        self._priority = int(priority)
        self._dao = dao or MetadataDao()

    async def resolve(
        self,
        guid: str | None,
        title: str,
        year: int | None = None,
        *,
        rating_key: str | None = None,
        priority: int | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> MatchResult | None:
        """Return the metadata id for an item or ``None`` when nothing matches.

        Lookup order: cached mapping, direct TMDB id, IMDb/TVDB external id,
        then a title search. Provider errors during the id-based lookups fall
        through to the title search; errors of the search itself propagate.
        """

        raise_if_cancelled(cancel_token)
        level = self._priority if priority is None else int(priority)

        if guid:
            cached = await asyncio.to_thread(self._dao.get_mapping, guid)
            if cached is not None:
                return MatchResult(cached.metadata_id, MatchStrategy.CACHE)

        parsed = parse_guid(guid)
        metadata_id: int | None = None
        strategy = MatchStrategy.TITLE_SEARCH
        if parsed.scheme is GuidScheme.TMDB and parsed.value:
            metadata_id = await self._resolve_tmdb(
                int(parsed.value), level=level, cancel_token=cancel_token
            )
            strategy = MatchStrategy.TMDB
        elif parsed.scheme in _FIND_SOURCES and parsed.value:
            metadata_id = await self._resolve_external(
                parsed.value,
                _FIND_SOURCES[parsed.scheme],
                level=level,
                cancel_token=cancel_token,
            )
            strategy = MatchStrategy.EXTERNAL_ID

        if metadata_id is None:
            metadata_id = await self._resolve_by_title(
                title, year, level=level, cancel_token=cancel_token
            )
            strategy = MatchStrategy.TITLE_SEARCH
        if metadata_id is None:
            return None

        if guid:
            await asyncio.to_thread(
                partial(
                    self._dao.upsert_mapping,
                    guid,
                    metadata_id,
                    title=title or None,
                    year=year,
                    rating_key=rating_key,
                    strategy=strategy.value,
                )
            )
        return MatchResult(metadata_id, strategy)

    async def get_mapping(self, guid: str) -> MappingRow | None:
        return await asyncio.to_thread(self._dao.get_mapping, guid)

    async def mappings_for(self, metadata_id: int) -> list[MappingRow]:
        return await asyncio.to_thread(self._dao.mappings_for, metadata_id)

    async def _provider_call(
        self, func: Any, *args: Any, level: int, cancel_token: CancellationToken | None
    ) -> Any:
        return await self._limiter.execute(
            partial(func, *args), level, cancel_token=cancel_token
        )

    async def _resolve_tmdb(
        self, tmdb_id: int, *, level: int, cancel_token: CancellationToken | None
    ) -> int | None:
        existing = await asyncio.to_thread(self._dao.get_movie, tmdb_id)
        if existing is not None:
            return existing.tmdb_id
        try:
            movie = await self._provider_call(
                self._tmdb.get_movie, tmdb_id, level=level, cancel_token=cancel_token
            )
        except (JobCancelledError, RateLimiterStoppedError):
            raise
        except Exception as exc:
            logger.debug("TMDB lookup for movie %s failed: %s", tmdb_id, exc)
            return None
        if movie is None:
            return None
        return await self._store_movie(movie)

    async def _resolve_external(
        self,
        external_id: str,
        source: str,
        *,
        level: int,
        cancel_token: CancellationToken | None,
    ) -> int | None:
        try:
            results = await self._provider_call(
                self._tmdb.find_by_external_id,
                external_id,
                source,
                level=level,
                cancel_token=cancel_token,
            )
        except (JobCancelledError, RateLimiterStoppedError):
            raise
        except Exception as exc:
            logger.debug("TMDB find for %s %s failed: %s", source, external_id, exc)
            return None
        if not results:
            return None
        return await self._store_movie(results[0])

    async def _resolve_by_title(
        self,
        title: str,
        year: int | None,
        *,
        level: int,
        cancel_token: CancellationToken | None,
    ) -> int | None:
        query = (title or "").strip()
        if not query:
            return None
        results = await self._provider_call(
            self._tmdb.search_movies, query, level=level, cancel_token=cancel_token
        )
        best = pick_search_result(list(results or []), year)
        if best is None:
            return None
        return await self._store_movie(best)

    async def _store_movie(self, movie: TmdbMovie) -> int:
        stored = await asyncio.to_thread(
            partial(self._dao.upsert_movie, movie, image_base_url=self._image_base_url)
        )
        return stored.tmdb_id


__all__ = [
    "GuidScheme",
    "IdMatcher",
    "MatchResult",
    "MatchStrategy",
    "ParsedGuid",
    "parse_guid",
    "pick_search_result",
]
