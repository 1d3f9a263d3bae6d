"""Recording fakes shared by the sync engine tests."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping
from datetime import datetime
from typing import Any

from sqlalchemy import select

from mediasync.core.plex_client import PlexClientError
from mediasync.core.types import (
    ItemPage,
    PlexConnection,
    PlexItem,
    PlexLibrary,
    PlexServer,
    TmdbMovie,
)
from mediasync.db import session_scope
from mediasync.models import (
    LibraryItem,
    MediaAccountToken,
    MediaLibrary,
    MediaServer,
    UserAccessGrant,
)


class PassthroughLimiter:
    """Runs callbacks immediately and records the priorities used."""

    def __init__(self) -> None:
        self.priorities: list[int] = []

    async def execute(
        self,
        callback: Callable[[], Awaitable[Any]],
        priority: int = 0,
        *,
        cancel_token: Any = None,
    ) -> Any:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        self.priorities.append(priority)
        return await callback()


class FakeTmdb:
    def __init__(
        self,
        *,
        movies: Mapping[int, TmdbMovie] | None = None,
        external: Mapping[tuple[str, str], list[TmdbMovie]] | None = None,
        search: Mapping[str, list[TmdbMovie]] | None = None,
        fail_get: bool = False,
    ) -> None:
        self.movies = dict(movies or {})
        self.external = dict(external or {})
        self.search = dict(search or {})
        self.fail_get = fail_get
        self.calls: list[tuple[str, Any]] = []

    async def get_movie(self, tmdb_id: int) -> TmdbMovie | None:
        self.calls.append(("get_movie", tmdb_id))
        if self.fail_get:
            raise RuntimeError("TMDB rejected the request")
        return self.movies.get(tmdb_id)

    async def find_by_external_id(self, external_id: str, source: str) -> list[TmdbMovie]:
        self.calls.append(("find", (external_id, source)))
        return list(self.external.get((external_id, source), []))

    async def search_movies(self, query: str, *, year: int | None = None) -> list[TmdbMovie]:
        self.calls.append(("search", query))
        return list(self.search.get(query, []))


def movie(tmdb_id: int, title: str, year: int | None = None) -> TmdbMovie:
    release = f"{year}-06-01" if year else None
    return TmdbMovie(id=tmdb_id, title=title, release_date=release, poster_path="/p.jpg")


def plex_server(name: str = "Home", machine_id: str = "machine-1") -> PlexServer:
    return PlexServer(
        name=name,
        machine_id=machine_id,
        access_token="server-token",
        connections=(
            PlexConnection(
                uri="https://10-0-0-1.plex.direct:32400",
                protocol="https",
                address="10.0.0.1",
                port=32400,
            ),
        ),
    )


def plex_item(rating_key: str, title: str, guid: str | None, year: int | None = None) -> PlexItem:
    return PlexItem(rating_key=rating_key, title=title, guid=guid, year=year)


class FakePlex:
    """In-memory media server exposing the paged client surface."""

    def __init__(
        self,
        *,
        servers: Iterable[PlexServer] = (),
        libraries: Mapping[str, list[PlexLibrary]] | None = None,
        items: Mapping[str, list[PlexItem]] | None = None,
        failing_sections: Iterable[str] = (),
        fail_servers: bool = False,
    ) -> None:
        self.servers = list(servers)
        self.libraries = dict(libraries or {})
        self.items = dict(items or {})
        self.failing_sections = set(failing_sections)
        self.fail_servers = fail_servers
        self.page_requests: list[tuple[str, int, int]] = []
        self.item_delay = 0.0

    async def get_servers(self, token: str) -> list[PlexServer]:
        if self.fail_servers:
            raise PlexClientError("Plex resources request failed", status=500)
        return list(self.servers)

    async def get_libraries(self, token: str, server_url: str) -> list[PlexLibrary]:
        return list(self.libraries.get(server_url, []))

    async def get_library_items(
        self,
        token: str,
        server_url: str,
        section_key: str,
        *,
        start: int = 0,
        size: int = 100,
    ) -> ItemPage:
        self.page_requests.append((section_key, start, size))
        if self.item_delay:
            await asyncio.sleep(self.item_delay)
        if section_key in self.failing_sections:
            raise PlexClientError(f"section {section_key} unavailable", status=500)
        entries = self.items.get(section_key, [])
        return ItemPage(
            items=tuple(entries[start : start + size]),
            offset=start,
            total=len(entries),
        )

    async def close(self) -> None:
        return None


def store_token(owner_id: int, token: str = "account-token") -> None:
    with session_scope() as session:
        session.add(MediaAccountToken(owner_id=owner_id, token=token))


def seed_library(
    *,
    owner_id: int | None = 1,
    section_key: str = "1",
    grant_active: bool = True,
    verified_at: datetime | None = None,
    machine_id: str = "machine-1",
) -> int:
    """Create a server, a movie library and optionally an owner grant."""

    with session_scope() as session:
        server = session.execute(
            select(MediaServer).where(MediaServer.machine_id == machine_id)
        ).scalar_one_or_none()
        if server is None:
            server = MediaServer(machine_id=machine_id, name="Home")
            session.add(server)
            session.flush()
        library = MediaLibrary(
            server_id=server.id, section_key=section_key, title="Movies", type="movie"
        )
        session.add(library)
        session.flush()
        if owner_id is not None:
            grant = UserAccessGrant(owner_id=owner_id, library_id=library.id, is_active=grant_active)
            if verified_at is not None:
                grant.last_verified_at = verified_at
            session.add(grant)
        return int(library.id)


def seed_item(
    library_id: int,
    rating_key: str,
    *,
    title: str = "Movie",
    guid: str | None = None,
    year: int | None = None,
    metadata_id: int | None = None,
    attempts: int = 0,
    is_active: bool = True,
    updated_at: datetime | None = None,
) -> int:
    with session_scope() as session:
        item = LibraryItem(
            library_id=library_id,
            rating_key=rating_key,
            title=title,
            guid=guid,
            year=year,
            metadata_id=metadata_id,
            matching_attempts=attempts,
            is_active=is_active,
        )
        if updated_at is not None:
            item.updated_at = updated_at
        session.add(item)
        session.flush()
        return int(item.id)
