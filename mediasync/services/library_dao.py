"""Persistence helpers for mirrored media servers, libraries and items."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from mediasync.core.types import PlexItem, PlexLibrary, PlexServer
from mediasync.db import session_scope
from mediasync.models import (
    LibraryItem,
    MediaAccountToken,
    MediaLibrary,
    MediaServer,
    UserAccessGrant,
)
from mediasync.utils.time import utcnow


@dataclass(slots=True, frozen=True)
class ServerRow:
    id: int
    machine_id: str
    name: str
    base_url: str | None


@dataclass(slots=True, frozen=True)
class LibraryRow:
    id: int
    server_id: int
    section_key: str
    title: str
    type: str
    item_count: int


@dataclass(slots=True, frozen=True)
class ItemRow:
    id: int
    library_id: int
    rating_key: str
    guid: str | None
    title: str
    year: int | None
    metadata_id: int | None
    matching_attempts: int


def _server_row(record: MediaServer) -> ServerRow:
    return ServerRow(
        id=int(record.id),
        machine_id=record.machine_id,
        name=record.name,
        base_url=record.base_url,
    )


def _library_row(record: MediaLibrary) -> LibraryRow:
    return LibraryRow(
        id=int(record.id),
        server_id=int(record.server_id),
        section_key=record.section_key,
        title=record.title,
        type=record.type,
        item_count=int(record.item_count or 0),
    )


def _item_row(record: LibraryItem) -> ItemRow:
    return ItemRow(
        id=int(record.id),
        library_id=int(record.library_id),
        rating_key=record.rating_key,
        guid=record.guid,
        title=record.title,
        year=record.year,
        metadata_id=record.metadata_id,
        matching_attempts=int(record.matching_attempts or 0),
    )


class LibraryDao:
    """Persistence facade for the external library mirror.

    Methods are synchronous and meant to run in a worker thread.
    """

    def __init__(self, *, now_factory: Callable[[], datetime] | None = None) -> None:
        self._now_factory = now_factory or utcnow

    def _now(self) -> datetime:
        return self._now_factory().replace(tzinfo=None)

    def get_account_token(self, owner_id: int) -> str | None:
        with session_scope() as session:
            token = session.execute(
                select(MediaAccountToken.token).where(MediaAccountToken.owner_id == owner_id)
            ).scalar_one_or_none()
        if token is None or not str(token).strip():
            return None
        return str(token)

    def set_account_token(self, owner_id: int, token: str) -> None:
        with session_scope() as session:
            record = session.execute(
                select(MediaAccountToken).where(MediaAccountToken.owner_id == owner_id)
            ).scalar_one_or_none()
            if record is None:
                session.add(MediaAccountToken(owner_id=owner_id, token=token))
            else:
                record.token = token

    def upsert_server(self, server: PlexServer, *, base_url: str | None) -> ServerRow:
        timestamp = self._now()
        for attempt in range(2):
            try:
                with session_scope() as session:
                    record = session.execute(
                        select(MediaServer).where(MediaServer.machine_id == server.machine_id)
                    ).scalar_one_or_none()
                    if record is None:
                        record = MediaServer(machine_id=server.machine_id, created_at=timestamp)
                        session.add(record)
                    record.name = server.name or server.machine_id
                    record.platform = server.platform
                    record.version = server.version
                    if base_url:
                        record.base_url = base_url
                    session.flush()
                    return _server_row(record)
            except IntegrityError:
                if attempt == 0:
                    continue
                raise
        raise RuntimeError("Server upsert failed after retries.")

    def mark_server_synced(self, server_id: int) -> None:
        with session_scope() as session:
            session.execute(
                update(MediaServer)
                .where(MediaServer.id == server_id)
                .values(last_synced_at=self._now())
            )

    def upsert_library(self, server_id: int, library: PlexLibrary) -> LibraryRow:
        timestamp = self._now()
        for attempt in range(2):
            try:
                with session_scope() as session:
                    record = session.execute(
                        select(MediaLibrary).where(
                            MediaLibrary.server_id == server_id,
                            MediaLibrary.section_key == library.key,
                        )
                    ).scalar_one_or_none()
                    if record is None:
                        record = MediaLibrary(
                            server_id=server_id,
                            section_key=library.key,
                            item_count=0,
                            created_at=timestamp,
                        )
                        session.add(record)
                    record.title = library.title or library.key
                    record.type = library.type or "unknown"
                    record.agent = library.agent
                    record.scanner = library.scanner
                    record.language = library.language
                    record.uuid = library.uuid
                    session.flush()
                    return _library_row(record)
            except IntegrityError:
                if attempt == 0:
                    continue
                raise
        raise RuntimeError("Library upsert failed after retries.")

    def upsert_grant(self, owner_id: int, library_id: int, *, access_level: str = "read") -> None:
        """Record that ``owner_id`` can currently see ``library_id``."""

        timestamp = self._now()
        for attempt in range(2):
            try:
                with session_scope() as session:
                    record = session.execute(
                        select(UserAccessGrant).where(
                            UserAccessGrant.owner_id == owner_id,
                            UserAccessGrant.library_id == library_id,
                        )
                    ).scalar_one_or_none()
                    if record is None:
                        session.add(
                            UserAccessGrant(
                                owner_id=owner_id,
                                library_id=library_id,
                                access_level=access_level,
                                is_active=True,
                                discovered_at=timestamp,
                                last_verified_at=timestamp,
                            )
                        )
                    else:
                        record.access_level = access_level
                        record.is_active = True
                        record.last_verified_at = timestamp
                return
            except IntegrityError:
                if attempt == 0:
                    continue
                raise

    def upsert_items(self, library_id: int, items: Sequence[PlexItem]) -> int:
        """Insert or refresh ``items``; every touched row is re-activated."""

        deduped: dict[str, PlexItem] = {}
        for item in items:
            if item.rating_key:
                deduped[item.rating_key] = item
        if not deduped:
            return 0

        timestamp = self._now()
        for attempt in range(2):
            try:
                with session_scope() as session:
                    existing = {
                        record.rating_key: record
                        for record in session.execute(
                            select(LibraryItem).where(
                                LibraryItem.library_id == library_id,
                                LibraryItem.rating_key.in_(list(deduped)),
                            )
                        ).scalars()
                    }
                    for rating_key, item in deduped.items():
                        record = existing.get(rating_key)
                        if record is None:
                            record = LibraryItem(
                                library_id=library_id,
                                rating_key=rating_key,
                                matching_attempts=0,
                                created_at=timestamp,
                            )
                            session.add(record)
                        elif record.guid != item.guid:
                            # a re-matched item in the source library needs a fresh lookup
                            record.metadata_id = None
                            record.matching_attempts = 0
                            record.last_matched_at = None
                        record.guid = item.guid
                        record.title = item.title or rating_key
                        record.year = item.year
                        record.type = item.type or "movie"
                        record.metadata_json = dict(item.metadata) or None
                        record.is_active = True
                        record.updated_at = timestamp
                return len(deduped)
            except IntegrityError:
                if attempt == 0:
                    continue
                raise
        raise RuntimeError("Item upsert failed after retries.")

    def refresh_library_stats(self, library_id: int) -> int:
        """Recompute the cached item count and stamp the library as synced."""

        with session_scope() as session:
            count = session.execute(
                select(func.count(LibraryItem.id)).where(
                    LibraryItem.library_id == library_id,
                    LibraryItem.is_active.is_(True),
                )
            ).scalar_one()
            session.execute(
                update(MediaLibrary)
                .where(MediaLibrary.id == library_id)
                .values(item_count=int(count), last_synced_at=self._now())
            )
        return int(count)

    def list_unmatched_items(
        self, owner_id: int, *, max_attempts: int, limit: int | None = None
    ) -> list[ItemRow]:
        """Active items without a metadata id in libraries the owner can see."""

        granted = select(UserAccessGrant.library_id).where(
            UserAccessGrant.owner_id == owner_id,
            UserAccessGrant.is_active.is_(True),
        )
        statement = (
            select(LibraryItem)
            .where(
                LibraryItem.library_id.in_(granted),
                LibraryItem.is_active.is_(True),
                LibraryItem.metadata_id.is_(None),
                LibraryItem.matching_attempts < max_attempts,
            )
            .order_by(LibraryItem.id.asc())
        )
        if limit is not None:
            statement = statement.limit(max(1, int(limit)))
        with session_scope() as session:
            return [_item_row(record) for record in session.execute(statement).scalars()]

    def record_match(self, item_id: int, metadata_id: int) -> None:
        with session_scope() as session:
            session.execute(
                update(LibraryItem)
                .where(LibraryItem.id == item_id)
                .values(metadata_id=int(metadata_id), last_matched_at=self._now())
            )

    def record_match_failure(self, item_id: int) -> None:
        with session_scope() as session:
            session.execute(
                update(LibraryItem)
                .where(LibraryItem.id == item_id)
                .values(
                    matching_attempts=LibraryItem.matching_attempts + 1,
                    last_matched_at=self._now(),
                )
            )

    def deactivate_stale_items(self, library_ids: Iterable[int], *, cutoff: datetime) -> int:
        """Deactivate items of ``library_ids`` not refreshed since ``cutoff``."""

        ids = sorted({int(value) for value in library_ids})
        if not ids:
            return 0
        with session_scope() as session:
            result = session.execute(
                update(LibraryItem)
                .where(
                    LibraryItem.library_id.in_(ids),
                    LibraryItem.is_active.is_(True),
                    LibraryItem.updated_at < cutoff,
                )
                .values(is_active=False)
            )
            return int(result.rowcount or 0)


__all__ = ["ItemRow", "LibraryDao", "LibraryRow", "ServerRow"]
