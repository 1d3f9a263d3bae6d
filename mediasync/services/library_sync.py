"""Full library sync: discovery, item mirroring, ID matching and stale cleanup."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from functools import partial
from typing import Any, Mapping

from mediasync.config import SyncConfig
from mediasync.core.errors import JobCancelledError, MissingCredentialsError
from mediasync.core.plex_client import PlexClientRateLimitedError
from mediasync.core.types import PlexItem
from mediasync.logging import get_logger
from mediasync.orchestrator.handlers import JobContext
from mediasync.services.id_matcher import IdMatcher
from mediasync.services.library_dao import LibraryDao, LibraryRow
from mediasync.services.rate_limiter import RateLimiterStoppedError
from mediasync.utils.retry import with_retry
from mediasync.utils.time import utcnow
from mediasync.workers.persistence import JobDTO

logger = get_logger(__name__)

DEFAULT_SYNC_CONFIG = SyncConfig(
    max_matching_attempts=3,
    match_priority=0,
    stale_item_grace_s=3600,
    page_size=100,
)

_PAGE_RETRY_ATTEMPTS = 3
_PAGE_RETRY_BASE_MS = 500


@dataclass(slots=True)
class _DiscoveredLibrary:
    row: LibraryRow
    server_url: str
    token: str


@dataclass(slots=True)
class SyncSummary:
    libraries: int = 0
    synced_libraries: int = 0
    failed_libraries: int = 0
    items_synced: int = 0
    matched: int = 0
    match_failed: int = 0
    deactivated: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "libraries": self.libraries,
            "synced_libraries": self.synced_libraries,
            "failed_libraries": self.failed_libraries,
            "items_synced": self.items_synced,
            "matched": self.matched,
            "match_failed": self.match_failed,
            "deactivated": self.deactivated,
        }


def _scaled(start: int, end: int, done: float, total: float) -> int:
    if total <= 0:
        return start
    return start + int((end - start) * min(done, total) / total)


class LibrarySyncService:
    """Processor for ``full_sync`` jobs plus the stand-alone matching pass."""

    def __init__(
        self,
        plex_client: Any,
        matcher: IdMatcher,
        *,
        config: SyncConfig | None = None,
        dao: LibraryDao | None = None,
    ) -> None:
        self._plex = plex_client
        self._matcher = matcher
        self._config = config or DEFAULT_SYNC_CONFIG
        self._dao = dao or LibraryDao()

    async def process(self, job: JobDTO, context: JobContext) -> Mapping[str, Any]:
        if job.owner_id is None:
            raise ValueError("full sync requires an owner")
        owner_id = job.owner_id
        run_started = utcnow()
        summary = SyncSummary()

        token = await asyncio.to_thread(self._dao.get_account_token, owner_id)
        if token is None:
            raise MissingCredentialsError(owner_id)

        context.checkpoint()
        await context.report(10, "Discovering Plex servers and libraries")
        libraries = await self._discover(owner_id, token, context)
        summary.libraries = len(libraries)
        if not libraries:
            await context.report(100, "No accessible libraries found")
            return {"sync": summary.as_dict()}

        context.checkpoint()
        await context.report(20, "Syncing library contents")
        synced_ids = await self._sync_libraries(libraries, context, summary)

        context.checkpoint()
        await context.report(80, "Matching items with TMDB")
        try:
            match_summary = await self._match_items(
                owner_id, context, progress_range=(80, 95), report_counters=False
            )
        except (JobCancelledError, RateLimiterStoppedError):
            raise
        except Exception as exc:
            logger.warning("ID matching for owner %s failed: %s", owner_id, exc)
            summary.errors.append(f"matching: {exc}")
        else:
            summary.matched = match_summary["matched"]
            summary.match_failed = match_summary["failed"]

        context.checkpoint()
        await context.report(95, "Cleaning up removed items")
        cutoff = run_started - timedelta(seconds=self._config.stale_item_grace_s)
        try:
            summary.deactivated = await asyncio.to_thread(
                partial(self._dao.deactivate_stale_items, synced_ids, cutoff=cutoff)
            )
        except Exception as exc:
            logger.warning("Stale item cleanup for owner %s failed: %s", owner_id, exc)
            summary.errors.append(f"cleanup: {exc}")

        await context.report(100, "Sync completed")
        logger.info(
            "Full sync completed for owner %s: %s items synced, %s libraries failed, %s matched",
            owner_id,
            summary.items_synced,
            summary.failed_libraries,
            summary.matched,
        )
        result: dict[str, Any] = {"sync": summary.as_dict()}
        if summary.errors:
            result["warnings"] = list(summary.errors)
        return result

    async def match_owner_items(
        self,
        owner_id: int,
        *,
        context: JobContext,
        progress_range: tuple[int, int] = (80, 95),
    ) -> dict[str, int]:
        """Resolve the owner's unmatched items and report per-item counters."""

        return await self._match_items(
            owner_id, context, progress_range=progress_range, report_counters=True
        )

    async def _discover(
        self, owner_id: int, token: str, context: JobContext
    ) -> list[_DiscoveredLibrary]:
        servers = await self._plex.get_servers(token)
        discovered: list[_DiscoveredLibrary] = []
        for server in servers:
            context.checkpoint()
            connection = server.best_connection()
            server_url = connection.url if connection is not None else None
            try:
                server_row = await asyncio.to_thread(
                    partial(self._dao.upsert_server, server, base_url=server_url)
                )
                if server_url is None:
                    logger.warning("Plex server %s has no usable connection", server.name)
                    continue
                server_token = server.access_token or token
                libraries = await self._plex.get_libraries(server_token, server_url)
                for library in libraries:
                    row = await asyncio.to_thread(self._dao.upsert_library, server_row.id, library)
                    await asyncio.to_thread(self._dao.upsert_grant, owner_id, row.id)
                    discovered.append(
                        _DiscoveredLibrary(row=row, server_url=server_url, token=server_token)
                    )
                await asyncio.to_thread(self._dao.mark_server_synced, server_row.id)
            except JobCancelledError:
                raise
            except Exception as exc:
                logger.warning("Skipping Plex server %s: %s", server.name or server.machine_id, exc)
        return discovered

    async def _sync_libraries(
        self,
        libraries: list[_DiscoveredLibrary],
        context: JobContext,
        summary: SyncSummary,
    ) -> list[int]:
        movie_libraries = [entry for entry in libraries if entry.row.type == "movie"]
        synced: list[int] = []
        for index, entry in enumerate(movie_libraries):
            context.checkpoint()
            try:
                count = await self._sync_library(
                    entry,
                    context,
                    index=index,
                    library_total=len(movie_libraries),
                    summary=summary,
                )
            except JobCancelledError:
                raise
            except Exception as exc:
                logger.warning("Failed to sync library %s: %s", entry.row.title, exc)
                summary.failed_libraries += 1
                await context.report(
                    step=f"Failed library: {entry.row.title}",
                    failed=summary.failed_libraries,
                )
                continue
            synced.append(entry.row.id)
            summary.synced_libraries += 1
            await context.report(
                _scaled(20, 80, index + 1, len(movie_libraries)),
                f"Synced library: {entry.row.title} ({count} items)",
                total=summary.items_synced,
                processed=summary.items_synced,
                successful=summary.items_synced,
                failed=summary.failed_libraries,
            )
        return synced

    async def _sync_library(
        self,
        entry: _DiscoveredLibrary,
        context: JobContext,
        *,
        index: int,
        library_total: int,
        summary: SyncSummary,
    ) -> int:
        page_size = max(1, int(self._config.page_size))
        offset = 0
        synced = 0
        while True:
            context.checkpoint()
            page = await with_retry(
                partial(
                    self._plex.get_library_items,
                    entry.token,
                    entry.server_url,
                    entry.row.section_key,
                    start=offset,
                    size=page_size,
                ),
                attempts=_PAGE_RETRY_ATTEMPTS,
                base_ms=_PAGE_RETRY_BASE_MS,
                jitter_pct=20,
                timeout_ms=None,
                classify_err=lambda exc: isinstance(exc, PlexClientRateLimitedError),
                cancel_token=context.cancel_token,
            )
            items: tuple[PlexItem, ...] = page.items
            if items:
                synced += await asyncio.to_thread(self._dao.upsert_items, entry.row.id, items)
                summary.items_synced += len(items)
            offset += len(items)
            if page.total:
                await context.report(
                    _scaled(20, 80, index + min(offset, page.total) / page.total, library_total),
                    f"Syncing library: {entry.row.title}",
                )
            if len(items) < page_size:
                break
            if page.total is not None and offset >= page.total:
                break
        await asyncio.to_thread(self._dao.refresh_library_stats, entry.row.id)
        return synced

    async def _match_items(
        self,
        owner_id: int,
        context: JobContext,
        *,
        progress_range: tuple[int, int],
        report_counters: bool,
    ) -> dict[str, int]:
        start, end = progress_range
        items = await asyncio.to_thread(
            partial(
                self._dao.list_unmatched_items,
                owner_id,
                max_attempts=self._config.max_matching_attempts,
            )
        )
        matched = 0
        failed = 0
        total = len(items)
        if report_counters:
            await context.report(start, f"Matching {total} items", total=total)
        for position, item in enumerate(items):
            context.checkpoint()
            counters: dict[str, int] = {}
            if report_counters:
                counters = {"processed": position, "successful": matched, "failed": failed}
            await context.report(
                _scaled(start, end, position, total),
                f"Matching with TMDB: {item.title}",
                **counters,
            )
            try:
                result = await self._matcher.resolve(
                    item.guid,
                    item.title,
                    item.year,
                    rating_key=item.rating_key,
                    priority=self._config.match_priority,
                    cancel_token=context.cancel_token,
                )
            except (JobCancelledError, RateLimiterStoppedError):
                raise
            except Exception as exc:
                logger.debug("Failed to match %s: %s", item.title, exc)
                result = None
            if result is None:
                await asyncio.to_thread(self._dao.record_match_failure, item.id)
                failed += 1
            else:
                await asyncio.to_thread(self._dao.record_match, item.id, result.metadata_id)
                matched += 1
        if report_counters:
            await context.report(
                end,
                "Matching finished",
                processed=total,
                successful=matched,
                failed=failed,
            )
        return {"total": total, "matched": matched, "failed": failed}


__all__ = ["DEFAULT_SYNC_CONFIG", "LibrarySyncService", "SyncSummary"]
