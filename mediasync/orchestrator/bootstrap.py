"""Bootstrap helpers wiring the sync engine components together."""

from __future__ import annotations

from dataclasses import dataclass

from mediasync.config import AppConfig, load_config
from mediasync.core.plex_client import PlexClient
from mediasync.core.tmdb_client import TmdbClient
from mediasync.db import init_db
from mediasync.logging import get_logger
from mediasync.orchestrator.handlers import ProcessorRegistry, build_processor_registry
from mediasync.orchestrator.job_manager import JobManager
from mediasync.orchestrator.timer import CleanupTimer
from mediasync.services.cleanup_service import CleanupService
from mediasync.services.id_matcher import IdMatcher
from mediasync.services.library_sync import LibrarySyncService
from mediasync.services.rate_limiter import TokenBucketRateLimiter

logger = get_logger(__name__)


@dataclass(slots=True)
class SyncEngine:
    """Container holding every long-lived engine component."""

    config: AppConfig
    plex_client: PlexClient
    tmdb_client: TmdbClient
    rate_limiter: TokenBucketRateLimiter
    matcher: IdMatcher
    sync_service: LibrarySyncService
    cleanup_service: CleanupService
    registry: ProcessorRegistry
    job_manager: JobManager
    cleanup_timer: CleanupTimer

    async def start(self, *, with_timer: bool = True) -> None:
        await self.rate_limiter.start()
        await self.job_manager.start()
        if with_timer:
            await self.cleanup_timer.start()
        logger.info("Sync engine started")

    async def stop(self) -> None:
        await self.cleanup_timer.stop()
        await self.job_manager.stop()
        await self.rate_limiter.stop()
        await self.plex_client.close()
        logger.info("Sync engine stopped")


def build_engine(config: AppConfig | None = None) -> SyncEngine:
    """Create the engine graph; call :meth:`SyncEngine.start` inside a loop."""

    resolved = config or load_config()
    init_db()

    plex_client = PlexClient(resolved.plex)
    tmdb_client = TmdbClient(
        api_key=resolved.tmdb.api_key,
        base_url=resolved.tmdb.base_url,
        image_base_url=resolved.tmdb.image_base_url,
        timeout_ms=resolved.tmdb.timeout_ms,
    )
    rate_limiter = TokenBucketRateLimiter(resolved.rate_limiter)
    matcher = IdMatcher(
        tmdb_client,
        rate_limiter,
        image_base_url=resolved.tmdb.image_base_url,
        priority=resolved.sync.match_priority,
    )
    sync_service = LibrarySyncService(plex_client, matcher, config=resolved.sync)
    cleanup_service = CleanupService(resolved.cleanup)
    registry = build_processor_registry(
        sync_service=sync_service, cleanup_service=cleanup_service
    )
    job_manager = JobManager(registry, config=resolved.jobs)
    cleanup_timer = CleanupTimer(cleanup_service, config=resolved.cleanup)
    return SyncEngine(
        config=resolved,
        plex_client=plex_client,
        tmdb_client=tmdb_client,
        rate_limiter=rate_limiter,
        matcher=matcher,
        sync_service=sync_service,
        cleanup_service=cleanup_service,
        registry=registry,
        job_manager=job_manager,
        cleanup_timer=cleanup_timer,
    )


__all__ = ["SyncEngine", "build_engine"]
