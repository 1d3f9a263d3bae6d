from __future__ import annotations

from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy import select

from mediasync.config import SyncConfig, load_config
from mediasync.core.errors import JobCancelledError, MissingCredentialsError
from mediasync.core.types import PlexLibrary
from mediasync.db import session_scope
from mediasync.models import JobStatus, JobType, LibraryItem, MediaLibrary, UserAccessGrant
from mediasync.orchestrator.handlers import JobContext, MetadataMatchingProcessor
from mediasync.services.cleanup_service import CleanupService
from mediasync.services.id_matcher import IdMatcher
from mediasync.services.library_sync import LibrarySyncService
from mediasync.utils.time import utcnow
from mediasync.workers.persistence import JobDTO
from tests.helpers import (
    FakePlex,
    FakeTmdb,
    PassthroughLimiter,
    movie,
    plex_item,
    plex_server,
    seed_item,
    seed_library,
    store_token,
)

SERVER_URL = "https://10-0-0-1.plex.direct:32400"


class RecordingReporter:
    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.on_step = None

    async def __call__(self, job_id: int, **values: Any) -> bool:
        self.calls.append(values)
        if self.on_step is not None:
            self.on_step(values.get("step"))
        return True

    @property
    def steps(self) -> list[str]:
        return [call["step"] for call in self.calls if call.get("step")]

    @property
    def progress(self) -> list[int]:
        return [call["progress"] for call in self.calls if call.get("progress") is not None]


def _context(job_type: JobType = JobType.FULL_SYNC, owner_id: int = 1):
    job = JobDTO(id=1, type=job_type, status=JobStatus.RUNNING, owner_id=owner_id)
    reporter = RecordingReporter()
    return job, JobContext(job=job, reporter=reporter), reporter


def _service(plex: FakePlex, tmdb: FakeTmdb | None = None, **config: Any) -> LibrarySyncService:
    options = {
        "max_matching_attempts": 3,
        "match_priority": 0,
        "stale_item_grace_s": 3600,
        "page_size": 100,
    }
    options.update(config)
    matcher = IdMatcher(tmdb or FakeTmdb(), PassthroughLimiter())
    return LibrarySyncService(plex, matcher, config=SyncConfig(**options))


def _movies_library(key: str = "1", title: str = "Movies") -> PlexLibrary:
    return PlexLibrary(key=key, title=title, type="movie")


def _items() -> list[LibraryItem]:
    with session_scope() as session:
        return list(
            session.execute(select(LibraryItem).order_by(LibraryItem.rating_key)).scalars()
        )


@pytest.mark.asyncio
async def test_full_sync_mirrors_libraries_and_matches_items(database: None) -> None:
    store_token(1)
    plex = FakePlex(
        servers=[plex_server()],
        libraries={
            SERVER_URL: [_movies_library(), PlexLibrary(key="2", title="Shows", type="show")]
        },
        items={
            "1": [
                plex_item("101", "The Matrix", "com.plexapp.agents.themoviedb://603?lang=en", 1999),
                plex_item("102", "Inception", "imdb://tt1375666", 2010),
                plex_item("103", "Home Video", "local://103"),
            ]
        },
    )
    tmdb = FakeTmdb(
        movies={603: movie(603, "The Matrix", 1999)},
        external={("tt1375666", "imdb_id"): [movie(27205, "Inception", 2010)]},
    )
    job, context, reporter = _context()

    result = await _service(plex, tmdb).process(job, context)

    summary = result["sync"]
    assert summary["libraries"] == 2
    assert summary["synced_libraries"] == 1
    assert summary["failed_libraries"] == 0
    assert summary["items_synced"] == 3
    assert summary["matched"] == 2
    assert summary["match_failed"] == 1
    assert "warnings" not in result

    rows = {row.rating_key: row for row in _items()}
    assert rows["101"].metadata_id == 603
    assert rows["102"].metadata_id == 27205
    assert rows["103"].metadata_id is None
    assert rows["103"].matching_attempts == 1

    with session_scope() as session:
        grants = session.execute(select(UserAccessGrant)).scalars().all()
        movies = session.execute(
            select(MediaLibrary).where(MediaLibrary.section_key == "1")
        ).scalar_one()
    assert len(grants) == 2
    assert all(grant.is_active for grant in grants)
    assert movies.item_count == 3
    assert movies.last_synced_at is not None

    assert reporter.steps[0] == "Discovering Plex servers and libraries"
    assert "Syncing library contents" in reporter.steps
    assert "Matching items with TMDB" in reporter.steps
    assert "Cleaning up removed items" in reporter.steps
    assert reporter.steps[-1] == "Sync completed"
    assert reporter.progress == sorted(reporter.progress)
    assert reporter.progress[-1] == 100


@pytest.mark.asyncio
async def test_missing_account_token_fails_the_job(database: None) -> None:
    job, context, _ = _context()

    with pytest.raises(MissingCredentialsError):
        await _service(FakePlex(servers=[plex_server()])).process(job, context)


@pytest.mark.asyncio
async def test_no_accessible_libraries_completes_early(database: None) -> None:
    store_token(1)
    job, context, reporter = _context()

    result = await _service(FakePlex(servers=[])).process(job, context)

    assert result["sync"]["libraries"] == 0
    assert reporter.calls[-1]["progress"] == 100
    assert reporter.calls[-1]["step"] == "No accessible libraries found"


@pytest.mark.asyncio
async def test_server_discovery_failure_propagates(database: None) -> None:
    store_token(1)
    job, context, _ = _context()

    with pytest.raises(Exception, match="resources request failed"):
        await _service(FakePlex(fail_servers=True)).process(job, context)


@pytest.mark.asyncio
async def test_failing_library_is_counted_and_others_continue(database: None) -> None:
    store_token(1)
    plex = FakePlex(
        servers=[plex_server()],
        libraries={SERVER_URL: [_movies_library("1"), _movies_library("2", "Films 4K")]},
        items={"2": [plex_item("201", "Alien", None, 1979)]},
        failing_sections={"1"},
    )
    job, context, reporter = _context()

    result = await _service(plex).process(job, context)

    summary = result["sync"]
    assert summary["failed_libraries"] == 1
    assert summary["synced_libraries"] == 1
    assert summary["items_synced"] == 1
    assert [row.rating_key for row in _items()] == ["201"]
    assert any(call.get("failed") == 1 for call in reporter.calls)


@pytest.mark.asyncio
async def test_items_missing_from_a_sync_are_deactivated(database: None) -> None:
    store_token(1)
    library_id = seed_library(owner_id=1, section_key="1")
    seed_item(
        library_id,
        "gone",
        title="Removed Movie",
        metadata_id=42,
        updated_at=utcnow() - timedelta(hours=3),
    )
    plex = FakePlex(
        servers=[plex_server()],
        libraries={SERVER_URL: [_movies_library("1")]},
        items={"1": [plex_item("101", "Heat", None, 1995)]},
    )
    job, context, _ = _context()

    result = await _service(plex).process(job, context)

    assert result["sync"]["deactivated"] == 1
    rows = {row.rating_key: row for row in _items()}
    assert rows["gone"].is_active is False
    assert rows["101"].is_active is True


@pytest.mark.asyncio
async def test_items_are_fetched_in_pages(database: None) -> None:
    store_token(1)
    plex = FakePlex(
        servers=[plex_server()],
        libraries={SERVER_URL: [_movies_library("1")]},
        items={"1": [plex_item(str(key), f"Movie {key}", None) for key in range(5)]},
    )
    job, context, _ = _context()

    result = await _service(plex, page_size=2).process(job, context)

    assert result["sync"]["items_synced"] == 5
    assert plex.page_requests == [("1", 0, 2), ("1", 2, 2), ("1", 4, 2)]
    assert len(_items()) == 5


@pytest.mark.asyncio
async def test_cancellation_stops_at_next_checkpoint(database: None) -> None:
    store_token(1)
    plex = FakePlex(
        servers=[plex_server()],
        libraries={SERVER_URL: [_movies_library("1")]},
        items={"1": [plex_item("101", "Heat", None, 1995)]},
    )
    job, context, reporter = _context()

    def _cancel_on_sync(step: str | None) -> None:
        if step == "Syncing library contents":
            context.cancel_token.cancel("Job cancelled by user")

    reporter.on_step = _cancel_on_sync

    with pytest.raises(JobCancelledError):
        await _service(plex).process(job, context)

    assert _items() == []
    assert "Sync completed" not in reporter.steps


@pytest.mark.asyncio
async def test_matching_processor_reports_item_counters(database: None) -> None:
    library_id = seed_library(owner_id=1)
    seed_item(library_id, "1", title="Up", guid="plex://movie/5d7768258df361001bdc8b4b", year=2009)
    seed_item(library_id, "2", title="Unknown Thing")
    seed_item(library_id, "3", title="Given Up", attempts=3)
    tmdb = FakeTmdb(search={"Up": [movie(14160, "Up", 2009)]})
    service = _service(FakePlex(), tmdb)
    job, context, reporter = _context(JobType.METADATA_MATCHING)

    result = await MetadataMatchingProcessor(service).process(job, context)

    assert result == {"matching": {"total": 2, "matched": 1, "failed": 1}}
    final = reporter.calls[-1]
    assert final["processed"] == 2
    assert final["successful"] == 1
    assert final["failed"] == 1
    assert [call[0] for call in tmdb.calls] == ["search", "search"]


@pytest.mark.asyncio
async def test_items_that_exhaust_matching_attempts_are_deactivated_by_cleanup(
    database: None,
) -> None:
    config = load_config({})
    library_id = seed_library(owner_id=1)
    item_id = seed_item(library_id, "1", title="Nowhere To Be Found")
    tmdb = FakeTmdb()
    matcher = IdMatcher(tmdb, PassthroughLimiter())
    service = LibrarySyncService(FakePlex(), matcher, config=config.sync)

    for _ in range(config.sync.max_matching_attempts + 3):
        job, context, _ = _context(JobType.METADATA_MATCHING)
        await MetadataMatchingProcessor(service).process(job, context)

    report = await CleanupService(config.cleanup).run_full_cleanup()

    (item,) = _items()
    assert item.id == item_id
    assert item.matching_attempts == config.sync.max_matching_attempts
    assert len(tmdb.calls) == config.sync.max_matching_attempts
    assert report.steps["unmatched_items"] == 1
    assert item.is_active is False
