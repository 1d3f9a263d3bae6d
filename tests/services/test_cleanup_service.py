from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from mediasync.config import CleanupConfig
from mediasync.db import session_scope
from mediasync.models import (
    ExternalIdMapping,
    JobStatus,
    JobType,
    LibraryItem,
    MediaLibrary,
    SyncJob,
    UserAccessGrant,
)
from mediasync.services.cleanup_service import CleanupService
from mediasync.utils.time import utcnow
from tests.helpers import seed_item, seed_library


def _seed_world() -> dict[str, int]:
    now = utcnow()
    visible = seed_library(owner_id=1, section_key="1", verified_at=now)
    stale = seed_library(owner_id=1, section_key="2", verified_at=now - timedelta(days=40))
    ids = {
        "visible": visible,
        "stale": stale,
        "matched": seed_item(visible, "a1", guid="tmdb://1", metadata_id=1),
        "given_up": seed_item(visible, "a2", attempts=3),
        "retrying": seed_item(visible, "a3", attempts=2),
        "hidden": seed_item(stale, "b1", guid="tmdb://2", metadata_id=2),
    }
    with session_scope() as session:
        session.add_all(
            [
                ExternalIdMapping(guid="tmdb://1", metadata_id=1),
                ExternalIdMapping(guid="tmdb://gone", metadata_id=99),
                SyncJob(
                    type=JobType.FULL_SYNC.value,
                    owner_id=1,
                    status=JobStatus.COMPLETED.value,
                    created_at=now - timedelta(days=11),
                    completed_at=now - timedelta(days=10),
                ),
                SyncJob(
                    type=JobType.FULL_SYNC.value,
                    owner_id=1,
                    status=JobStatus.FAILED.value,
                    created_at=now - timedelta(days=1),
                    completed_at=now - timedelta(days=1),
                ),
                SyncJob(
                    type=JobType.CLEANUP.value,
                    status=JobStatus.CANCELLED.value,
                    created_at=now - timedelta(days=8),
                ),
                SyncJob(
                    type=JobType.METADATA_MATCHING.value,
                    owner_id=1,
                    status=JobStatus.PENDING.value,
                    created_at=now - timedelta(days=30),
                ),
            ]
        )
    return ids


@pytest.mark.asyncio
async def test_full_cleanup_runs_every_step_in_order(database: None) -> None:
    ids = _seed_world()
    service = CleanupService()

    report = await service.run_full_cleanup()

    assert list(report.steps) == [
        "inactive_access",
        "orphaned_items",
        "unmatched_items",
        "orphaned_mappings",
        "library_counts",
        "old_jobs",
    ]
    assert report.steps == {
        "inactive_access": 1,
        "orphaned_items": 1,
        "unmatched_items": 1,
        "orphaned_mappings": 1,
        "library_counts": 1,
        "old_jobs": 2,
    }
    assert report.ok
    assert report.total_changes == 7

    with session_scope() as session:
        grants = {
            grant.library_id: grant.is_active
            for grant in session.execute(select(UserAccessGrant)).scalars()
        }
        items = {item.rating_key: item for item in session.execute(select(LibraryItem)).scalars()}
        mappings = [row.guid for row in session.execute(select(ExternalIdMapping)).scalars()]
        visible = session.get(MediaLibrary, ids["visible"])
        statuses = sorted(row.status for row in session.execute(select(SyncJob)).scalars())

    assert grants == {ids["visible"]: True, ids["stale"]: False}
    assert sorted(items) == ["a1", "a2", "a3"]
    assert items["a2"].is_active is False
    assert items["a3"].is_active is True
    assert mappings == ["tmdb://1"]
    assert visible.item_count == 2
    assert statuses == ["failed", "pending"]


@pytest.mark.asyncio
async def test_second_cleanup_run_changes_nothing(database: None) -> None:
    _seed_world()
    service = CleanupService()

    await service.run_full_cleanup()
    again = await service.run_full_cleanup()

    assert again.ok
    assert again.total_changes == 0
    assert all(value == 0 for value in again.steps.values())


class _BrokenMappingCleanup(CleanupService):
    def _delete_orphaned_mappings(self, session: Session, now) -> int:
        raise RuntimeError("mapping table locked")


@pytest.mark.asyncio
async def test_failing_step_is_reported_and_later_steps_still_run(database: None) -> None:
    _seed_world()

    report = await _BrokenMappingCleanup().run_full_cleanup()

    assert report.ok is False
    assert report.steps["orphaned_mappings"] is None
    assert report.errors == {"orphaned_mappings": "mapping table locked"}
    assert report.steps["old_jobs"] == 2
    payload = report.as_dict()
    assert payload["total_changes"] == 6
    assert payload["errors"] == {"orphaned_mappings": "mapping table locked"}


@pytest.mark.asyncio
async def test_stats_reflect_the_cleaned_mirror(database: None) -> None:
    _seed_world()
    service = CleanupService()

    before = await service.collect_stats()
    await service.run_full_cleanup()
    after = await service.collect_stats()

    assert before == {
        "total_active_items": 4,
        "unmatched_items": 2,
        "active_user_access": 2,
        "pending_sync_jobs": 1,
    }
    assert after == {
        "total_active_items": 2,
        "unmatched_items": 1,
        "active_user_access": 1,
        "pending_sync_jobs": 1,
    }


def test_custom_thresholds_are_honoured(database: None) -> None:
    library_id = seed_library(owner_id=1)
    seed_item(library_id, "x", attempts=2)
    strict = CleanupService(
        CleanupConfig(
            enabled=True,
            interval_s=60.0,
            access_stale_days=30,
            unmatched_max_attempts=2,
            job_retention_days=7,
        )
    )

    report = strict.run_full_cleanup_sync()

    assert report.steps["unmatched_items"] == 1
