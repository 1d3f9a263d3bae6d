"""Periodic maintenance of the library mirror and the job table."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.orm import Session

from mediasync.config import CleanupConfig
from mediasync.db import session_scope
from mediasync.logging import get_logger
from mediasync.logging_events import log_event
from mediasync.models import (
    ACTIVE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    ExternalIdMapping,
    LibraryItem,
    MediaLibrary,
    SyncJob,
    UserAccessGrant,
)
from mediasync.utils.time import utcnow

logger = get_logger(__name__)

DEFAULT_CLEANUP_CONFIG = CleanupConfig(
    enabled=True,
    interval_s=6 * 3600.0,
    access_stale_days=30,
    unmatched_max_attempts=3,
    job_retention_days=7,
)


@dataclass(slots=True)
class CleanupReport:
    """Rows touched by each cleanup step; ``None`` marks a failed step."""

    steps: dict[str, int | None] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    started_at: datetime | None = None
    duration_ms: int = 0

    @property
    def total_changes(self) -> int:
        return sum(value for value in self.steps.values() if value)

    @property
    def ok(self) -> bool:
        return not self.errors

    def as_dict(self) -> dict[str, Any]:
        return {
            "steps": dict(self.steps),
            "errors": dict(self.errors),
            "total_changes": self.total_changes,
            "duration_ms": self.duration_ms,
        }


def _bulk(session: Session, statement: Any) -> int:
    result = session.execute(statement, execution_options={"synchronize_session": False})
    return int(result.rowcount or 0)


class CleanupService:
    """Runs the ordered maintenance steps against the database."""

    def __init__(
        self,
        config: CleanupConfig | None = None,
        *,
        now_factory: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config or DEFAULT_CLEANUP_CONFIG
        self._now_factory = now_factory or utcnow

    @property
    def config(self) -> CleanupConfig:
        return self._config

    def _steps(self) -> list[tuple[str, Callable[[Session, datetime], int]]]:
        return [
            ("inactive_access", self._deactivate_stale_access),
            ("orphaned_items", self._delete_orphaned_items),
            ("unmatched_items", self._deactivate_unmatched_items),
            ("orphaned_mappings", self._delete_orphaned_mappings),
            ("library_counts", self._refresh_item_counts),
            ("old_jobs", self._delete_old_jobs),
        ]

    async def run_full_cleanup(self) -> CleanupReport:
        """Run every step in order; a failing step is logged and skipped."""

        return await asyncio.to_thread(self.run_full_cleanup_sync)

    def run_full_cleanup_sync(self) -> CleanupReport:
        now = self._now_factory().replace(tzinfo=None)
        report = CleanupReport(started_at=now)
        started = time.perf_counter()
        for name, step in self._steps():
            step_started = time.perf_counter()
            try:
                with session_scope() as session:
                    changed = int(step(session, now))
            except Exception as exc:
                report.steps[name] = None
                report.errors[name] = str(exc) or type(exc).__name__
                log_event(
                    logger,
                    "cleanup.step",
                    component="cleanup",
                    step=name,
                    status="error",
                    duration_ms=int((time.perf_counter() - step_started) * 1000),
                    error=report.errors[name],
                    level="warning",
                )
                continue
            report.steps[name] = changed
            log_event(
                logger,
                "cleanup.step",
                component="cleanup",
                step=name,
                status="ok",
                changes=changed,
                duration_ms=int((time.perf_counter() - step_started) * 1000),
                level="info" if changed else "debug",
            )
        report.duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Cleanup finished: %s changes, %s failed steps",
            report.total_changes,
            len(report.errors),
        )
        return report

    def _deactivate_stale_access(self, session: Session, now: datetime) -> int:
        cutoff = now - timedelta(days=self._config.access_stale_days)
        return _bulk(
            session,
            update(UserAccessGrant)
            .where(
                UserAccessGrant.is_active.is_(True),
                UserAccessGrant.last_verified_at < cutoff,
            )
            .values(is_active=False)
        )

    def _delete_orphaned_items(self, session: Session, now: datetime) -> int:
        granted = select(UserAccessGrant.library_id).where(UserAccessGrant.is_active.is_(True))
        return _bulk(
            session,
            delete(LibraryItem).where(LibraryItem.library_id.not_in(granted))
        )

    def _deactivate_unmatched_items(self, session: Session, now: datetime) -> int:
        return _bulk(
            session,
            update(LibraryItem)
            .where(
                LibraryItem.is_active.is_(True),
                LibraryItem.metadata_id.is_(None),
                LibraryItem.matching_attempts >= self._config.unmatched_max_attempts,
            )
            .values(is_active=False)
        )

    def _delete_orphaned_mappings(self, session: Session, now: datetime) -> int:
        live_guids = select(LibraryItem.guid).where(
            LibraryItem.is_active.is_(True),
            LibraryItem.guid.is_not(None),
        )
        return _bulk(
            session,
            delete(ExternalIdMapping).where(ExternalIdMapping.guid.not_in(live_guids))
        )

    def _refresh_item_counts(self, session: Session, now: datetime) -> int:
        counts = (
            select(LibraryItem.library_id, func.count(LibraryItem.id).label("active"))
            .where(LibraryItem.is_active.is_(True))
            .group_by(LibraryItem.library_id)
            .subquery()
        )
        rows = session.execute(
            select(MediaLibrary.id, func.coalesce(counts.c.active, 0))
            .outerjoin(counts, counts.c.library_id == MediaLibrary.id)
            .where(MediaLibrary.item_count != func.coalesce(counts.c.active, 0))
        ).all()
        for library_id, active in rows:
            _bulk(
                session,
                update(MediaLibrary)
                .where(MediaLibrary.id == library_id)
                .values(item_count=int(active)),
            )
        return len(rows)

    def _delete_old_jobs(self, session: Session, now: datetime) -> int:
        cutoff = now - timedelta(days=self._config.job_retention_days)
        terminal = [status.value for status in TERMINAL_JOB_STATUSES]
        return _bulk(
            session,
            delete(SyncJob).where(
                and_(
                    SyncJob.status.in_(terminal),
                    func.coalesce(SyncJob.completed_at, SyncJob.created_at) < cutoff,
                )
            )
        )

    async def collect_stats(self) -> dict[str, int]:
        return await asyncio.to_thread(self.collect_stats_sync)

    def collect_stats_sync(self) -> dict[str, int]:
        """Counts describing the current size of the mirror."""

        active = [status.value for status in ACTIVE_JOB_STATUSES]
        with session_scope() as session:
            total_active = session.execute(
                select(func.count(LibraryItem.id)).where(LibraryItem.is_active.is_(True))
            ).scalar_one()
            unmatched = session.execute(
                select(func.count(LibraryItem.id)).where(
                    LibraryItem.is_active.is_(True),
                    LibraryItem.metadata_id.is_(None),
                )
            ).scalar_one()
            grants = session.execute(
                select(func.count(UserAccessGrant.id)).where(UserAccessGrant.is_active.is_(True))
            ).scalar_one()
            pending_jobs = session.execute(
                select(func.count(SyncJob.id)).where(SyncJob.status.in_(active))
            ).scalar_one()
        return {
            "total_active_items": int(total_active),
            "unmatched_items": int(unmatched),
            "active_user_access": int(grants),
            "pending_sync_jobs": int(pending_jobs),
        }


__all__ = ["CleanupReport", "CleanupService", "DEFAULT_CLEANUP_CONFIG"]
