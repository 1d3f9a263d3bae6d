"""Persistence helpers for the durable sync job store.

Every status transition is a conditional ``UPDATE ... WHERE status IN (...)``
so concurrent writers (a worker finishing, a user cancelling) cannot move a
job backwards or out of a terminal state.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from mediasync.db import session_scope
from mediasync.logging import get_logger
from mediasync.logging_events import log_event
from mediasync.models import (
    ACTIVE_JOB_STATUSES,
    JobStatus,
    JobType,
    SyncJob,
)
from mediasync.utils.time import utcnow

logger = get_logger(__name__)

_ACTIVE_VALUES = tuple(status.value for status in ACTIVE_JOB_STATUSES)
_MAX_MESSAGE_LENGTH = 2000


@dataclass(slots=True)
class JobDTO:
    """Lightweight data transfer object for sync jobs."""

    id: int
    type: JobType
    status: JobStatus
    owner_id: int | None = None
    progress: int = 0
    current_step: str | None = None
    total_items: int = 0
    processed_items: int = 0
    successful_items: int = 0
    failed_items: int = 0
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


def _to_dto(record: SyncJob) -> JobDTO:
    return JobDTO(
        id=int(record.id),
        type=JobType(record.type),
        status=JobStatus(record.status),
        owner_id=int(record.owner_id) if record.owner_id is not None else None,
        progress=int(record.progress or 0),
        current_step=record.current_step,
        total_items=int(record.total_items or 0),
        processed_items=int(record.processed_items or 0),
        successful_items=int(record.successful_items or 0),
        failed_items=int(record.failed_items or 0),
        error_message=record.error_message,
        metadata=dict(record.metadata_json or {}),
        created_at=record.created_at,
        started_at=record.started_at,
        completed_at=record.completed_at,
    )


def _truncate(message: str | None) -> str | None:
    if message is None:
        return None
    return message[:_MAX_MESSAGE_LENGTH]


def _emit_job_event(job: JobDTO, status: str, **extra: Any) -> None:
    payload: dict[str, Any] = {
        "component": "jobs.persistence",
        "entity_id": str(job.id),
        "job_type": job.type.value,
        "status": status,
        "progress": job.progress,
    }
    if job.owner_id is not None:
        payload["owner_id"] = job.owner_id
    payload.update({key: value for key, value in extra.items() if value is not None})
    log_event(logger, "job.transition", **payload)


def _update_returning(session: Session, stmt: Any) -> JobDTO | None:
    record = (
        session.execute(stmt.returning(SyncJob).execution_options(populate_existing=True))
        .scalars()
        .first()
    )
    if record is None:
        return None
    return _to_dto(record)


def create_job(
    job_type: JobType,
    *,
    owner_id: int | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> JobDTO:
    """Persist a new ``pending`` job row."""

    with session_scope() as session:
        record = SyncJob(
            type=JobType(job_type).value,
            owner_id=owner_id,
            status=JobStatus.PENDING.value,
            progress=0,
            metadata_json=dict(metadata or {}),
            created_at=utcnow(),
        )
        session.add(record)
        session.flush()
        session.refresh(record)
        dto = _to_dto(record)
    _emit_job_event(dto, "created")
    return dto


def get_job(job_id: int) -> JobDTO | None:
    with session_scope() as session:
        record = session.get(SyncJob, int(job_id))
        if record is None:
            return None
        return _to_dto(record)


def find_active_job(job_type: JobType, owner_id: int) -> JobDTO | None:
    """Return the newest non-terminal job of ``job_type`` for ``owner_id``."""

    with session_scope() as session:
        stmt = (
            select(SyncJob)
            .where(
                SyncJob.type == JobType(job_type).value,
                SyncJob.owner_id == int(owner_id),
                SyncJob.status.in_(_ACTIVE_VALUES),
            )
            .order_by(SyncJob.created_at.desc(), SyncJob.id.desc())
            .limit(1)
        )
        record = session.execute(stmt).scalars().first()
        return _to_dto(record) if record is not None else None


def list_jobs_for_owner(owner_id: int, *, limit: int = 20) -> list[JobDTO]:
    with session_scope() as session:
        stmt = (
            select(SyncJob)
            .where(SyncJob.owner_id == int(owner_id))
            .order_by(SyncJob.created_at.desc(), SyncJob.id.desc())
            .limit(max(1, int(limit)))
        )
        return [_to_dto(record) for record in session.execute(stmt).scalars()]


def list_jobs_by_status(statuses: Iterable[JobStatus]) -> list[JobDTO]:
    values = [JobStatus(status).value for status in statuses]
    with session_scope() as session:
        stmt = (
            select(SyncJob)
            .where(SyncJob.status.in_(values))
            .order_by(SyncJob.created_at.asc(), SyncJob.id.asc())
        )
        return [_to_dto(record) for record in session.execute(stmt).scalars()]


def update_progress(
    job_id: int,
    *,
    progress: int | None = None,
    step: str | None = None,
    total: int | None = None,
    processed: int | None = None,
    successful: int | None = None,
    failed: int | None = None,
) -> bool:
    """Apply a partial progress update to a non-terminal job.

    Progress is clamped to ``0..100`` and never lowered. The status column is
    never touched.
    """

    values: dict[str, Any] = {}
    if progress is not None:
        bounded = max(0, min(100, int(progress)))
        values["progress"] = case(
            (SyncJob.progress < bounded, bounded), else_=SyncJob.progress
        )
    if step is not None:
        values["current_step"] = step[:255]
    if total is not None:
        values["total_items"] = max(0, int(total))
    if processed is not None:
        values["processed_items"] = max(0, int(processed))
    if successful is not None:
        values["successful_items"] = max(0, int(successful))
    if failed is not None:
        values["failed_items"] = max(0, int(failed))
    if not values:
        return False

    with session_scope() as session:
        result = session.execute(
            update(SyncJob)
            .where(SyncJob.id == int(job_id), SyncJob.status.in_(_ACTIVE_VALUES))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)


def claim(job_id: int) -> JobDTO | None:
    """Move a job from ``pending`` to ``running``; ``None`` if it was not pending."""

    with session_scope() as session:
        dto = _update_returning(
            session,
            update(SyncJob)
            .where(SyncJob.id == int(job_id), SyncJob.status == JobStatus.PENDING.value)
            .values(status=JobStatus.RUNNING.value, started_at=utcnow(), error_message=None)
            .execution_options(synchronize_session=False),
        )
    if dto is not None:
        _emit_job_event(dto, "running")
    return dto


def complete(job_id: int, *, result: Mapping[str, Any] | None = None) -> JobDTO | None:
    """Mark a running job completed, merging ``result`` into its metadata."""

    with session_scope() as session:
        row = session.execute(
            select(SyncJob.status, SyncJob.current_step, SyncJob.metadata_json).where(
                SyncJob.id == int(job_id)
            )
        ).first()
        if row is None or row.status != JobStatus.RUNNING.value:
            return None
        merged = dict(row.metadata_json or {})
        if result:
            merged.update(dict(result))
        dto = _update_returning(
            session,
            update(SyncJob)
            .where(SyncJob.id == int(job_id), SyncJob.status == JobStatus.RUNNING.value)
            .values(
                status=JobStatus.COMPLETED.value,
                progress=100,
                current_step=row.current_step or "Completed",
                metadata_json=merged,
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False),
        )
    if dto is not None:
        _emit_job_event(dto, "completed")
    return dto


def fail(
    job_id: int,
    error: str,
    *,
    from_statuses: Iterable[JobStatus] = (JobStatus.RUNNING,),
) -> JobDTO | None:
    """Mark a job failed when it is currently in one of ``from_statuses``."""

    allowed = [JobStatus(status).value for status in from_statuses]
    with session_scope() as session:
        dto = _update_returning(
            session,
            update(SyncJob)
            .where(SyncJob.id == int(job_id), SyncJob.status.in_(allowed))
            .values(
                status=JobStatus.FAILED.value,
                error_message=_truncate(error),
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False),
        )
    if dto is not None:
        _emit_job_event(dto, "failed", error=_truncate(error))
    return dto


def cancel(job_id: int, *, message: str = "Job cancelled by user") -> JobDTO | None:
    """Cancel a pending or running job; ``None`` when it was not active."""

    with session_scope() as session:
        dto = _update_returning(
            session,
            update(SyncJob)
            .where(SyncJob.id == int(job_id), SyncJob.status.in_(_ACTIVE_VALUES))
            .values(
                status=JobStatus.CANCELLED.value,
                error_message=message,
                completed_at=utcnow(),
            )
            .execution_options(synchronize_session=False),
        )
    if dto is not None:
        _emit_job_event(dto, "cancelled")
    return dto


def reset_resumable() -> list[JobDTO]:
    """Reset every pending/running job to a fresh ``pending`` state.

    Used on startup to resume work interrupted by a crash or shutdown. Progress
    context is cleared so the re-run reports from zero.
    """

    with session_scope() as session:
        ids = list(
            session.execute(
                select(SyncJob.id)
                .where(SyncJob.status.in_(_ACTIVE_VALUES))
                .order_by(SyncJob.created_at.asc(), SyncJob.id.asc())
            ).scalars()
        )
        if not ids:
            return []
        session.execute(
            update(SyncJob)
            .where(SyncJob.id.in_(ids), SyncJob.status.in_(_ACTIVE_VALUES))
            .values(
                status=JobStatus.PENDING.value,
                progress=0,
                current_step=None,
                total_items=0,
                processed_items=0,
                successful_items=0,
                failed_items=0,
                started_at=None,
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        records = session.execute(
            select(SyncJob)
            .where(SyncJob.id.in_(ids), SyncJob.status == JobStatus.PENDING.value)
            .order_by(SyncJob.created_at.asc(), SyncJob.id.asc())
        ).scalars()
        jobs = [_to_dto(record) for record in records]
    for job in jobs:
        _emit_job_event(job, "resumed")
    return jobs


async def create_job_async(
    job_type: JobType,
    *,
    owner_id: int | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> JobDTO:
    return await asyncio.to_thread(
        create_job, job_type, owner_id=owner_id, metadata=metadata
    )


async def get_job_async(job_id: int) -> JobDTO | None:
    return await asyncio.to_thread(get_job, job_id)


async def find_active_job_async(job_type: JobType, owner_id: int) -> JobDTO | None:
    return await asyncio.to_thread(find_active_job, job_type, owner_id)


async def list_jobs_for_owner_async(owner_id: int, *, limit: int = 20) -> list[JobDTO]:
    return await asyncio.to_thread(list_jobs_for_owner, owner_id, limit=limit)


async def update_progress_async(job_id: int, **values: Any) -> bool:
    return await asyncio.to_thread(update_progress, job_id, **values)


async def claim_async(job_id: int) -> JobDTO | None:
    return await asyncio.to_thread(claim, job_id)


async def complete_async(
    job_id: int, *, result: Mapping[str, Any] | None = None
) -> JobDTO | None:
    return await asyncio.to_thread(complete, job_id, result=result)


async def fail_async(
    job_id: int,
    error: str,
    *,
    from_statuses: Iterable[JobStatus] = (JobStatus.RUNNING,),
) -> JobDTO | None:
    return await asyncio.to_thread(fail, job_id, error, from_statuses=tuple(from_statuses))


async def cancel_async(job_id: int) -> JobDTO | None:
    return await asyncio.to_thread(cancel, job_id)


async def reset_resumable_async() -> list[JobDTO]:
    return await asyncio.to_thread(reset_resumable)


__all__ = [
    "JobDTO",
    "cancel",
    "cancel_async",
    "claim",
    "claim_async",
    "complete",
    "complete_async",
    "create_job",
    "create_job_async",
    "fail",
    "fail_async",
    "find_active_job",
    "find_active_job_async",
    "get_job",
    "get_job_async",
    "list_jobs_by_status",
    "list_jobs_for_owner",
    "list_jobs_for_owner_async",
    "reset_resumable",
    "reset_resumable_async",
    "update_progress",
    "update_progress_async",
]
