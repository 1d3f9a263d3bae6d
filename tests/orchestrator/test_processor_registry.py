from __future__ import annotations

from typing import Any

import pytest

from mediasync.core.errors import JobCancelledError
from mediasync.models import JobStatus, JobType
from mediasync.orchestrator.handlers import (
    CleanupJobProcessor,
    JobContext,
    MetadataMatchingProcessor,
    ProcessorRegistry,
    build_processor_registry,
    truncate_error,
)
from mediasync.services.cleanup_service import CleanupReport
from mediasync.utils.cancellation import CancellationToken
from mediasync.workers.persistence import JobDTO


class _Noop:
    async def process(self, job: JobDTO, context: JobContext) -> None:
        return None


def _job(job_type: JobType, owner_id: int | None = None) -> JobDTO:
    return JobDTO(id=7, type=job_type, status=JobStatus.RUNNING, owner_id=owner_id)


def test_registry_maps_each_type_once() -> None:
    processor = _Noop()
    registry = ProcessorRegistry({JobType.FULL_SYNC: processor})

    assert registry.get("full_sync") is processor
    assert registry.get(JobType.CLEANUP) is None
    assert registry.get("unknown") is None
    assert JobType.FULL_SYNC in registry
    assert "cleanup" not in registry
    assert registry.job_types == (JobType.FULL_SYNC,)
    with pytest.raises(ValueError, match="already registered"):
        registry.register(JobType.FULL_SYNC, _Noop())


def test_default_registry_covers_every_job_type() -> None:
    registry = build_processor_registry(sync_service=_Noop(), cleanup_service=object())

    assert set(registry.job_types) == set(JobType)
    assert isinstance(registry.get(JobType.METADATA_MATCHING), MetadataMatchingProcessor)
    assert isinstance(registry.get(JobType.CLEANUP), CleanupJobProcessor)


def test_truncate_error_keeps_short_messages() -> None:
    assert truncate_error("  boom  ") == "boom"
    long_message = truncate_error("x" * 600, limit=20)
    assert len(long_message) == 20
    assert long_message.endswith("...")


@pytest.mark.asyncio
async def test_context_reports_through_the_reporter_and_checks_cancellation() -> None:
    calls: list[tuple[int, dict[str, Any]]] = []

    async def reporter(job_id: int, **values: Any) -> bool:
        calls.append((job_id, values))
        return True

    token = CancellationToken()
    context = JobContext(job=_job(JobType.CLEANUP), cancel_token=token, reporter=reporter)

    await context.report(25, "Working", processed=3)
    context.checkpoint()
    token.cancel("Job cancelled by user")

    assert calls == [(7, {"progress": 25, "step": "Working", "processed": 3})]
    assert context.job_id == 7
    with pytest.raises(JobCancelledError, match="cancelled by user"):
        context.checkpoint()


@pytest.mark.asyncio
async def test_cleanup_processor_wraps_the_report() -> None:
    class _Cleanup:
        async def run_full_cleanup(self) -> CleanupReport:
            return CleanupReport(steps={"old_jobs": 3})

    result = await CleanupJobProcessor(_Cleanup()).process(
        _job(JobType.CLEANUP), JobContext(job=_job(JobType.CLEANUP))
    )

    assert result["cleanup"]["steps"] == {"old_jobs": 3}
    assert result["cleanup"]["total_changes"] == 3


@pytest.mark.asyncio
async def test_matching_processor_requires_an_owner() -> None:
    processor = MetadataMatchingProcessor(_Noop())

    with pytest.raises(ValueError, match="requires an owner"):
        await processor.process(
            _job(JobType.METADATA_MATCHING), JobContext(job=_job(JobType.METADATA_MATCHING))
        )
