"""Processor registry binding each job type to the code that runs it."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol

from mediasync.logging import get_logger
from mediasync.models import JobType
from mediasync.utils.cancellation import CancellationToken
from mediasync.workers.persistence import JobDTO

logger = get_logger(__name__)

ProgressReporter = Callable[..., Awaitable[bool]]


def truncate_error(message: str, limit: int = 512) -> str:
    text = message.strip()
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


async def _discard_progress(*_: Any, **__: Any) -> bool:
    return False


@dataclass(slots=True)
class JobContext:
    """Runtime handles passed to a processor for a single job execution."""

    job: JobDTO
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    reporter: ProgressReporter = _discard_progress

    @property
    def job_id(self) -> int:
        return self.job.id

    @property
    def owner_id(self) -> int | None:
        return self.job.owner_id

    @property
    def metadata(self) -> Mapping[str, Any]:
        return self.job.metadata

    async def report(
        self,
        progress: int | None = None,
        step: str | None = None,
        **counters: int,
    ) -> None:
        await self.reporter(self.job.id, progress=progress, step=step, **counters)

    def checkpoint(self) -> None:
        """Raise ``JobCancelledError`` if the job was cancelled."""

        self.cancel_token.raise_if_cancelled()


class JobProcessor(Protocol):
    async def process(
        self, job: JobDTO, context: JobContext
    ) -> Mapping[str, Any] | None:  # pragma: no cover - protocol
        ...


class ProcessorRegistry:
    """Closed mapping from :class:`JobType` to its processor."""

    def __init__(self, processors: Mapping[JobType, JobProcessor] | None = None) -> None:
        self._processors: dict[JobType, JobProcessor] = {}
        for job_type, processor in (processors or {}).items():
            self.register(job_type, processor)

    def register(self, job_type: JobType | str, processor: JobProcessor) -> None:
        resolved = JobType(job_type)
        if resolved in self._processors:
            raise ValueError(f"Processor already registered for job type: {resolved.value}")
        self._processors[resolved] = processor

    def get(self, job_type: JobType | str) -> JobProcessor | None:
        try:
            return self._processors.get(JobType(job_type))
        except ValueError:
            return None

    def __contains__(self, job_type: object) -> bool:
        return isinstance(job_type, (JobType, str)) and self.get(job_type) is not None

    @property
    def job_types(self) -> tuple[JobType, ...]:
        return tuple(self._processors)


class MetadataMatchingProcessor:
    """Runs only the ID matching phase for one owner's unmatched items."""

    def __init__(self, sync_service: Any) -> None:
        self._sync = sync_service

    async def process(self, job: JobDTO, context: JobContext) -> Mapping[str, Any]:
        if job.owner_id is None:
            raise ValueError("metadata matching requires an owner")
        await context.report(5, "Loading unmatched items")
        summary = await self._sync.match_owner_items(
            job.owner_id,
            context=context,
            progress_range=(10, 95),
        )
        return {"matching": summary}


class CleanupJobProcessor:
    """Runs the full cleanup pass as a tracked job."""

    def __init__(self, cleanup_service: Any) -> None:
        self._cleanup = cleanup_service

    async def process(self, job: JobDTO, context: JobContext) -> Mapping[str, Any]:
        await context.report(10, "Running cleanup")
        context.checkpoint()
        report = await self._cleanup.run_full_cleanup()
        return {"cleanup": report.as_dict()}


def build_processor_registry(
    *,
    sync_service: Any,
    cleanup_service: Any,
) -> ProcessorRegistry:
    return ProcessorRegistry(
        {
            JobType.FULL_SYNC: sync_service,
            JobType.METADATA_MATCHING: MetadataMatchingProcessor(sync_service),
            JobType.CLEANUP: CleanupJobProcessor(cleanup_service),
        }
    )


__all__ = [
    "CleanupJobProcessor",
    "JobContext",
    "JobProcessor",
    "MetadataMatchingProcessor",
    "ProcessorRegistry",
    "build_processor_registry",
    "truncate_error",
]
