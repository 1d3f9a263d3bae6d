"""Durable job manager: creation, dispatch, cancellation and crash resume."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Mapping

from mediasync.config import JobManagerConfig
from mediasync.errors import (
    ConflictError,
    JobQueueFullError,
    NotFoundError,
    ValidationAppError,
)
from mediasync.logging import get_logger
from mediasync.models import JobStatus, JobType
from mediasync.orchestrator import events as orchestrator_events
from mediasync.orchestrator.handlers import ProcessorRegistry
from mediasync.utils.cancellation import CancellationToken
from mediasync.workers import persistence
from mediasync.workers.persistence import JobDTO
from mediasync.workers.pool import Inbox, JobWorker, drain_workers

logger = get_logger(__name__)

QUEUE_FULL_MESSAGE = "Job queue is full"
CANCELLED_MESSAGE = "Job cancelled by user"

_OWNER_REQUIRED = frozenset({JobType.FULL_SYNC, JobType.METADATA_MATCHING})
_SINGLE_FLIGHT = frozenset({JobType.FULL_SYNC})

DEFAULT_JOB_MANAGER_CONFIG = JobManagerConfig(
    workers=3,
    queue_size=100,
    job_timeout_s=7200.0,
    enqueue_timeout_s=0.0,
    shutdown_grace_s=30.0,
)


def _validate_job_type(job_type: JobType | str) -> JobType:
    try:
        return JobType(job_type)
    except ValueError as exc:
        raise ValidationAppError(
            f"Unknown job type: {job_type}",
            meta={"allowed": [item.value for item in JobType]},
        ) from exc


def _validate_owner(job_type: JobType, owner_id: Any) -> int | None:
    if owner_id is None:
        if job_type in _OWNER_REQUIRED:
            raise ValidationAppError(f"Job type {job_type.value} requires an owner")
        return None
    if isinstance(owner_id, bool) or not isinstance(owner_id, int) or owner_id <= 0:
        raise ValidationAppError("owner_id must be a positive integer")
    return owner_id


class JobManager:
    """Single entry point for job lifecycle operations.

    Constructed once at startup and handed to every consumer. ``create_job``
    works before ``start``; queued jobs are picked up once the pool runs.
    """

    def __init__(
        self,
        registry: ProcessorRegistry,
        *,
        config: JobManagerConfig | None = None,
        workers: int | None = None,
        queue_size: int | None = None,
        job_timeout: float | None = None,
        enqueue_timeout: float | None = None,
        shutdown_grace: float | None = None,
        persistence_module: Any = persistence,
    ) -> None:
        cfg = config or DEFAULT_JOB_MANAGER_CONFIG
        self._registry = registry
        self._worker_count = max(1, int(workers if workers is not None else cfg.workers))
        self._queue_size = max(1, int(queue_size if queue_size is not None else cfg.queue_size))
        self._job_timeout = float(job_timeout if job_timeout is not None else cfg.job_timeout_s)
        if enqueue_timeout is None:
            enqueue_timeout = cfg.enqueue_timeout_s
        self._enqueue_timeout = max(0.0, float(enqueue_timeout))
        if shutdown_grace is None:
            shutdown_grace = cfg.shutdown_grace_s
        self._shutdown_grace = max(0.0, float(shutdown_grace))
        self._persistence = persistence_module
        self._queue: asyncio.Queue[JobDTO] = asyncio.Queue(maxsize=self._queue_size)
        self._pool: asyncio.Queue[Inbox] = asyncio.Queue()
        self._workers: list[JobWorker] = []
        self._tokens: dict[int, CancellationToken] = {}
        self._create_lock = asyncio.Lock()
        self._dispatcher: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        task = self._dispatcher
        return bool(task and not task.done())

    @property
    def queue_size(self) -> int:
        return self._queue.qsize()

    @property
    def worker_count(self) -> int:
        return self._worker_count

    async def create_job(
        self,
        job_type: JobType | str,
        owner_id: int | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> JobDTO:
        """Persist a job and offer it to the dispatch queue."""

        resolved_type = _validate_job_type(job_type)
        resolved_owner = _validate_owner(resolved_type, owner_id)
        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValidationAppError("metadata must be a mapping")

        async with self._create_lock:
            if resolved_type in _SINGLE_FLIGHT and resolved_owner is not None:
                existing = await self._persistence.find_active_job_async(
                    resolved_type, resolved_owner
                )
                if existing is not None:
                    raise ConflictError(
                        f"A {resolved_type.value} job is already in progress for this owner",
                        meta={"job_id": existing.id, "status": existing.status.value},
                    )
            job = await self._persistence.create_job_async(
                resolved_type, owner_id=resolved_owner, metadata=metadata
            )

        if not await self._offer(job):
            failed = await self._persistence.fail_async(
                job.id, QUEUE_FULL_MESSAGE, from_statuses=(JobStatus.PENDING,)
            )
            orchestrator_events.emit_enqueue_event(
                logger,
                job_id=job.id,
                job_type=job.type.value,
                status="rejected",
                owner_id=job.owner_id,
                queue_size=self._queue.qsize(),
            )
            raise JobQueueFullError(failed or job, QUEUE_FULL_MESSAGE)

        orchestrator_events.emit_enqueue_event(
            logger,
            job_id=job.id,
            job_type=job.type.value,
            status="queued",
            owner_id=job.owner_id,
            queue_size=self._queue.qsize(),
        )
        return job

    async def get_job(self, job_id: int) -> JobDTO:
        job = await self._persistence.get_job_async(int(job_id))
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def get_user_jobs(self, owner_id: int, limit: int = 20) -> list[JobDTO]:
        return await self._persistence.list_jobs_for_owner_async(
            int(owner_id), limit=max(1, min(int(limit), 100))
        )

    async def update_job_progress(
        self,
        job_id: int,
        progress: int | None = None,
        step: str | None = None,
        *,
        total: int | None = None,
        processed: int | None = None,
        successful: int | None = None,
        failed: int | None = None,
    ) -> bool:
        """Record progress for a non-terminal job without touching its status."""

        return await self._persistence.update_progress_async(
            int(job_id),
            progress=progress,
            step=step,
            total=total,
            processed=processed,
            successful=successful,
            failed=failed,
        )

    async def cancel_job(self, job_id: int) -> JobDTO:
        """Cancel a pending or running job; terminal jobs are returned as-is."""

        job = await self.get_job(job_id)
        if job.is_terminal:
            return job
        cancelled = await self._persistence.cancel_async(job.id)
        token = self._tokens.get(job.id)
        if token is not None:
            token.cancel(CANCELLED_MESSAGE)
        if cancelled is None:
            return await self.get_job(job.id)
        return cancelled

    async def start(self) -> None:
        """Start workers and the dispatcher, then resume interrupted jobs."""

        if self.is_running:
            return
        self._pool = asyncio.Queue()
        while not self._queue.empty():
            self._queue.get_nowait()

        self._workers = [
            JobWorker(
                index + 1,
                pool=self._pool,
                registry=self._registry,
                reporter=self.update_job_progress,
                tokens=self._tokens,
                job_timeout=self._job_timeout,
                persistence_module=self._persistence,
            )
            for index in range(self._worker_count)
        ]
        for worker in self._workers:
            worker.start()
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="job-dispatcher")
        logger.info(
            "Job manager started with %s workers (queue size %s)",
            self._worker_count,
            self._queue_size,
        )
        await self._resume_pending_jobs()

    async def stop(self) -> None:
        """Stop dispatching and drain in-flight jobs within the shutdown grace."""

        dispatcher = self._dispatcher
        self._dispatcher = None
        if dispatcher is not None:
            dispatcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await dispatcher
        cancelled = await drain_workers(self._workers, grace=self._shutdown_grace)
        if cancelled:
            logger.warning(
                "Cancelled %s job workers after %.1fs shutdown grace",
                cancelled,
                self._shutdown_grace,
            )
        self._workers = []
        self._tokens.clear()
        logger.info("Job manager stopped")

    async def _offer(self, job: JobDTO) -> bool:
        if self._enqueue_timeout > 0:
            try:
                await asyncio.wait_for(self._queue.put(job), timeout=self._enqueue_timeout)
            except TimeoutError:
                return False
            return True
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            return False
        return True

    async def _resume_pending_jobs(self) -> None:
        jobs = await self._persistence.reset_resumable_async()
        requeued = 0
        for job in jobs:
            try:
                self._queue.put_nowait(job)
            except asyncio.QueueFull:
                logger.warning("Dispatch queue full; job %s stays pending until next start", job.id)
                continue
            requeued += 1
        if jobs:
            orchestrator_events.emit_resume_event(logger, resumed=len(jobs), requeued=requeued)

    async def _dispatch_loop(self) -> None:
        while True:
            job = await self._queue.get()
            inbox = await self._pool.get()
            inbox.put_nowait(job)
            orchestrator_events.emit_dispatch_event(
                logger, job_id=job.id, job_type=job.type.value, status="dispatched"
            )

    def stats(self) -> dict[str, Any]:
        return {
            "workers": self.worker_count,
            "busy_workers": sum(1 for worker in self._workers if worker.current_job is not None),
            "queue_size": self._queue.qsize(),
            "queue_capacity": self._queue_size,
            "running_jobs": sorted(self._tokens),
            "is_running": self.is_running,
        }


__all__ = ["CANCELLED_MESSAGE", "JobManager", "QUEUE_FULL_MESSAGE"]
