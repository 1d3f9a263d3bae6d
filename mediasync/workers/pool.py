"""Bounded worker pool executing sync jobs handed out by the job manager."""

from __future__ import annotations

import asyncio
import contextlib
import time
from typing import Any, MutableMapping

from mediasync.core.errors import JobCancelledError
from mediasync.logging import get_logger
from mediasync.models import JobStatus
from mediasync.orchestrator import events as orchestrator_events
from mediasync.orchestrator.handlers import (
    JobContext,
    ProcessorRegistry,
    ProgressReporter,
    truncate_error,
)
from mediasync.utils.cancellation import CancellationToken
from mediasync.workers import persistence
from mediasync.workers.persistence import JobDTO

logger = get_logger(__name__)

Inbox = asyncio.Queue[JobDTO | None]


def format_timeout(seconds: float) -> str:
    """Render a job deadline the way it appears in failure messages."""

    total = int(seconds)
    if total >= 3600 and total % 3600 == 0:
        hours = total // 3600
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    if total >= 60 and total % 60 == 0:
        minutes = total // 60
        return f"{minutes} minute" if minutes == 1 else f"{minutes} minutes"
    return f"{seconds:g} seconds"


class JobWorker:
    """One executor of the pool.

    The worker registers its inbox with the shared pool whenever it is idle and
    blocks until the dispatcher hands it a job or ``None`` (the stop signal).
    """

    def __init__(
        self,
        worker_id: int,
        *,
        pool: asyncio.Queue[Inbox],
        registry: ProcessorRegistry,
        reporter: ProgressReporter,
        tokens: MutableMapping[int, CancellationToken],
        job_timeout: float,
        persistence_module: Any = persistence,
    ) -> None:
        self._worker_id = worker_id
        self._pool = pool
        self._registry = registry
        self._reporter = reporter
        self._tokens = tokens
        self._job_timeout = max(0.001, float(job_timeout))
        self._persistence = persistence_module
        self._inbox: Inbox = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._current_job: int | None = None

    @property
    def worker_id(self) -> int:
        return self._worker_id

    @property
    def task(self) -> asyncio.Task[None] | None:
        return self._task

    @property
    def current_job(self) -> int | None:
        return self._current_job

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name=f"job-worker-{self._worker_id}")

    def request_stop(self) -> None:
        self._inbox.put_nowait(None)

    async def _run(self) -> None:
        logger.debug("Job worker %s started", self._worker_id)
        while True:
            await self._pool.put(self._inbox)
            job = await self._inbox.get()
            if job is None:
                break
            self._current_job = job.id
            try:
                await self.execute(job)
            except Exception:
                logger.exception(
                    "Job worker %s failed while handling job %s", self._worker_id, job.id
                )
            finally:
                self._current_job = None
        logger.debug("Job worker %s stopped", self._worker_id)

    async def execute(self, job: JobDTO) -> None:
        """Claim ``job`` and run its processor under the job deadline."""

        claimed = await self._persistence.claim_async(job.id)
        if claimed is None:
            orchestrator_events.emit_dispatch_event(
                logger,
                job_id=job.id,
                job_type=job.type.value,
                status="skipped",
                worker_id=self._worker_id,
            )
            return

        started = time.perf_counter()
        processor = self._registry.get(claimed.type)
        if processor is None:
            message = f"No processor registered for job type: {claimed.type.value}"
            await self._persistence.fail_async(claimed.id, message)
            self._commit_event(claimed, "failed", started, error=message)
            return

        token = CancellationToken()
        self._tokens[claimed.id] = token
        try:
            # a cancel that landed between claim and token registration
            current = await self._persistence.get_job_async(claimed.id)
            if current is not None and current.status is JobStatus.CANCELLED:
                token.cancel("Job cancelled by user")

            context = JobContext(job=claimed, cancel_token=token, reporter=self._reporter)
            await self._run_processor(claimed, processor, context, started)
        finally:
            self._tokens.pop(claimed.id, None)

    async def _run_processor(
        self,
        job: JobDTO,
        processor: Any,
        context: JobContext,
        started: float,
    ) -> None:
        try:
            async with asyncio.timeout(self._job_timeout) as deadline:
                result = await processor.process(job, context)
        except TimeoutError:
            if not deadline.expired():
                await self._fail(job, "Job failed: operation timed out", started)
                return
            context.cancel_token.cancel("deadline exceeded")
            await self._fail(
                job, f"Job timed out after {format_timeout(self._job_timeout)}", started
            )
            return
        except JobCancelledError:
            await self._persistence.cancel_async(job.id)
            self._commit_event(job, "cancelled", started)
            return
        except Exception as exc:
            logger.warning("Job %s (%s) failed: %s", job.id, job.type.value, exc)
            reason = truncate_error(str(exc) or type(exc).__name__)
            await self._fail(job, f"Job failed: {reason}", started)
            return

        completed = await self._persistence.complete_async(job.id, result=result)
        if completed is None:
            # cancelled while the processor was finishing
            self._commit_event(job, "discarded", started)
            return
        self._commit_event(completed, "completed", started)

    async def _fail(self, job: JobDTO, message: str, started: float) -> None:
        await self._persistence.fail_async(job.id, message)
        self._commit_event(job, "failed", started, error=message)

    def _commit_event(
        self, job: JobDTO, status: str, started: float, *, error: str | None = None
    ) -> None:
        orchestrator_events.emit_commit_event(
            logger,
            job_id=job.id,
            job_type=job.type.value,
            status=status,
            duration_ms=int((time.perf_counter() - started) * 1000),
            worker_id=self._worker_id,
            error=error,
        )


async def drain_workers(workers: list[JobWorker], *, grace: float) -> int:
    """Signal ``workers`` to stop and wait up to ``grace`` seconds.

    Returns the number of workers that had to be cancelled.
    """

    for worker in workers:
        worker.request_stop()
    tasks = [worker.task for worker in workers if worker.task is not None]
    if not tasks:
        return 0
    _, pending = await asyncio.wait(tasks, timeout=max(0.0, grace))
    for task in pending:
        task.cancel()
    for task in pending:
        with contextlib.suppress(asyncio.CancelledError):
            await task
    return len(pending)


__all__ = ["JobWorker", "drain_workers", "format_timeout"]
