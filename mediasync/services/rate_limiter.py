"""Token bucket throttle shared by every metadata provider call."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import contextlib
from dataclasses import dataclass, field
import heapq
import itertools
import threading
import time
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from mediasync.config import RateLimiterConfig
from mediasync.core.errors import JobCancelledError
from mediasync.db import run_session
from mediasync.logging import get_logger
from mediasync.logging_events import log_event
from mediasync.models import ProviderUsage
from mediasync.utils.cancellation import CancellationToken
from mediasync.utils.retry import exp_backoff_delays
from mediasync.utils.time import utcnow

logger = get_logger(__name__)

T = TypeVar("T")

TRANSIENT_SIGNATURES = (
    "rate limit",
    "timeout",
    "timed out",
    "temporary failure",
    "connection reset",
)

_USAGE_ROW_ID = 1

DEFAULT_RATE_LIMITER_CONFIG = RateLimiterConfig(
    capacity=40,
    refill_interval_ms=250,
    intake_size=1000,
    intake_timeout_s=30.0,
    request_timeout_s=300.0,
    max_retries=3,
    backoff_base_ms=1000,
    jitter_pct=0,
)


class RateLimiterError(RuntimeError):
    """Base class for rate limiter failures."""


class RateLimiterQueueFullError(RateLimiterError):
    def __init__(self) -> None:
        super().__init__("rate limiter queue is full, request timed out")


class RateLimiterTimeoutError(RateLimiterError):
    def __init__(self, waited_s: float) -> None:
        super().__init__(f"rate limited request was not served within {waited_s:.0f}s")
        self.waited_s = waited_s


class RateLimiterStoppedError(RateLimiterError):
    def __init__(self) -> None:
        super().__init__("rate limiter is not running")


def is_transient_error(error: BaseException) -> bool:
    """Return ``True`` when ``error`` is worth retrying."""

    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return True
    message = str(error).lower()
    return any(signature in message for signature in TRANSIENT_SIGNATURES)


@dataclass(slots=True)
class _Request:
    callback: Callable[[], Awaitable[Any]]
    priority: int
    seq: int
    future: asyncio.Future[Any]
    cancel_token: CancellationToken | None
    submitted_at: float
    attempt: int = 0
    started_at: float | None = field(default=None)

    @property
    def abandoned(self) -> bool:
        if self.future.done():
            return True
        return bool(self.cancel_token and self.cancel_token.cancelled)


class TokenBucketRateLimiter:
    """Priority aware token bucket with a single event driven dispatch loop.

    One token is consumed per callback attempt; a retry of a transient failure
    goes back into the pending heap with its original arrival order and waits
    for a fresh token like any other request.
    """

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        *,
        capacity: int | None = None,
        refill_interval: float | None = None,
        intake_size: int | None = None,
        intake_timeout: float | None = None,
        request_timeout: float | None = None,
        max_retries: int | None = None,
        backoff_base_ms: int | None = None,
        persist_usage: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        cfg = config or DEFAULT_RATE_LIMITER_CONFIG
        self._capacity = max(1, int(capacity if capacity is not None else cfg.capacity))
        if refill_interval is None:
            refill_interval = cfg.refill_interval_ms / 1000.0
        self._refill_interval = max(0.001, float(refill_interval))
        self._intake_size = max(1, int(intake_size if intake_size is not None else cfg.intake_size))
        if intake_timeout is None:
            intake_timeout = cfg.intake_timeout_s
        self._intake_timeout = max(0.0, float(intake_timeout))
        if request_timeout is None:
            request_timeout = cfg.request_timeout_s
        self._request_timeout = max(0.001, float(request_timeout))
        self._max_retries = max(0, int(max_retries if max_retries is not None else cfg.max_retries))
        if backoff_base_ms is None:
            backoff_base_ms = cfg.backoff_base_ms
        self._backoff_delays_ms = exp_backoff_delays(
            int(backoff_base_ms), self._max_retries, cfg.jitter_pct
        )
        self._persist_usage = persist_usage
        self._clock = clock

        self._lock = threading.Lock()
        self._tokens = self._capacity
        self._last_refill = clock()
        self._pending: list[tuple[int, int, _Request]] = []
        self._seq = itertools.count()
        self._intake: asyncio.Queue[_Request] = asyncio.Queue(maxsize=self._intake_size)
        self._wakeup = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self._total_requests = 0
        self._failed_requests = 0
        self._last_request_at: float | None = None

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def refill_interval(self) -> float:
        return self._refill_interval

    @property
    def is_running(self) -> bool:
        task = self._task
        return bool(task and not task.done())

    async def start(self) -> None:
        if self.is_running:
            return
        with self._lock:
            self._tokens = self._capacity
            self._last_refill = self._clock()
        self._wakeup = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="rate-limiter")
        logger.info(
            "Rate limiter started (capacity=%s, refill=%.3fs)",
            self._capacity,
            self._refill_interval,
        )

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        for inflight in list(self._inflight):
            inflight.cancel()
        for inflight in list(self._inflight):
            with contextlib.suppress(asyncio.CancelledError):
                await inflight

        while True:
            try:
                request = self._intake.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._pending_push(request)
        while self._pending:
            _, _, request = heapq.heappop(self._pending)
            _reject(request, RateLimiterStoppedError())
        logger.info("Rate limiter stopped")

    async def execute(
        self,
        callback: Callable[[], Awaitable[T]],
        priority: int = 0,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> T:
        """Run ``callback`` once a token is granted and return its result."""

        if not self.is_running:
            raise RateLimiterStoppedError()
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        loop = asyncio.get_running_loop()
        request = _Request(
            callback=callback,
            priority=int(priority),
            seq=next(self._seq),
            future=loop.create_future(),
            cancel_token=cancel_token,
            submitted_at=self._clock(),
        )

        try:
            if self._intake_timeout > 0:
                await asyncio.wait_for(self._intake.put(request), timeout=self._intake_timeout)
            else:
                self._intake.put_nowait(request)
        except (TimeoutError, asyncio.QueueFull) as exc:
            raise RateLimiterQueueFullError() from exc
        self._wakeup.set()

        return await self._await_result(request)

    async def _await_result(self, request: _Request) -> Any:
        future = request.future
        waiters: set[asyncio.Future[Any]] = {future}
        token_task: asyncio.Task[None] | None = None
        if request.cancel_token is not None:
            token_task = asyncio.create_task(request.cancel_token.wait())
            waiters.add(token_task)
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self._request_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            future.cancel()
            raise
        finally:
            if token_task is not None:
                token_task.cancel()

        if future in done:
            return future.result()
        future.cancel()
        if request.cancel_token is not None and request.cancel_token.cancelled:
            raise JobCancelledError(request.cancel_token.reason or "Job cancelled by user")
        raise RateLimiterTimeoutError(self._request_timeout)

    def stats(self) -> dict[str, Any]:
        """Return a point-in-time snapshot of limiter counters."""

        self._refill()
        with self._lock:
            return {
                "available_tokens": self._tokens,
                "max_tokens": self._capacity,
                "refill_interval_ms": int(self._refill_interval * 1000),
                "pending": sum(1 for _, _, request in self._pending if not request.abandoned),
                "queue_size": self._intake.qsize(),
                "in_flight": len(self._inflight),
                "total_requests": self._total_requests,
                "failed_requests": self._failed_requests,
                "last_request_age_s": (
                    round(self._clock() - self._last_request_at, 3)
                    if self._last_request_at is not None
                    else None
                ),
                "is_running": self.is_running,
            }

    async def usage_stats(self) -> dict[str, Any]:
        """Return the persisted provider usage counter."""

        def _load(session: Session) -> dict[str, Any]:
            row = session.get(ProviderUsage, _USAGE_ROW_ID)
            if row is None:
                return {"requests_count": 0, "failed_count": 0, "last_request_at": None}
            return {
                "requests_count": int(row.requests_count or 0),
                "failed_count": int(row.failed_count or 0),
                "last_request_at": (
                    row.last_request_at.isoformat() if row.last_request_at else None
                ),
            }

        return await run_session(_load)

    async def _run(self) -> None:
        while True:
            self._wakeup.clear()
            self._drain_intake()
            self._refill()
            self._dispatch_ready()
            timeout = self._next_refill_delay() if self._pending else None
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except TimeoutError:
                pass

    def _drain_intake(self) -> None:
        while True:
            try:
                request = self._intake.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._pending_push(request)

    def _pending_push(self, request: _Request) -> None:
        heapq.heappush(self._pending, (-request.priority, request.seq, request))

    def _refill(self) -> None:
        now = self._clock()
        with self._lock:
            elapsed = now - self._last_refill
            if elapsed < self._refill_interval:
                return
            ticks = int(elapsed // self._refill_interval)
            self._tokens = min(self._capacity, self._tokens + ticks)
            self._last_refill += ticks * self._refill_interval

    def _next_refill_delay(self) -> float:
        with self._lock:
            due = self._last_refill + self._refill_interval
        return max(0.0, due - self._clock())

    def _try_consume(self) -> bool:
        with self._lock:
            if self._tokens <= 0:
                return False
            self._tokens -= 1
            self._total_requests += 1
            self._last_request_at = self._clock()
            return True

    def _dispatch_ready(self) -> None:
        while self._pending:
            _, _, request = self._pending[0]
            if request.abandoned:
                heapq.heappop(self._pending)
                if request.cancel_token is not None and request.cancel_token.cancelled:
                    _reject(
                        request,
                        JobCancelledError(request.cancel_token.reason or "Job cancelled by user"),
                    )
                continue
            if not self._try_consume():
                return
            heapq.heappop(self._pending)
            task = asyncio.create_task(self._execute(request))
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)

    async def _execute(self, request: _Request) -> None:
        request.attempt += 1
        if request.started_at is None:
            request.started_at = self._clock()
        try:
            result = await request.callback()
        except asyncio.CancelledError:
            _reject(request, RateLimiterStoppedError())
            raise
        except Exception as exc:
            if is_transient_error(exc) and request.attempt <= self._max_retries:
                try:
                    await self._schedule_retry(request, exc)
                except asyncio.CancelledError:
                    _reject(request, RateLimiterStoppedError())
                    raise
                return
            with self._lock:
                self._failed_requests += 1
            self._log_request(request, status="failed", error=str(exc))
            _reject(request, exc)
            await self._record_usage(success=False)
            return

        if not request.future.done():
            request.future.set_result(result)
        self._log_request(request, status="ok")
        await self._record_usage(success=True)

    async def _schedule_retry(self, request: _Request, error: Exception) -> None:
        delay_ms = self._backoff_delays_ms[request.attempt - 1]
        override = getattr(error, "retry_after_ms", None)
        if isinstance(override, int) and override > delay_ms:
            delay_ms = override
        self._log_request(request, status="retry", error=str(error), retry_in_ms=delay_ms)
        token = request.cancel_token
        if token is not None:
            await token.sleep(delay_ms / 1000.0)
        else:
            await asyncio.sleep(delay_ms / 1000.0)
        if request.abandoned:
            if token is not None and token.cancelled:
                _reject(request, JobCancelledError(token.reason or "Job cancelled by user"))
            return
        self._pending_push(request)
        self._wakeup.set()

    def _log_request(
        self,
        request: _Request,
        *,
        status: str,
        error: str | None = None,
        retry_in_ms: int | None = None,
    ) -> None:
        payload: dict[str, Any] = {
            "component": "rate_limiter",
            "status": status,
            "priority": request.priority,
            "attempt": request.attempt,
            "wait_ms": int(((request.started_at or self._clock()) - request.submitted_at) * 1000),
            "level": "info" if status == "failed" else "debug",
        }
        if error:
            payload["error"] = error[:256]
        if retry_in_ms is not None:
            payload["retry_in_ms"] = retry_in_ms
        log_event(logger, "rate_limiter.request", **payload)

    async def _record_usage(self, *, success: bool) -> None:
        if not self._persist_usage:
            return

        def _bump(session: Session) -> None:
            row = session.execute(
                select(ProviderUsage).where(ProviderUsage.id == _USAGE_ROW_ID)
            ).scalar_one_or_none()
            if row is None:
                row = ProviderUsage(id=_USAGE_ROW_ID, requests_count=0, failed_count=0)
                session.add(row)
            if success:
                row.requests_count = int(row.requests_count or 0) + 1
            else:
                row.failed_count = int(row.failed_count or 0) + 1
            row.last_request_at = utcnow()

        try:
            await run_session(_bump)
        except Exception:
            logger.warning("Failed to persist provider usage counter", exc_info=True)


def _reject(request: _Request, error: BaseException) -> None:
    if not request.future.done():
        request.future.set_exception(error)


__all__ = [
    "RateLimiterError",
    "RateLimiterQueueFullError",
    "RateLimiterStoppedError",
    "RateLimiterTimeoutError",
    "TokenBucketRateLimiter",
    "is_transient_error",
]
