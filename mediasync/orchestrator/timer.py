"""Periodic timer running the maintenance cleanup pass."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable

from mediasync.config import CleanupConfig
from mediasync.logging import get_logger
from mediasync.orchestrator import events as orchestrator_events
from mediasync.services.cleanup_service import CleanupReport, CleanupService
from mediasync.utils.time import sleep_jitter_ms

_LOG_COMPONENT = "orchestrator.cleanup_timer"


def _coerce_interval(value: float | int | str | None, default: float) -> float:
    if value is None:
        return default
    try:
        resolved = float(value)
    except (TypeError, ValueError):
        return default
    if resolved < 0:
        return 0.0
    return resolved


class CleanupTimer:
    """Run :meth:`CleanupService.run_full_cleanup` every ``interval`` seconds.

    The first pass happens one interval after :meth:`start` unless
    ``run_on_start`` is set.
    """

    def __init__(
        self,
        service: CleanupService,
        *,
        config: CleanupConfig | None = None,
        interval_seconds: float | int | str | None = None,
        enabled: bool | None = None,
        run_on_start: bool = False,
        jitter_pct: int = 0,
        shutdown_grace: float = 5.0,
        time_source: Callable[[], float] = time.perf_counter,
    ) -> None:
        settings = config or service.config
        self._service = service
        self._interval = _coerce_interval(
            interval_seconds if interval_seconds is not None else settings.interval_s,
            settings.interval_s,
        )
        self._enabled = settings.enabled if enabled is None else bool(enabled)
        self._run_on_start = run_on_start
        self._jitter_pct = max(0, int(jitter_pct))
        self._shutdown_grace = max(0.0, float(shutdown_grace))
        self._time_source = time_source
        self._logger = get_logger(__name__)
        self._lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def is_running(self) -> bool:
        task = self._task
        return bool(task and not task.done())

    async def start(self) -> bool:
        """Start the background timer task if enabled."""

        if not self._enabled or self.is_running:
            return False
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="cleanup-timer")
        return True

    async def stop(self) -> None:
        """Signal the timer to stop and await task completion."""

        self._stop_event.set()
        task = self._task
        if task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._shutdown_grace)
        except TimeoutError:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        finally:
            self._task = None

    async def trigger(self) -> CleanupReport | None:
        """Execute a single cleanup pass; ``None`` when skipped or failed."""

        if not self._enabled:
            orchestrator_events.emit_timer_event(
                self._logger, status="disabled", component=_LOG_COMPONENT, duration_ms=0
            )
            return None

        if self._lock.locked():
            orchestrator_events.emit_timer_event(
                self._logger,
                status="skipped",
                component=_LOG_COMPONENT,
                reason="busy",
                duration_ms=0,
            )
            return None

        async with self._lock:
            start = self._time_source()
            try:
                report = await self._service.run_full_cleanup()
            except Exception as exc:
                duration_ms = int((self._time_source() - start) * 1000)
                self._logger.exception("Scheduled cleanup failed")
                orchestrator_events.emit_timer_event(
                    self._logger,
                    status="error",
                    component=_LOG_COMPONENT,
                    error=str(exc) or type(exc).__name__,
                    duration_ms=duration_ms,
                )
                return None

            duration_ms = int((self._time_source() - start) * 1000)
            orchestrator_events.emit_timer_event(
                self._logger,
                status="ok" if report.ok else "partial",
                component=_LOG_COMPONENT,
                changes=report.total_changes,
                duration_ms=duration_ms,
            )
            return report

    async def _run(self) -> None:
        if self._run_on_start:
            await self.trigger()
        while not self._stop_event.is_set():
            await self._sleep_until_next()
            if self._stop_event.is_set():
                break
            await self.trigger()

    async def _sleep_until_next(self) -> None:
        if self._interval <= 0:
            await asyncio.sleep(0)
            return
        delay_ms = int(self._interval * 1000)
        sleep_task = asyncio.create_task(
            sleep_jitter_ms(delay_ms, self._jitter_pct),
            name="cleanup-timer-sleep",
        )
        wait_task = asyncio.create_task(self._stop_event.wait())
        done, pending = await asyncio.wait(
            {sleep_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in done:
            with contextlib.suppress(asyncio.CancelledError):
                task.result()
        for task in pending:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


__all__ = ["CleanupTimer"]
