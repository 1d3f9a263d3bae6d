"""Cooperative cancellation tokens shared between the job manager and processors."""

from __future__ import annotations

import asyncio
import contextlib

from mediasync.core.errors import JobCancelledError


class CancellationToken:
    """One-shot flag tripped when a job must stop at its next checkpoint."""

    __slots__ = ("_event", "_reason")

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError(self._reason or "Job cancelled by user")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return ``True`` when woken by cancellation."""

        if seconds <= 0:
            await asyncio.sleep(0)
            return self.cancelled
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        return self.cancelled


def raise_if_cancelled(token: CancellationToken | None) -> None:
    if token is not None:
        token.raise_if_cancelled()


__all__ = ["CancellationToken", "raise_if_cancelled"]
