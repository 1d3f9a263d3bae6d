"""Clock helpers shared by the persistence layer and the timers."""

from __future__ import annotations

import asyncio
import random
from datetime import UTC, datetime

__all__ = ["utcnow", "sleep_jitter_ms"]


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""

    return datetime.now(UTC).replace(tzinfo=None)


async def sleep_jitter_ms(ms: int, jitter_pct: int) -> float:
    """Sleep ``ms`` milliseconds spread by up to ``jitter_pct`` either way.

    Returns the number of seconds actually slept.
    """

    delay = max(0, int(ms)) / 1000.0
    spread = delay * max(0, int(jitter_pct)) / 100.0
    if spread:
        delay = random.uniform(max(0.0, delay - spread), delay + spread)
    await asyncio.sleep(delay)
    return delay
