"""Structured ``event`` records emitted by the engine components."""

from __future__ import annotations

import logging
from typing import Any

_SCALARS = (str, int, float, bool, type(None))


def _resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def log_event(
    logger: logging.Logger, event: str, /, *, level: str | int = "info", **fields: Any
) -> None:
    """Log ``event`` with ``fields`` attached to the record as attributes.

    Every field must be a scalar so handlers can render records as flat
    ``key=value`` pairs.
    """

    if not isinstance(event, str) or not event.strip():
        raise ValueError("event must be a non-empty string")
    nested = sorted(name for name, value in fields.items() if not isinstance(value, _SCALARS))
    if nested:
        raise TypeError(f"log fields must be scalar values: {', '.join(nested)}")

    numeric = _resolve_level(level)
    if logger.isEnabledFor(numeric):
        logger.log(numeric, event, extra={"event": event, **fields})


__all__ = ["log_event"]
