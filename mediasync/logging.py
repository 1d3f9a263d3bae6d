"""Process-wide logging setup for the CLI and the engine."""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"

_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "event"}
_CHATTY_LOGGERS = ("aiohttp.access", "httpx", "httpcore")


class EventFormatter(logging.Formatter):
    """Append the fields attached by ``log_event`` as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        if getattr(record, "event", None) is None:
            return line
        fields = " ".join(
            f"{name}={value}"
            for name, value in vars(record).items()
            if name not in _STANDARD_ATTRS
        )
        return f"{line} {fields}" if fields else line


def configure_logging(level: str = "INFO", log_file: str | None = None) -> None:
    """Route records to stderr (stdout carries CLI output) and optionally a file."""

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    formatter = EventFormatter(LOG_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)

    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(level=numeric, handlers=handlers, force=True)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, numeric))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
