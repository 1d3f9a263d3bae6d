"""Unified error types surfaced by the sync engine."""

from __future__ import annotations

from collections.abc import Mapping
from enum import Enum
from http import HTTPStatus
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from mediasync.workers.persistence import JobDTO


class ErrorCode(str, Enum):
    """Error codes exposed to callers of the engine."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    QUEUE_FULL = "QUEUE_FULL"


class AppError(Exception):
    """Base exception for errors returned to engine callers."""

    __slots__ = ("message", "code", "http_status", "meta")

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        http_status: int = HTTPStatus.INTERNAL_SERVER_ERROR,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = int(http_status)
        self.meta = meta

    def as_payload(self) -> dict[str, Any]:
        """Serialise the exception into the canonical error envelope."""

        error: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.meta:
            error["meta"] = dict(self.meta)
        return {"ok": False, "error": error}


class ValidationAppError(AppError):
    """Raised when a caller submitted invalid input."""

    def __init__(self, message: str, *, meta: Mapping[str, Any] | None = None) -> None:
        super().__init__(
            message,
            code=ErrorCode.VALIDATION_ERROR,
            http_status=HTTPStatus.BAD_REQUEST,
            meta=meta,
        )


class ConflictError(AppError):
    """Raised when the request collides with work already in flight."""

    def __init__(self, message: str, *, meta: Mapping[str, Any] | None = None) -> None:
        super().__init__(
            message,
            code=ErrorCode.CONFLICT,
            http_status=HTTPStatus.CONFLICT,
            meta=meta,
        )


class NotFoundError(AppError):
    """Raised when a resource could not be located."""

    def __init__(self, message: str = "Resource not found.") -> None:
        super().__init__(
            message,
            code=ErrorCode.NOT_FOUND,
            http_status=HTTPStatus.NOT_FOUND,
        )


class JobQueueFullError(AppError):
    """Raised when the dispatch queue rejected a freshly created job.

    The job row has already been persisted and marked failed; it is attached
    as ``job`` so callers can report its id.
    """

    def __init__(self, job: "JobDTO", message: str = "Job queue is full") -> None:
        super().__init__(
            message,
            code=ErrorCode.QUEUE_FULL,
            http_status=HTTPStatus.SERVICE_UNAVAILABLE,
            meta={"job_id": job.id},
        )
        self.job = job


__all__ = [
    "AppError",
    "ConflictError",
    "ErrorCode",
    "JobQueueFullError",
    "NotFoundError",
    "ValidationAppError",
]
