"""Structured logging helpers for orchestrator components."""

from __future__ import annotations

from typing import Any

from mediasync.logging_events import log_event


def emit_enqueue_event(
    logger: Any,
    *,
    job_id: int | str,
    job_type: str,
    status: str,
    owner_id: int | None = None,
    queue_size: int | None = None,
) -> None:
    payload: dict[str, Any] = {
        "entity_id": str(job_id),
        "job_type": job_type,
        "status": status,
    }
    if owner_id is not None:
        payload["owner_id"] = owner_id
    if queue_size is not None:
        payload["queue_size"] = queue_size
    _emit_event(logger, "orchestrator.enqueue", payload)


def emit_dispatch_event(
    logger: Any,
    *,
    job_id: int | str,
    job_type: str,
    status: str,
    worker_id: int | None = None,
) -> None:
    payload: dict[str, Any] = {
        "entity_id": str(job_id),
        "job_type": job_type,
        "status": status,
    }
    if worker_id is not None:
        payload["worker_id"] = worker_id
    _emit_event(logger, "orchestrator.dispatch", payload)


def emit_commit_event(
    logger: Any,
    *,
    job_id: int | str,
    job_type: str,
    status: str,
    duration_ms: int,
    worker_id: int | None = None,
    error: str | None = None,
) -> None:
    payload: dict[str, Any] = {
        "entity_id": str(job_id),
        "job_type": job_type,
        "status": status,
        "duration_ms": duration_ms,
    }
    if worker_id is not None:
        payload["worker_id"] = worker_id
    if error:
        payload["error"] = error
    _emit_event(logger, "orchestrator.commit", payload)


def emit_resume_event(logger: Any, *, resumed: int, requeued: int) -> None:
    _emit_event(
        logger,
        "orchestrator.resume",
        {"status": "ok" if resumed == requeued else "partial", "resumed": resumed, "requeued": requeued},
    )


def emit_timer_event(
    logger: Any,
    *,
    status: str,
    duration_ms: int,
    component: str | None = None,
    changes: int | None = None,
    reason: str | None = None,
    error: str | None = None,
) -> None:
    payload: dict[str, Any] = {"status": status, "duration_ms": duration_ms}
    if component:
        payload["component"] = component
    if changes is not None:
        payload["changes"] = changes
    if reason:
        payload["reason"] = reason
    if error:
        payload["error"] = error
    _emit_event(logger, "orchestrator.timer_tick", payload)


def _emit_event(logger: Any, event: str, payload: dict[str, Any]) -> None:
    log_event(logger, event, **payload)
