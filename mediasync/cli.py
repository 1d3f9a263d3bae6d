"""Command line entry point for running and inspecting the sync engine."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError

from mediasync.config import load_config
from mediasync.errors import AppError, ValidationAppError
from mediasync.logging import configure_logging, get_logger
from mediasync.models import JobType
from mediasync.orchestrator.bootstrap import SyncEngine, build_engine
from mediasync.schemas import (
    EngineStats,
    JobCreatedResponse,
    JobListResponse,
    JobView,
    SyncJobCreate,
)
from mediasync.services.library_dao import LibraryDao

logger = get_logger(__name__)

_POLL_INTERVAL_S = 1.0


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _serve(engine: SyncEngine) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    await engine.start()
    try:
        await stop.wait()
    finally:
        await engine.stop()
    return 0


async def _wait_for_job(engine: SyncEngine, job_id: int) -> JobView:
    await engine.start(with_timer=False)
    try:
        while True:
            job = await engine.job_manager.get_job(job_id)
            if job.is_terminal:
                return JobView.model_validate(job)
            await asyncio.sleep(_POLL_INTERVAL_S)
    finally:
        await engine.stop()


async def _submit(engine: SyncEngine, job_type: JobType, owner_id: int | None, wait: bool) -> int:
    try:
        request = SyncJobCreate(job_type=job_type, owner_id=owner_id)
    except ValidationError as exc:
        raise ValidationAppError(
            "Invalid job request", meta={"errors": [error["msg"] for error in exc.errors()]}
        ) from exc
    job = await engine.job_manager.create_job(
        request.job_type, request.owner_id, request.metadata
    )
    if not wait:
        _print(JobCreatedResponse.from_job(job).model_dump(mode="json"))
        return 0
    view = await _wait_for_job(engine, job.id)
    _print(view.model_dump(mode="json"))
    return 0 if view.status.value == "completed" else 1


async def _dispatch(args: argparse.Namespace, engine: SyncEngine) -> int:
    manager = engine.job_manager
    if args.command == "run":
        return await _serve(engine)
    if args.command == "sync":
        return await _submit(engine, JobType.FULL_SYNC, args.owner, args.wait)
    if args.command == "match":
        return await _submit(engine, JobType.METADATA_MATCHING, args.owner, args.wait)
    if args.command == "job":
        job = await manager.get_job(args.job_id)
        _print(JobView.model_validate(job).model_dump(mode="json"))
        return 0
    if args.command == "jobs":
        jobs = await manager.get_user_jobs(args.owner, args.limit)
        listing = JobListResponse(items=[JobView.model_validate(job) for job in jobs])
        _print(listing.model_dump(mode="json"))
        return 0
    if args.command == "cancel":
        job = await manager.cancel_job(args.job_id)
        _print(JobView.model_validate(job).model_dump(mode="json"))
        return 0
    if args.command == "cleanup":
        report = await engine.cleanup_service.run_full_cleanup()
        _print(report.as_dict())
        return 0 if report.ok else 1
    if args.command == "stats":
        limiter = engine.rate_limiter.stats()
        limiter["usage"] = await engine.rate_limiter.usage_stats()
        stats = EngineStats(
            jobs=manager.stats(),
            rate_limiter=limiter,
            library=await engine.cleanup_service.collect_stats(),
        )
        _print(stats.model_dump(mode="json"))
        return 0
    if args.command == "token":
        await asyncio.to_thread(LibraryDao().set_account_token, args.owner, args.token)
        _print({"owner_id": args.owner, "stored": True})
        return 0
    raise ValueError(f"Unknown command: {args.command}")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mediasync", description="Media library sync engine")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("run", help="Run workers, rate limiter and cleanup timer until stopped")

    for name, help_text in (
        ("sync", "Queue a full library sync for an owner"),
        ("match", "Queue an ID matching pass for an owner"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("--owner", type=int, required=True, help="Owner id")
        command.add_argument(
            "--wait",
            action="store_true",
            help="Run the engine in-process until the job finishes",
        )

    job = commands.add_parser("job", help="Show a single job")
    job.add_argument("job_id", type=int)

    jobs = commands.add_parser("jobs", help="List an owner's most recent jobs")
    jobs.add_argument("--owner", type=int, required=True)
    jobs.add_argument("--limit", type=int, default=20)

    cancel = commands.add_parser("cancel", help="Cancel a pending or running job")
    cancel.add_argument("job_id", type=int)

    commands.add_parser("cleanup", help="Run the maintenance cleanup once")
    commands.add_parser("stats", help="Print engine and library statistics")

    token = commands.add_parser("token", help="Store an owner's media account token")
    token.add_argument("--owner", type=int, required=True)
    token.add_argument("--token", required=True)
    return parser


def _cli(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    config = load_config()
    configure_logging(config.logging.level, config.logging.file)
    engine = build_engine(config)
    try:
        return asyncio.run(_dispatch(args, engine))
    except AppError as exc:
        _print(exc.as_payload())
        return 1


def main() -> None:
    raise SystemExit(_cli())


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    main()
