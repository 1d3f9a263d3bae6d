"""Application configuration utilities for mediasync."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import os
from pathlib import Path
from typing import Any

_RUNTIME_ENV_CACHE: dict[str, str] | None = None

DEFAULT_DATABASE_URL = "sqlite:///./mediasync.db"
DEFAULT_TMDB_BASE_URL = "https://api.themoviedb.org/3"
DEFAULT_TMDB_IMAGE_BASE_URL = "https://image.tmdb.org/t/p/w500"
DEFAULT_PLEX_RESOURCES_URL = "https://plex.tv/api/v2/resources"


def _load_env_file(path: Path) -> dict[str, str]:
    try:
        contents = path.read_text(encoding="utf-8")
    except OSError:
        return {}
    env_values: dict[str, str] = {}
    for line in contents.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        env_values[key.strip()] = value.strip().strip('"').strip("'")
    return env_values


def load_runtime_env(
    *,
    env_file: str | os.PathLike[str] | None = None,
    base_env: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Load runtime environment values applying .env before explicit environment."""

    env: dict[str, str] = {}
    source = dict(base_env or os.environ)

    path = Path(env_file) if env_file is not None else Path(".env")
    if path.exists() and path.is_file():
        env.update(_load_env_file(path))

    env.update({key: str(value) for key, value in source.items() if value is not None})
    return env


def get_runtime_env() -> Mapping[str, str]:
    """Return the cached runtime environment mapping."""

    global _RUNTIME_ENV_CACHE
    if _RUNTIME_ENV_CACHE is None:
        _RUNTIME_ENV_CACHE = load_runtime_env()
    return _RUNTIME_ENV_CACHE


def override_runtime_env(runtime_env: Mapping[str, str] | None) -> None:
    """Override the cached runtime environment (primarily for testing)."""

    global _RUNTIME_ENV_CACHE
    if runtime_env is None:
        _RUNTIME_ENV_CACHE = None
    else:
        _RUNTIME_ENV_CACHE = dict(runtime_env)


def _env_value(env: Mapping[str, Any], key: str) -> str | None:
    value = env.get(key)
    if value is None:
        return None
    return str(value)


def _as_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _coerce_int(value: Any, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _bounded_int(
    value: Any,
    *,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    resolved = _coerce_int(value, default=default)
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


def _bounded_float(
    value: Any,
    *,
    default: float,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    try:
        resolved = float(value)
    except (TypeError, ValueError):
        resolved = default
    if minimum is not None:
        resolved = max(minimum, resolved)
    if maximum is not None:
        resolved = min(maximum, resolved)
    return resolved


@dataclass(slots=True)
class DatabaseConfig:
    url: str


@dataclass(slots=True)
class LoggingConfig:
    level: str
    file: str | None


@dataclass(slots=True)
class PlexConfig:
    resources_url: str
    client_identifier: str
    product: str
    version: str
    timeout_s: float
    page_size: int


@dataclass(slots=True)
class TmdbConfig:
    api_key: str | None
    base_url: str
    image_base_url: str
    timeout_ms: int


@dataclass(slots=True)
class RateLimiterConfig:
    """Token bucket sizing for metadata provider calls.

    The defaults keep the engine at 80% of the provider ceiling of 50
    requests per 10 seconds: 40 tokens, one refilled every 250ms.
    """

    capacity: int
    refill_interval_ms: int
    intake_size: int
    intake_timeout_s: float
    request_timeout_s: float
    max_retries: int
    backoff_base_ms: int
    jitter_pct: int


@dataclass(slots=True)
class JobManagerConfig:
    workers: int
    queue_size: int
    job_timeout_s: float
    enqueue_timeout_s: float
    shutdown_grace_s: float


@dataclass(slots=True)
class SyncConfig:
    max_matching_attempts: int
    match_priority: int
    stale_item_grace_s: int
    page_size: int


@dataclass(slots=True)
class CleanupConfig:
    enabled: bool
    interval_s: float
    access_stale_days: int
    unmatched_max_attempts: int
    job_retention_days: int


@dataclass(slots=True)
class AppConfig:
    database: DatabaseConfig
    logging: LoggingConfig
    plex: PlexConfig
    tmdb: TmdbConfig
    rate_limiter: RateLimiterConfig
    jobs: JobManagerConfig
    sync: SyncConfig
    cleanup: CleanupConfig


def _resolve_database_url(env: Mapping[str, Any]) -> str:
    raw = (_env_value(env, "DATABASE_URL") or "").strip()
    return raw or DEFAULT_DATABASE_URL


def load_config(runtime_env: Mapping[str, Any] | None = None) -> AppConfig:
    """Load the engine configuration from the runtime environment."""

    env = get_runtime_env() if runtime_env is None else runtime_env

    database = DatabaseConfig(url=_resolve_database_url(env))
    logging_config = LoggingConfig(
        level=(_env_value(env, "LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        file=(_env_value(env, "LOG_FILE") or "").strip() or None,
    )

    plex = PlexConfig(
        resources_url=(
            _env_value(env, "PLEX_RESOURCES_URL") or DEFAULT_PLEX_RESOURCES_URL
        ).strip(),
        client_identifier=(
            _env_value(env, "PLEX_CLIENT_IDENTIFIER") or "mediasync"
        ).strip(),
        product=(_env_value(env, "PLEX_PRODUCT") or "mediasync").strip(),
        version=(_env_value(env, "PLEX_VERSION") or "1.0").strip(),
        timeout_s=_bounded_float(
            _env_value(env, "PLEX_TIMEOUT_S"), default=30.0, minimum=1.0
        ),
        page_size=_bounded_int(
            _env_value(env, "PLEX_PAGE_SIZE"), default=100, minimum=1, maximum=1000
        ),
    )

    tmdb = TmdbConfig(
        api_key=(_env_value(env, "TMDB_API_KEY") or "").strip() or None,
        base_url=(_env_value(env, "TMDB_BASE_URL") or DEFAULT_TMDB_BASE_URL).rstrip("/"),
        image_base_url=(
            _env_value(env, "TMDB_IMAGE_BASE_URL") or DEFAULT_TMDB_IMAGE_BASE_URL
        ).rstrip("/"),
        timeout_ms=_bounded_int(
            _env_value(env, "TMDB_TIMEOUT_MS"), default=10_000, minimum=100
        ),
    )

    rate_limiter = RateLimiterConfig(
        capacity=_bounded_int(
            _env_value(env, "TMDB_RATE_CAPACITY"), default=40, minimum=1
        ),
        refill_interval_ms=_bounded_int(
            _env_value(env, "TMDB_RATE_REFILL_MS"), default=250, minimum=1
        ),
        intake_size=_bounded_int(
            _env_value(env, "TMDB_RATE_INTAKE_SIZE"), default=1000, minimum=1
        ),
        intake_timeout_s=_bounded_float(
            _env_value(env, "TMDB_RATE_INTAKE_TIMEOUT_S"), default=30.0, minimum=0.0
        ),
        request_timeout_s=_bounded_float(
            _env_value(env, "TMDB_RATE_REQUEST_TIMEOUT_S"), default=300.0, minimum=0.1
        ),
        max_retries=_bounded_int(
            _env_value(env, "TMDB_RATE_MAX_RETRIES"), default=3, minimum=0, maximum=10
        ),
        backoff_base_ms=_bounded_int(
            _env_value(env, "TMDB_RATE_BACKOFF_BASE_MS"), default=1000, minimum=1
        ),
        jitter_pct=_bounded_int(
            _env_value(env, "TMDB_RATE_JITTER_PCT"), default=0, minimum=0, maximum=100
        ),
    )

    jobs = JobManagerConfig(
        workers=_bounded_int(_env_value(env, "SYNC_WORKERS"), default=3, minimum=1),
        queue_size=_bounded_int(
            _env_value(env, "SYNC_QUEUE_SIZE"), default=100, minimum=1
        ),
        job_timeout_s=_bounded_float(
            _env_value(env, "SYNC_JOB_TIMEOUT_S"), default=7200.0, minimum=1.0
        ),
        enqueue_timeout_s=_bounded_float(
            _env_value(env, "SYNC_ENQUEUE_TIMEOUT_S"), default=0.0, minimum=0.0
        ),
        shutdown_grace_s=_bounded_float(
            _env_value(env, "SYNC_SHUTDOWN_GRACE_S"), default=30.0, minimum=0.0
        ),
    )

    sync = SyncConfig(
        max_matching_attempts=_bounded_int(
            _env_value(env, "SYNC_MAX_MATCHING_ATTEMPTS"), default=3, minimum=1
        ),
        match_priority=_coerce_int(_env_value(env, "SYNC_MATCH_PRIORITY"), default=0),
        stale_item_grace_s=_bounded_int(
            _env_value(env, "SYNC_STALE_ITEM_GRACE_S"), default=3600, minimum=0
        ),
        page_size=plex.page_size,
    )

    cleanup = CleanupConfig(
        enabled=_as_bool(_env_value(env, "CLEANUP_ENABLED"), default=True),
        interval_s=_bounded_float(
            _env_value(env, "CLEANUP_INTERVAL_S"), default=6 * 3600.0, minimum=0.0
        ),
        access_stale_days=_bounded_int(
            _env_value(env, "CLEANUP_ACCESS_STALE_DAYS"), default=30, minimum=1
        ),
        unmatched_max_attempts=_bounded_int(
            _env_value(env, "CLEANUP_UNMATCHED_MAX_ATTEMPTS"),
            default=sync.max_matching_attempts,
            minimum=1,
            maximum=sync.max_matching_attempts,
        ),
        job_retention_days=_bounded_int(
            _env_value(env, "CLEANUP_JOB_RETENTION_DAYS"), default=7, minimum=1
        ),
    )

    return AppConfig(
        database=database,
        logging=logging_config,
        plex=plex,
        tmdb=tmdb,
        rate_limiter=rate_limiter,
        jobs=jobs,
        sync=sync,
        cleanup=cleanup,
    )


__all__ = [
    "AppConfig",
    "CleanupConfig",
    "DatabaseConfig",
    "JobManagerConfig",
    "LoggingConfig",
    "PlexConfig",
    "RateLimiterConfig",
    "SyncConfig",
    "TmdbConfig",
    "get_runtime_env",
    "load_config",
    "load_runtime_env",
    "override_runtime_env",
]
