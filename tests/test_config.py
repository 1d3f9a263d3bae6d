from __future__ import annotations

from pathlib import Path

from mediasync.config import (
    DEFAULT_DATABASE_URL,
    get_runtime_env,
    load_config,
    load_runtime_env,
    override_runtime_env,
)


def test_defaults_match_documented_limits() -> None:
    config = load_config({"UNRELATED": "1"})

    assert config.database.url == DEFAULT_DATABASE_URL
    assert config.logging.level == "INFO"
    assert config.rate_limiter.capacity == 40
    assert config.rate_limiter.refill_interval_ms == 250
    assert config.rate_limiter.intake_size == 1000
    assert config.rate_limiter.request_timeout_s == 300.0
    assert config.rate_limiter.max_retries == 3
    assert config.jobs.workers == 3
    assert config.jobs.queue_size == 100
    assert config.jobs.job_timeout_s == 7200.0
    assert config.sync.max_matching_attempts == 3
    assert config.sync.page_size == 100
    assert config.cleanup.enabled is True
    assert config.cleanup.interval_s == 6 * 3600.0
    assert config.cleanup.access_stale_days == 30
    assert config.cleanup.unmatched_max_attempts == 3
    assert config.cleanup.job_retention_days == 7
    assert config.tmdb.api_key is None


def test_environment_overrides_are_parsed_and_bounded() -> None:
    config = load_config(
        {
            "DATABASE_URL": "sqlite:////tmp/other.db",
            "LOG_LEVEL": "debug",
            "TMDB_API_KEY": " secret ",
            "TMDB_BASE_URL": "https://tmdb.test/3/",
            "TMDB_RATE_CAPACITY": "0",
            "TMDB_RATE_MAX_RETRIES": "50",
            "SYNC_WORKERS": "not-a-number",
            "PLEX_PAGE_SIZE": "5000",
            "CLEANUP_ENABLED": "off",
            "CLEANUP_INTERVAL_S": "90",
            "SYNC_MAX_MATCHING_ATTEMPTS": "4",
            "CLEANUP_UNMATCHED_MAX_ATTEMPTS": "9",
        }
    )

    assert config.database.url == "sqlite:////tmp/other.db"
    assert config.logging.level == "DEBUG"
    assert config.tmdb.api_key == "secret"
    assert config.tmdb.base_url == "https://tmdb.test/3"
    assert config.rate_limiter.capacity == 1
    assert config.rate_limiter.max_retries == 10
    assert config.jobs.workers == 3
    assert config.plex.page_size == 1000
    assert config.sync.page_size == 1000
    assert config.cleanup.enabled is False
    assert config.cleanup.interval_s == 90.0
    assert config.sync.max_matching_attempts == 4
    assert config.cleanup.unmatched_max_attempts == 4


def test_env_file_is_applied_below_process_environment(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# local overrides\nTMDB_API_KEY='from-file'\nSYNC_WORKERS=5\nbroken-line\n",
        encoding="utf-8",
    )

    env = load_runtime_env(env_file=env_file, base_env={"SYNC_WORKERS": "7"})

    assert env["TMDB_API_KEY"] == "from-file"
    assert env["SYNC_WORKERS"] == "7"
    assert "broken-line" not in env


def test_runtime_env_override_feeds_load_config() -> None:
    override_runtime_env({"CLEANUP_ENABLED": "false"})

    assert get_runtime_env()["CLEANUP_ENABLED"] == "false"
    assert load_config().cleanup.enabled is False
