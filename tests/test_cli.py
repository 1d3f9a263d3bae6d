from __future__ import annotations

import json
from typing import Any

import pytest

from mediasync import cli


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)


def _run(capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, Any]:
    code = cli._cli(list(argv))
    output = capsys.readouterr().out
    return code, json.loads(output)


def test_job_commands_round_trip(capsys: pytest.CaptureFixture[str]) -> None:
    code, stored = _run(capsys, "token", "--owner", "1", "--token", "plex-account-token")
    assert code == 0
    assert stored == {"owner_id": 1, "stored": True}

    code, created = _run(capsys, "sync", "--owner", "1")
    assert code == 0
    assert created["status"] == "pending"
    job_id = created["job_id"]

    code, conflict = _run(capsys, "sync", "--owner", "1")
    assert code == 1
    assert conflict["error"]["code"] == "CONFLICT"
    assert conflict["error"]["meta"]["job_id"] == job_id

    code, listing = _run(capsys, "jobs", "--owner", "1")
    assert code == 0
    assert [item["id"] for item in listing["items"]] == [job_id]
    assert listing["items"][0]["type"] == "full_sync"

    code, cancelled = _run(capsys, "cancel", str(job_id))
    assert code == 0
    assert cancelled["status"] == "cancelled"
    assert cancelled["error_message"] == "Job cancelled by user"

    code, shown = _run(capsys, "job", str(job_id))
    assert code == 0
    assert shown["status"] == "cancelled"


def test_invalid_owner_and_unknown_job_are_reported(capsys: pytest.CaptureFixture[str]) -> None:
    code, invalid = _run(capsys, "match", "--owner", "0")
    assert code == 1
    assert invalid["ok"] is False
    assert invalid["error"]["code"] == "VALIDATION_ERROR"

    code, missing = _run(capsys, "job", "424242")
    assert code == 1
    assert missing["error"]["code"] == "NOT_FOUND"


def test_cleanup_and_stats_commands(capsys: pytest.CaptureFixture[str]) -> None:
    code, report = _run(capsys, "cleanup")
    assert code == 0
    assert report["errors"] == {}
    assert report["total_changes"] == 0
    assert set(report["steps"]) == {
        "inactive_access",
        "orphaned_items",
        "unmatched_items",
        "orphaned_mappings",
        "library_counts",
        "old_jobs",
    }

    code, stats = _run(capsys, "stats")
    assert code == 0
    assert stats["library"]["total_active_items"] == 0
    assert stats["jobs"]["is_running"] is False
    assert stats["rate_limiter"]["max_tokens"] == 40
    assert stats["rate_limiter"]["usage"]["requests_count"] == 0
