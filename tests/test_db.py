from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import func, inspect, select
from sqlalchemy.orm import Session

from mediasync.config import override_runtime_env
from mediasync.db import run_session, session_scope
from mediasync.models import MediaAccountToken


def test_first_session_creates_the_file_and_tables(tmp_path: Path) -> None:
    db_file = tmp_path / "nested" / "dir" / "engine.db"
    override_runtime_env({"DATABASE_URL": f"sqlite:///{db_file}"})

    with session_scope() as session:
        tables = set(inspect(session.get_bind()).get_table_names())

    assert db_file.exists()
    assert {"sync_jobs", "library_items", "external_id_mappings", "provider_usage"} <= tables


def test_failed_scope_rolls_back(database: None) -> None:
    with pytest.raises(RuntimeError):
        with session_scope() as session:
            session.add(MediaAccountToken(owner_id=1, token="lost"))
            session.flush()
            raise RuntimeError("boom")

    with session_scope() as session:
        assert session.execute(select(func.count(MediaAccountToken.id))).scalar_one() == 0


@pytest.mark.asyncio
async def test_run_session_follows_a_changed_database_url(tmp_path: Path) -> None:
    def _store(session: Session) -> None:
        session.add(MediaAccountToken(owner_id=7, token="first-db"))

    def _count(session: Session) -> int:
        return session.execute(select(func.count(MediaAccountToken.id))).scalar_one()

    override_runtime_env({"DATABASE_URL": f"sqlite:///{tmp_path / 'one.db'}"})
    await run_session(_store)
    assert await run_session(_count) == 1

    override_runtime_env({"DATABASE_URL": f"sqlite:///{tmp_path / 'two.db'}"})
    assert await run_session(_count) == 0
