"""SQLAlchemy engine and session helpers for the sync database."""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import URL, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from mediasync.config import load_config
from mediasync.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class Base(DeclarativeBase):
    pass


_engine: Engine | None = None
_engine_url: str | None = None
_session_factory: sessionmaker[Session] | None = None
_engine_lock = threading.Lock()


def _sqlite_file(url: URL) -> Path | None:
    if not url.drivername.startswith("sqlite"):
        return None
    if not url.database or url.database == ":memory:":
        return None
    return Path(url.database).resolve()


def _create_engine(url: URL) -> Engine:
    connect_args: dict[str, object] = {}
    if url.drivername.startswith("sqlite"):
        url = url.set(drivername="sqlite+pysqlite")
        # sessions are opened from asyncio.to_thread workers
        connect_args = {"check_same_thread": False, "timeout": 30}
        db_file = _sqlite_file(url)
        if db_file is not None:
            db_file.parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args=connect_args)


def _sessions() -> sessionmaker[Session]:
    global _engine, _engine_url, _session_factory

    configured = load_config().database.url
    with _engine_lock:
        if _session_factory is not None and _engine_url == configured:
            return _session_factory

        reset_engine_for_tests()
        engine = _create_engine(make_url(configured))

        from mediasync import models  # noqa: F401

        Base.metadata.create_all(bind=engine, checkfirst=True)
        _engine = engine
        _engine_url = configured
        _session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        logger.debug("Database ready at %s", engine.url.render_as_string(hide_password=True))
        return _session_factory


def init_db() -> None:
    """Make sure the configured database exists and carries every table."""

    _sessions()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Open a session that commits on success and rolls back on error."""

    session = _sessions()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _call_in_session(func: Callable[[Session], T]) -> T:
    with session_scope() as session:
        return func(session)


async def run_session(func: Callable[[Session], T]) -> T:
    """Run ``func`` inside :func:`session_scope` on a worker thread."""

    return await asyncio.to_thread(_call_in_session, func)


def reset_engine_for_tests() -> None:
    global _engine, _engine_url, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _engine_url = None
    _session_factory = None


__all__ = ["Base", "init_db", "reset_engine_for_tests", "run_session", "session_scope"]
