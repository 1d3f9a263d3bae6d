from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select

from mediasync.core.types import PlexLibrary
from mediasync.db import session_scope
from mediasync.models import LibraryItem, UserAccessGrant
from mediasync.services.library_dao import LibraryDao
from mediasync.utils.time import utcnow
from tests.helpers import plex_item, plex_server, seed_item, seed_library


def test_account_tokens_are_upserted(database: None) -> None:
    dao = LibraryDao()

    assert dao.get_account_token(1) is None
    dao.set_account_token(1, "first")
    dao.set_account_token(1, "second")
    dao.set_account_token(2, "   ")

    assert dao.get_account_token(1) == "second"
    assert dao.get_account_token(2) is None


def test_servers_and_libraries_are_upserted_by_natural_key(database: None) -> None:
    dao = LibraryDao()

    first = dao.upsert_server(plex_server(name="Home"), base_url="https://a.test")
    again = dao.upsert_server(plex_server(name="Home renamed"), base_url=None)
    library = dao.upsert_library(first.id, PlexLibrary(key="1", title="Movies", type="movie"))
    renamed = dao.upsert_library(first.id, PlexLibrary(key="1", title="Films", type="movie"))

    assert again.id == first.id
    assert again.name == "Home renamed"
    assert again.base_url == "https://a.test"
    assert renamed.id == library.id
    assert renamed.title == "Films"


def test_grants_are_reactivated_and_verified(database: None) -> None:
    frozen = datetime(2026, 1, 1, 12, 0, 0)
    library_id = seed_library(owner_id=1, grant_active=False, verified_at=frozen - timedelta(days=60))
    dao = LibraryDao(now_factory=lambda: frozen)

    dao.upsert_grant(1, library_id)
    dao.upsert_grant(2, library_id, access_level="shared")

    with session_scope() as session:
        grants = {
            grant.owner_id: grant
            for grant in session.execute(select(UserAccessGrant)).scalars()
        }
    assert grants[1].is_active is True
    assert grants[1].last_verified_at == frozen
    assert grants[2].access_level == "shared"


def test_upsert_items_dedupes_and_resets_changed_guids(database: None) -> None:
    library_id = seed_library()
    seed_item(library_id, "1", guid="imdb://tt0000001", metadata_id=11, attempts=2, is_active=False)
    seed_item(library_id, "2", guid="tmdb://22", metadata_id=22)
    dao = LibraryDao()

    count = dao.upsert_items(
        library_id,
        [
            plex_item("1", "Changed", "tmdb://99", 2001),
            plex_item("2", "Same", "tmdb://22", 2002),
            plex_item("3", "New", None),
            plex_item("3", "New duplicate", None),
            plex_item("", "No key", None),
        ],
    )

    with session_scope() as session:
        rows = {
            row.rating_key: row
            for row in session.execute(select(LibraryItem)).scalars()
        }
    assert count == 3
    assert rows["1"].is_active is True
    assert rows["1"].metadata_id is None
    assert rows["1"].matching_attempts == 0
    assert rows["2"].metadata_id == 22
    assert rows["3"].title == "New duplicate"
    assert dao.refresh_library_stats(library_id) == 3


def test_unmatched_items_respect_grants_and_attempts(database: None) -> None:
    visible = seed_library(owner_id=1, section_key="1")
    hidden = seed_library(owner_id=1, section_key="2", grant_active=False)
    other = seed_library(owner_id=2, section_key="3")
    wanted = seed_item(visible, "a")
    seed_item(visible, "b", attempts=3)
    seed_item(visible, "c", metadata_id=5)
    seed_item(visible, "d", is_active=False)
    seed_item(hidden, "e")
    seed_item(other, "f")
    dao = LibraryDao()

    items = dao.list_unmatched_items(1, max_attempts=3)

    assert [item.id for item in items] == [wanted]
    dao.record_match_failure(wanted)
    assert dao.list_unmatched_items(1, max_attempts=3)[0].matching_attempts == 1
    dao.record_match(wanted, 603)
    assert dao.list_unmatched_items(1, max_attempts=3) == []


def test_deactivate_stale_items_only_touches_given_libraries(database: None) -> None:
    synced = seed_library(section_key="1")
    skipped = seed_library(section_key="2")
    old = utcnow() - timedelta(hours=2)
    seed_item(synced, "old", updated_at=old)
    seed_item(synced, "fresh")
    seed_item(skipped, "old-but-skipped", updated_at=old)
    dao = LibraryDao()

    changed = dao.deactivate_stale_items([synced], cutoff=utcnow() - timedelta(hours=1))

    assert changed == 1
    assert dao.deactivate_stale_items([], cutoff=utcnow()) == 0
    with session_scope() as session:
        active = {
            row.rating_key: row.is_active
            for row in session.execute(select(LibraryItem)).scalars()
        }
    assert active == {"old": False, "fresh": True, "old-but-skipped": True}
