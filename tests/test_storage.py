"""Filesystem object store and SQLite record store."""

import asyncio
import os
import time

import pytest

from adapters.filesystem import FilesystemObjectStore
from adapters.sqlite_records import SQLiteRecordStore
from errors import InvalidArgument
from models.audiobook import ChapterRecord


@pytest.fixture
def store(tmp_path) -> FilesystemObjectStore:
    return FilesystemObjectStore(tmp_path / "audiobooks")


def test_put_get_round_trip(store, tmp_path) -> None:
    asyncio.run(store.put("book/0001__Intro.mp3", b"audio"))

    assert asyncio.run(store.get("book/0001__Intro.mp3")) == b"audio"
    assert (tmp_path / "audiobooks" / "book-audiobook" / "0001__Intro.mp3").read_bytes() == b"audio"
    assert asyncio.run(store.get("book/missing.mp3")) is None
    assert asyncio.run(store.exists("book/0001__Intro.mp3"))


def test_put_replaces_existing_object(store) -> None:
    asyncio.run(store.put("book/complete.mp3", b"old"))
    asyncio.run(store.put("book/complete.mp3", b"new"))
    assert asyncio.run(store.get("book/complete.mp3")) == b"new"
    assert [o.key for o in asyncio.run(store.list("book/"))] == ["book/complete.mp3"]


def test_list_is_sorted_filtered_and_skips_temp_files(store, tmp_path) -> None:
    for name in ("0002__B.mp3", "0001__A.mp3", "complete.mp3"):
        asyncio.run(store.put(f"book/{name}", b"x" * 3))
    (tmp_path / "audiobooks" / "book-audiobook" / ".0003__C.mp3.abc.tmp").write_bytes(b"partial")

    listed = asyncio.run(store.list("book/"))
    assert [o.key for o in listed] == ["book/0001__A.mp3", "book/0002__B.mp3", "book/complete.mp3"]
    assert listed[0].size == 3
    assert [o.key for o in asyncio.run(store.list("book/000"))] == ["book/0001__A.mp3", "book/0002__B.mp3"]
    assert asyncio.run(store.list("other/")) == []


def test_delete_and_delete_prefix(store) -> None:
    asyncio.run(store.put("book/a.mp3", b"x"))
    asyncio.run(store.put("book/b.mp3", b"x"))

    assert asyncio.run(store.delete("book/a.mp3")) is True
    assert asyncio.run(store.delete("book/a.mp3")) is False
    assert asyncio.run(store.delete_prefix("book")) is True
    assert asyncio.run(store.delete_prefix("book")) is False
    assert asyncio.run(store.list("book/")) == []


@pytest.mark.parametrize("key", ["book", "book/", "/name", "book/a/b", "../x", "book/.."])
def test_invalid_keys_are_rejected(store, key) -> None:
    with pytest.raises(InvalidArgument):
        asyncio.run(store.put(key, b"x"))


def test_sweep_removes_only_old_temp_files(store, tmp_path) -> None:
    book_dir = tmp_path / "audiobooks" / "book-audiobook"
    book_dir.mkdir(parents=True)
    old = book_dir / ".0001__A.mp3.old.tmp"
    fresh = book_dir / ".0001__A.mp3.new.tmp"
    kept = book_dir / "0001__A.mp3"
    for path in (old, fresh, kept):
        path.write_bytes(b"x")
    stale = time.time() - 7200
    os.utime(old, (stale, stale))

    assert store.sweep_stale_temp_files(max_age_seconds=3600) == 1
    assert not old.exists()
    assert fresh.exists() and kept.exists()


@pytest.fixture
def records(tmp_path) -> SQLiteRecordStore:
    store = SQLiteRecordStore(tmp_path / "db" / "openreader.db")
    asyncio.run(store.init_db())
    return store


def _record(index: int, title: str = "T", duration: float = 1.5) -> ChapterRecord:
    return ChapterRecord(
        book_id="book", user_id="u", index=index, title=title,
        duration=duration, format="mp3", file_name=f"{index + 1:04d}__{title}.mp3"
    )


def test_init_db_is_idempotent(records) -> None:
    asyncio.run(records.init_db())


def test_book_upsert_keeps_first_title(records) -> None:
    asyncio.run(records.upsert_book("book", "u", "First"))
    asyncio.run(records.upsert_book("book", "u", "Second"))

    book = asyncio.run(records.get_book("book", ["u"]))
    assert book.title == "First"
    assert book.user_id == "u"
    assert book.created_at is not None


def test_get_book_respects_allowed_owners(records) -> None:
    asyncio.run(records.upsert_book("book", "unclaimed", "Shared"))
    asyncio.run(records.upsert_book("book", "u", "Mine"))

    assert asyncio.run(records.get_book("book", ["u", "unclaimed"])).title == "Mine"
    assert asyncio.run(records.get_book("book", ["other", "unclaimed"])).title == "Shared"
    assert asyncio.run(records.get_book("book", ["other"])) is None
    assert asyncio.run(records.get_book("book", [])) is None


def test_delete_book_reports_existence(records) -> None:
    asyncio.run(records.upsert_book("book", "u", "Title"))
    assert asyncio.run(records.delete_book("book", "u")) is True
    assert asyncio.run(records.delete_book("book", "u")) is False


def test_chapter_records_upsert_list_delete(records) -> None:
    asyncio.run(records.upsert_chapter_record(_record(1, "Two")))
    asyncio.run(records.upsert_chapter_record(_record(0, "One")))
    asyncio.run(records.upsert_chapter_record(_record(1, "Two again", 3.0)))

    listed = asyncio.run(records.list_chapter_records("book", "u"))
    assert [(r.index, r.title, r.duration) for r in listed] == [(0, "One", 1.5), (1, "Two again", 3.0)]
    assert listed[1].file_name == "0002__Two again.mp3"
    assert asyncio.run(records.list_chapter_records("book", "other")) == []

    asyncio.run(records.delete_chapter_record("book", "u", 0))
    assert [r.index for r in asyncio.run(records.list_chapter_records("book", "u"))] == [1]

    asyncio.run(records.delete_chapter_records("book", "u"))
    assert asyncio.run(records.list_chapter_records("book", "u")) == []


def test_exists_checks_the_file_without_reading_it(store, monkeypatch) -> None:
    asyncio.run(store.put("book/complete.m4b", b"x" * 1024))

    async def no_reads(key):
        raise AssertionError(f"unexpected read of {key}")

    monkeypatch.setattr(store, "get", no_reads)
    assert asyncio.run(store.exists("book/complete.m4b")) is True
    assert asyncio.run(store.exists("book/complete.mp3")) is False
    assert asyncio.run(store.exists("other/complete.mp3")) is False


def test_book_owners_lists_every_owner(records) -> None:
    asyncio.run(records.upsert_book("book", "unclaimed", "Shared"))
    asyncio.run(records.upsert_book("book", "alice", "Mine"))
    asyncio.run(records.upsert_book("other", "bob", "Other"))

    assert asyncio.run(records.book_owners("book")) == ["alice", "unclaimed"]
    assert asyncio.run(records.book_owners("missing")) == []
