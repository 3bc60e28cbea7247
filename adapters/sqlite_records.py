"""SQLite Record Store for audiobooks and their chapters"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

import aiosqlite

from adapters.base import RecordStore
from errors import StorageFailure
from models.audiobook import Book, ChapterRecord

logger = logging.getLogger(__name__)


class SQLiteRecordStore(RecordStore):
    """Record store on aiosqlite. One short-lived connection per call."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    @asynccontextmanager
    async def _connect(self):
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except aiosqlite.Error as e:
            logger.error(f"Record store error: {e}")
            raise StorageFailure("Record store unavailable") from e

    async def init_db(self):
        """Create tables if they do not exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect() as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS audiobooks (
                    id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (id, user_id)
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS audiobook_chapters (
                    id TEXT NOT NULL,
                    book_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    chapter_index INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    duration REAL DEFAULT 0,
                    format TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    PRIMARY KEY (id, user_id)
                )
            """)

            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_audiobook_chapters_book "
                "ON audiobook_chapters(book_id, user_id)"
            )
            await db.commit()

    async def upsert_book(self, book_id: str, user_id: str, title: str) -> None:
        async with self._connect() as db:
            await db.execute(
                "INSERT OR IGNORE INTO audiobooks (id, user_id, title) VALUES (?, ?, ?)",
                (book_id, user_id, title)
            )
            await db.commit()

    async def get_book(self, book_id: str, allowed_user_ids: Sequence[str]) -> Optional[Book]:
        if not allowed_user_ids:
            return None
        placeholders = ",".join("?" for _ in allowed_user_ids)
        async with self._connect() as db:
            cursor = await db.execute(
                f"SELECT id, user_id, title, created_at FROM audiobooks "
                f"WHERE id = ? AND user_id IN ({placeholders})",
                (book_id, *allowed_user_ids)
            )
            rows = await cursor.fetchall()

        if not rows:
            return None
        # Prefer the caller's own book over an unclaimed one
        by_user = {row["user_id"]: row for row in rows}
        row = next(by_user[u] for u in allowed_user_ids if u in by_user)
        created_at = datetime.fromisoformat(row["created_at"]) if row["created_at"] else None
        return Book(id=row["id"], user_id=row["user_id"], title=row["title"], created_at=created_at)

    async def book_owners(self, book_id: str) -> List[str]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT user_id FROM audiobooks WHERE id = ? ORDER BY user_id",
                (book_id,)
            )
            rows = await cursor.fetchall()
        return [row["user_id"] for row in rows]

    async def delete_book(self, book_id: str, user_id: str) -> bool:
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM audiobooks WHERE id = ? AND user_id = ?",
                (book_id, user_id)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def upsert_chapter_record(self, record: ChapterRecord) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO audiobook_chapters
                    (id, book_id, user_id, chapter_index, title, duration, format, file_path)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id, user_id) DO UPDATE SET
                    title = excluded.title,
                    duration = excluded.duration,
                    format = excluded.format,
                    file_path = excluded.file_path
                """,
                (
                    f"{record.book_id}-{record.index}", record.book_id, record.user_id,
                    record.index, record.title, record.duration, record.format, record.file_name
                )
            )
            await db.commit()

    async def list_chapter_records(self, book_id: str, user_id: str) -> List[ChapterRecord]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT chapter_index, title, duration, format, file_path FROM audiobook_chapters "
                "WHERE book_id = ? AND user_id = ? ORDER BY chapter_index",
                (book_id, user_id)
            )
            rows = await cursor.fetchall()

        return [
            ChapterRecord(
                book_id=book_id,
                user_id=user_id,
                index=row["chapter_index"],
                title=row["title"],
                duration=row["duration"] or 0.0,
                format=row["format"],
                file_name=row["file_path"]
            )
            for row in rows
        ]

    async def delete_chapter_record(self, book_id: str, user_id: str, index: int) -> None:
        async with self._connect() as db:
            await db.execute(
                "DELETE FROM audiobook_chapters WHERE book_id = ? AND user_id = ? AND chapter_index = ?",
                (book_id, user_id, index)
            )
            await db.commit()

    async def delete_chapter_records(self, book_id: str, user_id: str) -> None:
        async with self._connect() as db:
            await db.execute(
                "DELETE FROM audiobook_chapters WHERE book_id = ? AND user_id = ?",
                (book_id, user_id)
            )
            await db.commit()
