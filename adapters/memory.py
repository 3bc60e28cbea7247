"""In-memory storage adapters, used by tests and throwaway runs"""
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from adapters.base import ObjectStore, RecordStore, StoredObject
from models.audiobook import Book, ChapterRecord


class MemoryObjectStore(ObjectStore):

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        self.objects[key] = bytes(data)
        self.content_types[key] = content_type

    async def get(self, key: str) -> Optional[bytes]:
        return self.objects.get(key)

    async def list(self, prefix: str) -> List[StoredObject]:
        return [
            StoredObject(key=key, size=len(data))
            for key, data in sorted(self.objects.items())
            if key.startswith(prefix)
        ]

    async def exists(self, key: str) -> bool:
        return key in self.objects

    async def delete(self, key: str) -> bool:
        self.content_types.pop(key, None)
        return self.objects.pop(key, None) is not None

    async def delete_prefix(self, book_id: str) -> bool:
        keys = [key for key in self.objects if key.startswith(f"{book_id}/")]
        for key in keys:
            await self.delete(key)
        return bool(keys)


class MemoryRecordStore(RecordStore):

    def __init__(self):
        self.books: Dict[Tuple[str, str], Book] = {}
        self.chapters: Dict[Tuple[str, str, int], ChapterRecord] = {}

    async def upsert_book(self, book_id: str, user_id: str, title: str) -> None:
        if (book_id, user_id) not in self.books:
            self.books[(book_id, user_id)] = Book(id=book_id, user_id=user_id, title=title, created_at=datetime.now())

    async def get_book(self, book_id: str, allowed_user_ids: Sequence[str]) -> Optional[Book]:
        for user_id in allowed_user_ids:
            book = self.books.get((book_id, user_id))
            if book:
                return book
        return None

    async def book_owners(self, book_id: str) -> List[str]:
        return sorted(user_id for (stored_id, user_id) in self.books if stored_id == book_id)

    async def delete_book(self, book_id: str, user_id: str) -> bool:
        return self.books.pop((book_id, user_id), None) is not None

    async def upsert_chapter_record(self, record: ChapterRecord) -> None:
        self.chapters[(record.book_id, record.user_id, record.index)] = record

    async def list_chapter_records(self, book_id: str, user_id: str) -> List[ChapterRecord]:
        records = [r for r in self.chapters.values() if r.book_id == book_id and r.user_id == user_id]
        return sorted(records, key=lambda r: r.index)

    async def delete_chapter_record(self, book_id: str, user_id: str, index: int) -> None:
        self.chapters.pop((book_id, user_id, index), None)

    async def delete_chapter_records(self, book_id: str, user_id: str) -> None:
        for key in [k for k in self.chapters if k[0] == book_id and k[1] == user_id]:
            del self.chapters[key]
