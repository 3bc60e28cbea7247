"""Storage Adapter Base Interfaces"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional, Sequence

from models.audiobook import Book, ChapterRecord


@dataclass
class StoredObject:
    key: str
    size: int = 0


class ObjectStore(ABC):
    """Byte-object storage (directory, blob bucket, or memory).

    Keys look like ``{book_id}/{name}``. ``put`` must publish atomically:
    a concurrent ``get`` sees either the old bytes or the new bytes.
    """

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        """Store bytes under key, replacing any previous object."""
        pass

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Return stored bytes or None when the key is absent."""
        pass

    @abstractmethod
    async def list(self, prefix: str) -> List[StoredObject]:
        """Return objects whose key starts with prefix, sorted by key."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete one object. Returns False when it was already gone."""
        pass

    @abstractmethod
    async def delete_prefix(self, book_id: str) -> bool:
        """Delete every object of a book. Returns False when nothing existed."""
        pass

    async def exists(self, key: str) -> bool:
        return await self.get(key) is not None


class RecordStore(ABC):
    """Queryable book/chapter records keyed by (book_id, user_id)."""

    @abstractmethod
    async def upsert_book(self, book_id: str, user_id: str, title: str) -> None:
        """Create the book if missing; an existing book keeps its title."""
        pass

    @abstractmethod
    async def get_book(self, book_id: str, allowed_user_ids: Sequence[str]) -> Optional[Book]:
        pass

    @abstractmethod
    async def book_owners(self, book_id: str) -> List[str]:
        """Every owner holding a record for this book id."""
        pass

    @abstractmethod
    async def delete_book(self, book_id: str, user_id: str) -> bool:
        pass

    @abstractmethod
    async def upsert_chapter_record(self, record: ChapterRecord) -> None:
        pass

    @abstractmethod
    async def list_chapter_records(self, book_id: str, user_id: str) -> List[ChapterRecord]:
        """Chapter rows for a book, sorted by index."""
        pass

    @abstractmethod
    async def delete_chapter_record(self, book_id: str, user_id: str, index: int) -> None:
        pass

    @abstractmethod
    async def delete_chapter_records(self, book_id: str, user_id: str) -> None:
        pass
