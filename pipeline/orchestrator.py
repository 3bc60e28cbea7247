"""
Generation Orchestrator - the operations the API layer calls.

Coordinates chapter ingestion, regeneration, whole-book download and reset
on top of the ChapterStore and BookAssembler. A book moves from empty to
partially generated to complete purely by which chapters are stored; reset
sends it back to empty.
"""

import logging
import math
import uuid
from typing import Dict, List, Optional, Set, Tuple

from adapters.base import ObjectStore, RecordStore
from config import settings
from errors import InvalidArgument, MixedFormats, NotFound, SettingsMismatch
from models.audiobook import Artifact, BookStatus, Chapter, GenerationSettings, IngestResult
from pipeline.assembler import BookAssembler
from pipeline.cancellation import CancelToken, check
from pipeline.chapter_store import ChapterStore, next_free_index
from pipeline.locks import BookLocks
from pipeline.naming import validate_book_id, validate_format, validate_index
from pipeline.transcoder import Transcoder

logger = logging.getLogger(__name__)


def _speed(value) -> float:
    try:
        speed = float(value)
    except (TypeError, ValueError):
        return 1.0
    return speed if math.isfinite(speed) and speed > 0 else 1.0


class AudiobookOrchestrator:

    def __init__(
        self,
        objects: ObjectStore,
        records: RecordStore,
        transcoder: Transcoder = None,
        unclaimed_user_id: str = None
    ):
        self.objects = objects
        self.records = records
        self.transcoder = transcoder or Transcoder()
        self.unclaimed_user_id = unclaimed_user_id or settings.unclaimed_user_id
        self.locks = BookLocks()
        self.chapter_store = ChapterStore(objects, records, self.transcoder, self.locks)
        self.assembler = BookAssembler(objects, self.chapter_store, self.transcoder, self.locks)
        # Indices handed out to in-flight ingestions, per book
        self._reserved: Dict[str, Set[int]] = {}

    def allowed_users(self, user_id: str) -> List[str]:
        if user_id == self.unclaimed_user_id:
            return [user_id]
        return [user_id, self.unclaimed_user_id]

    async def _owned_book(self, book_id: str, user_id: str):
        book = await self.records.get_book(book_id, self.allowed_users(user_id))
        if book is None:
            raise NotFound("Book not found")
        return book

    async def _claim_book(self, book_id: str, user_id: str, title: str) -> str:
        """Owner whose records a new chapter goes into.

        A book visible to the caller is written as its existing owner; an id
        held only by somebody else is reported as missing. Otherwise the
        caller creates the book.
        """
        book = await self.records.get_book(book_id, self.allowed_users(user_id))
        if book is not None:
            return book.user_id
        if await self.records.book_owners(book_id):
            logger.info(f"Refusing chapter for {book_id}: owned by another user")
            raise NotFound("Book not found")
        await self.records.upsert_book(book_id, user_id, title or "Untitled Audiobook")
        return user_id

    async def ingest_chapter(
        self,
        user_id: str,
        title: str,
        raw_audio: bytes,
        book_id: Optional[str] = None,
        requested_format: Optional[str] = None,
        chapter_index=None,
        incoming_settings: Optional[GenerationSettings] = None,
        cancel: Optional[CancelToken] = None
    ) -> IngestResult:
        """Add (or overwrite) one chapter from raw TTS audio."""
        book_id = validate_book_id(book_id) if book_id else str(uuid.uuid4())
        if requested_format is not None:
            validate_format(requested_format)
        explicit_index = validate_index(chapter_index) if chapter_index is not None else None
        if not raw_audio:
            raise InvalidArgument("Missing audio buffer")
        check(cancel)

        async with self.locks.get(f"{book_id}:allocate"):
            owner = await self._claim_book(book_id, user_id, title)
            existing = await self.chapter_store.list(book_id, owner, cancel)
            stored_settings = await self.chapter_store.load_settings(book_id)

            # Stored settings only bind once chapters exist
            if stored_settings and existing and incoming_settings:
                differing = stored_settings.differs_from(incoming_settings)
                if differing:
                    logger.info(f"Settings mismatch for {book_id}: {', '.join(differing)}")
                    raise SettingsMismatch(stored_settings.to_dict())

            fmt = self._resolve_format(existing, requested_format, stored_settings, incoming_settings)
            post_speed = _speed(
                (incoming_settings.post_speed if incoming_settings else None)
                or (stored_settings.post_speed if stored_settings else None)
                or 1
            )

            reserved = self._reserved.setdefault(book_id, set())
            if explicit_index is not None:
                index = explicit_index
            else:
                index = next_free_index([c.index for c in existing] + list(reserved))
            reserved.add(index)
            generation = self.chapter_store.generation(book_id)

        try:
            result = await self.chapter_store.ingest(
                book_id, owner, index, title, raw_audio, fmt, post_speed, cancel,
                generation=generation
            )
        finally:
            reserved.discard(index)
            if not reserved and self._reserved.get(book_id) is reserved:
                del self._reserved[book_id]

        if incoming_settings and (stored_settings is None or not existing):
            await self.chapter_store.save_settings(book_id, incoming_settings)
        return result

    def _resolve_format(
        self,
        existing: List[Chapter],
        requested_format: Optional[str],
        stored_settings: Optional[GenerationSettings],
        incoming_settings: Optional[GenerationSettings]
    ) -> str:
        """Existing chapters decide; then recorded settings, incoming settings, the request."""
        existing_formats = {c.format for c in existing}
        if len(existing_formats) > 1:
            raise MixedFormats()
        if existing_formats:
            fmt = existing_formats.pop()
            if requested_format and requested_format != fmt:
                raise MixedFormats(f"Audiobook chapters are {fmt}; cannot add a {requested_format} chapter")
            return fmt
        for candidate in (
            stored_settings.format if stored_settings else None,
            incoming_settings.format if incoming_settings else None,
            requested_format,
            settings.default_format
        ):
            if candidate:
                return validate_format(candidate)
        return "m4b"

    async def regenerate_chapter(
        self,
        user_id: str,
        book_id: str,
        chapter_index,
        title: str,
        raw_audio: bytes,
        requested_format: Optional[str] = None,
        incoming_settings: Optional[GenerationSettings] = None,
        cancel: Optional[CancelToken] = None
    ) -> IngestResult:
        """Replace an existing chapter. Never adds an index; settings are not enforced."""
        validate_book_id(book_id)
        index = validate_index(chapter_index)
        if requested_format is not None:
            validate_format(requested_format)
        if not raw_audio:
            raise InvalidArgument("Missing audio buffer")

        book = await self._owned_book(book_id, user_id)
        generation = self.chapter_store.generation(book_id)
        existing = await self.chapter_store.list(book_id, book.user_id, cancel)
        if index not in {c.index for c in existing}:
            raise NotFound(f"Chapter {index} not found")

        stored_settings = await self.chapter_store.load_settings(book_id)
        fmt = self._resolve_format(existing, requested_format, stored_settings, incoming_settings)
        post_speed = _speed(
            (incoming_settings.post_speed if incoming_settings else None)
            or (stored_settings.post_speed if stored_settings else None)
            or 1
        )
        logger.info(f"Regenerating chapter {index} of {book_id}")
        return await self.chapter_store.ingest(
            book_id, book.user_id, index, title, raw_audio, fmt, post_speed, cancel,
            generation=generation
        )

    async def get_full_book(
        self,
        user_id: str,
        book_id: str,
        requested_format: Optional[str] = None,
        cancel: Optional[CancelToken] = None
    ) -> Artifact:
        validate_book_id(book_id)
        if requested_format is not None:
            validate_format(requested_format)
        book = await self._owned_book(book_id, user_id)
        return await self.assembler.get_or_build_artifact(book_id, book.user_id, requested_format, cancel)

    async def reset(self, user_id: str, book_id: str) -> bool:
        """Remove the caller's own book with all chapters and artifacts.

        Returns whether it existed. Books of other owners are left untouched
        and reported as absent.
        """
        validate_book_id(book_id)
        async with self.locks.get(f"{book_id}:allocate"):
            if await self.records.get_book(book_id, [user_id]) is None:
                return False
            return await self.chapter_store.remove(book_id, user_id)

    async def status(self, user_id: str, book_id: str) -> BookStatus:
        validate_book_id(book_id)
        book = await self.records.get_book(book_id, self.allowed_users(user_id))
        if book is None:
            return BookStatus(book_id=None, exists=False)
        chapters = await self.chapter_store.list(book_id, book.user_id)
        stored_settings = await self.chapter_store.load_settings(book_id)
        return BookStatus(
            book_id=book_id,
            exists=True,
            chapters=chapters,
            has_complete=await self.assembler.has_artifact(book_id),
            settings=stored_settings.to_dict() if stored_settings else None
        )

    async def read_chapter(self, user_id: str, book_id: str, chapter_index) -> Tuple[Chapter, bytes]:
        validate_book_id(book_id)
        index = validate_index(chapter_index)
        book = await self._owned_book(book_id, user_id)
        found = await self.chapter_store.read_chapter(book_id, book.user_id, index)
        if found is None:
            raise NotFound("Chapter not found")
        return found
