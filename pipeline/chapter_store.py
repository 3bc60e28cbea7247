"""
Chapter Store - persist, list and remove per-chapter audiobook audio.

Objects live in an ObjectStore under ``{book_id}/{NNNN}__{title}.{fmt}``;
durations and titles are mirrored into a RecordStore. The object listing is
the source of truth for which chapters exist.
"""

import json
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from adapters.base import ObjectStore, RecordStore
from errors import AudiobookError, NotFound, StorageFailure
from models.audiobook import MIME_TYPES, Chapter, ChapterRecord, GenerationSettings, IngestResult
from pipeline.cancellation import CancelToken, check
from pipeline.locks import BookLocks
from pipeline.naming import (
    chapter_key,
    chapter_prefix,
    decode_chapter_file_name,
    encode_chapter_file_name,
    settings_key,
)
from pipeline.transcoder import TranscodeOptions, Transcoder

logger = logging.getLogger(__name__)


def next_free_index(indices: Iterable[int]) -> int:
    """Smallest non-negative integer not in indices, scanning sorted values once."""
    candidate = 0
    for index in sorted(set(indices)):
        if index == candidate:
            candidate += 1
        elif index > candidate:
            break
    return candidate


def pick_current(file_names: Iterable[str]) -> Dict[int, str]:
    """Map index -> file name, keeping the lexicographically greatest name per index."""
    current: Dict[int, str] = {}
    for name in file_names:
        decoded = decode_chapter_file_name(name)
        if decoded is None:
            continue
        index = decoded[0]
        if index not in current or name > current[index]:
            current[index] = name
    return current


class ChapterStore:

    def __init__(
        self,
        objects: ObjectStore,
        records: RecordStore,
        transcoder: Transcoder,
        locks: BookLocks = None
    ):
        self.objects = objects
        self.records = records
        self.transcoder = transcoder
        self.locks = locks or BookLocks()
        # Set by the assembler; called whenever a book's chapter set changes
        self.on_change: Optional[Callable[[str], Awaitable[None]]] = None
        # Bumped on every reset so in-flight ingestions can tell they are stale
        self._generations: Dict[str, int] = {}

    def generation(self, book_id: str) -> int:
        return self._generations.get(book_id, 0)

    async def _stored_names(self, book_id: str) -> List[str]:
        stored = await self.objects.list(f"{book_id}/")
        return [obj.key.split("/", 1)[1] for obj in stored]

    async def list(self, book_id: str, user_id: str, cancel: Optional[CancelToken] = None) -> List[Chapter]:
        """Current chapters sorted by index, one per index."""
        check(cancel)
        current = pick_current(await self._stored_names(book_id))
        records = {r.index: r for r in await self.records.list_chapter_records(book_id, user_id)}

        chapters = []
        for index in sorted(current):
            file_name = current[index]
            _, decoded_title, fmt = decode_chapter_file_name(file_name)
            record = records.get(index)
            if record is not None and record.file_name == file_name:
                chapters.append(Chapter(
                    book_id=book_id, index=index, title=record.title, format=fmt,
                    file_name=file_name, duration=record.duration
                ))
            else:
                # No matching row: duration is unknown until measured
                chapters.append(Chapter(
                    book_id=book_id, index=index, title=decoded_title, format=fmt,
                    file_name=file_name, duration=None
                ))
        return chapters

    async def allocate_next_index(self, book_id: str, user_id: str, cancel: Optional[CancelToken] = None) -> int:
        chapters = await self.list(book_id, user_id, cancel)
        return next_free_index(c.index for c in chapters)

    async def ingest(
        self,
        book_id: str,
        user_id: str,
        index: int,
        title: str,
        raw_audio: bytes,
        fmt: str,
        speed: float = 1.0,
        cancel: Optional[CancelToken] = None,
        source_hint: str = "mp3",
        generation: Optional[int] = None
    ) -> IngestResult:
        """Encode raw TTS audio into a chapter object and publish it.

        Encoding and measuring happen in a scratch workspace first; nothing in
        the store changes until both succeed. Publishing is serialized per
        book so concurrent writers of one index end last-write-wins and a
        reset never interleaves with a publish. An ingestion that started
        before a reset of its book is dropped with NotFound.
        """
        if generation is None:
            generation = self.generation(book_id)
        result = await self.transcoder.transcode(
            raw_audio, source_hint, fmt,
            TranscodeOptions(speed=speed, title=title),
            cancel
        )
        check(cancel)

        file_name = encode_chapter_file_name(index, title, fmt)
        key = chapter_key(book_id, file_name)
        async with self.locks.get(f"{book_id}:publish"):
            if self.generation(book_id) != generation:
                logger.info(f"Dropping chapter {index} of {book_id}: the audiobook was reset meanwhile")
                raise NotFound("Book not found")

            previous = await self.objects.get(key)
            await self.objects.put(key, result.output_bytes, MIME_TYPES[fmt])
            try:
                await self.records.upsert_chapter_record(ChapterRecord(
                    book_id=book_id, user_id=user_id, index=index, title=title,
                    duration=result.duration_seconds, format=fmt, file_name=file_name
                ))
            except StorageFailure:
                if previous is None:
                    await self._discard(key)
                else:
                    await self.objects.put(key, previous, MIME_TYPES[fmt])
                raise
            await self._remove_stale_duplicates(book_id, index, keep=file_name)

        await self._changed(book_id)
        logger.info(f"Stored chapter {index} of {book_id} as {file_name} ({result.duration_seconds:.2f}s)")
        return IngestResult(
            book_id=book_id, index=index, title=title,
            duration=result.duration_seconds, format=fmt, file_name=file_name
        )

    async def _remove_stale_duplicates(self, book_id: str, index: int, keep: str):
        prefix = chapter_prefix(index)
        for name in await self._stored_names(book_id):
            if not name.startswith(prefix) or name == keep:
                continue
            if decode_chapter_file_name(name) is None:
                continue
            await self._discard(chapter_key(book_id, name))

    async def _discard(self, key: str):
        """Best-effort delete; failures are logged, never raised."""
        try:
            await self.objects.delete(key)
        except (OSError, AudiobookError) as e:
            logger.warning(f"Could not delete {key}: {e}")

    async def _changed(self, book_id: str):
        if self.on_change is None:
            return
        try:
            await self.on_change(book_id)
        except (OSError, AudiobookError) as e:
            logger.warning(f"Could not invalidate assembled audiobook for {book_id}: {e}")

    async def read_chapter(
        self, book_id: str, user_id: str, index: int
    ) -> Optional[Tuple[Chapter, bytes]]:
        """Chapter and its bytes, or None. Prunes a row whose object is gone."""
        chapters = {c.index: c for c in await self.list(book_id, user_id)}
        chapter = chapters.get(index)
        data = await self.objects.get(chapter_key(book_id, chapter.file_name)) if chapter else None
        if data is None:
            await self.records.delete_chapter_record(book_id, user_id, index)
            return None
        return chapter, data

    async def remove(self, book_id: str, user_id: str) -> bool:
        """Delete every chapter, the records and the book. False if nothing existed."""
        async with self.locks.get(f"{book_id}:publish"):
            self._generations[book_id] = self.generation(book_id) + 1
            await self.records.delete_chapter_records(book_id, user_id)
            deleted_book = await self.records.delete_book(book_id, user_id)
            deleted_objects = await self.objects.delete_prefix(book_id)
        existed = deleted_book or deleted_objects
        logger.info(f"Reset audiobook {book_id} (existed={existed})")
        return existed

    async def load_settings(self, book_id: str) -> Optional[GenerationSettings]:
        raw = await self.objects.get(settings_key(book_id))
        if raw is None:
            return None
        try:
            return GenerationSettings.from_dict(json.loads(raw.decode("utf-8")))
        except (ValueError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable settings for {book_id}: {e}")
            return None

    async def save_settings(self, book_id: str, generation_settings: GenerationSettings):
        data = json.dumps(generation_settings.to_dict(), indent=2).encode("utf-8")
        await self.objects.put(settings_key(book_id), data, "application/json")
