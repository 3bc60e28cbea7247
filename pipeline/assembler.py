"""
Book Assembler - concatenate stored chapters into one audiobook file.

The assembled file is cached next to a manifest of the (index, fileName)
pairs it was built from. A request whose current chapter signature equals
the manifest is served from cache without running ffmpeg.
"""

import json
import logging
import math
from typing import List, Optional, Sequence

from adapters.base import ObjectStore
from errors import AudiobookError, MixedFormats, NotFound, TranscodeFailed
from models.audiobook import FORMATS, MIME_TYPES, Artifact, Chapter, ChapterMark, ManifestEntry
from pipeline.cancellation import CancelToken, check
from pipeline.chapter_store import ChapterStore
from pipeline.locks import BookLocks
from pipeline.naming import artifact_key, chapter_key, escape_ffmetadata, manifest_key
from pipeline.transcoder import Transcoder

logger = logging.getLogger(__name__)


def build_signature(chapters: Sequence[Chapter]) -> List[ManifestEntry]:
    return [ManifestEntry(index=c.index, file_name=c.file_name) for c in sorted(chapters, key=lambda c: c.index)]


def build_chapter_marks(chapters: Sequence[Chapter]) -> List[ChapterMark]:
    """Running millisecond offsets; each START is the previous END."""
    marks = []
    elapsed = 0.0
    for chapter in chapters:
        start_ms = math.floor(elapsed * 1000)
        elapsed += chapter.duration or 0.0
        end_ms = math.floor(elapsed * 1000)
        marks.append(ChapterMark(title=chapter.title, start_ms=start_ms, end_ms=end_ms))
    return marks


def render_ffmetadata(marks: Sequence[ChapterMark]) -> str:
    lines = [";FFMETADATA1"]
    for mark in marks:
        lines += [
            "[CHAPTER]",
            "TIMEBASE=1/1000",
            f"START={mark.start_ms}",
            f"END={mark.end_ms}",
            f"title={escape_ffmetadata(mark.title)}",
        ]
    return "\n".join(lines) + "\n"


class BookAssembler:

    def __init__(
        self,
        objects: ObjectStore,
        chapters: ChapterStore,
        transcoder: Transcoder,
        locks: BookLocks = None
    ):
        self.objects = objects
        self.chapters = chapters
        self.transcoder = transcoder
        self.locks = locks or BookLocks()
        chapters.on_change = self.invalidate

    async def _load_manifest(self, book_id: str, fmt: str) -> Optional[List[ManifestEntry]]:
        raw = await self.objects.get(manifest_key(book_id, fmt))
        if raw is None:
            return None
        try:
            return [ManifestEntry.from_dict(entry) for entry in json.loads(raw.decode("utf-8"))]
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding unreadable manifest for {book_id}/{fmt}: {e}")
            return None

    async def cached_artifact(self, book_id: str, fmt: str, signature: List[ManifestEntry]) -> Optional[bytes]:
        manifest = await self._load_manifest(book_id, fmt)
        if manifest is None or manifest != signature:
            return None
        return await self.objects.get(artifact_key(book_id, fmt))

    async def has_artifact(self, book_id: str) -> bool:
        for fmt in FORMATS:
            if await self.objects.exists(artifact_key(book_id, fmt)):
                return True
        return False

    async def get_or_build_artifact(
        self,
        book_id: str,
        user_id: str,
        requested_format: Optional[str] = None,
        cancel: Optional[CancelToken] = None
    ) -> Artifact:
        """Return the whole-book file, rebuilding only when the chapter set changed."""
        chapters = await self.chapters.list(book_id, user_id, cancel)
        if not chapters:
            raise NotFound("No chapters found")

        formats = {c.format for c in chapters}
        if len(formats) > 1:
            raise MixedFormats()
        fmt = formats.pop()
        if requested_format and requested_format != fmt:
            logger.warning(f"Requested {requested_format} for {book_id} but chapters are {fmt}; using {fmt}")

        signature = build_signature(chapters)
        cached = await self.cached_artifact(book_id, fmt, signature)
        if cached is not None:
            logger.info(f"Serving cached {fmt} audiobook for {book_id}")
            return Artifact(data=cached, format=fmt, cached=True)

        # One build per book at a time; a waiter usually finds the fresh cache
        async with self.locks.get(f"{book_id}:assemble"):
            chapters = await self.chapters.list(book_id, user_id, cancel)
            if not chapters:
                raise NotFound("No chapters found")
            formats = {c.format for c in chapters}
            if len(formats) > 1:
                raise MixedFormats()
            fmt = formats.pop()
            signature = build_signature(chapters)
            cached = await self.cached_artifact(book_id, fmt, signature)
            if cached is not None:
                return Artifact(data=cached, format=fmt, cached=True)
            data = await self._build(book_id, fmt, chapters, signature, cancel)
            return Artifact(data=data, format=fmt, cached=False)

    async def _build(
        self,
        book_id: str,
        fmt: str,
        chapters: List[Chapter],
        signature: List[ManifestEntry],
        cancel: Optional[CancelToken]
    ) -> bytes:
        await self.invalidate(book_id, fmt)

        inputs = []
        for chapter in chapters:
            check(cancel)
            data = await self.objects.get(chapter_key(book_id, chapter.file_name))
            if data is None:
                raise NotFound(f"Chapter {chapter.index} disappeared while assembling")
            if not chapter.duration or chapter.duration <= 0:
                chapter.duration = await self._measure_or_zero(data, fmt, chapter, cancel)
            inputs.append(data)

        metadata = render_ffmetadata(build_chapter_marks(chapters))
        result = await self.transcoder.concatenate(inputs, fmt, metadata, cancel)
        check(cancel)

        # Artifact first, manifest second: a manifest never points at missing bytes
        await self.objects.put(artifact_key(book_id, fmt), result.output_bytes, MIME_TYPES[fmt])
        manifest = json.dumps([entry.to_dict() for entry in signature], indent=2).encode("utf-8")
        await self.objects.put(manifest_key(book_id, fmt), manifest, "application/json")
        logger.info(f"Assembled {len(chapters)} chapters of {book_id} into {fmt} ({result.duration_seconds:.1f}s)")
        return result.output_bytes

    async def _measure_or_zero(self, data: bytes, fmt: str, chapter: Chapter, cancel: Optional[CancelToken]) -> float:
        try:
            return await self.transcoder.measure_duration(data, cancel, source_hint=fmt)
        except TranscodeFailed:
            logger.warning(f"Could not measure chapter {chapter.index} ({chapter.file_name}); marking as 0s")
            return 0.0

    async def invalidate(self, book_id: str, fmt: Optional[str] = None):
        """Drop the cached artifact and manifest for one or all formats."""
        for target in ([fmt] if fmt else FORMATS):
            for key in (manifest_key(book_id, target), artifact_key(book_id, target)):
                try:
                    await self.objects.delete(key)
                except (OSError, AudiobookError) as e:
                    logger.warning(f"Could not delete {key}: {e}")
