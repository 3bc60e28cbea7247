"""
Data Models for the audiobook pipeline
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import List, Optional


FORMATS = ("mp3", "m4b")

MIME_TYPES = {
    "mp3": "audio/mpeg",
    "m4b": "audio/mp4",
}


@dataclass
class GenerationSettings:
    """TTS settings a book was generated with. Only used for consistency checks."""
    tts_provider: Optional[str] = None
    tts_model: Optional[str] = None
    voice: Optional[str] = None
    native_speed: Optional[float] = None
    post_speed: Optional[float] = None
    format: Optional[str] = None

    _KEYS = {
        "tts_provider": "ttsProvider",
        "tts_model": "ttsModel",
        "voice": "voice",
        "native_speed": "nativeSpeed",
        "post_speed": "postSpeed",
        "format": "format",
    }

    @classmethod
    def from_dict(cls, data: dict) -> "GenerationSettings":
        return cls(**{name: data.get(key) for name, key in cls._KEYS.items()})

    def to_dict(self):
        return {key: getattr(self, name) for name, key in self._KEYS.items()}

    def differs_from(self, other: "GenerationSettings") -> List[str]:
        """Names of tracked fields whose values differ."""
        return [f.name for f in fields(self) if getattr(self, f.name) != getattr(other, f.name)]


@dataclass
class Book:
    """Audiobook record."""
    id: str
    user_id: str
    title: str
    created_at: Optional[datetime] = None

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at.isoformat() if self.created_at else None
        }


@dataclass
class Chapter:
    """One stored chapter of an audiobook."""
    book_id: str
    index: int
    title: str
    format: str
    file_name: str
    duration: Optional[float] = None

    def to_dict(self):
        return {
            "index": self.index,
            "title": self.title,
            "duration": self.duration or 0,
            "status": "completed",
            "bookId": self.book_id,
            "format": self.format
        }


@dataclass
class ChapterRecord:
    """Row shape in the record store."""
    book_id: str
    user_id: str
    index: int
    title: str
    duration: float
    format: str
    file_name: str


@dataclass(frozen=True)
class ManifestEntry:
    """One (index, fileName) pair of an assembled book's signature."""
    index: int
    file_name: str

    def to_dict(self):
        return {"index": self.index, "fileName": self.file_name}

    @classmethod
    def from_dict(cls, data: dict) -> "ManifestEntry":
        return cls(index=int(data["index"]), file_name=str(data["fileName"]))


@dataclass
class ChapterMark:
    title: str
    start_ms: int
    end_ms: int


@dataclass
class IngestResult:
    """What a successful chapter ingestion hands back to the API layer."""
    book_id: str
    index: int
    title: str
    duration: float
    format: str
    file_name: str = ""

    def to_dict(self):
        return {
            "index": self.index,
            "title": self.title,
            "duration": self.duration,
            "status": "completed",
            "bookId": self.book_id,
            "format": self.format
        }


@dataclass
class BookStatus:
    """Chapters, settings and artifact presence for one book."""
    book_id: Optional[str]
    exists: bool
    chapters: List[Chapter] = field(default_factory=list)
    has_complete: bool = False
    settings: Optional[dict] = None

    def to_dict(self):
        return {
            "chapters": [c.to_dict() for c in self.chapters],
            "exists": self.exists,
            "hasComplete": self.has_complete,
            "bookId": self.book_id,
            "settings": self.settings
        }


@dataclass
class Artifact:
    """An assembled whole-book file."""
    data: bytes
    format: str
    cached: bool = False
