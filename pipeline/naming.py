"""
Chapter file names, storage keys and FFMETADATA text helpers.
"""

import re
from typing import Optional, Tuple
from urllib.parse import quote, unquote

from errors import InvalidArgument
from models.audiobook import FORMATS

MAX_TITLE_CHARS = 120

SAFE_ID_REGEX = re.compile(r"^[a-zA-Z0-9._-]{1,128}$")

CHAPTER_FILE_REGEX = re.compile(r"^(\d{4,})__(.*)\.(mp3|m4b)$")

SETTINGS_NAME = "audiobook.meta.json"


def is_safe_id(value: str) -> bool:
    return bool(value) and bool(SAFE_ID_REGEX.match(value)) and value not in (".", "..")


def validate_book_id(book_id: str) -> str:
    if not book_id or not is_safe_id(book_id):
        raise InvalidArgument("Invalid bookId parameter")
    return book_id


def validate_index(value) -> int:
    """Accept ints (or integral floats / digit strings); reject negatives and fractions."""
    if isinstance(value, bool):
        raise InvalidArgument("Invalid chapterIndex parameter")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidArgument("Invalid chapterIndex parameter")
    if not number.is_integer() or number < 0:
        raise InvalidArgument("Invalid chapterIndex parameter")
    return int(number)


def validate_format(fmt: str) -> str:
    if fmt not in FORMATS:
        raise InvalidArgument(f"Invalid format parameter: {fmt}")
    return fmt


def chapter_prefix(index: int) -> str:
    return f"{index + 1:04d}__"


def encode_chapter_file_name(index: int, title: str, fmt: str) -> str:
    """`0003__Chapter%203.m4b` for index 2; retitling changes the name."""
    trimmed = (title or "").strip()[:MAX_TITLE_CHARS]
    return f"{chapter_prefix(index)}{quote(trimmed, safe='')}.{fmt}"


def decode_chapter_file_name(file_name: str) -> Optional[Tuple[int, str, str]]:
    """Return (index, title, format), or None for names that are not chapters."""
    match = CHAPTER_FILE_REGEX.match(file_name)
    if not match:
        return None
    number = int(match.group(1))
    if number < 1:
        return None
    return number - 1, unquote(match.group(2)), match.group(3)


def chapter_key(book_id: str, file_name: str) -> str:
    return f"{book_id}/{file_name}"


def artifact_key(book_id: str, fmt: str) -> str:
    return f"{book_id}/complete.{fmt}"


def manifest_key(book_id: str, fmt: str) -> str:
    return f"{book_id}/complete.{fmt}.manifest.json"


def settings_key(book_id: str) -> str:
    return f"{book_id}/{SETTINGS_NAME}"


def escape_ffmetadata(value: str) -> str:
    """Escape text for an ;FFMETADATA1 value. Newlines become spaces."""
    escaped = value.replace("\\", "\\\\")
    for char in ("=", ";", "#"):
        escaped = escaped.replace(char, "\\" + char)
    return escaped.replace("\r\n", " ").replace("\r", " ").replace("\n", " ")


def sanitize_download_name(title: str) -> str:
    return re.sub(r"[^a-z0-9]", "_", title, flags=re.IGNORECASE).lower() or "chapter"
