"""Filesystem Object Store - one directory per audiobook"""
import logging
import os
import shutil
import time
import uuid
from pathlib import Path
from typing import List, Optional

import aiofiles

from adapters.base import ObjectStore, StoredObject
from errors import InvalidArgument, StorageFailure

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"


class FilesystemObjectStore(ObjectStore):
    """
    Stores objects as files under ``root/{book_id}-audiobook/``.

    Writes go to a uniquely named temp file next to the target and are
    published with ``os.replace`` so readers never see a partial file.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _book_dir(self, book_id: str) -> Path:
        return self.root / f"{book_id}-audiobook"

    def _split(self, key: str):
        book_id, _, name = key.partition("/")
        if not book_id or not name or "/" in name or name in (".", "..") or book_id in (".", ".."):
            raise InvalidArgument(f"Invalid storage key: {key}")
        return book_id, name

    def _path(self, key: str) -> Path:
        book_id, name = self._split(key)
        return self._book_dir(book_id) / name

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        path = self._path(key)
        tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}{TEMP_SUFFIX}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(data)
            os.replace(tmp_path, path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageFailure(f"Failed to write {key}") from e

    async def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageFailure(f"Failed to read {key}") from e

    async def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    async def list(self, prefix: str) -> List[StoredObject]:
        book_id, _, name_prefix = prefix.partition("/")
        book_dir = self._book_dir(book_id)
        if not book_dir.is_dir():
            return []

        objects = []
        try:
            for entry in os.scandir(book_dir):
                if not entry.is_file() or entry.name.endswith(TEMP_SUFFIX):
                    continue
                if not entry.name.startswith(name_prefix):
                    continue
                objects.append(StoredObject(key=f"{book_id}/{entry.name}", size=entry.stat().st_size))
        except FileNotFoundError:
            # Directory removed by a concurrent reset
            return []
        except OSError as e:
            raise StorageFailure(f"Failed to list {prefix}") from e
        return sorted(objects, key=lambda o: o.key)

    async def delete(self, key: str) -> bool:
        path = self._path(key)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageFailure(f"Failed to delete {key}") from e

    async def delete_prefix(self, book_id: str) -> bool:
        book_dir = self._book_dir(book_id)
        if not book_dir.exists():
            return False
        try:
            shutil.rmtree(book_dir)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageFailure(f"Failed to delete audiobook {book_id}") from e
        return True

    def sweep_stale_temp_files(self, max_age_seconds: float = 3600) -> int:
        """Remove temp files left behind by interrupted writes."""
        removed = 0
        cutoff = time.time() - max_age_seconds
        for tmp_file in self.root.glob(f"*-audiobook/*{TEMP_SUFFIX}"):
            try:
                if tmp_file.stat().st_mtime < cutoff:
                    tmp_file.unlink()
                    removed += 1
            except OSError as e:
                logger.warning(f"Could not remove stale temp file {tmp_file}: {e}")
        if removed:
            logger.info(f"Removed {removed} stale temp files from {self.root}")
        return removed
