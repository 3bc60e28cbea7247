"""Storage Adapters"""
from adapters.base import ObjectStore, RecordStore, StoredObject
from adapters.filesystem import FilesystemObjectStore
from adapters.memory import MemoryObjectStore, MemoryRecordStore
from adapters.sqlite_records import SQLiteRecordStore

__all__ = [
    "ObjectStore", "RecordStore", "StoredObject",
    "FilesystemObjectStore", "MemoryObjectStore", "MemoryRecordStore", "SQLiteRecordStore"
]
