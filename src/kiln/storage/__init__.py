"""Pluggable cache backends behind one key-value interface."""

from kiln.storage.base import (
    CacheEntry,
    Storage,
    available_backends,
    open_storage,
    register_backend,
)
from kiln.storage.directory import DirectoryStorage
from kiln.storage.memory import MemoryStorage
from kiln.storage.sqlite import SQLiteStorage

__all__ = [
    "CacheEntry",
    "DirectoryStorage",
    "MemoryStorage",
    "SQLiteStorage",
    "Storage",
    "available_backends",
    "open_storage",
    "register_backend",
]
