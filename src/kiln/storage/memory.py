"""In-memory cache: fast, lost on process exit."""

from __future__ import annotations

import copy
import dataclasses
from datetime import datetime, timezone
from threading import Lock
from typing import Any

from kiln.build.fingerprint import Fingerprint
from kiln.storage.base import CacheEntry, Storage, fingerprint_dict, register_backend
from kiln.storage.formats import FORMATS, deserialize, serialize


@register_backend("memory")
class MemoryStorage(Storage):
    """Dict-backed cache guarded by a lock.

    Values are held serialized in their entry's format, so each read
    returns an independent copy and a value the format cannot hold fails
    here as it would on disk. Safe for concurrent writer threads; worker
    processes each see their own copy, so the runner funnels writes
    through the coordinator for them.
    """

    concurrent_writers = True
    durable = False

    def __init__(self) -> None:
        # key -> (entry without its value, serialized payload)
        self._entries: dict[str, tuple[CacheEntry, bytes]] = {}
        self._lock = Lock()

    def put(
        self,
        key: str,
        value: Any,
        fingerprint: Fingerprint | dict,
        *,
        format: str = "pickle",
        seconds: float = 0.0,
        metadata: dict | None = None,
    ) -> CacheEntry:
        if format not in FORMATS:
            raise ValueError(f"Unknown storage format: {format}. Available: {list(FORMATS)}")
        payload = serialize(value, format)
        entry = CacheEntry(
            key=key,
            value=None,
            fingerprint=fingerprint_dict(fingerprint),
            format=format,
            built_at=datetime.now(timezone.utc),
            seconds=seconds,
            metadata=copy.deepcopy(metadata or {}),
        )
        with self._lock:
            self._entries[key] = (entry, payload)
        return dataclasses.replace(entry, value=value)

    def get_entry(self, key: str) -> CacheEntry | None:
        with self._lock:
            stored = self._entries.get(key)
        if stored is None:
            return None
        entry, payload = stored
        return dataclasses.replace(
            entry,
            value=deserialize(payload, entry.format),
            metadata=copy.deepcopy(entry.metadata),
        )

    def stat(self, key: str) -> CacheEntry | None:
        with self._lock:
            stored = self._entries.get(key)
        if stored is None:
            return None
        entry, _ = stored
        return dataclasses.replace(entry, metadata=copy.deepcopy(entry.metadata))

    def exists(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def list_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def destroy(self) -> None:
        with self._lock:
            self._entries.clear()
