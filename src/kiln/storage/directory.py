"""Directory-of-files cache: one file per key, safe for concurrent writers."""

from __future__ import annotations

import json
import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from kiln.build.fingerprint import Fingerprint
from kiln.core.errors import StorageError, atomic_write
from kiln.storage.base import CacheEntry, Storage, fingerprint_dict, register_backend
from kiln.storage.formats import deserialize, serialize

logger = logging.getLogger(__name__)

MAGIC = b"KILN1\n"
SUFFIX = ".kiln"


@register_backend("directory")
class DirectoryStorage(Storage):
    """Filesystem-backed cache.

    Layout::

        <root>/entries/<quoted key>.kiln

    Each file holds a header line, a JSON metadata line (fingerprint,
    format, timing) and the serialized value. The file is replaced
    atomically, so the fingerprint and value always belong together and
    writers of distinct keys never touch the same file.
    """

    concurrent_writers = True
    durable = True

    def __init__(self, root: str | Path):
        self.root = Path(root)

    @property
    def entries_dir(self) -> Path:
        return self.root / "entries"

    def _path(self, key: str) -> Path:
        return self.entries_dir / f"{quote(key, safe='')}{SUFFIX}"

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
        entry = CacheEntry(
            key=key,
            value=value,
            fingerprint=fingerprint_dict(fingerprint),
            format=format,
            built_at=datetime.now(timezone.utc),
            seconds=seconds,
            metadata=dict(metadata or {}),
        )
        payload = serialize(value, format)
        header = {
            "key": key,
            "fingerprint": entry.fingerprint,
            "format": format,
            "built_at": entry.built_at.isoformat(),
            "seconds": seconds,
            "metadata": entry.metadata,
        }
        try:
            self.entries_dir.mkdir(parents=True, exist_ok=True)
            atomic_write(self._path(key), MAGIC + json.dumps(header).encode() + b"\n" + payload)
        except OSError as e:
            raise StorageError(f"Cannot write cache entry '{key}': {e}") from e
        logger.debug("Stored %s (%d bytes) in %s", key, len(payload), self.root)
        return entry

    def _read(self, key: str, *, with_value: bool) -> tuple[dict, bytes] | None:
        path = self._path(key)
        try:
            with open(path, "rb") as f:
                if f.readline() != MAGIC:
                    raise StorageError(f"Cache entry '{key}' is corrupt: bad header in {path}")
                header = json.loads(f.readline())
                payload = f.read() if with_value else b""
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise StorageError(f"Cannot read cache entry '{key}': {e}") from e
        return header, payload

    def _entry(self, key: str, *, with_value: bool) -> CacheEntry | None:
        found = self._read(key, with_value=with_value)
        if found is None:
            return None
        header, payload = found
        return CacheEntry(
            key=key,
            value=deserialize(payload, header["format"]) if with_value else None,
            fingerprint=header["fingerprint"],
            format=header["format"],
            built_at=datetime.fromisoformat(header["built_at"]),
            seconds=header.get("seconds", 0.0),
            metadata=header.get("metadata", {}),
        )

    def get_entry(self, key: str) -> CacheEntry | None:
        return self._entry(key, with_value=True)

    def stat(self, key: str) -> CacheEntry | None:
        # header only; the payload may be large
        return self._entry(key, with_value=False)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def list_keys(self) -> list[str]:
        if not self.entries_dir.is_dir():
            return []
        return sorted(
            unquote(p.name[: -len(SUFFIX)])
            for p in self.entries_dir.iterdir()
            if p.name.endswith(SUFFIX)
        )

    def delete(self, key: str) -> bool:
        try:
            self._path(key).unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageError(f"Cannot delete cache entry '{key}': {e}") from e
        return True

    def destroy(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)
        logger.debug("Destroyed cache directory %s", self.root)

    def describe(self) -> str:
        return f"directory:{self.root}"
