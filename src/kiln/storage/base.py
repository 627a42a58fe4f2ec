"""Cache storage interface and backend registry."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, ClassVar

from kiln.build.fingerprint import Fingerprint


@dataclass
class CacheEntry:
    """A target's realized value paired with the fingerprint it was built under."""

    key: str
    value: Any
    fingerprint: dict
    format: str = "pickle"
    built_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    seconds: float = 0.0
    metadata: dict = field(default_factory=dict)

    @property
    def parsed_fingerprint(self) -> Fingerprint | None:
        return Fingerprint.from_dict(self.fingerprint)


class Storage(ABC):
    """Uniform key-value interface over cache backends.

    ``concurrent_writers`` declares whether independent workers may write
    their own keys directly. Backends that return False need every write
    funneled through a single coordinating process. ``durable`` declares
    whether entries survive the process.
    """

    name: ClassVar[str] = ""
    concurrent_writers: ClassVar[bool] = False
    durable: ClassVar[bool] = True

    @abstractmethod
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
        """Store a value and its fingerprint. All-or-nothing per key."""
        ...

    @abstractmethod
    def get_entry(self, key: str) -> CacheEntry | None:
        """Load the full entry for a key, or None if absent."""
        ...

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def list_keys(self) -> list[str]: ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove one entry. Returns False if it did not exist."""
        ...

    @abstractmethod
    def destroy(self) -> None:
        """Remove every entry and the backing resource itself.

        The store stays usable; the next put starts from empty.
        """
        ...

    def get(self, key: str) -> Any:
        """Return a cached value. Raises KeyError if absent."""
        entry = self.get_entry(key)
        if entry is None:
            raise KeyError(key)
        return entry.value

    def stat(self, key: str) -> CacheEntry | None:
        """Entry metadata without the value. Backends override to skip loading it."""
        entry = self.get_entry(key)
        if entry is None:
            return None
        return CacheEntry(
            key=entry.key,
            value=None,
            fingerprint=entry.fingerprint,
            format=entry.format,
            built_at=entry.built_at,
            seconds=entry.seconds,
            metadata=entry.metadata,
        )

    def get_fingerprint(self, key: str) -> Fingerprint | None:
        """Stored fingerprint for a key."""
        entry = self.stat(key)
        return entry.parsed_fingerprint if entry is not None else None

    def close(self) -> None:
        pass

    def __enter__(self) -> Storage:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def describe(self) -> str:
        return self.name


def fingerprint_dict(fingerprint: Fingerprint | dict) -> dict:
    if isinstance(fingerprint, Fingerprint):
        return fingerprint.to_dict()
    return dict(fingerprint)


# Backend registry
_BACKENDS: dict[str, type[Storage]] = {}


def register_backend(name: str):
    """Decorator to register a storage backend class."""

    def wrapper(cls):
        cls.name = name
        _BACKENDS[name] = cls
        return cls

    return wrapper


def available_backends() -> list[str]:
    return sorted(_BACKENDS)


def open_storage(backend: str = "directory", path: str | Path | None = None) -> Storage:
    """Instantiate a registered backend.

    ``path`` is the directory for "directory", the database file for
    "sqlite", and ignored for "memory".
    """
    if backend not in _BACKENDS:
        raise ValueError(f"Unknown storage backend: {backend}. Available: {available_backends()}")
    cls = _BACKENDS[backend]
    if backend == "memory":
        return cls()
    if path is None:
        raise ValueError(f"Storage backend '{backend}' needs a path")
    return cls(path)
