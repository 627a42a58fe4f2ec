"""Value serialization formats for cache entries."""

from __future__ import annotations

import json
import pickle
from typing import Any

from kiln.core.errors import StorageError

FORMATS = ("pickle", "json")


def serialize(value: Any, format: str = "pickle") -> bytes:
    if format == "pickle":
        try:
            return pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
        except (pickle.PicklingError, TypeError, AttributeError) as e:
            raise StorageError(f"Cannot pickle value of type {type(value).__name__}: {e}") from e
    if format == "json":
        try:
            return json.dumps(value, sort_keys=True).encode()
        except (TypeError, ValueError) as e:
            raise StorageError(f"Value is not JSON serializable: {e}") from e
    raise ValueError(f"Unknown storage format: {format}. Available: {list(FORMATS)}")


def deserialize(data: bytes, format: str = "pickle") -> Any:
    if format == "pickle":
        try:
            return pickle.loads(data)
        except Exception as e:
            raise StorageError(f"Corrupt pickle payload: {e}") from e
    if format == "json":
        try:
            return json.loads(data.decode())
        except (UnicodeDecodeError, ValueError) as e:
            raise StorageError(f"Corrupt JSON payload: {e}") from e
    raise StorageError(f"Unknown storage format in entry: {format}")
