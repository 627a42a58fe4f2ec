"""Kiln error types and utilities."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


def atomic_write(path: Path, content: str | bytes) -> None:
    """Write content to a file atomically using temp file + rename.

    Writes to a temporary file in the same directory, fsyncs it,
    then atomically replaces the target path. Readers see either the
    old file or the new one, never a partial write.
    """
    data = content.encode() if isinstance(content, str) else content
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        os.write(fd, data)
        os.fsync(fd)
        os.close(fd)
        os.replace(tmp, str(path))
    except BaseException:
        try:
            os.close(fd)
        except OSError:
            pass
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class KilnError(Exception):
    """Base exception for Kiln."""

    pass


class PlanError(KilnError):
    """Invalid plan: duplicate names, bad transform parameters, or a cycle."""

    pass


class MissingDependencyError(KilnError):
    """A target references an unknown target or a missing input file."""

    pass


class BuildError(KilnError):
    """A target's command raised. The original exception is chained."""

    def __init__(self, target: str, message: str):
        super().__init__(f"Target '{target}' failed: {message}")
        self.target = target


class StorageError(KilnError):
    """Cache backend unreachable, corrupt, or a write could not complete."""

    pass
