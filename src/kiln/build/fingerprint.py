"""Target fingerprinting: self-describing, versioned hashes for staleness checks."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

# Fast by default: correctness depends on content equality, not on
# cryptographic strength.
DEFAULT_ALGORITHM = "blake2b"

_ALGORITHMS: dict[str, Callable[[], Any]] = {
    "blake2b": lambda: hashlib.blake2b(digest_size=32),
    "blake2s": hashlib.blake2s,
    "md5": hashlib.md5,
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
}

MISSING_FILE = "missing"
CHUNK = 1024 * 1024


def available_algorithms() -> list[str]:
    return sorted(_ALGORITHMS)


def new_hasher(algorithm: str = DEFAULT_ALGORITHM):
    """Return a fresh hash object for a registered algorithm."""
    try:
        return _ALGORITHMS[algorithm]()
    except KeyError:
        raise ValueError(
            f"Unknown hash algorithm: {algorithm}. Available: {available_algorithms()}"
        ) from None


def hash_text(text: str, algorithm: str = DEFAULT_ALGORITHM) -> str:
    h = new_hasher(algorithm)
    h.update(text.encode())
    return h.hexdigest()


def hash_file(path: str | Path, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Stream a file's content into a digest. Missing files hash to a sentinel.

    A directory hashes as the sorted relative paths and content hashes of
    every file beneath it.
    """
    p = Path(path)
    if p.is_dir():
        return hash_tree(p, algorithm)
    if not p.is_file():
        return MISSING_FILE
    h = new_hasher(algorithm)
    with open(p, "rb") as f:
        while chunk := f.read(CHUNK):
            h.update(chunk)
    return h.hexdigest()


def hash_tree(root: Path, algorithm: str = DEFAULT_ALGORITHM) -> str:
    h = new_hasher(algorithm)
    h.update(b"dir\n")
    for child in sorted(p for p in root.rglob("*") if p.is_file()):
        h.update(child.relative_to(root).as_posix().encode())
        h.update(b"\0")
        h.update(hash_file(child, algorithm).encode())
        h.update(b"\n")
    return h.hexdigest()


@dataclass(frozen=True)
class Fingerprint:
    """A self-describing, versioned hash for a target.

    Each fingerprint records its scheme (how it was generated) and its
    components (what went into it), so a mismatch can be explained.
    """

    scheme: str  # e.g. "kiln:target:v1:blake2b"
    digest: str
    components: dict[str, str]  # component_name -> component_hash

    def matches(self, other: Fingerprint | None) -> bool:
        """Match requires same scheme AND same digest."""
        if other is None:
            return False
        return self.scheme == other.scheme and self.digest == other.digest

    def explain_diff(self, other: Fingerprint | None) -> list[str]:
        """Human-readable list of reasons these fingerprints differ."""
        if other is None:
            return ["no stored fingerprint"]
        if self.scheme != other.scheme:
            return [f"scheme changed ({other.scheme} -> {self.scheme})"]
        changed = []
        all_keys = sorted(set(self.components) | set(other.components))
        for k in all_keys:
            if self.components.get(k) != other.components.get(k):
                changed.append(k)
        return [f"{k} changed" for k in changed] or ["unknown"]

    def to_dict(self) -> dict:
        """Serialize to a plain dict suitable for JSON storage."""
        return {
            "scheme": self.scheme,
            "digest": self.digest,
            "components": dict(self.components),
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> Fingerprint | None:
        """Deserialize from a dict. Returns None if data is empty/missing."""
        if not data or "scheme" not in data:
            return None
        return cls(
            scheme=data["scheme"],
            digest=data["digest"],
            components=data.get("components", {}),
        )


def compute_digest(components: dict[str, str], algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Deterministic digest from sorted component hashes."""
    parts = "|".join(f"{k}={v}" for k, v in sorted(components.items()))
    return hash_text(parts, algorithm)


def compute_target_fingerprint(
    command_text: str,
    dep_digests: dict[str, str],
    file_hashes: dict[str, str],
    *,
    format: str = "pickle",
    algorithm: str = DEFAULT_ALGORITHM,
) -> Fingerprint:
    """H(command, upstream fingerprints, declared input file contents).

    Identical inputs always produce the identical fingerprint: nothing here
    depends on process, machine or run order.
    """
    components = {
        "command": hash_text(command_text, algorithm),
        "deps": hash_text(json.dumps(dep_digests, sort_keys=True), algorithm),
        "files": hash_text(json.dumps(file_hashes, sort_keys=True), algorithm),
        "format": format,
    }
    return Fingerprint(
        scheme=f"kiln:target:v1:{algorithm}",
        digest=compute_digest(components, algorithm),
        components=components,
    )


def hash_files(paths: list[str], algorithm: str = DEFAULT_ALGORITHM) -> dict[str, str]:
    """Map each path to its content hash."""
    return {p: hash_file(p, algorithm) for p in sorted(set(paths))}
