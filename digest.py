"""
Digest algorithm selection and file hashing.
"""

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Optional

from common import DEFAULT_CHUNK_SIZE, UnsupportedAlgorithm


DEFAULT_ALGORITHM = "sha256"
BASELINE_ALGORITHMS = ("sha1", "sha256", "sha384")


@dataclass(frozen=True)
class Algorithm:
    """A selectable measurement algorithm."""
    name: str
    hashlib_name: str
    digest_size: int

    def new(self):
        return hashlib.new(self.hashlib_name)


def normalize_name(name: str) -> str:
    """Canonical registry key: lowercase, no dashes or underscores (SHA-256 -> sha256)."""
    return name.strip().lower().replace("-", "").replace("_", "")


class AlgorithmRegistry:
    """Supported algorithms, seeded with SHA-1, SHA-256 and SHA-384."""

    def __init__(self, extra: Iterable[str] = ()) -> None:
        self._algorithms: Dict[str, Algorithm] = {}
        for name in BASELINE_ALGORITHMS:
            self.register(name)
        for name in extra:
            self.register(name)

    def register(self, name: str, hashlib_name: Optional[str] = None) -> Algorithm:
        """Add an algorithm that hashlib can provide; returns the registered entry."""
        key = normalize_name(name)
        if not key:
            raise UnsupportedAlgorithm("Empty algorithm name")
        impl = hashlib_name or name.strip().lower().replace("-", "")
        try:
            digest_size = hashlib.new(impl).digest_size
        except (ValueError, TypeError) as exc:
            raise UnsupportedAlgorithm(f"Algorithm not available: {name}") from exc
        algorithm = Algorithm(name=key, hashlib_name=impl, digest_size=digest_size)
        self._algorithms[key] = algorithm
        return algorithm

    def select(self, name: str) -> Algorithm:
        try:
            return self._algorithms[normalize_name(name)]
        except KeyError:
            raise UnsupportedAlgorithm(
                f"Unsupported algorithm '{name}' (supported: {', '.join(self.names())})"
            ) from None

    def names(self) -> List[str]:
        return sorted(self._algorithms)

    def __contains__(self, name: str) -> bool:
        return normalize_name(name) in self._algorithms


default_registry = AlgorithmRegistry()


def select(name: str, registry: Optional[AlgorithmRegistry] = None) -> Algorithm:
    """Map an algorithm name to its registry entry."""
    return (registry or default_registry).select(name)


def compute(stream: BinaryIO, algorithm: Algorithm, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bytes:
    """Digest everything readable from stream."""
    hasher = algorithm.new()
    for chunk in iter(lambda: stream.read(chunk_size), b''):
        hasher.update(chunk)
    return hasher.digest()


def compute_file(file_path: Path, algorithm: Algorithm, chunk_size: int = DEFAULT_CHUNK_SIZE) -> bytes:
    """Compute the digest of a file."""
    with file_path.open('rb') as handle:
        return compute(handle, algorithm, chunk_size)
