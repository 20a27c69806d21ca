#!/usr/bin/env python3
"""
Unit tests for algorithm selection and hashing.
"""

import hashlib
import io
from pathlib import Path

import pytest

from common import UnsupportedAlgorithm
from digest import (
    DEFAULT_ALGORITHM,
    AlgorithmRegistry,
    compute,
    compute_file,
    default_registry,
    select,
)


def test_select_normalizes_names():
    assert select("SHA-256").name == "sha256"
    assert select("sha1").digest_size == 20
    assert select(" SHA384 ").digest_size == 48
    assert select(DEFAULT_ALGORITHM) == select("sha256")


def test_select_unknown_algorithm_fails():
    with pytest.raises(UnsupportedAlgorithm):
        select("md42")
    assert "sha512" not in default_registry


def test_registry_can_be_extended():
    registry = AlgorithmRegistry(["sha512"])
    registry.register("sha3_256")

    assert registry.select("SHA-512").digest_size == 64
    assert registry.select("SHA3-256").hashlib_name == "sha3_256"
    assert registry.names() == ["sha1", "sha256", "sha3256", "sha384", "sha512"]

    with pytest.raises(UnsupportedAlgorithm):
        registry.register("not-a-real-hash")


def test_compute_matches_hashlib(tmp_path: Path):
    data = b"measured content" * 1000
    algorithm = select("sha384")
    assert compute(io.BytesIO(data), algorithm, chunk_size=7) == hashlib.sha384(data).digest()

    file_path = tmp_path / "blob.bin"
    file_path.write_bytes(data)
    assert compute_file(file_path, select("sha1")) == hashlib.sha1(data).digest()
