#!/usr/bin/env python3
"""
Unit tests for the attestation database facade.
"""

import hashlib
import logging
from pathlib import Path

import pytest

from attest_db import AttestDB
from common import Conflict, NotFound, StoreUnavailable


logging.basicConfig(level=logging.WARNING)


def _open(tmp_path: Path) -> AttestDB:
    return AttestDB.open(str(tmp_path / "attest.db"))


def test_product_identity_is_stable(tmp_path: Path):
    db = _open(tmp_path)
    try:
        for name in ("baseline-v1", "Ubuntu 22.04 x86_64", "ü-name"):
            product_id = db.create("product", name)
            assert db.find_by_name("product", name) == product_id
            assert db.get_or_create("product", name) == (product_id, False)
        assert db.count("products") == 3
    finally:
        db.close()


def test_duplicate_name_is_conflict(tmp_path: Path):
    db = _open(tmp_path)
    try:
        db.create("component", "boot")
        with pytest.raises(Conflict):
            db.create("component", "boot")
        assert db.count("components") == 1
    finally:
        db.close()


def test_file_paths_are_unique_per_directory(tmp_path: Path):
    db = _open(tmp_path)
    try:
        etc = db.create("directory", "/etc")
        usr = db.create("directory", "/usr")
        first = db.create_file(etc, "passwd")
        second = db.create_file(usr, "passwd")
        assert first != second
        assert db.find_file(etc, "passwd") == first
        assert db.file_location(second) == Path("/usr/passwd")

        with pytest.raises(Conflict):
            db.create_file(etc, "passwd")

        db.create_file(None, "/boot/vmlinuz")
        with pytest.raises(Conflict):
            db.create_file(None, "/boot/vmlinuz")
        assert db.find_file(None, "/boot/vmlinuz") is not None
    finally:
        db.close()


def test_measurement_is_last_write_wins(tmp_path: Path):
    db = _open(tmp_path)
    try:
        file_id = db.create_file(None, "/bin/sh")
        first = hashlib.sha256(b"one").digest()
        second = hashlib.sha256(b"two").digest()

        assert db.upsert_measurement(file_id, "sha256", first) == ("added", None)
        assert db.upsert_measurement(file_id, "sha256", first) == ("unchanged", first)
        assert db.upsert_measurement(file_id, "sha256", second) == ("updated", first)

        rows = db.select("SELECT algo, digest FROM measurements WHERE file_id = ?", (file_id,))
        assert len(rows) == 1
        assert bytes(rows[0]["digest"]) == second

        db.upsert_measurement(file_id, "sha1", hashlib.sha1(b"two").digest())
        assert db.count("measurements") == 2
    finally:
        db.close()


def test_measurement_requires_existing_file(tmp_path: Path):
    db = _open(tmp_path)
    try:
        with pytest.raises(NotFound):
            db.upsert_measurement(99, "sha256", b"\x00" * 32)
        assert db.count("measurements") == 0
    finally:
        db.close()


def test_delete_file_cascades_to_measurements_and_links(tmp_path: Path):
    db = _open(tmp_path)
    try:
        product_id = db.create("product", "baseline-v1")
        component_id = db.create("component", "boot")
        file_id = db.create_file(None, "/boot/grub/grub.cfg")
        other_id = db.create_file(None, "/boot/grub/other.cfg")
        db.upsert_measurement(file_id, "sha1", b"\x01" * 20)
        db.upsert_measurement(file_id, "sha256", b"\x02" * 32)
        db.upsert_measurement(other_id, "sha256", b"\x03" * 32)
        db.link("product_file", product_id, file_id)
        db.link("component_file", component_id, file_id)

        counts = db.delete("file", file_id)

        assert counts == {
            "component_file": 1,
            "files": 1,
            "measurements": 2,
            "product_file": 1,
        }
        assert db.find_by_id("file", file_id) is None
        assert db.count("measurements") == 1
        assert db.count("products") == 1
        assert db.count("components") == 1
    finally:
        db.close()


def test_delete_product_unlinks_but_keeps_files(tmp_path: Path):
    db = _open(tmp_path)
    try:
        product_id = db.create("product", "baseline-v1")
        component_id = db.create("component", "kernel")
        file_id = db.create_file(None, "/boot/vmlinuz")
        db.link("product_file", product_id, file_id)
        db.link("product_component", product_id, component_id)

        db.delete("product", product_id)

        assert db.count("products") == 0
        assert db.count("product_file") == 0
        assert db.count("product_component") == 0
        assert db.find_by_id("file", file_id) is not None
        assert db.find_by_id("component", component_id) is not None
    finally:
        db.close()


def test_delete_directory_removes_its_files(tmp_path: Path):
    db = _open(tmp_path)
    try:
        dir_id = db.create("directory", "/etc")
        inside = db.create_file(dir_id, "hosts")
        outside = db.create_file(None, "/bin/ls")
        db.upsert_measurement(inside, "sha256", b"\x04" * 32)
        db.upsert_measurement(outside, "sha256", b"\x05" * 32)

        db.delete("directory", dir_id)

        assert db.count("directories") == 0
        assert db.find_by_id("file", inside) is None
        assert db.find_by_id("file", outside) is not None
        assert db.count("measurements") == 1
    finally:
        db.close()


def test_delete_missing_entity_is_not_found(tmp_path: Path):
    db = _open(tmp_path)
    try:
        with pytest.raises(NotFound):
            db.delete("component", 7)
    finally:
        db.close()


def test_link_validates_both_ends(tmp_path: Path):
    db = _open(tmp_path)
    try:
        product_id = db.create("product", "baseline-v1")
        with pytest.raises(NotFound):
            db.link("product_component", product_id, 42)
        assert db.count("product_component") == 0

        component_id = db.create("component", "boot")
        assert db.link("product_component", product_id, component_id) is True
        assert db.link("product_component", product_id, component_id) is False
        assert db.unlink("product_component", product_id, component_id) is True
        assert db.unlink("product_component", product_id, component_id) is False
    finally:
        db.close()


def test_key_shared_by_many_devices(tmp_path: Path):
    """Key <-> device is treated as many-to-many until a stricter rule is confirmed."""
    db = _open(tmp_path)
    try:
        key_id = db.create("key", bytes.fromhex("a1b2c3"))
        first = db.create("device", "client-1")
        second = db.create("device", "client-2")
        assert db.link("device_key", first, key_id)
        assert db.link("device_key", second, key_id)
        assert db.count("device_key") == 2

        db.delete("device", first)
        assert db.count("device_key") == 1
        assert db.find_by_id("key", key_id) is not None
    finally:
        db.close()


def test_failed_unit_of_work_is_rolled_back(tmp_path: Path):
    db = _open(tmp_path)
    try:
        with pytest.raises(RuntimeError):
            with db.transaction():
                db.create("product", "half-done")
                with db.transaction():
                    db.create("component", "inner")
                raise RuntimeError("boom")
        assert db.find_by_name("product", "half-done") is None
        assert db.count("components") == 0
    finally:
        db.close()


def test_open_accepts_sqlite_uri(tmp_path: Path):
    db_path = tmp_path / "nested" / "config.db"
    db = AttestDB.open(f"sqlite://{db_path}")
    try:
        db.create("product", "via-uri")
    finally:
        db.close()
    assert db_path.exists()

    reopened = AttestDB.open(str(db_path))
    try:
        assert reopened.find_by_name("product", "via-uri") is not None
    finally:
        reopened.close()


def test_open_unreachable_store(tmp_path: Path):
    with pytest.raises(StoreUnavailable):
        AttestDB.open("mysql://attest@localhost/attest")

    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    with pytest.raises(StoreUnavailable):
        AttestDB.open(str(blocker / "attest.db"))
