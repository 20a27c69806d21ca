#!/usr/bin/env python3
"""
Tests for the attest command line and settings.
"""

import hashlib
import json
from pathlib import Path

import pytest

from attest import main
from attest_db import AttestDB
from common import EXIT_FAILURE, EXIT_STORE_UNAVAILABLE, EXIT_SUCCESS
from config import load_settings


def _write_file(path: Path, content: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)


@pytest.fixture
def run(tmp_path: Path):
    """Invoke main() against a temporary database, isolated from user settings."""
    db_path = tmp_path / "attest.db"
    config_path = tmp_path / "no-settings.json"

    def _run(*args: str) -> int:
        return main(["--db", str(db_path), "--config", str(config_path), *args])

    _run.db_path = db_path
    return _run


def test_add_then_list(run, tmp_path: Path, capsys):
    root = tmp_path / "etc"
    _write_file(root / "hosts", b"hosts")
    _write_file(root / "ssh" / "ssh_config", b"ssh")

    assert run("--add", "--product", "baseline-v1", "--dir", str(root), "--recursive") == EXIT_SUCCESS
    capsys.readouterr()

    assert run("--products") == EXIT_SUCCESS
    assert capsys.readouterr().out.splitlines() == ["   1: baseline-v1"]

    assert run("--files", "--product", "baseline-v1") == EXIT_SUCCESS
    assert capsys.readouterr().out.splitlines() == [
        f"   1: {root / 'hosts'}",
        f"   2: {root / 'ssh' / 'ssh_config'}",
    ]

    assert run("--hashes", "--dir", str(root), "--file", "hosts") == EXIT_SUCCESS
    out = capsys.readouterr().out
    assert hashlib.sha256(b"hosts").hexdigest() in out
    assert "ssh_config" not in out


def test_last_operation_token_wins(run):
    # --products comes last, so the whole invocation resolves instead of creating
    assert run("--add", "--products", "--product", "never-created") == EXIT_FAILURE

    db = AttestDB.open(str(run.db_path))
    try:
        assert db.count("products") == 0
    finally:
        db.close()


def test_last_algorithm_flag_wins(run, tmp_path: Path):
    file_path = tmp_path / "vmlinuz"
    _write_file(file_path, b"kernel")

    assert run("--add", "--file", str(file_path), "--sha1", "--sha384") == EXIT_SUCCESS

    db = AttestDB.open(str(run.db_path))
    try:
        rows = db.select("SELECT algo FROM measurements")
        assert [row["algo"] for row in rows] == ["sha384"]
    finally:
        db.close()


def test_unknown_name_fails_without_side_effects(run):
    assert run("--add", "--product", "baseline-v1") == EXIT_SUCCESS
    assert run("--delete", "--product", "baseline-v2") == EXIT_FAILURE
    assert run("--components", "--cid", "9") == EXIT_FAILURE

    db = AttestDB.open(str(run.db_path))
    try:
        assert db.count("products") == 1
    finally:
        db.close()


def test_failing_filter_rolls_back_created_names(run, tmp_path: Path):
    assert run("--add", "--product", "orphan", "--cid", "99") == EXIT_FAILURE
    assert run("--add", "--product", "baseline-v1", "--dir", str(tmp_path / "missing")) == EXIT_FAILURE
    assert run("--delete", "--did", "1") == EXIT_FAILURE

    db = AttestDB.open(str(run.db_path))
    try:
        assert db.count("products") == 0
        assert db.count("directories") == 0
    finally:
        db.close()


def test_delete_with_unrelated_filters_changes_nothing(run):
    assert run("--add", "--device", "client-1") == EXIT_SUCCESS
    assert run("--add", "--component", "boot") == EXIT_SUCCESS
    assert run("--delete", "--did", "1", "--cid", "1") == EXIT_FAILURE

    db = AttestDB.open(str(run.db_path))
    try:
        assert db.count("devices") == 1
        assert db.count("components") == 1
    finally:
        db.close()


def test_store_unavailable_has_distinct_exit_code(tmp_path: Path):
    code = main([
        "--db", "postgres://attest@db/attest",
        "--config", str(tmp_path / "none.json"),
        "--products",
    ])
    assert code == EXIT_STORE_UNAVAILABLE


def test_missing_operation_and_bad_algorithm(run):
    assert run("--product", "x") == EXIT_FAILURE
    assert run("--hashes", "--algorithm", "crc32") == EXIT_FAILURE


def test_delete_writes_report(run, tmp_path: Path):
    report_path = tmp_path / "reports" / "delete.json"
    assert run("--add", "--product", "baseline-v1", "--component", "boot") == EXIT_SUCCESS
    assert run("--delete", "--product", "baseline-v1", "--component", "boot",
               "--report", str(report_path)) == EXIT_SUCCESS

    report = json.loads(report_path.read_text(encoding="utf-8"))
    assert report["mode"] == "delete"
    assert report["stats"] == {"deleted": 0, "unlinked": 1}
    assert report["actions"][0]["relation"] == "product_component"


def test_add_device_and_list_with_owner(run, capsys):
    assert run("--add", "--device", "tnc-client-7") == EXIT_SUCCESS
    assert run("--add", "--did", "1", "--owner", "lab rack 2", "--key", "a1b2") == EXIT_SUCCESS
    capsys.readouterr()

    assert run("--devices") == EXIT_SUCCESS
    assert capsys.readouterr().out.splitlines() == ["   1: tnc-client-7 'lab rack 2'"]
    assert run("--keys", "--did", "1") == EXIT_SUCCESS
    assert capsys.readouterr().out.splitlines() == ["   1: a1b2"]


def test_settings_precedence(tmp_path: Path):
    config_path = tmp_path / "settings.json"
    config_path.write_text(json.dumps({
        "database": "sqlite:///srv/attest.db",
        "algorithm": "sha1",
        "workers": 4,
        "algorithms": ["sha512"],
    }))

    from_file = load_settings(config_path, environ={})
    assert from_file.database == "sqlite:///srv/attest.db"
    assert from_file.algorithm == "sha1"
    assert from_file.workers == 4
    assert from_file.algorithms == ["sha512"]

    from_env = load_settings(config_path, environ={
        "ATTEST_DATABASE": "/var/lib/attest.db",
        "ATTEST_WORKERS": "2",
    })
    assert from_env.database == "/var/lib/attest.db"
    assert from_env.workers == 2
    assert from_env.algorithm == "sha1"


def test_broken_settings_file_is_ignored(tmp_path: Path):
    config_path = tmp_path / "settings.json"
    config_path.write_text("{not json")
    settings = load_settings(config_path, environ={})
    assert settings.database == "attest.db"
    assert settings.algorithm == "sha256"


def test_database_from_environment(tmp_path: Path, monkeypatch, capsys):
    db_path = tmp_path / "env.db"
    monkeypatch.setenv("ATTEST_DATABASE", f"sqlite://{db_path}")
    config = str(tmp_path / "none.json")

    assert main(["--config", config, "--add", "--product", "from-env"]) == EXIT_SUCCESS
    capsys.readouterr()
    assert main(["--config", config, "--products"]) == EXIT_SUCCESS
    assert capsys.readouterr().out.splitlines() == ["   1: from-env"]
    assert db_path.exists()
