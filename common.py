"""
Shared code for attest: constants, error types, logging, file walking, reporting.
"""

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional


DEFAULT_DB_NAME = "attest.db"
DEFAULT_CHUNK_SIZE = 8 * 1024 * 1024
DEFAULT_WORKERS = 1
PROGRESS_EVERY = 1000
HASH_BATCH_SIZE = 100

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_STORE_UNAVAILABLE = 3


class AttestError(Exception):
    """Base class for errors that abort an attest invocation."""
    exit_code = EXIT_FAILURE


class UnsupportedAlgorithm(AttestError):
    """Requested digest algorithm is not in the registry."""


class NotFound(AttestError):
    """An identifier, name or path does not resolve to an existing row."""


class Conflict(AttestError):
    """A unique constraint was violated."""


class InvalidScope(AttestError):
    """The operation needs an identifier that was never set."""


class StoreUnavailable(AttestError):
    """The database could not be reached or a transaction failed."""
    exit_code = EXIT_STORE_UNAVAILABLE


class IOFailure(AttestError):
    """A single file could not be read during ingestion."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


@dataclass
class FileInfo:
    """A file scheduled for hashing."""
    path: Path
    path_str: str
    dir_id: Optional[int]
    rel_path: str
    file_id: Optional[int] = None


@dataclass
class HashResult:
    """Result of a hash computation."""
    file_info: FileInfo
    digest: Optional[bytes] = None
    error: Optional[IOFailure] = None


def setup_logging(log_file: Optional[Path] = None, verbose: bool = False) -> None:
    """Configure logging to file and console.

    Console output goes to stderr so that listings printed on stdout stay clean.
    """
    level = logging.DEBUG if verbose else logging.INFO
    handlers = [logging.StreamHandler(sys.stderr)]

    if log_file:
        handlers.append(logging.FileHandler(log_file, mode='w', encoding='utf-8'))

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


def iter_files(
    root: Path,
    recursive: bool = False,
    on_error: Optional[Callable[[Path, OSError], None]] = None,
) -> Iterable[Path]:
    """Yield regular files under root in lexical order without following symlinks.

    Symbolic links and special files are skipped. Subdirectories are only
    entered when recursive is set. Directories and entries that cannot be
    read are skipped and passed to on_error.
    """
    stack = [root]
    while stack:
        current = stack.pop()
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            logging.warning(f"Skipping directory {current}: {exc}")
            if on_error:
                on_error(Path(current), exc)
            continue

        subdirs = []
        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    if recursive:
                        subdirs.append(Path(entry.path))
                elif entry.is_file(follow_symlinks=False):
                    yield Path(entry.path)
                else:
                    logging.debug(f"Skipping non-regular entry {entry.path}")
            except OSError as exc:
                logging.warning(f"Skipping entry {entry.path}: {exc}")
                if on_error:
                    on_error(Path(entry.path), exc)
        # popped from the end, so push in reverse to visit in lexical order
        stack.extend(reversed(subdirs))


def is_under_root(file_path: Path, root: Path) -> bool:
    """Return True if file_path is under root."""
    try:
        file_path.relative_to(root)
    except ValueError:
        return False
    return True


def build_report(
    db_uri: str,
    algorithm: Optional[str],
    stats: Dict[str, int],
    run_started: int,
    run_finished: int,
    mode: str,
    details: Optional[Dict[str, object]],
) -> Dict[str, object]:
    """Build JSON-compatible report."""
    report: Dict[str, object] = {
        "run_started": datetime.fromtimestamp(run_started).isoformat(),
        "run_finished": datetime.fromtimestamp(run_finished).isoformat(),
        "duration_seconds": run_finished - run_started,
        "db": db_uri,
        "algorithm": algorithm,
        "mode": mode,
        "stats": stats,
    }
    if details:
        report.update(details)
    return report


def write_report(report: Dict[str, object], report_path: Path) -> None:
    """Write report to file."""
    report_json = json.dumps(report, indent=2, sort_keys=True)
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(report_json, encoding='utf-8')
    logging.info(f"Report written to {report_path}")
