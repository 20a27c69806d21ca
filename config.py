"""
Settings for attest: built-in defaults, overridden by a JSON settings file,
then by ATTEST_* environment variables. Command-line flags win over all three.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

from common import DEFAULT_DB_NAME, DEFAULT_WORKERS
from digest import DEFAULT_ALGORITHM


ENV_PREFIX = "ATTEST_"


@dataclass
class Settings:
    """Invocation settings.

    Attributes:
        database: Store URI (``sqlite:///path``, ``file:`` URI or plain path).
        algorithm: Algorithm used when none is selected on the command line.
        workers: Hashing threads for directory ingestion.
        algorithms: Extra hashlib algorithms to register beyond SHA-1/256/384.
    """
    database: str = DEFAULT_DB_NAME
    algorithm: str = DEFAULT_ALGORITHM
    workers: int = DEFAULT_WORKERS
    algorithms: List[str] = field(default_factory=list)


def default_settings_path() -> Path:
    """Path to the JSON settings file."""
    return Path.home() / ".config" / "attest" / "settings.json"


def _read_settings_file(path: Path) -> dict:
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logging.warning(f"Ignoring settings file {path}: {exc}")
        return {}
    if not isinstance(data, dict):
        logging.warning(f"Ignoring settings file {path}: not a JSON object")
        return {}
    return data


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Merge the settings file and environment over the defaults."""
    settings = Settings()
    environ = os.environ if environ is None else environ

    data = _read_settings_file(config_path or default_settings_path())
    if isinstance(data.get("database"), str):
        settings.database = data["database"]
    if isinstance(data.get("algorithm"), str):
        settings.algorithm = data["algorithm"]
    if isinstance(data.get("workers"), int) and not isinstance(data.get("workers"), bool):
        settings.workers = data["workers"]
    if isinstance(data.get("algorithms"), list):
        settings.algorithms = [str(name) for name in data["algorithms"]]

    if environ.get(f"{ENV_PREFIX}DATABASE"):
        settings.database = environ[f"{ENV_PREFIX}DATABASE"]
    if environ.get(f"{ENV_PREFIX}ALGORITHM"):
        settings.algorithm = environ[f"{ENV_PREFIX}ALGORITHM"]
    if environ.get(f"{ENV_PREFIX}WORKERS"):
        try:
            settings.workers = int(environ[f"{ENV_PREFIX}WORKERS"])
        except ValueError:
            logging.warning(f"Ignoring {ENV_PREFIX}WORKERS={environ[f'{ENV_PREFIX}WORKERS']!r}")
    if environ.get(f"{ENV_PREFIX}ALGORITHMS"):
        settings.algorithms = [
            name.strip() for name in environ[f"{ENV_PREFIX}ALGORITHMS"].split(",") if name.strip()
        ]
    return settings
