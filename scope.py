"""
Filter context: identifiers accumulated from the command line that scope
one list, add or delete operation.
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from attest_db import AttestDB
from common import InvalidScope, NotFound, is_under_root
from digest import Algorithm, AlgorithmRegistry, default_registry


class ResolveMode(Enum):
    """How name and path setters treat entities that do not exist yet."""
    RESOLVE = "resolve"
    RESOLVE_OR_CREATE = "resolve-or-create"


def parse_key_id(value: Union[str, bytes]) -> bytes:
    """Key identifiers are given as hex, optionally 0x-prefixed or colon separated."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = value.strip().lower()
    if text.startswith("0x"):
        text = text[2:]
    text = text.replace(":", "").replace(" ", "")
    try:
        blob = bytes.fromhex(text)
    except ValueError:
        raise InvalidScope(f"Key identifier is not hex: {value}") from None
    if not blob:
        raise InvalidScope("Empty key identifier")
    return blob


class FilterContext:
    """Accumulates scoping identifiers for a single invocation.

    The resolve mode is fixed at construction. In RESOLVE mode every setter
    only looks entities up and raises NotFound otherwise, so queries and
    deletes never create state. Setters can be called in any order and
    repeatedly; the last value wins.
    """

    def __init__(
        self,
        db: AttestDB,
        mode: ResolveMode = ResolveMode.RESOLVE,
        registry: Optional[AlgorithmRegistry] = None,
    ) -> None:
        self._db = db
        self._mode = mode
        self._registry = registry or default_registry
        self._ids: Dict[str, Optional[int]] = {
            "device": None,
            "key": None,
            "product": None,
            "component": None,
            "directory": None,
            "file": None,
        }
        self._dir_path: Optional[Path] = None
        self._owner: Optional[str] = None
        self._algorithm: Optional[Algorithm] = None

    @property
    def db(self) -> AttestDB:
        return self._db

    @property
    def mode(self) -> ResolveMode:
        return self._mode

    @property
    def creates(self) -> bool:
        return self._mode is ResolveMode.RESOLVE_OR_CREATE

    @property
    def did(self) -> Optional[int]:
        return self._ids["device"]

    @property
    def kid(self) -> Optional[int]:
        return self._ids["key"]

    @property
    def pid(self) -> Optional[int]:
        return self._ids["product"]

    @property
    def cid(self) -> Optional[int]:
        return self._ids["component"]

    @property
    def fid(self) -> Optional[int]:
        return self._ids["file"]

    @property
    def dir_id(self) -> Optional[int]:
        return self._ids["directory"]

    @property
    def dir_path(self) -> Optional[Path]:
        return self._dir_path

    @property
    def owner(self) -> Optional[str]:
        return self._owner

    @property
    def algorithm(self) -> Optional[Algorithm]:
        """The explicitly selected algorithm, or None."""
        return self._algorithm

    def is_empty(self) -> bool:
        return all(value is None for value in self._ids.values())

    def describe(self) -> str:
        parts = [f"{kind}={value}" for kind, value in self._ids.items() if value is not None]
        if self._algorithm:
            parts.append(f"algorithm={self._algorithm.name}")
        return ", ".join(parts) or "(no filter)"

    # -- plain values -----------------------------------------------------

    def set_owner(self, owner: str) -> None:
        self._owner = owner

    def set_algorithm(self, name: str) -> Algorithm:
        self._algorithm = self._registry.select(name)
        return self._algorithm

    # -- ids --------------------------------------------------------------

    def _set_id(self, kind: str, entity_id: int) -> int:
        self._db.require(kind, entity_id)
        self._ids[kind] = entity_id
        return entity_id

    def set_did(self, device_id: int) -> int:
        return self._set_id("device", device_id)

    def set_kid(self, key_id: int) -> int:
        return self._set_id("key", key_id)

    def set_pid(self, product_id: int) -> int:
        return self._set_id("product", product_id)

    def set_cid(self, component_id: int) -> int:
        return self._set_id("component", component_id)

    def set_fid(self, file_id: int) -> int:
        return self._set_id("file", file_id)

    # -- names and paths --------------------------------------------------

    def _resolve(self, kind: str, value: object, label: str) -> int:
        if self.creates:
            entity_id, created = self._db.get_or_create(kind, value)
            if not created:
                logging.debug(f"{kind} '{label}' found (id {entity_id})")
        else:
            entity_id = self._db.find_by_name(kind, value)
            if entity_id is None:
                raise NotFound(f"{kind} '{label}' not found in database")
        self._ids[kind] = entity_id
        return entity_id

    def set_device(self, ident: str) -> int:
        return self._resolve("device", ident, ident)

    def set_key(self, key: Union[str, bytes]) -> int:
        blob = parse_key_id(key)
        return self._resolve("key", blob, blob.hex())

    def set_product(self, name: str) -> int:
        return self._resolve("product", name, name)

    def set_component(self, name: str) -> int:
        return self._resolve("component", name, name)

    def set_directory(self, path: Union[str, Path]) -> int:
        """Scope to a measurement root; later file paths are relative to it."""
        dir_path = Path(os.path.abspath(path))
        dir_id = self._resolve("directory", str(dir_path), str(dir_path))
        self._dir_path = dir_path
        return dir_id

    def set_file(self, path: Union[str, Path]) -> int:
        dir_id, rel_path = self.split_file_path(path)
        if self.creates:
            file_id, _ = self._db.get_or_create_file(dir_id, rel_path)
        else:
            file_id = self._db.find_file(dir_id, rel_path)
            if file_id is None:
                where = f" in directory '{self._dir_path}'" if dir_id is not None else ""
                raise NotFound(f"file '{rel_path}'{where} not found in database")
        self._ids["file"] = file_id
        return file_id

    def split_file_path(self, path: Union[str, Path]) -> Tuple[Optional[int], str]:
        """(directory id, stored path) for a file path in the current scope."""
        file_path = Path(path)
        if self._dir_path is None:
            return None, os.path.abspath(file_path)
        if file_path.is_absolute():
            file_path = Path(os.path.abspath(file_path))
            if not is_under_root(file_path, self._dir_path):
                raise InvalidScope(f"File {file_path} is not under directory {self._dir_path}")
            file_path = file_path.relative_to(self._dir_path)
        return self.dir_id, file_path.as_posix()

    # -- derived ----------------------------------------------------------

    def file_ids(self) -> List[int]:
        """Files selected by the file and directory identifiers."""
        if self.fid is not None:
            if self.dir_id is not None:
                row = self._db.require("file", self.fid)
                if row["dir_id"] != self.dir_id:
                    return []
            return [self.fid]
        if self.dir_id is not None:
            return self._db.files_in_directory(self.dir_id)
        return []
