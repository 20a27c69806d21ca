"""
Attestation database: schema, transactions and per-entity primitives.

All integrity rules (existence checks, link validation, cascades) are
enforced here rather than left to the store, so the same behaviour holds on
any SQL backend reachable through a DB-API connection.
"""

import logging
import sqlite3
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from common import Conflict, NotFound, StoreUnavailable


SQLITE_SCHEME = "sqlite://"

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS devices (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ident TEXT NOT NULL UNIQUE,
        owner TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS keys (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        keyid BLOB NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS components (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS directories (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        path TEXT NOT NULL UNIQUE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS files (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        dir_id INTEGER REFERENCES directories(id),
        path TEXT NOT NULL
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_files_dir_path ON files(IFNULL(dir_id, 0), path)",
    """
    CREATE TABLE IF NOT EXISTS measurements (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        file_id INTEGER NOT NULL REFERENCES files(id),
        algo TEXT NOT NULL,
        digest BLOB NOT NULL,
        updated INTEGER NOT NULL,
        UNIQUE (file_id, algo)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_component (
        product_id INTEGER NOT NULL REFERENCES products(id),
        component_id INTEGER NOT NULL REFERENCES components(id),
        PRIMARY KEY (product_id, component_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS product_file (
        product_id INTEGER NOT NULL REFERENCES products(id),
        file_id INTEGER NOT NULL REFERENCES files(id),
        PRIMARY KEY (product_id, file_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS component_file (
        component_id INTEGER NOT NULL REFERENCES components(id),
        file_id INTEGER NOT NULL REFERENCES files(id),
        PRIMARY KEY (component_id, file_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS device_key (
        device_id INTEGER NOT NULL REFERENCES devices(id),
        key_id INTEGER NOT NULL REFERENCES keys(id),
        PRIMARY KEY (device_id, key_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS device_product (
        device_id INTEGER NOT NULL REFERENCES devices(id),
        product_id INTEGER NOT NULL REFERENCES products(id),
        PRIMARY KEY (device_id, product_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_measurements_file ON measurements(file_id)",
    "CREATE INDEX IF NOT EXISTS idx_product_file_file ON product_file(file_id)",
    "CREATE INDEX IF NOT EXISTS idx_component_file_file ON component_file(file_id)",
)


@dataclass(frozen=True)
class EntityKind:
    """An entity table and the column that names its rows."""
    name: str
    table: str
    key_column: str


ENTITY_KINDS: Dict[str, EntityKind] = {
    kind.name: kind
    for kind in (
        EntityKind("device", "devices", "ident"),
        EntityKind("key", "keys", "keyid"),
        EntityKind("product", "products", "name"),
        EntityKind("component", "components", "name"),
        EntityKind("directory", "directories", "path"),
        EntityKind("file", "files", "path"),
        EntityKind("measurement", "measurements", "algo"),
    )
}
KIND_BY_TABLE = {kind.table: kind.name for kind in ENTITY_KINDS.values()}

# relation name -> (table, left column, left kind, right column, right kind)
RELATIONS: Dict[str, Tuple[str, str, str, str, str]] = {
    "product_component": ("product_component", "product_id", "product", "component_id", "component"),
    "product_file": ("product_file", "product_id", "product", "file_id", "file"),
    "component_file": ("component_file", "component_id", "component", "file_id", "file"),
    "device_key": ("device_key", "device_id", "device", "key_id", "key"),
    "device_product": ("device_product", "device_id", "device", "product_id", "product"),
}

CASCADE_DELETE = "delete"
CASCADE_UNLINK = "unlink"


@dataclass(frozen=True)
class CascadeEdge:
    """Rows in `table` referencing a `parent` entity through `column`.

    `delete` removes the referencing entities (walking their own edges first),
    `unlink` only drops the link rows.
    """
    parent: str
    table: str
    column: str
    action: str


CASCADE_EDGES: Tuple[CascadeEdge, ...] = (
    CascadeEdge("directory", "files", "dir_id", CASCADE_DELETE),
    CascadeEdge("file", "measurements", "file_id", CASCADE_DELETE),
    CascadeEdge("file", "product_file", "file_id", CASCADE_UNLINK),
    CascadeEdge("file", "component_file", "file_id", CASCADE_UNLINK),
    CascadeEdge("product", "product_file", "product_id", CASCADE_UNLINK),
    CascadeEdge("product", "product_component", "product_id", CASCADE_UNLINK),
    CascadeEdge("product", "device_product", "product_id", CASCADE_UNLINK),
    CascadeEdge("component", "product_component", "component_id", CASCADE_UNLINK),
    CascadeEdge("component", "component_file", "component_id", CASCADE_UNLINK),
    CascadeEdge("key", "device_key", "key_id", CASCADE_UNLINK),
    CascadeEdge("device", "device_key", "device_id", CASCADE_UNLINK),
    CascadeEdge("device", "device_product", "device_id", CASCADE_UNLINK),
)


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    """Translate sqlite3 exceptions into the attest error taxonomy."""
    try:
        yield
    except sqlite3.IntegrityError as exc:
        raise Conflict(f"{action}: {exc}") from exc
    except sqlite3.Error as exc:
        raise StoreUnavailable(f"{action}: {exc}") from exc


def _parse_uri(uri: str) -> Tuple[str, bool]:
    """Return (sqlite3 database argument, uri flag) for a store URI or path."""
    if uri in ("", ":memory:", SQLITE_SCHEME):
        return ":memory:", False
    if uri.startswith(SQLITE_SCHEME):
        return uri[len(SQLITE_SCHEME):], False
    if uri.startswith("file:"):
        return uri, True
    if "://" in uri:
        raise StoreUnavailable(f"Unsupported database URI: {uri}")
    return uri, False


class AttestDB:
    """Entity store facade over a sqlite3 connection."""

    def __init__(self, conn: sqlite3.Connection, uri: str) -> None:
        self._conn = conn
        self._depth = 0
        self.uri = uri

    @classmethod
    def open(cls, uri: str) -> "AttestDB":
        """Connect to the store and make sure the schema exists."""
        database, is_uri = _parse_uri(uri)
        if not is_uri and database != ":memory:":
            try:
                Path(database).parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StoreUnavailable(f"Cannot create database directory for {uri}: {exc}") from exc
        with _store_errors(f"open {uri}"):
            conn = sqlite3.connect(database, uri=is_uri, isolation_level=None)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON")
            if database != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
        db = cls(conn, uri)
        with db.transaction():
            for statement in SCHEMA:
                db._execute(statement)
        logging.debug(f"Opened attestation database {uri}")
        return db

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "AttestDB":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @contextmanager
    def transaction(self) -> Iterator["AttestDB"]:
        """One atomic unit of work; nested calls join the outer transaction."""
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        with _store_errors("begin transaction"):
            self._conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self
        except BaseException:
            self._depth = 0
            if self._conn.in_transaction:
                with _store_errors("rollback"):
                    self._conn.execute("ROLLBACK")
            raise
        self._depth = 0
        with _store_errors("commit"):
            self._conn.execute("COMMIT")

    def _execute(self, sql: str, params: Sequence[object] = ()) -> sqlite3.Cursor:
        with _store_errors(sql.split(None, 1)[0].lower()):
            return self._conn.execute(sql, params)

    def select(self, sql: str, params: Sequence[object] = ()) -> List[sqlite3.Row]:
        """Run a read-only query and return all rows."""
        return self._execute(sql, params).fetchall()

    def count(self, table: str) -> int:
        if table not in KIND_BY_TABLE and table not in {r[0] for r in RELATIONS.values()}:
            raise NotFound(f"Unknown table: {table}")
        return self._execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    # -- entities ---------------------------------------------------------

    def find_by_id(self, kind: str, entity_id: int) -> Optional[sqlite3.Row]:
        table = ENTITY_KINDS[kind].table
        return self._execute(f"SELECT * FROM {table} WHERE id = ?", (entity_id,)).fetchone()

    def require(self, kind: str, entity_id: int) -> sqlite3.Row:
        """Like find_by_id but raises NotFound."""
        row = self.find_by_id(kind, entity_id)
        if row is None:
            raise NotFound(f"No {kind} with id {entity_id}")
        return row

    def find_by_name(self, kind: str, value: object) -> Optional[int]:
        entity = ENTITY_KINDS[kind]
        if kind == "file":
            raise ValueError("files are looked up with find_file(dir_id, path)")
        row = self._execute(
            f"SELECT id FROM {entity.table} WHERE {entity.key_column} = ?", (value,)
        ).fetchone()
        return row["id"] if row else None

    def create(self, kind: str, value: object) -> int:
        """Insert a named entity; Conflict if the name is taken."""
        entity = ENTITY_KINDS[kind]
        if kind in ("file", "measurement"):
            raise ValueError(f"{kind} rows are not created by name")
        with self.transaction():
            cur = self._execute(
                f"INSERT INTO {entity.table} ({entity.key_column}) VALUES (?)", (value,)
            )
        logging.info(f"Created {kind} '{_display(value)}' (id {cur.lastrowid})")
        return cur.lastrowid

    def get_or_create(self, kind: str, value: object) -> Tuple[int, bool]:
        """Return (id, created) for a named entity."""
        with self.transaction():
            entity_id = self.find_by_name(kind, value)
            if entity_id is not None:
                return entity_id, False
            return self.create(kind, value), True

    def find_file(self, dir_id: Optional[int], path: str) -> Optional[int]:
        row = self._execute(
            "SELECT id FROM files WHERE dir_id IS ? AND path = ?", (dir_id, path)
        ).fetchone()
        return row["id"] if row else None

    def create_file(self, dir_id: Optional[int], path: str) -> int:
        with self.transaction():
            if dir_id is not None:
                self.require("directory", dir_id)
            cur = self._execute("INSERT INTO files (dir_id, path) VALUES (?, ?)", (dir_id, path))
        logging.debug(f"Created file '{path}' (id {cur.lastrowid})")
        return cur.lastrowid

    def get_or_create_file(self, dir_id: Optional[int], path: str) -> Tuple[int, bool]:
        with self.transaction():
            file_id = self.find_file(dir_id, path)
            if file_id is not None:
                return file_id, False
            return self.create_file(dir_id, path), True

    def file_location(self, file_id: int) -> Path:
        """Filesystem path of a file row (directory path joined with file path)."""
        row = self._execute(
            """
            SELECT f.path AS path, d.path AS dir_path
            FROM files f LEFT JOIN directories d ON d.id = f.dir_id
            WHERE f.id = ?
            """,
            (file_id,),
        ).fetchone()
        if row is None:
            raise NotFound(f"No file with id {file_id}")
        if row["dir_path"] is None:
            return Path(row["path"])
        return Path(row["dir_path"]) / row["path"]

    def files_in_directory(self, dir_id: int) -> List[int]:
        rows = self._execute("SELECT id FROM files WHERE dir_id = ? ORDER BY path", (dir_id,))
        return [row["id"] for row in rows]

    def set_device_owner(self, device_id: int, owner: str) -> None:
        with self.transaction():
            self.require("device", device_id)
            self._execute("UPDATE devices SET owner = ? WHERE id = ?", (owner, device_id))

    # -- links ------------------------------------------------------------

    def link(self, relation: str, left_id: int, right_id: int) -> bool:
        """Associate two entities; returns False if they were already linked."""
        table, left_col, left_kind, right_col, right_kind = RELATIONS[relation]
        with self.transaction():
            self.require(left_kind, left_id)
            self.require(right_kind, right_id)
            cur = self._execute(
                f"INSERT OR IGNORE INTO {table} ({left_col}, {right_col}) VALUES (?, ?)",
                (left_id, right_id),
            )
        return cur.rowcount == 1

    def unlink(self, relation: str, left_id: int, right_id: int) -> bool:
        """Remove an association; returns False if there was none."""
        table, left_col, _, right_col, _ = RELATIONS[relation]
        with self.transaction():
            cur = self._execute(
                f"DELETE FROM {table} WHERE {left_col} = ? AND {right_col} = ?",
                (left_id, right_id),
            )
        return cur.rowcount > 0

    # -- measurements -----------------------------------------------------

    def upsert_measurement(
        self, file_id: int, algorithm: str, digest: bytes
    ) -> Tuple[str, Optional[bytes]]:
        """Store the digest for (file, algorithm).

        Returns the outcome ('added', 'updated' or 'unchanged') and the
        previous digest, if any.
        """
        with self.transaction():
            self.require("file", file_id)
            row = self._execute(
                "SELECT digest FROM measurements WHERE file_id = ? AND algo = ?",
                (file_id, algorithm),
            ).fetchone()
            now = int(time.time())
            if row is None:
                self._execute(
                    "INSERT INTO measurements (file_id, algo, digest, updated) VALUES (?, ?, ?, ?)",
                    (file_id, algorithm, digest, now),
                )
                return "added", None
            previous = bytes(row["digest"])
            if previous == digest:
                return "unchanged", previous
            self._execute(
                "UPDATE measurements SET digest = ?, updated = ? WHERE file_id = ? AND algo = ?",
                (digest, now, file_id, algorithm),
            )
            return "updated", previous

    def delete_measurements(self, file_ids: Sequence[int], algorithm: Optional[str] = None) -> int:
        """Delete measurements of the given files, for one algorithm or all."""
        deleted = 0
        with self.transaction():
            for file_id in file_ids:
                if algorithm is None:
                    cur = self._execute("DELETE FROM measurements WHERE file_id = ?", (file_id,))
                else:
                    cur = self._execute(
                        "DELETE FROM measurements WHERE file_id = ? AND algo = ?",
                        (file_id, algorithm),
                    )
                deleted += cur.rowcount
        return deleted

    # -- deletes ----------------------------------------------------------

    def delete(self, kind: str, entity_id: int) -> Dict[str, int]:
        """Delete an entity and everything the cascade graph hangs off it.

        Returns the number of rows removed per table.
        """
        counts: Dict[str, int] = defaultdict(int)
        with self.transaction():
            self.require(kind, entity_id)
            self._cascade(kind, entity_id, counts)
        logging.info(
            f"Deleted {kind} {entity_id}: "
            + ", ".join(f"{table}={n}" for table, n in sorted(counts.items()))
        )
        return dict(counts)

    def _cascade(self, kind: str, entity_id: int, counts: Dict[str, int]) -> None:
        for edge in CASCADE_EDGES:
            if edge.parent != kind:
                continue
            child_kind = KIND_BY_TABLE.get(edge.table)
            if edge.action == CASCADE_DELETE and _has_edges(child_kind):
                rows = self._execute(
                    f"SELECT id FROM {edge.table} WHERE {edge.column} = ?", (entity_id,)
                ).fetchall()
                for row in rows:
                    self._cascade(child_kind, row["id"], counts)
            else:
                cur = self._execute(
                    f"DELETE FROM {edge.table} WHERE {edge.column} = ?", (entity_id,)
                )
                counts[edge.table] += cur.rowcount
        table = ENTITY_KINDS[kind].table
        cur = self._execute(f"DELETE FROM {table} WHERE id = ?", (entity_id,))
        counts[table] += cur.rowcount


def _has_edges(kind: Optional[str]) -> bool:
    return kind is not None and any(edge.parent == kind for edge in CASCADE_EDGES)


def _display(value: object) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    return str(value)
