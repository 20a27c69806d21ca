"""
List commands: products, keys, devices, components, files, hashes and
measurements, each narrowed by the filter context.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from scope import FilterContext


@dataclass(frozen=True)
class ProductRow:
    id: int
    name: str


@dataclass(frozen=True)
class ComponentRow:
    id: int
    name: str


@dataclass(frozen=True)
class KeyRow:
    id: int
    keyid: bytes


@dataclass(frozen=True)
class DeviceRow:
    id: int
    ident: str
    owner: Optional[str]


@dataclass(frozen=True)
class FileRow:
    id: int
    directory: Optional[str]
    path: str

    @property
    def location(self) -> str:
        if self.directory is None:
            return self.path
        return str(Path(self.directory) / self.path)


@dataclass(frozen=True)
class HashRow:
    fid: int
    location: str
    algorithm: str
    digest: bytes


@dataclass(frozen=True)
class MeasurementRow:
    """A hash row with the products, components and devices it is expected on."""
    fid: int
    location: str
    algorithm: str
    digest: bytes
    products: Tuple[str, ...] = field(default=())
    components: Tuple[str, ...] = field(default=())
    devices: Tuple[str, ...] = field(default=())


class _Where:
    """Conjunctive WHERE clause with positional parameters."""

    def __init__(self) -> None:
        self.conditions: List[str] = []
        self.params: List[object] = []

    def add(self, condition: str, value: object) -> None:
        self.conditions.append(condition)
        self.params.append(value)

    def sql(self) -> str:
        if not self.conditions:
            return ""
        return "WHERE " + " AND ".join(self.conditions)


def _file_filters(scope: FilterContext, alias: str = "f") -> _Where:
    where = _Where()
    if scope.fid is not None:
        where.add(f"{alias}.id = ?", scope.fid)
    if scope.dir_id is not None:
        where.add(f"{alias}.dir_id = ?", scope.dir_id)
    if scope.pid is not None:
        where.add(
            f"EXISTS (SELECT 1 FROM product_file pf WHERE pf.file_id = {alias}.id AND pf.product_id = ?)",
            scope.pid,
        )
    if scope.cid is not None:
        where.add(
            f"EXISTS (SELECT 1 FROM component_file cf WHERE cf.file_id = {alias}.id AND cf.component_id = ?)",
            scope.cid,
        )
    if scope.did is not None:
        where.add(
            f"""EXISTS (SELECT 1 FROM product_file pf
                JOIN device_product dp ON dp.product_id = pf.product_id
                WHERE pf.file_id = {alias}.id AND dp.device_id = ?)""",
            scope.did,
        )
    return where


def list_products(scope: FilterContext) -> List[ProductRow]:
    where = _Where()
    if scope.pid is not None:
        where.add("p.id = ?", scope.pid)
    if scope.cid is not None:
        where.add(
            "EXISTS (SELECT 1 FROM product_component pc WHERE pc.product_id = p.id AND pc.component_id = ?)",
            scope.cid,
        )
    if scope.fid is not None:
        where.add(
            "EXISTS (SELECT 1 FROM product_file pf WHERE pf.product_id = p.id AND pf.file_id = ?)",
            scope.fid,
        )
    if scope.dir_id is not None:
        where.add(
            """EXISTS (SELECT 1 FROM product_file pf JOIN files f ON f.id = pf.file_id
                WHERE pf.product_id = p.id AND f.dir_id = ?)""",
            scope.dir_id,
        )
    if scope.did is not None:
        where.add(
            "EXISTS (SELECT 1 FROM device_product dp WHERE dp.product_id = p.id AND dp.device_id = ?)",
            scope.did,
        )
    rows = scope.db.select(
        f"SELECT DISTINCT p.id, p.name FROM products p {where.sql()} ORDER BY p.name, p.id",
        where.params,
    )
    return [ProductRow(id=row["id"], name=row["name"]) for row in rows]


def list_components(scope: FilterContext) -> List[ComponentRow]:
    where = _Where()
    if scope.cid is not None:
        where.add("c.id = ?", scope.cid)
    if scope.pid is not None:
        where.add(
            "EXISTS (SELECT 1 FROM product_component pc WHERE pc.component_id = c.id AND pc.product_id = ?)",
            scope.pid,
        )
    if scope.fid is not None:
        where.add(
            "EXISTS (SELECT 1 FROM component_file cf WHERE cf.component_id = c.id AND cf.file_id = ?)",
            scope.fid,
        )
    if scope.dir_id is not None:
        where.add(
            """EXISTS (SELECT 1 FROM component_file cf JOIN files f ON f.id = cf.file_id
                WHERE cf.component_id = c.id AND f.dir_id = ?)""",
            scope.dir_id,
        )
    rows = scope.db.select(
        f"SELECT DISTINCT c.id, c.name FROM components c {where.sql()} ORDER BY c.name, c.id",
        where.params,
    )
    return [ComponentRow(id=row["id"], name=row["name"]) for row in rows]


def list_keys(scope: FilterContext) -> List[KeyRow]:
    where = _Where()
    if scope.kid is not None:
        where.add("k.id = ?", scope.kid)
    if scope.did is not None:
        where.add(
            "EXISTS (SELECT 1 FROM device_key dk WHERE dk.key_id = k.id AND dk.device_id = ?)",
            scope.did,
        )
    rows = scope.db.select(
        f"SELECT DISTINCT k.id, k.keyid FROM keys k {where.sql()} ORDER BY k.id",
        where.params,
    )
    return [KeyRow(id=row["id"], keyid=bytes(row["keyid"])) for row in rows]


def list_devices(scope: FilterContext) -> List[DeviceRow]:
    where = _Where()
    if scope.did is not None:
        where.add("d.id = ?", scope.did)
    if scope.kid is not None:
        where.add(
            "EXISTS (SELECT 1 FROM device_key dk WHERE dk.device_id = d.id AND dk.key_id = ?)",
            scope.kid,
        )
    if scope.pid is not None:
        where.add(
            "EXISTS (SELECT 1 FROM device_product dp WHERE dp.device_id = d.id AND dp.product_id = ?)",
            scope.pid,
        )
    rows = scope.db.select(
        f"SELECT DISTINCT d.id, d.ident, d.owner FROM devices d {where.sql()} ORDER BY d.id",
        where.params,
    )
    return [DeviceRow(id=row["id"], ident=row["ident"], owner=row["owner"]) for row in rows]


def list_files(scope: FilterContext) -> List[FileRow]:
    where = _file_filters(scope)
    rows = scope.db.select(
        f"""
        SELECT DISTINCT f.id, f.path, d.path AS dir_path
        FROM files f LEFT JOIN directories d ON d.id = f.dir_id
        {where.sql()}
        ORDER BY IFNULL(d.path, ''), f.path, f.id
        """,
        where.params,
    )
    return [FileRow(id=row["id"], directory=row["dir_path"], path=row["path"]) for row in rows]


def _hash_rows(scope: FilterContext):
    where = _file_filters(scope)
    if scope.algorithm is not None:
        where.add("m.algo = ?", scope.algorithm.name)
    return scope.db.select(
        f"""
        SELECT DISTINCT m.file_id, m.algo, m.digest, f.path, d.path AS dir_path
        FROM measurements m
        JOIN files f ON f.id = m.file_id
        LEFT JOIN directories d ON d.id = f.dir_id
        {where.sql()}
        ORDER BY IFNULL(d.path, ''), f.path, m.algo
        """,
        where.params,
    )


def _location(row) -> str:
    if row["dir_path"] is None:
        return row["path"]
    return str(Path(row["dir_path"]) / row["path"])


def list_hashes(scope: FilterContext) -> List[HashRow]:
    return [
        HashRow(
            fid=row["file_id"],
            location=_location(row),
            algorithm=row["algo"],
            digest=bytes(row["digest"]),
        )
        for row in _hash_rows(scope)
    ]


def _file_context(scope: FilterContext, file_id: int) -> Tuple[Tuple[str, ...], ...]:
    db = scope.db
    products = db.select(
        """
        SELECT p.name FROM products p JOIN product_file pf ON pf.product_id = p.id
        WHERE pf.file_id = ? ORDER BY p.name
        """,
        (file_id,),
    )
    components = db.select(
        """
        SELECT c.name FROM components c JOIN component_file cf ON cf.component_id = c.id
        WHERE cf.file_id = ? ORDER BY c.name
        """,
        (file_id,),
    )
    devices = db.select(
        """
        SELECT DISTINCT d.id, d.ident, d.owner FROM devices d
        JOIN device_product dp ON dp.device_id = d.id
        JOIN product_file pf ON pf.product_id = dp.product_id
        WHERE pf.file_id = ? ORDER BY d.id
        """,
        (file_id,),
    )
    return (
        tuple(row["name"] for row in products),
        tuple(row["name"] for row in components),
        tuple(
            f"{row['ident']} ({row['owner']})" if row["owner"] else row["ident"]
            for row in devices
        ),
    )


def list_measurements(scope: FilterContext) -> List[MeasurementRow]:
    """Hash rows annotated with the products, components and devices they belong to."""
    context: Dict[int, Tuple[Tuple[str, ...], ...]] = {}
    measurements = []
    for row in _hash_rows(scope):
        file_id = row["file_id"]
        if file_id not in context:
            context[file_id] = _file_context(scope, file_id)
        products, components, devices = context[file_id]
        measurements.append(
            MeasurementRow(
                fid=file_id,
                location=_location(row),
                algorithm=row["algo"],
                digest=bytes(row["digest"]),
                products=products,
                components=components,
                devices=devices,
            )
        )
    return measurements


# -- rendering --------------------------------------------------------------

def render_products(rows: List[ProductRow]) -> List[str]:
    return [f"{row.id:4d}: {row.name}" for row in rows]


def render_components(rows: List[ComponentRow]) -> List[str]:
    return [f"{row.id:4d}: {row.name}" for row in rows]


def render_keys(rows: List[KeyRow]) -> List[str]:
    return [f"{row.id:4d}: {row.keyid.hex()}" for row in rows]


def render_devices(rows: List[DeviceRow]) -> List[str]:
    return [
        f"{row.id:4d}: {row.ident}" + (f" '{row.owner}'" if row.owner else "")
        for row in rows
    ]


def render_files(rows: List[FileRow]) -> List[str]:
    return [f"{row.id:4d}: {row.location}" for row in rows]


def render_hashes(rows: List[HashRow]) -> List[str]:
    return [
        f"{row.fid:4d}: {row.algorithm:<7} {row.digest.hex()}  {row.location}"
        for row in rows
    ]


def render_measurements(rows: List[MeasurementRow]) -> List[str]:
    lines = []
    for row in rows:
        lines.append(f"{row.fid:4d}: {row.location}")
        lines.append(f"      {row.algorithm:<7} {row.digest.hex()}")
        if row.products:
            lines.append(f"      products:   {', '.join(row.products)}")
        if row.components:
            lines.append(f"      components: {', '.join(row.components)}")
        if row.devices:
            lines.append(f"      devices:    {', '.join(row.devices)}")
    return lines
