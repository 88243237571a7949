"""Durable persistence for the HNSW graph and its logical units.

The store is a single SQLite file, ``<repo>/.cearch/index.sqlite``. Each
index run writes a complete new file next to it and atomically renames it
into place, so an interrupted run leaves the previous store loadable.

Layout (format ``cearch-hnsw/1``):
    meta       key/value scalars: format, dim, model, entry_point,
               max_layer, m, ef_construction, ef_search, built_at
    units      logical unit records keyed by id
    nodes      HNSW node id and top layer
    vectors    float32 little-endian vector blob keyed by id
    neighbors  adjacency keyed by (id, layer, position), positions in
               ascending distance order
"""

from __future__ import annotations

import logging
import os
import shutil
import sqlite3
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Mapping

import aiosqlite
import numpy as np

from cearch import config
from cearch.errors import CorruptIndex, DimensionMismatch, NotFound
from cearch.hnsw import HNSWIndex, IndexNode
from cearch.symbols import LogicalUnit, UnitKind

logger = logging.getLogger(__name__)

FORMAT = "cearch-hnsw/1"
STORE_FILENAME = "index.sqlite"

_VECTOR_DTYPE = np.dtype("<f4")

_SCHEMA = """
CREATE TABLE meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE units (
    id INTEGER PRIMARY KEY,
    file_path TEXT NOT NULL,
    language TEXT NOT NULL,
    kind TEXT NOT NULL,
    name TEXT NOT NULL,
    start_line INTEGER NOT NULL,
    end_line INTEGER NOT NULL,
    source_hash TEXT NOT NULL,
    code TEXT NOT NULL
);

CREATE TABLE nodes (
    id INTEGER PRIMARY KEY,
    top_layer INTEGER NOT NULL
);

CREATE TABLE vectors (
    id INTEGER PRIMARY KEY,
    vector BLOB NOT NULL
);

CREATE TABLE neighbors (
    id INTEGER NOT NULL,
    layer INTEGER NOT NULL,
    position INTEGER NOT NULL,
    neighbor_id INTEGER NOT NULL,
    PRIMARY KEY (id, layer, position)
);

CREATE INDEX idx_units_file ON units(file_path);
CREATE INDEX idx_units_hash ON units(source_hash);
"""


@dataclass
class StoredIndex:
    """A fully loaded, consistent snapshot of the store."""

    index: HNSWIndex
    units: dict[int, LogicalUnit]
    model_name: str
    built_at: str

    @property
    def dim(self) -> int:
        return self.index.dim


class IndexStore:
    """Reads and writes the index store of one repository."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    @classmethod
    def for_repo(cls, repo_root: str | Path) -> IndexStore:
        return cls(config.get_store_dir(repo_root))

    @property
    def path(self) -> Path:
        return self.root / STORE_FILENAME

    def exists(self) -> bool:
        return self.path.is_file()

    # ── save ─────────────────────────────────────────────────────────────

    async def save(
        self, index: HNSWIndex, units: Mapping[int, LogicalUnit], model_name: str
    ) -> Path:
        """Write the whole store and atomically replace the previous one.

        Raises:
            CorruptIndex: If index ids and unit ids do not match one to one.
        """
        node_ids = {node.id for node in index.nodes()}
        if node_ids != set(units):
            raise CorruptIndex(
                f"Refusing to save: {len(node_ids - set(units))} nodes without "
                f"units, {len(set(units) - node_ids)} units without nodes"
            )

        self.root.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.unlink(missing_ok=True)

        try:
            conn = await aiosqlite.connect(str(tmp_path))
            try:
                await conn.executescript(_SCHEMA)
                await self._write(conn, index, units, model_name)
                await conn.commit()
            finally:
                await conn.close()

            with open(tmp_path, "rb") as f:
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise

        logger.info("Saved %d units to %s", len(units), self.path)
        return self.path

    async def _write(
        self,
        conn: aiosqlite.Connection,
        index: HNSWIndex,
        units: Mapping[int, LogicalUnit],
        model_name: str,
    ) -> None:
        meta = {
            "format": FORMAT,
            "dim": str(index.dim),
            "model": model_name,
            "entry_point": "" if index.entry_point is None else str(index.entry_point),
            "max_layer": str(index.max_layer),
            "m": str(index.m),
            "ef_construction": str(index.ef_construction),
            "ef_search": str(index.ef_search),
            "built_at": datetime.now(timezone.utc).isoformat(),
        }
        await conn.executemany(
            "INSERT INTO meta (key, value) VALUES (?, ?)", list(meta.items())
        )

        await conn.executemany(
            """
            INSERT INTO units
            (id, file_path, language, kind, name, start_line, end_line,
             source_hash, code)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    u.id,
                    u.file_path,
                    u.language,
                    u.kind.value,
                    u.name,
                    u.start_line,
                    u.end_line,
                    u.source_hash,
                    u.code,
                )
                for u in sorted(units.values(), key=lambda u: u.id)
            ],
        )

        nodes = list(index.nodes())
        await conn.executemany(
            "INSERT INTO nodes (id, top_layer) VALUES (?, ?)",
            [(node.id, node.top_layer) for node in nodes],
        )
        await conn.executemany(
            "INSERT INTO vectors (id, vector) VALUES (?, ?)",
            [
                (node.id, index.vector(node.id).astype(_VECTOR_DTYPE).tobytes())
                for node in nodes
            ],
        )
        await conn.executemany(
            "INSERT INTO neighbors (id, layer, position, neighbor_id) "
            "VALUES (?, ?, ?, ?)",
            [
                (node.id, layer, position, neighbor)
                for node in nodes
                for layer, ids in enumerate(node.neighbors)
                for position, neighbor in enumerate(ids)
            ],
        )

    # ── load ─────────────────────────────────────────────────────────────

    async def load(self, expected_dim: int | None = None) -> StoredIndex:
        """Load and verify the store.

        Raises:
            NotFound: If no index has been built yet.
            CorruptIndex: If the file is unreadable or fails integrity checks.
            DimensionMismatch: If *expected_dim* differs from the stored one.
        """
        if not self.exists():
            raise NotFound(f"No index found at {self.path}")

        try:
            conn = await aiosqlite.connect(str(self.path))
            try:
                rows = await self._read(conn)
            finally:
                await conn.close()
        except sqlite3.Error as exc:
            raise CorruptIndex(f"Cannot read index store {self.path}: {exc}") from exc

        meta, unit_rows, node_rows, vector_rows, neighbor_rows = rows
        if meta.get("format") != FORMAT:
            raise CorruptIndex(
                f"Unsupported index format {meta.get('format')!r}, expected {FORMAT!r}"
            )

        try:
            dim = int(meta["dim"])
            max_layer = int(meta["max_layer"])
            m = int(meta["m"])
            ef_construction = int(meta["ef_construction"])
            ef_search = int(meta["ef_search"])
            entry_point = int(meta["entry_point"]) if meta["entry_point"] else None
        except (KeyError, ValueError) as exc:
            raise CorruptIndex(f"Malformed index metadata: {exc}") from exc

        if expected_dim is not None and expected_dim != dim:
            raise DimensionMismatch(dim, expected_dim)

        try:
            units = {row[0]: _unit_from_row(row) for row in unit_rows}
        except ValueError as exc:
            raise CorruptIndex(f"Malformed unit record: {exc}") from exc
        nodes = {
            node_id: IndexNode(node_id, top_layer, [[] for _ in range(top_layer + 1)])
            for node_id, top_layer in node_rows
        }
        try:
            vectors = {
                node_id: np.frombuffer(blob, dtype=_VECTOR_DTYPE)
                for node_id, blob in vector_rows
            }
        except (TypeError, ValueError) as exc:
            raise CorruptIndex(f"Malformed vector record: {exc}") from exc
        adjacency: dict[tuple[int, int], list[int]] = defaultdict(list)
        for node_id, layer, neighbor in neighbor_rows:
            adjacency[(node_id, layer)].append(neighbor)

        _verify(nodes, units, vectors, adjacency, entry_point, max_layer, dim, m)

        for (node_id, layer), ids in adjacency.items():
            nodes[node_id].neighbors[layer] = ids

        try:
            index = HNSWIndex.restore(
                dim,
                m=m,
                ef_construction=ef_construction,
                ef_search=ef_search,
                entry_point=entry_point,
                nodes=[nodes[node_id] for node_id, _ in node_rows],
                vectors=vectors,
            )
        except ValueError as exc:
            raise CorruptIndex(str(exc)) from exc

        logger.info("Loaded %d units from %s", len(units), self.path)
        return StoredIndex(
            index=index,
            units=units,
            model_name=meta.get("model", ""),
            built_at=meta.get("built_at", ""),
        )

    async def _read(self, conn: aiosqlite.Connection) -> tuple:
        async with conn.execute("SELECT key, value FROM meta") as cursor:
            meta = {row[0]: row[1] async for row in cursor}
        async with conn.execute(
            "SELECT id, file_path, language, kind, name, start_line, end_line, "
            "source_hash, code FROM units ORDER BY id"
        ) as cursor:
            unit_rows = [tuple(row) async for row in cursor]
        async with conn.execute("SELECT id, top_layer FROM nodes ORDER BY id") as cursor:
            node_rows = [tuple(row) async for row in cursor]
        async with conn.execute("SELECT id, vector FROM vectors") as cursor:
            vector_rows = [tuple(row) async for row in cursor]
        async with conn.execute(
            "SELECT id, layer, neighbor_id FROM neighbors ORDER BY id, layer, position"
        ) as cursor:
            neighbor_rows = [tuple(row) async for row in cursor]
        return meta, unit_rows, node_rows, vector_rows, neighbor_rows

    # ── clear ────────────────────────────────────────────────────────────

    def clear(self) -> bool:
        """Remove the store. Returns True if something was deleted."""
        if not self.root.exists():
            return False
        shutil.rmtree(self.root)
        logger.info("Removed index store %s", self.root)
        return True


def _unit_from_row(row: tuple) -> LogicalUnit:
    return LogicalUnit(
        id=row[0],
        file_path=row[1],
        language=row[2],
        kind=UnitKind(row[3]),
        name=row[4],
        start_line=row[5],
        end_line=row[6],
        source_hash=row[7],
        code=row[8],
    )


def _verify(
    nodes: dict[int, IndexNode],
    units: dict[int, LogicalUnit],
    vectors: dict[int, np.ndarray],
    adjacency: dict[tuple[int, int], list[int]],
    entry_point: int | None,
    max_layer: int,
    dim: int,
    m: int,
) -> None:
    """Check referential integrity of a loaded store.

    Raises:
        CorruptIndex: On the first violation found.
    """
    dangling = set(nodes) - set(units)
    if dangling:
        raise CorruptIndex(f"{len(dangling)} index nodes have no unit record")
    orphans = set(units) - set(nodes)
    if orphans:
        raise CorruptIndex(f"{len(orphans)} unit records have no index node")
    if set(vectors) != set(nodes):
        raise CorruptIndex("Vector table does not match the index nodes")
    for node_id, vector in vectors.items():
        if vector.shape != (dim,):
            raise CorruptIndex(
                f"Vector for node {node_id} has {vector.shape[0]} values, expected {dim}"
            )

    if not nodes:
        if entry_point is not None:
            raise CorruptIndex(f"Entry point {entry_point} set on an empty index")
        return
    if entry_point is None or entry_point not in nodes:
        raise CorruptIndex(f"Entry point {entry_point} does not exist")
    top = max(node.top_layer for node in nodes.values())
    if nodes[entry_point].top_layer != top or max_layer != top:
        raise CorruptIndex(
            f"Entry point {entry_point} is not on the maximum layer {top}"
        )

    for (node_id, layer), ids in adjacency.items():
        node = nodes.get(node_id)
        if node is None or layer > node.top_layer:
            raise CorruptIndex(f"Adjacency for missing node {node_id} layer {layer}")
        for neighbor in ids:
            target = nodes.get(neighbor)
            if target is None or target.top_layer < layer:
                raise CorruptIndex(
                    f"Node {node_id} links to missing node {neighbor} on layer {layer}"
                )
        if len(ids) > (2 * m if layer == 0 else m):
            raise CorruptIndex(f"Node {node_id} exceeds the degree bound on layer {layer}")
