"""Index pipeline and query engine.

Index flow:
    1. Collect the repository's source files (sorted, .gitignore aware).
    2. Parse and extract logical units on a bounded pool of worker threads.
       A file that fails to parse is logged, counted and skipped.
    3. Assign unit ids in file order, then source order.
    4. Embed unit source text and insert the vectors into a fresh HNSW
       index. This stage is serialized: insertion mutates shared graph
       state and must stay reproducible.
    5. Save the index and the unit records, atomically replacing any
       previous store.

Every run is a full rebuild.

Query flow: embed the query text, search the loaded HNSW snapshot, resolve
ids to their logical units, return closest first.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncGenerator, Sequence

import numpy as np

from cearch import config
from cearch.embed import Embedder
from cearch.errors import EmbedError, IndexUnavailable, ParseError
from cearch.files import collect_files
from cearch.hnsw import HNSWIndex
from cearch.store import IndexStore, StoredIndex
from cearch.symbols import LogicalUnit, UnitCandidate, extract_file, relative_path

logger = logging.getLogger(__name__)


@dataclass
class IndexStats:
    """Summary of one index run."""

    files_total: int = 0
    files_indexed: int = 0
    files_skipped: int = 0
    units_indexed: int = 0
    parse_errors: list[tuple[str, str]] = field(default_factory=list)
    duration: float = 0.0


@dataclass(frozen=True)
class QueryResult:
    """One nearest-neighbor hit."""

    unit: LogicalUnit
    distance: float


# ── Indexing ─────────────────────────────────────────────────────────────


async def index_repository(
    repo_root: str | Path,
    embedder: Embedder,
    *,
    store: IndexStore | None = None,
    workers: int | None = None,
    batch_size: int | None = None,
    m: int | None = None,
    ef_construction: int | None = None,
    ef_search: int | None = None,
    seed: int = 0,
) -> AsyncGenerator[tuple[str, Any], None]:
    """Rebuild the index of a repository.

    Yields progress events:
        ("start", {"total_files": int})
        ("file_indexed", {"path": str, "units": int})
        ("file_skipped", {"path": str, "reason": str})
        ("parse_error", {"path": str, "error": str})
        ("complete", IndexStats)

    Raises:
        ValueError: If *repo_root* is not a directory.
        EmbedError: If the embedding backend fails. Nothing is saved.
    """
    start_time = time.time()
    root = Path(repo_root).resolve()
    if not root.is_dir():
        raise ValueError(f"Not a directory: {repo_root}")

    store = store or IndexStore.for_repo(root)
    workers = workers or config.INDEX_WORKERS
    batch_size = batch_size or config.EMBED_BATCH_SIZE

    # Collect files (blocking I/O - run in thread)
    files = await asyncio.to_thread(collect_files, root)
    logger.info("Indexing %s: %d files", root, len(files))
    yield ("start", {"total_files": len(files)})

    index = HNSWIndex(
        embedder.dimension,
        m=m or config.HNSW_M,
        ef_construction=ef_construction or config.HNSW_EF_CONSTRUCTION,
        ef_search=ef_search or config.HNSW_EF_SEARCH,
        seed=seed,
    )
    units: dict[int, LogicalUnit] = {}
    stats = IndexStats(files_total=len(files))
    semaphore = asyncio.Semaphore(workers)

    async def extract(path: str) -> list[UnitCandidate] | ParseError:
        async with semaphore:
            try:
                return await asyncio.to_thread(extract_file, path, root)
            except ParseError as exc:
                return exc

    next_id = 1
    window = workers * 4
    for offset in range(0, len(files), window):
        batch = files[offset : offset + window]
        # gather keeps file order, so ids stay deterministic
        results = await asyncio.gather(*(extract(path) for path in batch))

        pending: list[tuple[str, list[LogicalUnit]]] = []
        for path, result in zip(batch, results):
            rel_path = relative_path(path, root)
            if isinstance(result, ParseError):
                logger.warning("Skipping %s: %s", result.path, result.message)
                stats.parse_errors.append((result.path, result.message))
                stats.files_skipped += 1
                yield ("parse_error", {"path": result.path, "error": result.message})
                continue
            if not result:
                stats.files_skipped += 1
                yield ("file_skipped", {"path": rel_path, "reason": "no units"})
                continue

            file_units = [c.to_unit(next_id + i) for i, c in enumerate(result)]
            next_id += len(file_units)
            pending.append((rel_path, file_units))

        if not pending:
            continue

        batch_units = [unit for _, file_units in pending for unit in file_units]
        # Embedding is CPU-intensive - run in thread
        vectors = await asyncio.to_thread(
            embedder.embed_many, [unit.code for unit in batch_units], batch_size
        )
        _insert(index, units, batch_units, vectors)

        for rel_path, file_units in pending:
            stats.files_indexed += 1
            stats.units_indexed += len(file_units)
            yield ("file_indexed", {"path": rel_path, "units": len(file_units)})

    await store.save(index, units, embedder.model_name)

    stats.duration = round(time.time() - start_time, 2)
    logger.info(
        "Indexed %d units from %d files (%d skipped, %d parse errors) in %.2fs",
        stats.units_indexed,
        stats.files_indexed,
        stats.files_skipped,
        len(stats.parse_errors),
        stats.duration,
    )
    yield ("complete", stats)


def _insert(
    index: HNSWIndex,
    units: dict[int, LogicalUnit],
    batch_units: Sequence[LogicalUnit],
    vectors: Sequence[np.ndarray],
) -> None:
    if len(vectors) != len(batch_units):
        raise EmbedError(
            f"Embedding backend returned {len(vectors)} vectors "
            f"for {len(batch_units)} units"
        )
    for unit, vector in zip(batch_units, vectors):
        try:
            index.add(unit.id, vector)
        except ValueError as exc:
            raise EmbedError(f"Bad vector for {unit.location}: {exc}") from exc
        units[unit.id] = unit


async def build_index(
    repo_root: str | Path, embedder: Embedder, **kwargs: Any
) -> IndexStats:
    """Rebuild the index and return the run summary."""
    stats = IndexStats()
    async for event, data in index_repository(repo_root, embedder, **kwargs):
        if event == "complete":
            stats = data
    return stats


# ── Querying ─────────────────────────────────────────────────────────────


class QueryEngine:
    """Answers k-NN queries against an immutable snapshot of the store.

    ``open`` loads the snapshot once; ``search`` and ``search_vector`` only
    read it and are safe to call from concurrent threads.
    """

    def __init__(self, store: IndexStore, embedder: Embedder) -> None:
        self.store = store
        self.embedder = embedder
        self._snapshot: StoredIndex | None = None

    @classmethod
    def for_repo(cls, repo_root: str | Path, embedder: Embedder) -> QueryEngine:
        return cls(IndexStore.for_repo(repo_root), embedder)

    @property
    def loaded(self) -> bool:
        return self._snapshot is not None

    async def open(self) -> QueryEngine:
        """Load the store, checking it against the active model.

        Raises:
            NotFound: If no index has been built.
            CorruptIndex: If the store fails its integrity checks.
            DimensionMismatch: If the model dimension differs from the store.
        """
        snapshot = await self.store.load(expected_dim=self.embedder.dimension)
        if snapshot.model_name and snapshot.model_name != self.embedder.model_name:
            logger.warning(
                "Index was built with model %s, querying with %s",
                snapshot.model_name,
                self.embedder.model_name,
            )
        self._snapshot = snapshot
        return self

    def search_vector(
        self, vector: Sequence[float] | np.ndarray, k: int, ef: int | None = None
    ) -> list[QueryResult]:
        """Return up to *k* units nearest to *vector*, closest first."""
        if self._snapshot is None:
            raise IndexUnavailable("Query engine has no index loaded")
        snapshot = self._snapshot
        return [
            QueryResult(unit=snapshot.units[node_id], distance=distance)
            for node_id, distance in snapshot.index.search(vector, k, ef)
        ]

    def search(self, text: str, k: int, ef: int | None = None) -> list[QueryResult]:
        """Embed *text* and return up to *k* nearest units."""
        if self._snapshot is None:
            raise IndexUnavailable("Query engine has no index loaded")
        return self.search_vector(self.embedder.embed(text), k, ef)


async def query(
    text: str,
    k: int | None = None,
    *,
    repo_root: str | Path,
    embedder: Embedder,
) -> list[QueryResult]:
    """Query the repository index for code similar to *text*.

    Args:
        text: Natural language query or code snippet
        k: Number of results to return (defaults to NUM_RESULTS)
        repo_root: Repository whose index is searched
        embedder: Loaded embedding model handle

    Raises:
        NotFound: If no index has been built (an IndexUnavailable).
    """
    engine = await QueryEngine.for_repo(repo_root, embedder).open()
    if k is None:
        k = config.NUM_RESULTS
    return await asyncio.to_thread(engine.search, text, k)


# ── Cleaning ─────────────────────────────────────────────────────────────


def clear(
    repo_root: str | Path,
    *,
    keep_models: bool = False,
    model_cache_dir: str | Path | None = None,
) -> bool:
    """Drop the repository's store and, unless kept, the cached models.

    Succeeds on an already-clean repository. Returns True if anything was
    removed.
    """
    removed = IndexStore.for_repo(repo_root).clear()
    if not keep_models:
        cache = Path(model_cache_dir) if model_cache_dir else config.get_model_cache_dir()
        if cache.exists():
            shutil.rmtree(cache)
            logger.info("Removed model cache %s", cache)
            removed = True
    return removed
