"""Hierarchical Navigable Small World graph for approximate k-NN search.

Every vector lives on layer 0; a node also appears on layers 1..top_layer,
where top_layer is drawn from an exponentially decaying distribution with
normalization ``mL = 1 / ln(M)``. Upper layers are sparse and act as an
express lane: searches hill-climb from the entry point down to layer 1,
then run a best-first search on the dense layer 0.

Neighbor lists hold at most ``M`` ids (``M0 = 2 * M`` on layer 0) and are
kept sorted by ascending distance to their owner, ties broken by id, so a
persisted graph reloads into exactly the same search behaviour.

Distance is cosine distance. Vectors are stored as given: the index never
renormalizes them.
"""

from __future__ import annotations

import heapq
import logging
import math
import random
from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping, Sequence

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class IndexNode:
    """Graph vertex. ``neighbors[layer]`` exists for layers 0..top_layer."""

    id: int
    top_layer: int
    neighbors: list[list[int]]


def cosine_distance(a: np.ndarray, b: np.ndarray) -> float:
    """Return 1 - cosine similarity. Zero vectors are at distance 1."""
    denom = float(np.linalg.norm(a)) * float(np.linalg.norm(b))
    if denom == 0.0:
        return 1.0
    return 1.0 - float(np.dot(a, b)) / denom


class HNSWIndex:
    """In-memory HNSW index keyed by integer ids.

    Construction is single-threaded. Once built, ``search`` only reads the
    graph and may be called from any number of threads.
    """

    def __init__(
        self,
        dim: int,
        m: int = 16,
        ef_construction: int = 200,
        ef_search: int = 64,
        seed: int = 0,
    ) -> None:
        if dim < 1:
            raise ValueError(f"dim must be positive, got {dim}")
        if m < 2:
            raise ValueError(f"m must be at least 2, got {m}")
        if ef_construction < 1 or ef_search < 1:
            raise ValueError("ef_construction and ef_search must be positive")

        self.dim = dim
        self.m = m
        self.m0 = 2 * m
        self.ef_construction = ef_construction
        self.ef_search = ef_search
        self.ml = 1.0 / math.log(m)
        self.entry_point: int | None = None
        self.max_layer = -1

        self._rng = random.Random(seed)
        self._nodes: dict[int, IndexNode] = {}
        self._rows: dict[int, int] = {}
        self._vectors = np.zeros((16, dim), dtype=np.float32)
        self._norms = np.zeros(16, dtype=np.float64)

    # ── inspection ───────────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def nodes(self) -> Iterator[IndexNode]:
        """Iterate nodes in insertion order."""
        return iter(self._nodes.values())

    def node(self, node_id: int) -> IndexNode:
        return self._nodes[node_id]

    def vector(self, node_id: int) -> np.ndarray:
        return self._vectors[self._rows[node_id]].copy()

    def neighbors(self, node_id: int, layer: int) -> list[int]:
        node = self._nodes[node_id]
        if layer > node.top_layer:
            return []
        return list(node.neighbors[layer])

    def max_degree(self, layer: int) -> int:
        return self.m0 if layer == 0 else self.m

    # ── construction ─────────────────────────────────────────────────────

    def add(self, node_id: int, vector: Sequence[float] | np.ndarray) -> None:
        """Insert a vector under *node_id*.

        Raises:
            ValueError: If the id is already present or the dimension is wrong.
        """
        node_id = int(node_id)
        if node_id in self._nodes:
            raise ValueError(f"id {node_id} is already indexed")
        query, qnorm = self._prepare(vector)

        level = self._draw_level()
        self._store_vector(node_id, query, qnorm)
        node = IndexNode(node_id, level, [[] for _ in range(level + 1)])
        self._nodes[node_id] = node

        if self.entry_point is None:
            self.entry_point = node_id
            self.max_layer = level
            return

        current = self.entry_point
        for layer in range(self.max_layer, level, -1):
            _, current = self._greedy_closest(query, qnorm, current, layer)

        entries = [current]
        for layer in range(min(level, self.max_layer), -1, -1):
            limit = self.max_degree(layer)
            found = self._search_layer(
                query, qnorm, entries, max(self.ef_construction, limit), layer
            )
            selected = self._select_neighbors(found, limit)
            node.neighbors[layer] = [n for _, n in selected]
            for _, neighbor in selected:
                self._link(neighbor, node_id, layer)
            entries = [n for _, n in found]

        # Ties keep the earlier node as entry point
        if level > self.max_layer:
            self.entry_point = node_id
            self.max_layer = level

    def _draw_level(self) -> int:
        return int(-math.log(1.0 - self._rng.random()) * self.ml)

    def _store_vector(self, node_id: int, vector: np.ndarray, norm: float) -> None:
        row = len(self._rows)
        if row >= self._vectors.shape[0]:
            capacity = self._vectors.shape[0] * 2
            vectors = np.zeros((capacity, self.dim), dtype=np.float32)
            vectors[:row] = self._vectors[:row]
            norms = np.zeros(capacity, dtype=np.float64)
            norms[:row] = self._norms[:row]
            self._vectors, self._norms = vectors, norms
        self._vectors[row] = vector
        self._norms[row] = norm
        self._rows[node_id] = row

    def _select_neighbors(
        self, candidates: list[tuple[float, int]], limit: int
    ) -> list[tuple[float, int]]:
        """Pick up to *limit* diverse neighbors from sorted candidates.

        A candidate is kept only if it is closer to the query than to every
        neighbor already kept. Remaining slots are filled with the closest
        discarded candidates.
        """
        if len(candidates) <= limit:
            return list(candidates)

        selected: list[tuple[float, int]] = []
        discarded: list[tuple[float, int]] = []
        for dist, candidate in candidates:
            if len(selected) >= limit:
                break
            if selected:
                row = self._rows[candidate]
                to_selected = self._distances(
                    self._row_vector(row), self._norms[row], [s for _, s in selected]
                )
                if bool((to_selected < dist).any()):
                    discarded.append((dist, candidate))
                    continue
            selected.append((dist, candidate))

        for item in discarded:
            if len(selected) >= limit:
                break
            selected.append(item)
        return sorted(selected)

    def _link(self, owner: int, new_id: int, layer: int) -> None:
        """Add a back-link from *owner* to *new_id*.

        On overflow the list is re-selected with the diversity heuristic
        used at insertion, so links out of a tight cluster survive.
        """
        node = self._nodes[owner]
        ids = node.neighbors[layer] + [new_id]
        row = self._rows[owner]
        dists = self._distances(self._row_vector(row), self._norms[row], ids).tolist()
        ranked = sorted(zip(dists, ids))
        selected = self._select_neighbors(ranked, self.max_degree(layer))
        node.neighbors[layer] = [n for _, n in selected]

    # ── search ───────────────────────────────────────────────────────────

    def search(
        self, vector: Sequence[float] | np.ndarray, k: int, ef: int | None = None
    ) -> list[tuple[int, float]]:
        """Return up to *k* ``(id, distance)`` pairs, closest first."""
        if k <= 0 or self.entry_point is None:
            return []
        query, qnorm = self._prepare(vector)
        ef = max(ef or self.ef_search, k)

        current = self.entry_point
        for layer in range(self.max_layer, 0, -1):
            _, current = self._greedy_closest(query, qnorm, current, layer)

        found = self._search_layer(query, qnorm, [current], ef, 0)
        return [(node_id, dist) for dist, node_id in found[:k]]

    def _greedy_closest(
        self, query: np.ndarray, qnorm: float, start: int, layer: int
    ) -> tuple[float, int]:
        """Hill-climb on one layer to the closest reachable node."""
        current = start
        current_dist = float(self._distances(query, qnorm, [start])[0])
        while True:
            neighbors = self._nodes[current].neighbors[layer]
            if not neighbors:
                break
            dists = self._distances(query, qnorm, neighbors)
            best = int(np.argmin(dists))
            if dists[best] >= current_dist:
                break
            current_dist = float(dists[best])
            current = neighbors[best]
        return current_dist, current

    def _search_layer(
        self, query: np.ndarray, qnorm: float, entries: list[int], ef: int, layer: int
    ) -> list[tuple[float, int]]:
        """Best-first search on one layer. Returns ``ef`` closest, sorted."""
        visited = set(entries)
        entry_dists = self._distances(query, qnorm, entries).tolist()

        candidates = list(zip(entry_dists, entries))
        heapq.heapify(candidates)
        # Max-heap of the current best, worst on top
        results: list[tuple[float, int]] = []
        for dist, node_id in candidates:
            heapq.heappush(results, (-dist, -node_id))
            if len(results) > ef:
                heapq.heappop(results)

        while candidates:
            dist, node_id = heapq.heappop(candidates)
            if len(results) >= ef and dist > -results[0][0]:
                break

            fresh = [
                n for n in self._nodes[node_id].neighbors[layer] if n not in visited
            ]
            if not fresh:
                continue
            visited.update(fresh)

            for n_dist, neighbor in zip(
                self._distances(query, qnorm, fresh).tolist(), fresh
            ):
                if len(results) < ef or n_dist < -results[0][0]:
                    heapq.heappush(candidates, (n_dist, neighbor))
                    heapq.heappush(results, (-n_dist, -neighbor))
                    if len(results) > ef:
                        heapq.heappop(results)

        return sorted((-neg_dist, -neg_id) for neg_dist, neg_id in results)

    # ── distances ────────────────────────────────────────────────────────

    def _prepare(self, vector: Sequence[float] | np.ndarray) -> tuple[np.ndarray, float]:
        # Rounded to float32 like stored rows, then widened: distances between
        # near-duplicates are below float32 resolution.
        query = np.asarray(vector, dtype=np.float32).reshape(-1)
        if query.shape[0] != self.dim:
            raise ValueError(
                f"vector has dimension {query.shape[0]}, index expects {self.dim}"
            )
        query = query.astype(np.float64)
        return query, float(np.linalg.norm(query))

    def _row_vector(self, row: int) -> np.ndarray:
        return self._vectors[row].astype(np.float64)

    def _distances(
        self, query: np.ndarray, qnorm: float, ids: Sequence[int]
    ) -> np.ndarray:
        rows = [self._rows[i] for i in ids]
        dots = self._vectors[rows] @ query
        denom = self._norms[rows] * qnorm
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(denom > 0, dots / denom, 0.0)
        return 1.0 - sims

    # ── persistence support ──────────────────────────────────────────────

    @classmethod
    def restore(
        cls,
        dim: int,
        *,
        m: int,
        ef_construction: int,
        ef_search: int,
        entry_point: int | None,
        nodes: Iterable[IndexNode],
        vectors: Mapping[int, np.ndarray],
        seed: int = 0,
    ) -> HNSWIndex:
        """Rebuild an index from persisted state without re-running insertion.

        Raises:
            ValueError: If a node has no vector or a vector has the wrong size.
        """
        index = cls(dim, m=m, ef_construction=ef_construction, ef_search=ef_search, seed=seed)
        for node in nodes:
            if node.id not in vectors:
                raise ValueError(f"node {node.id} has no vector")
            vector, norm = index._prepare(vectors[node.id])
            index._store_vector(node.id, vector, norm)
            index._nodes[node.id] = IndexNode(
                node.id, node.top_layer, [list(ns) for ns in node.neighbors]
            )
        if entry_point is not None:
            if entry_point not in index._nodes:
                raise ValueError(f"entry point {entry_point} is not a node")
            index.entry_point = entry_point
            index.max_layer = index._nodes[entry_point].top_layer
        logger.debug("Restored HNSW index with %d nodes", len(index))
        return index
