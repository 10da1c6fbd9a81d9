"""Approximate nearest-neighbour index over one corpus's embedding vectors.

The index is a single-layer proximity graph: every vector keeps up to
``max_degree`` neighbours chosen during an incremental build, and a query
walks the graph best-first from an entry point with a bounded beam.

An instance is either *built* (vectors and adjacency lists in memory) or
*loaded* (both memory-mapped from a saved file), never both.  Ordinals
returned by :meth:`VectorIndex.query` are positions in the build batch and
line up with the ``chunk_index`` of the corpus's nodes.

File layout (little endian)::

    header   magic "HKVI", version, count, dimension, max_degree, entry_point
    vectors  float32[count, dimension]    unit-normalised
    graph    int32[count, max_degree]     neighbour ordinals, -1 padded
"""

from __future__ import annotations

import heapq
import logging
import os
import struct
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

MAGIC = b"HKVI"
FORMAT_VERSION = 1
_HEADER = struct.Struct("<4sIIIII")

DEFAULT_MAX_DEGREE = 32
DEFAULT_EF_CONSTRUCTION = 200
DEFAULT_EF_SEARCH = 64
# Diversity factor for neighbour pruning; values above 1 keep longer edges.
DEFAULT_ALPHA = 1.2


class IndexNotReadyError(RuntimeError):
    """Raised when an index is queried or saved before it holds any vectors."""


def _normalise(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=-1, keepdims=True)
    norms = np.maximum(norms, 1e-10)
    return (matrix / norms).astype(np.float32)


def _to_score(similarity: float) -> float:
    """Map cosine similarity in [-1, 1] onto a [0, 1] score."""
    return min(1.0, max(0.0, (1.0 + float(similarity)) / 2.0))


class VectorIndex:
    """Per-corpus ANN index with build/save/load/query lifecycle."""

    def __init__(
        self,
        dimension: Optional[int] = None,
        max_degree: int = DEFAULT_MAX_DEGREE,
        ef_construction: int = DEFAULT_EF_CONSTRUCTION,
        ef_search: int = DEFAULT_EF_SEARCH,
        alpha: float = DEFAULT_ALPHA,
    ) -> None:
        if max_degree < 1:
            raise ValueError("max_degree must be at least 1")
        self.dimension = dimension
        self.max_degree = max_degree
        self.ef_construction = max(ef_construction, max_degree)
        self.ef_search = ef_search
        self.alpha = alpha

        # Built state
        self._built_vectors: Optional[np.ndarray] = None
        self._built_graph: Optional[List[List[int]]] = None
        # Loaded state
        self._mapped_vectors: Optional[np.memmap] = None
        self._mapped_graph: Optional[np.memmap] = None

        self._entry_point = 0
        self._count = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def build(self, vectors: Sequence[Sequence[float]]) -> int:
        """Build an in-memory graph from *vectors*; returns the vector count."""
        self.close()
        if len(vectors) == 0:
            return 0

        matrix = np.asarray(vectors, dtype=np.float32)
        if matrix.ndim != 2:
            raise ValueError("vectors must be a 2-D batch")
        if self.dimension is None:
            self.dimension = int(matrix.shape[1])
        elif matrix.shape[1] != self.dimension:
            raise ValueError(f"Expected dimension {self.dimension}, got {matrix.shape[1]}")

        data = _normalise(matrix)
        graph: List[List[int]] = [[] for _ in range(len(data))]

        for node in range(1, len(data)):
            found = self._beam_search(data[node], 0, self.ef_construction, data, graph.__getitem__)
            candidates = [ordinal for _, ordinal in found]
            graph[node] = self._select_neighbours(data, node, candidates)
            for neighbour in graph[node]:
                links = graph[neighbour]
                links.append(node)
                if len(links) > self.max_degree:
                    graph[neighbour] = self._select_neighbours(data, neighbour, links)

        self._built_vectors = data
        self._built_graph = graph
        self._count = len(data)
        self._entry_point = self._medoid(data)
        logger.info(
            "Built vector index: %d vectors, dimension=%d, max_degree=%d",
            self._count,
            self.dimension,
            self.max_degree,
        )
        return self._count

    def save(self, path: Path) -> None:
        if self._built_vectors is None or self._built_graph is None:
            raise IndexNotReadyError("No in-memory graph to save")
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        adjacency = np.full((self._count, self.max_degree), -1, dtype="<i4")
        for ordinal, links in enumerate(self._built_graph):
            adjacency[ordinal, : len(links)] = links

        # Loaded instances keep mapping the old inode until they are closed.
        tmp_path = path.with_name(path.name + ".tmp")
        with open(tmp_path, "wb") as fh:
            fh.write(
                _HEADER.pack(
                    MAGIC,
                    FORMAT_VERSION,
                    self._count,
                    int(self.dimension or 0),
                    self.max_degree,
                    self._entry_point,
                )
            )
            fh.write(self._built_vectors.astype("<f4").tobytes())
            fh.write(adjacency.tobytes())
        os.replace(tmp_path, path)
        logger.info("Saved vector index to %s (%d vectors)", path, self._count)

    def load(self, path: Path) -> None:
        """Memory-map a saved index; replaces whatever this instance held."""
        self.close()
        path = Path(path)
        with open(path, "rb") as fh:
            raw = fh.read(_HEADER.size)
        if len(raw) < _HEADER.size:
            raise ValueError(f"Truncated vector index file: {path}")
        magic, version, count, dimension, max_degree, entry_point = _HEADER.unpack(raw)
        if magic != MAGIC:
            raise ValueError(f"Not a vector index file: {path}")
        if version != FORMAT_VERSION:
            raise ValueError(f"Unsupported vector index version {version} in {path}")
        if self.dimension is not None and dimension != self.dimension:
            raise ValueError(f"Index {path} has dimension {dimension}, expected {self.dimension}")

        vectors_offset = _HEADER.size
        graph_offset = vectors_offset + count * dimension * 4
        expected_size = graph_offset + count * max_degree * 4
        if path.stat().st_size < expected_size:
            raise ValueError(f"Truncated vector index file: {path}")

        if count:
            self._mapped_vectors = np.memmap(
                path, dtype="<f4", mode="r", offset=vectors_offset, shape=(count, dimension)
            )
            self._mapped_graph = np.memmap(
                path, dtype="<i4", mode="r", offset=graph_offset, shape=(count, max_degree)
            )
        self.dimension = dimension
        self.max_degree = max_degree
        self._entry_point = entry_point
        self._count = count
        logger.info("Loaded vector index from %s (%d vectors)", path, count)

    def close(self) -> None:
        self._built_vectors = None
        self._built_graph = None
        self._mapped_vectors = None
        self._mapped_graph = None
        self._entry_point = 0
        self._count = 0

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def size(self) -> int:
        return self._count

    def is_loaded(self) -> bool:
        return self._count > 0

    @property
    def on_disk(self) -> bool:
        return self._mapped_vectors is not None

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def query(self, vector: Sequence[float], k: int) -> List[Tuple[int, float]]:
        """Return up to *k* ``(ordinal, score)`` pairs, best first."""
        if not self.is_loaded():
            raise IndexNotReadyError("No index loaded or built")
        if k <= 0:
            return []

        query = np.asarray(vector, dtype=np.float32)
        if query.shape != (self.dimension,):
            raise ValueError(f"Query dimension {query.shape[-1]} does not match index dimension {self.dimension}")
        query = _normalise(query)

        if self._mapped_vectors is not None:
            data = self._mapped_vectors
            mapped = self._mapped_graph

            def neighbours(ordinal: int) -> Iterable[int]:
                row = mapped[ordinal]
                return row[row >= 0].tolist()

        else:
            data = self._built_vectors
            neighbours = self._built_graph.__getitem__

        found = self._beam_search(query, self._entry_point, max(self.ef_search, k), data, neighbours)
        return [(ordinal, _to_score(sim)) for sim, ordinal in found[:k]]

    # ------------------------------------------------------------------
    # Graph internals
    # ------------------------------------------------------------------

    @staticmethod
    def _beam_search(query, entry, ef, data, neighbours) -> List[Tuple[float, int]]:
        """Best-first walk; returns ``(similarity, ordinal)`` sorted best first."""
        visited = {entry}
        entry_sim = float(np.dot(data[entry], query))
        frontier = [(-entry_sim, entry)]
        best = [(entry_sim, entry)]

        while frontier:
            neg_sim, current = heapq.heappop(frontier)
            if len(best) >= ef and -neg_sim < best[0][0]:
                break
            fresh = [n for n in neighbours(current) if n not in visited]
            if not fresh:
                continue
            visited.update(fresh)
            sims = np.asarray(data[fresh], dtype=np.float32) @ query
            for ordinal, sim in zip(fresh, sims.tolist()):
                if len(best) < ef or sim > best[0][0]:
                    heapq.heappush(frontier, (-sim, ordinal))
                    heapq.heappush(best, (sim, ordinal))
                    if len(best) > ef:
                        heapq.heappop(best)

        return sorted(best, key=lambda item: (-item[0], item[1]))

    def _select_neighbours(self, data: np.ndarray, base: int, candidates: Sequence[int]) -> List[int]:
        """Pick at most ``max_degree`` diverse neighbours for *base*."""
        pool = sorted({c for c in candidates if c != base})
        if len(pool) <= self.max_degree:
            return pool

        base_sims = data[pool] @ data[base]
        order = np.argsort(-base_sims, kind="stable")
        ranked = [pool[i] for i in order]
        ranked_dist = [1.0 - float(base_sims[i]) for i in order]

        selected: List[int] = []
        skipped: List[int] = []
        for ordinal, dist in zip(ranked, ranked_dist):
            if len(selected) >= self.max_degree:
                break
            if selected:
                to_selected = 1.0 - (data[selected] @ data[ordinal])
                if np.any(self.alpha * to_selected <= dist):
                    skipped.append(ordinal)
                    continue
            selected.append(ordinal)

        # Top up with the closest pruned candidates to keep the graph well connected.
        for ordinal in skipped:
            if len(selected) >= self.max_degree:
                break
            selected.append(ordinal)
        return selected

    @staticmethod
    def _medoid(data: np.ndarray) -> int:
        centroid = _normalise(data.mean(axis=0))
        return int(np.argmax(data @ centroid))
