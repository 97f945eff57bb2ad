"""
HNSW (Hierarchical Navigable Small World) search strategy.

Builds a multi-layer proximity graph for approximate nearest neighbor search.
Each node draws its top layer by repeated coin flips, so every layer above 0
holds roughly half the nodes of the layer below it. Queries enter at the top
layer and beam-search their way down to layer 0.
"""

import heapq
import time
from typing import Optional

import numpy as np

from simindex.log import get_logger
from simindex.similarity import normalize
from simindex.vector.base import IndexType, check_approximation_factor

logger = get_logger(__name__)


class HNSWStrategy:
    """HNSW search strategy using a hierarchical proximity graph."""

    index_type = IndexType.HNSW

    def __init__(
        self,
        m: int = 16,
        ef_search: int = 50,
        max_layer: int = 16,
        seed: Optional[int] = None,
    ):
        if m < 1:
            raise ValueError(f"m must be positive, got {m}")
        if ef_search < 1:
            raise ValueError(f"ef_search must be positive, got {ef_search}")
        self.m = m
        self.ef_search = ef_search
        self.max_layer = max_layer
        self._seed = seed

        self._entry_point: Optional[int] = None
        self._top_layer: int = 0

        # layer -> node -> neighbors; edges are always added in both directions
        self._layers: list[dict[int, set[int]]] = []
        # layer -> node indices in insertion order
        self._layer_members: list[list[int]] = []
        self._node_layers: list[int] = []

        # Normalized vectors (contiguous numpy array)
        self._vectors: Optional[np.ndarray] = None
        self._ids: list[str] = []

    @property
    def top_layer(self) -> int:
        return self._top_layer

    def node_layer(self, vector_id: str) -> int:
        return self._node_layers[self._ids.index(vector_id)]

    def neighbors(self, vector_id: str, layer: int = 0) -> set[str]:
        idx = self._ids.index(vector_id)
        if layer >= len(self._layers):
            return set()
        return {self._ids[n] for n in self._layers[layer].get(idx, ())}

    def build_index(self, ids: list[str], vectors: np.ndarray) -> None:
        """Build the graph from scratch by inserting every vector in order."""
        self.clear_index()
        if len(ids) == 0:
            return

        self._ids = list(ids)
        self._vectors = normalize(vectors)
        rng = np.random.default_rng(self._seed)

        t0 = time.perf_counter()
        for idx in range(len(self._ids)):
            self._insert_node(idx, self._draw_layer(rng))

        logger.debug(
            "HNSW graph built: nodes=%d top_layer=%d elapsed=%.3fs",
            len(self._ids), self._top_layer, time.perf_counter() - t0,
        )

    def find_candidates(
        self, query_vector: np.ndarray, limit: int, approximation_factor: float = 1.0
    ) -> set[str]:
        """Search the graph for the best max(ef_search, limit) nodes."""
        check_approximation_factor(approximation_factor)
        if self._entry_point is None:
            return set()

        query_normed = query_vector / (np.linalg.norm(query_vector) + 1e-10)
        ef = max(self.ef_search, limit)

        entries = [self._entry_point]
        results: list[tuple[float, int]] = []
        for layer in range(self._top_layer, -1, -1):
            results = self._beam_search(query_normed, entries, layer, ef)
            entries = [idx for _, idx in results]

        return {self._ids[idx] for _, idx in results}

    def clear_index(self) -> None:
        self._entry_point = None
        self._top_layer = 0
        self._layers = []
        self._layer_members = []
        self._node_layers = []
        self._vectors = None
        self._ids = []

    def __len__(self) -> int:
        return len(self._ids)

    # --- Construction ---

    def _draw_layer(self, rng: np.random.Generator) -> int:
        """Count successful coin flips, capped at max_layer."""
        layer = 0
        while layer < self.max_layer and rng.random() < 0.5:
            layer += 1
        return layer

    def _insert_node(self, idx: int, level: int) -> None:
        """Connect a node to its m most similar members on each of its layers."""
        self._node_layers.append(level)
        while len(self._layers) <= level:
            self._layers.append({})
            self._layer_members.append([])

        q_vec = self._vectors[idx]
        for layer in range(level + 1):
            members = self._layer_members[layer]
            graph = self._layers[layer]
            graph[idx] = set()

            if members:
                member_arr = np.asarray(members, dtype=np.int64)
                sims = self._vectors[member_arr] @ q_vec
                k = min(self.m, len(members))
                if k < len(members):
                    top = np.argpartition(sims, -k)[-k:]
                else:
                    top = np.arange(len(members))
                for nbr in member_arr[top]:
                    nbr = int(nbr)
                    graph[idx].add(nbr)
                    graph[nbr].add(idx)

            members.append(idx)

        if self._entry_point is None or level > self._top_layer:
            self._entry_point = idx
            self._top_layer = level

    # --- Search ---

    def _beam_search(
        self, q_vec: np.ndarray, entries: list[int], layer: int, ef: int
    ) -> list[tuple[float, int]]:
        """Best-first search on one layer keeping the ef most similar nodes seen."""
        vecs = self._vectors
        graph = self._layers[layer]

        visited: set[int] = set(entries)
        candidates: list[tuple[float, int]] = []
        results: list[tuple[float, int]] = []
        for entry in entries:
            sim = float(q_vec @ vecs[entry])
            heapq.heappush(candidates, (-sim, entry))
            heapq.heappush(results, (sim, entry))
            if len(results) > ef:
                heapq.heappop(results)
        worst_sim = results[0][0]

        while candidates:
            neg_sim, current = heapq.heappop(candidates)
            if -neg_sim < worst_sim and len(results) >= ef:
                break

            neighbors = graph.get(current)
            if not neighbors:
                continue
            new_nbrs = [n for n in neighbors if n not in visited]
            if not new_nbrs:
                continue
            visited.update(new_nbrs)

            nbr_arr = np.asarray(new_nbrs, dtype=np.int64)
            sims = vecs[nbr_arr] @ q_vec
            for i in range(len(new_nbrs)):
                sim_f = float(sims[i])
                if len(results) < ef or sim_f > worst_sim:
                    nbr = new_nbrs[i]
                    heapq.heappush(candidates, (-sim_f, nbr))
                    heapq.heappush(results, (sim_f, nbr))
                    if len(results) > ef:
                        heapq.heappop(results)
                    worst_sim = results[0][0]

        results.sort(reverse=True)
        return results
