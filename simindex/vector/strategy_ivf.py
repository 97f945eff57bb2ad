"""
IVF (Inverted File Index) search strategy.

Partitions vectors around sampled centroids, then at query time searches only
the clusters whose centroids are closest to the query.
"""

import math
from typing import Optional

import numpy as np

from simindex.similarity import normalize
from simindex.vector.base import IndexType, check_approximation_factor


class IVFStrategy:
    """
    IVF search strategy with a one-shot partition.

    Centroids are `k` distinct stored vectors sampled at random and every
    vector joins the cluster of its most similar centroid in a single pass.
    There is no centroid refinement; exact reranking of the probed clusters
    makes up for the coarse partition.
    """

    index_type = IndexType.IVF

    def __init__(self, n_clusters: int = 10, seed: Optional[int] = None):
        if n_clusters < 1:
            raise ValueError(f"n_clusters must be positive, got {n_clusters}")
        self.n_clusters = n_clusters
        self._seed = seed

        self._centroids: Optional[np.ndarray] = None  # (n_clusters, dim), normalized
        self._members: list[list[str]] = []
        self._n_vectors = 0

    @property
    def cluster_count(self) -> int:
        return len(self._members)

    def clusters(self) -> list[tuple[np.ndarray, list[str]]]:
        """(centroid, member ids) for every non-empty cluster."""
        if self._centroids is None:
            return []
        return [(self._centroids[c].copy(), list(m)) for c, m in enumerate(self._members)]

    def build_index(self, ids: list[str], vectors: np.ndarray) -> None:
        """Sample centroids and assign every vector to its nearest one."""
        self.clear_index()
        n = len(ids)
        if n == 0:
            return

        normed = normalize(vectors)
        k = min(self.n_clusters, n)

        rng = np.random.default_rng(self._seed)
        seeds = rng.choice(n, size=k, replace=False)
        centroids = normed[seeds]

        assignments = self._assign(normed, centroids)

        members: list[list[str]] = [[] for _ in range(k)]
        for i, cid in enumerate(assignments):
            members[int(cid)].append(ids[i])

        # Duplicate seed vectors can leave a cluster empty; drop those
        non_empty = [c for c in range(k) if members[c]]
        self._centroids = centroids[non_empty]
        self._members = [members[c] for c in non_empty]
        self._n_vectors = n

    def find_candidates(
        self, query_vector: np.ndarray, limit: int, approximation_factor: float = 0.1
    ) -> set[str]:
        """Members of the top ceil(cluster_count * approximation_factor) clusters."""
        approximation_factor = check_approximation_factor(approximation_factor)
        if self._centroids is None or not self._members:
            return set()

        query_normed = query_vector / (np.linalg.norm(query_vector) + 1e-10)
        sims = self._centroids @ query_normed

        # round first so 10 * 0.3 probes 3 clusters, not 4
        n_probe = max(1, math.ceil(round(len(self._members) * approximation_factor, 9)))
        n_probe = min(n_probe, len(self._members))
        top_clusters = np.argsort(-sims, kind="stable")[:n_probe]

        candidate_ids: set[str] = set()
        for cid in top_clusters:
            candidate_ids.update(self._members[int(cid)])
        return candidate_ids

    def clear_index(self) -> None:
        self._centroids = None
        self._members = []
        self._n_vectors = 0

    def __len__(self) -> int:
        return self._n_vectors

    @staticmethod
    def _assign(normed_vectors: np.ndarray, centroids: np.ndarray) -> np.ndarray:
        """Index of the most similar centroid for each row."""
        sims = normed_vectors @ centroids.T  # (n, k)
        return sims.argmax(axis=1)
