"""
LSH (Locality-Sensitive Hashing) search strategy.

Uses random hyperplane projections: a vector's hash in one table is the
integer formed by the signs of its projections onto that table's hyperplanes.
Similar vectors agree on most signs and tend to share buckets.
"""

from typing import Optional

import numpy as np

from simindex.vector.base import IndexType, check_approximation_factor


class LSHStrategy:
    """LSH search strategy using random projections."""

    index_type = IndexType.LSH

    def __init__(
        self,
        n_tables: int = 8,
        hash_size: int = 8,
        seed: Optional[int] = None,
    ):
        if n_tables < 1:
            raise ValueError(f"n_tables must be positive, got {n_tables}")
        if not 1 <= hash_size <= 62:
            raise ValueError(f"hash_size must be between 1 and 62, got {hash_size}")
        self.n_tables = n_tables
        self.hash_size = hash_size
        self._seed = seed

        self._dimension: Optional[int] = None
        self._random_vectors: Optional[np.ndarray] = None  # (n_tables, hash_size, dim)
        self._random_vectors_flat: Optional[np.ndarray] = None  # (n_tables*hash_size, dim)
        self._buckets: list[dict[int, set[str]]] = []
        self._n_vectors = 0

        self._bit_weights = (1 << np.arange(hash_size, dtype=np.int64))

    @classmethod
    def for_approximation_factor(
        cls,
        approximation_factor: float,
        max_tables: int = 10,
        hash_size: int = 8,
        seed: Optional[int] = None,
    ) -> "LSHStrategy":
        """More tables for a larger factor: better recall, bigger candidate sets."""
        approximation_factor = check_approximation_factor(approximation_factor)
        # truncate, after rounding away float error
        n_tables = max(1, int(round(max_tables * approximation_factor, 9)))
        return cls(n_tables=n_tables, hash_size=hash_size, seed=seed)

    def build_index(self, ids: list[str], vectors: np.ndarray) -> None:
        """Hash every vector into each table's buckets."""
        self.clear_index()
        if len(ids) == 0:
            return

        vectors = np.asarray(vectors, dtype=np.float32)
        self._generate_random_vectors(vectors.shape[1])

        codes = self._hash_vectors_batch(vectors)  # (n, n_tables)
        self._buckets = [{} for _ in range(self.n_tables)]
        for i, vector_id in enumerate(ids):
            for table_id in range(self.n_tables):
                bucket = self._buckets[table_id].setdefault(int(codes[i, table_id]), set())
                bucket.add(vector_id)
        self._n_vectors = len(ids)

    def find_candidates(
        self, query_vector: np.ndarray, limit: int, approximation_factor: float = 1.0
    ) -> set[str]:
        """Union of the query's bucket in every table."""
        check_approximation_factor(approximation_factor)
        if self._random_vectors_flat is None:
            return set()

        codes = self._hash_vectors_batch(np.asarray(query_vector, dtype=np.float32).reshape(1, -1))[0]
        candidates: set[str] = set()
        for table_id, code in enumerate(codes):
            candidates.update(self._buckets[table_id].get(int(code), ()))
        return candidates

    def clear_index(self) -> None:
        self._dimension = None
        self._random_vectors = None
        self._random_vectors_flat = None
        self._buckets = []
        self._n_vectors = 0

    def __len__(self) -> int:
        return self._n_vectors

    def bucket_sizes(self) -> list[dict[int, int]]:
        return [{code: len(ids) for code, ids in table.items()} for table in self._buckets]

    # --- Internal LSH methods ---

    def _generate_random_vectors(self, dimension: int) -> None:
        rng = np.random.default_rng(self._seed)
        self._dimension = dimension
        self._random_vectors = rng.standard_normal(
            size=(self.n_tables, self.hash_size, dimension)
        ).astype(np.float32)
        self._random_vectors_flat = self._random_vectors.reshape(
            self.n_tables * self.hash_size, dimension
        )

    def _hash_vectors_batch(self, vectors: np.ndarray) -> np.ndarray:
        """Integer hash code per (vector, table)."""
        projections = vectors @ self._random_vectors_flat.T
        signs = (projections > 0).reshape(len(vectors), self.n_tables, self.hash_size)
        return signs.astype(np.int64) @ self._bit_weights
