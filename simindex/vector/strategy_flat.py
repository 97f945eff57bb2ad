"""
Flat (exhaustive) search strategy.

Every vector present at build time is a candidate, so results are exact.
"""

import numpy as np

from simindex.vector.base import IndexType


class FlatStrategy:
    """Brute-force strategy over a snapshot of the store."""

    index_type = IndexType.FLAT

    def __init__(self):
        self._ids: list[str] = []

    def build_index(self, ids: list[str], vectors: np.ndarray) -> None:
        self._ids = list(ids)

    def find_candidates(
        self, query_vector: np.ndarray, limit: int, approximation_factor: float = 1.0
    ) -> set[str]:
        return set(self._ids)

    def clear_index(self) -> None:
        self._ids = []

    def __len__(self) -> int:
        return len(self._ids)
