"""
Base protocol and shared types for vector index strategies.
"""

from enum import Enum
from typing import NamedTuple, Optional, Protocol

import numpy as np

from simindex.similarity import cosine_similarities


class IndexType(str, Enum):
    FLAT = "flat"
    IVF = "ivf"
    HNSW = "hnsw"
    LSH = "lsh"


class SearchResult(NamedTuple):
    id: str
    score: float


class VectorCluster(NamedTuple):
    id: str
    member_ids: list[str]
    centroid: np.ndarray
    average_similarity: float


class SearchStrategy(Protocol):
    """Protocol that all index strategies must implement."""

    index_type: IndexType

    def build_index(self, ids: list[str], vectors: np.ndarray) -> None:
        """Build the index from scratch over row-aligned ids and vectors."""
        ...

    def find_candidates(
        self, query_vector: np.ndarray, limit: int, approximation_factor: float
    ) -> set[str]:
        """Identifiers worth scoring exactly for a top-`limit` query."""
        ...

    def clear_index(self) -> None:
        """Drop all derived data."""
        ...

    def __len__(self) -> int:
        """Number of vectors the index was built over."""
        ...


def check_approximation_factor(approximation_factor: float) -> float:
    if not 0 < approximation_factor <= 1:
        raise ValueError(
            f"approximation_factor must be in (0, 1], got {approximation_factor}"
        )
    return float(approximation_factor)


def rank(
    query_vector: np.ndarray,
    ids: list[str],
    matrix: np.ndarray,
    limit: int,
    exclude: Optional[str] = None,
) -> list[SearchResult]:
    """Exact cosine scoring of `ids` (rows of `matrix`), best first, at most `limit`."""
    if limit <= 0 or not ids:
        return []

    sims = cosine_similarities(matrix, query_vector)
    if exclude is not None:
        keep = np.array([i != exclude for i in ids], dtype=bool)
        sims = sims[keep]
        ids = [i for i in ids if i != exclude]
        if not ids:
            return []

    # stable so equal scores keep insertion order
    order = np.argsort(-sims, kind="stable")[:limit]
    return [SearchResult(ids[i], float(sims[i])) for i in order]
