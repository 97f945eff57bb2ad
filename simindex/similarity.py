"""
Cosine similarity helpers shared by the store and every index strategy.
"""

from typing import Sequence, Union

import numpy as np

ArrayLike = Union[np.ndarray, Sequence[float]]


def cosine_similarity(a: ArrayLike, b: ArrayLike) -> float:
    """
    Cosine similarity of two vectors.

    Returns 0.0 when the lengths differ or either vector has zero magnitude.
    """
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.shape[0] != b.shape[0]:
        return 0.0

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    score = float(a @ b) / float(norm_a * norm_b)
    return min(1.0, max(-1.0, score))


def normalize(vectors: np.ndarray) -> np.ndarray:
    """L2-normalize rows. Zero rows stay zero."""
    vectors = np.asarray(vectors, dtype=np.float32)
    norms = np.linalg.norm(vectors, axis=1, keepdims=True)
    norms = np.where(norms == 0, 1.0, norms)
    return vectors / norms


def cosine_similarities(matrix: np.ndarray, query: ArrayLike) -> np.ndarray:
    """Similarity of `query` against each row of `matrix`, as float64."""
    matrix = np.asarray(matrix, dtype=np.float64)
    if matrix.size == 0:
        return np.zeros(len(matrix), dtype=np.float64)

    query = np.asarray(query, dtype=np.float64).ravel()
    query_norm = np.linalg.norm(query)
    if query_norm == 0:
        return np.zeros(len(matrix), dtype=np.float64)

    norms = np.linalg.norm(matrix, axis=1)
    safe_norms = np.where(norms == 0, 1.0, norms)
    sims = (matrix @ query) / (safe_norms * query_norm)
    return np.clip(sims, -1.0, 1.0)
