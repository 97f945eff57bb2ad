"""
Vector search module with pluggable strategies (Flat, IVF, HNSW, LSH).

Strategies propose candidate identifiers; VectorDB re-scores them with exact
cosine similarity against the live store.
"""

from simindex.vector.base import IndexType, SearchResult, VectorCluster
from simindex.vector.index import VectorDB

__all__ = ["VectorDB", "IndexType", "SearchResult", "VectorCluster"]
