"""
simindex - an embedded vector similarity index for small, local projects.

simindex keeps embedding vectors in a SQLite-persisted store and answers
nearest-neighbor queries with exact (flat) search or approximate IVF, HNSW
and LSH indexes, all behind a single serialized worker.
"""

import logging

from simindex.__version__ import __version__
from simindex.aio import AsyncVectorDB
from simindex.errors import (
    DimensionMismatchError,
    IndexNotBuiltError,
    PersistenceError,
    ServiceUnavailableError,
    VectorDBError,
    VectorNotFoundError,
)
from simindex.similarity import cosine_similarity
from simindex.store import VectorStore
from simindex.vector import IndexType, SearchResult, VectorCluster, VectorDB

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "VectorDB",
    "AsyncVectorDB",
    "VectorStore",
    "IndexType",
    "SearchResult",
    "VectorCluster",
    "cosine_similarity",
    "VectorDBError",
    "ServiceUnavailableError",
    "VectorNotFoundError",
    "DimensionMismatchError",
    "IndexNotBuiltError",
    "PersistenceError",
    "__version__",
]
