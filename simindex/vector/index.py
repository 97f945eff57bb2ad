"""
VectorDB - persistent vector similarity search with pluggable index strategies.

Every call is funneled through one serialized worker, so mutations never
interleave with each other or with reads. Approximate indexes (IVF, HNSW,
LSH) only propose candidates; candidates are always re-scored exactly against
the live store.
"""

import time
import uuid
from typing import Any, Iterable, Optional, Union

import numpy as np

from simindex import config
from simindex.errors import (
    DimensionMismatchError,
    IndexNotBuiltError,
    VectorNotFoundError,
)
from simindex.log import get_logger
from simindex.similarity import cosine_similarities
from simindex.store import VectorStore, as_vector
from simindex.vector.base import (
    IndexType,
    SearchResult,
    SearchStrategy,
    VectorCluster,
    check_approximation_factor,
    rank,
)
from simindex.vector.strategy_flat import FlatStrategy
from simindex.vector.strategy_hnsw import HNSWStrategy
from simindex.vector.strategy_ivf import IVFStrategy
from simindex.vector.strategy_lsh import LSHStrategy
from simindex.worker import SerialWorker

logger = get_logger(__name__)


class VectorDB:
    """
    An embedded vector database with exact and approximate similarity search.

    Holds at most one built index (flat, ivf, hnsw or lsh). Until one is
    built, similarity queries scan the live store exhaustively.

    API:
    - __init__(db_path=..., rebuild_threshold=100, n_clusters=10, m=16, ef_search=50, ...)
    - add(id, vector) / update(id, vector) / add_many(ids, vectors) / remove(id)
    - find_similar(id, limit=5) -> [id]
    - find_similar_by_vector(vector, limit=5) -> [SearchResult]
    - search_approximate(vector, limit=5, approximation_factor=None) -> [SearchResult]
    - search_with_index(vector, index_type, limit=5) -> [SearchResult]
    - create_index(index_type="ivf")

    Example:
        >>> db = VectorDB(db_path="vectors.db")
        >>> db.add("a", [1.0, 0.0, 0.0])
        >>> db.add("b", [0.99, 0.01, 0.0])
        >>> db.find_similar("a", limit=1)
        ['b']
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        persistence_key: str = "vector_store",
        rebuild_threshold: Optional[int] = None,
        approximation_factor: Optional[float] = None,
        # IVF params
        n_clusters: int = 10,
        # HNSW params
        m: int = 16,
        ef_search: int = 50,
        max_layer: int = 16,
        # LSH params
        max_tables: int = 10,
        hash_size: int = 8,
        seed: Optional[int] = None,
    ):
        self.rebuild_threshold = (
            rebuild_threshold if rebuild_threshold is not None else config.rebuild_threshold()
        )
        if self.rebuild_threshold < 1:
            raise ValueError(f"rebuild_threshold must be positive, got {self.rebuild_threshold}")
        self.approximation_factor = check_approximation_factor(
            approximation_factor if approximation_factor is not None else config.approximation_factor()
        )

        self.n_clusters = n_clusters
        self.m = m
        self.ef_search = ef_search
        self.max_layer = max_layer
        self.max_tables = max_tables
        self.hash_size = hash_size
        self._seed = seed

        self._index: Optional[SearchStrategy] = None
        self._changes_since_build = 0

        self._worker = SerialWorker()
        # The store is created on the worker so its connection lives there
        try:
            self._store: VectorStore = self._worker.call(
                VectorStore, db_path=db_path, persistence_key=persistence_key
            )
        except Exception:
            self._worker.shutdown()
            raise

    # --- Mutations ---

    def add(self, vector_id: Any, vector: Any) -> None:
        """Insert or overwrite the vector stored under `vector_id`."""
        self._worker.call(self._add, vector_id, vector)

    def update(self, vector_id: Any, vector: Any) -> None:
        self.add(vector_id, vector)

    def add_many(self, vector_ids: Iterable[Any], vectors: Any) -> None:
        """Insert or overwrite several vectors with one persistence write."""
        self._worker.call(self._add_many, list(vector_ids), vectors)

    def remove(self, vector_id: Any) -> bool:
        """Delete a vector; a missing id is a no-op. Returns whether it existed."""
        return self._worker.call(self._remove, vector_id)

    def clear(self) -> None:
        """Remove every vector, erase persisted state and drop the index."""
        self._worker.call(self._clear)

    # --- Reads ---

    def get(self, vector_id: Any) -> Optional[np.ndarray]:
        vec = self._worker.call(self._store.get, vector_id)
        return None if vec is None else vec.copy()

    def contains(self, vector_id: Any) -> bool:
        return self._worker.call(self._store.contains, vector_id)

    def count(self) -> int:
        return self._worker.call(self._store.count)

    @property
    def dimension(self) -> Optional[int]:
        """Fixed vector dimension, or None before the first insert."""
        return self._worker.call(lambda: self._store.dimension)

    def __len__(self) -> int:
        return self.count()

    def __contains__(self, vector_id: Any) -> bool:
        return self.contains(vector_id)

    @property
    def index_type(self) -> Optional[IndexType]:
        """Type of the built index, or None when queries use the live flat scan."""
        return self._worker.call(self._current_index_type)

    # --- Search ---

    def find_similar(self, vector_id: Any, limit: int = 5) -> list[str]:
        """Identifiers most similar to the stored vector `vector_id`, excluding itself."""
        return self._worker.call(self._find_similar, vector_id, limit)

    def find_similar_by_vector(self, vector: Any, limit: int = 5) -> list[SearchResult]:
        """Most similar stored vectors, via the built index or a flat scan."""
        return self._worker.call(self._find_similar_by_vector, vector, limit, None)

    def search_approximate(
        self,
        vector: Any,
        limit: int = 5,
        approximation_factor: Optional[float] = None,
    ) -> list[SearchResult]:
        """
        Approximate search. Uses the built index, or a throwaway LSH index over
        the current store when none has been built.
        """
        return self._worker.call(self._search_approximate, vector, limit, approximation_factor)

    def search_with_index(
        self,
        vector: Any,
        index_type: Union[str, IndexType],
        limit: int = 5,
        approximation_factor: Optional[float] = None,
    ) -> list[SearchResult]:
        """Search with one specific index. Raises IndexNotBuiltError if it is not built."""
        return self._worker.call(
            self._search_with_index, vector, IndexType(index_type), limit, approximation_factor
        )

    # --- Index management ---

    def create_index(self, index_type: Union[str, IndexType] = IndexType.IVF) -> None:
        """(Re)build an index of the given type from the current store contents."""
        self._worker.call(self._create_index, IndexType(index_type))

    def drop_index(self) -> None:
        self._worker.call(self._drop_index)

    # --- Analysis ---

    def find_clusters(self, min_similarity: float = 0.7) -> list[VectorCluster]:
        """Greedy grouping of vectors at least `min_similarity` to a group's seed."""
        return self._worker.call(self._find_clusters, min_similarity)

    def find_outliers(self, threshold: float = 0.3) -> list[str]:
        """Identifiers whose best similarity to any other vector is below `threshold`."""
        return self._worker.call(self._find_outliers, threshold)

    # --- Lifecycle ---

    @property
    def closed(self) -> bool:
        return self._worker.closed

    def close(self) -> None:
        """Tear down the worker. Later calls raise ServiceUnavailableError."""
        self._worker.shutdown(final_job=self._store.close)

    def __enter__(self) -> "VectorDB":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # --- Worker-side implementations (never call the public API from here) ---

    def _current_index_type(self) -> Optional[IndexType]:
        return None if self._index is None else self._index.index_type

    def _add(self, vector_id: Any, vector: Any) -> None:
        self._store.add(vector_id, vector)
        self._record_changes(1)

    def _add_many(self, vector_ids: list[Any], vectors: Any) -> None:
        self._store.add_many(vector_ids, vectors)
        self._record_changes(len(vector_ids))

    def _remove(self, vector_id: Any) -> bool:
        removed = self._store.remove(vector_id)
        if removed:
            self._record_changes(1)
        return removed

    def _clear(self) -> None:
        self._store.clear()
        self._drop_index()

    def _record_changes(self, n: int) -> None:
        """Rebuild the current index once enough mutations have accumulated."""
        self._changes_since_build += n
        if self._index is None or self._changes_since_build < self.rebuild_threshold:
            return
        logger.debug(
            "Rebuilding %s index after %d changes",
            self._index.index_type.value, self._changes_since_build,
        )
        self._create_index(self._index.index_type)

    def _find_similar(self, vector_id: Any, limit: int) -> list[str]:
        if limit < 0:
            raise ValueError(f"limit must be non-negative, got {limit}")
        target = self._store.get(vector_id)
        if target is None:
            raise VectorNotFoundError(str(vector_id))
        results = self._search(target, limit, self._index, None, exclude=str(vector_id))
        return [r.id for r in results]

    def _find_similar_by_vector(
        self, vector: Any, limit: int, approximation_factor: Optional[float]
    ) -> list[SearchResult]:
        query = self._check_query(vector, limit)
        return self._search(query, limit, self._index, approximation_factor)

    def _search_approximate(
        self, vector: Any, limit: int, approximation_factor: Optional[float]
    ) -> list[SearchResult]:
        query = self._check_query(vector, limit)
        factor = self._factor(approximation_factor)

        index = self._index
        if index is None or index.index_type == IndexType.FLAT:
            index = LSHStrategy.for_approximation_factor(
                factor, max_tables=self.max_tables, hash_size=self.hash_size, seed=self._seed
            )
            index.build_index(*self._store.snapshot())
        return self._search(query, limit, index, factor)

    def _search_with_index(
        self,
        vector: Any,
        index_type: IndexType,
        limit: int,
        approximation_factor: Optional[float],
    ) -> list[SearchResult]:
        if self._index is None or self._index.index_type != index_type:
            raise IndexNotBuiltError(f"No {index_type.value} index has been built")
        query = self._check_query(vector, limit)
        return self._search(query, limit, self._index, approximation_factor)

    def _check_query(self, vector: Any, limit: int) -> np.ndarray:
        if limit < 0:
            raise ValueError(f"limit must be non-negative, got {limit}")
        query = as_vector(vector)
        dimension = self._store.dimension
        if dimension is not None and query.shape[0] != dimension:
            raise DimensionMismatchError(dimension, query.shape[0])
        return query

    def _factor(self, approximation_factor: Optional[float]) -> float:
        if approximation_factor is None:
            return self.approximation_factor
        return check_approximation_factor(approximation_factor)

    def _search(
        self,
        query: np.ndarray,
        limit: int,
        index: Optional[SearchStrategy],
        approximation_factor: Optional[float],
        exclude: Optional[str] = None,
    ) -> list[SearchResult]:
        """Candidates from `index` (all vectors if None), exactly re-scored."""
        if limit <= 0 or self._store.count() == 0:
            return []

        if index is None:
            ids, matrix = self._store.snapshot()
            return rank(query, ids, matrix, limit, exclude=exclude)

        # one extra candidate so excluding the query id still fills `limit`
        wanted = limit + 1 if exclude is not None else limit
        candidates = index.find_candidates(query, wanted, self._factor(approximation_factor))

        # ids removed since the index was built are dropped here
        ids = [c for c in candidates if self._store.contains(c)]
        if not ids:
            return []
        ids.sort()
        matrix = np.stack([self._store.get(c) for c in ids])
        return rank(query, ids, matrix, limit, exclude=exclude)

    def _create_index(self, index_type: IndexType) -> None:
        t0 = time.perf_counter()
        index = self._make_strategy(index_type)
        ids, matrix = self._store.snapshot()
        index.build_index(ids, matrix)

        self._index = index
        self._changes_since_build = 0
        logger.info(
            "Created vector index of type %s over %d vectors in %.3fs",
            index_type.value, len(ids), time.perf_counter() - t0,
        )

    def _make_strategy(self, index_type: IndexType) -> SearchStrategy:
        if index_type == IndexType.FLAT:
            return FlatStrategy()
        if index_type == IndexType.IVF:
            return IVFStrategy(n_clusters=self.n_clusters, seed=self._seed)
        if index_type == IndexType.HNSW:
            return HNSWStrategy(
                m=self.m, ef_search=self.ef_search, max_layer=self.max_layer, seed=self._seed
            )
        if index_type == IndexType.LSH:
            return LSHStrategy.for_approximation_factor(
                self.approximation_factor,
                max_tables=self.max_tables,
                hash_size=self.hash_size,
                seed=self._seed,
            )
        raise ValueError(f"Unknown index type: {index_type}")

    def _drop_index(self) -> None:
        self._index = None
        self._changes_since_build = 0

    def _find_clusters(self, min_similarity: float) -> list[VectorCluster]:
        ids, matrix = self._store.snapshot()
        clusters = []
        processed = np.zeros(len(ids), dtype=bool)

        for i in range(len(ids)):
            if processed[i]:
                continue
            processed[i] = True
            sims = cosine_similarities(matrix, matrix[i])
            joins = np.where(~processed & (sims >= min_similarity))[0]
            if len(joins) == 0:
                continue
            processed[joins] = True

            member_idx = [i] + joins.tolist()
            clusters.append(VectorCluster(
                id=str(uuid.uuid4()),
                member_ids=[ids[j] for j in member_idx],
                centroid=matrix[i].copy(),
                average_similarity=float(sims[joins].mean()),
            ))
        return clusters

    def _find_outliers(self, threshold: float) -> list[str]:
        ids, matrix = self._store.snapshot()
        outliers = []
        for i, vector_id in enumerate(ids):
            best = 0.0
            if len(ids) > 1:
                sims = cosine_similarities(matrix, matrix[i])
                sims[i] = -np.inf
                best = float(sims.max())
            if best < threshold:
                outliers.append(vector_id)
        return outliers
