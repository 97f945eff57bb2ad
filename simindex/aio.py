"""
asyncio front end for VectorDB.

Each call is queued on the database's serialized worker and awaited through
`asyncio.wrap_future`, so the event loop never blocks on search or index
construction.
"""

import asyncio
from typing import Any, Callable, Iterable, Optional, Union

import numpy as np

from simindex.errors import ServiceUnavailableError
from simindex.vector.base import IndexType, SearchResult, VectorCluster
from simindex.vector.index import VectorDB


class AsyncVectorDB:
    """
    Awaitable wrapper sharing one VectorDB (and its worker) with sync callers.

    Example:
        >>> async with AsyncVectorDB(db_path="vectors.db") as db:
        ...     await db.add("a", [1.0, 0.0])
        ...     await db.find_similar_by_vector([1.0, 0.0])
    """

    def __init__(self, db: Optional[VectorDB] = None, **kwargs: Any):
        self.db = db if db is not None else VectorDB(**kwargs)

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        future = self.db._worker.submit(fn, *args)
        try:
            return await asyncio.wrap_future(future)
        except asyncio.CancelledError:
            # dropped by close()
            if future.cancelled() and self.db.closed:
                raise ServiceUnavailableError() from None
            raise

    async def add(self, vector_id: Any, vector: Any) -> None:
        await self._run(self.db._add, vector_id, vector)

    async def update(self, vector_id: Any, vector: Any) -> None:
        await self.add(vector_id, vector)

    async def add_many(self, vector_ids: Iterable[Any], vectors: Any) -> None:
        await self._run(self.db._add_many, list(vector_ids), vectors)

    async def remove(self, vector_id: Any) -> bool:
        return await self._run(self.db._remove, vector_id)

    async def clear(self) -> None:
        await self._run(self.db._clear)

    async def get(self, vector_id: Any) -> Optional[np.ndarray]:
        vec = await self._run(self.db._store.get, vector_id)
        return None if vec is None else vec.copy()

    async def count(self) -> int:
        return await self._run(self.db._store.count)

    async def dimension(self) -> Optional[int]:
        return await self._run(lambda: self.db._store.dimension)

    async def contains(self, vector_id: Any) -> bool:
        return await self._run(self.db._store.contains, vector_id)

    async def find_similar(self, vector_id: Any, limit: int = 5) -> list[str]:
        return await self._run(self.db._find_similar, vector_id, limit)

    async def find_similar_by_vector(self, vector: Any, limit: int = 5) -> list[SearchResult]:
        return await self._run(self.db._find_similar_by_vector, vector, limit, None)

    async def search_approximate(
        self,
        vector: Any,
        limit: int = 5,
        approximation_factor: Optional[float] = None,
    ) -> list[SearchResult]:
        return await self._run(self.db._search_approximate, vector, limit, approximation_factor)

    async def search_with_index(
        self,
        vector: Any,
        index_type: Union[str, IndexType],
        limit: int = 5,
        approximation_factor: Optional[float] = None,
    ) -> list[SearchResult]:
        return await self._run(
            self.db._search_with_index, vector, IndexType(index_type), limit, approximation_factor
        )

    async def create_index(self, index_type: Union[str, IndexType] = IndexType.IVF) -> None:
        await self._run(self.db._create_index, IndexType(index_type))

    async def drop_index(self) -> None:
        await self._run(self.db._drop_index)

    async def find_clusters(self, min_similarity: float = 0.7) -> list[VectorCluster]:
        return await self._run(self.db._find_clusters, min_similarity)

    async def find_outliers(self, threshold: float = 0.3) -> list[str]:
        return await self._run(self.db._find_outliers, threshold)

    async def close(self) -> None:
        # shutdown joins the worker thread; keep that off the event loop
        await asyncio.get_running_loop().run_in_executor(None, self.db.close)

    async def __aenter__(self) -> "AsyncVectorDB":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
