"""
VectorStore - the canonical identifier -> vector mapping and its persistence.

The whole mapping is serialized as one JSON object and written to a SQLite
key/value table after every mutation. Index structures are never persisted;
they are rebuilt from this store on demand.
"""

import json
import pickle
import sqlite3
import threading
from typing import Any, Iterable, Iterator, Optional

import numpy as np

from simindex import config
from simindex.errors import DimensionMismatchError, PersistenceError
from simindex.log import get_logger

logger = get_logger(__name__)


def as_vector(vector: Any) -> np.ndarray:
    """Convert a 1-D numeric sequence to a float32 array."""
    vec = np.array(vector, dtype=np.float32)
    if vec.ndim != 1:
        raise ValueError(f"Vector must be 1D, got shape {vec.shape}")
    return vec


class VectorStore:
    """
    In-memory identifier -> vector map backed by a single persisted record.

    Every vector has the same dimension, fixed by the first insert and reset
    only by clear(). Identifiers are normalized to str.

    A failed write is logged and the in-memory mutation is kept; a failed
    read at startup leaves the store empty.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        persistence_key: str = "vector_store",
        autoload: bool = True,
    ):
        self.db_path = db_path if db_path is not None else config.db_path()
        self.persistence_key = persistence_key
        self._dimension_key = f"{persistence_key}:dimension"
        self._local = threading.local()

        self._vectors: dict[str, np.ndarray] = {}
        self._dimension: Optional[int] = None

        self._init_db()
        if autoload:
            self.load()

    def _get_conn(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "conn"):
            self._local.conn = sqlite3.connect(self.db_path)
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
        return self._local.conn

    def _init_db(self) -> None:
        try:
            conn = self._get_conn()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS kv_store (
                    key TEXT PRIMARY KEY,
                    value BLOB
                )
            """)
            conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to open vector database at {self.db_path}: {e}") from e

    # --- Mapping operations ---

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    def add(self, vector_id: Any, vector: Any) -> None:
        """Insert or overwrite one vector, then persist."""
        key = str(vector_id)
        vec = as_vector(vector)
        if vec.shape[0] == 0:
            raise ValueError("Vector must not be empty")
        vec = self._check_dimension(vec)
        self._vectors[key] = vec
        if self._dimension is None:
            self._dimension = vec.shape[0]
        self._persist()

    def add_many(self, vector_ids: Iterable[Any], vectors: Any) -> None:
        """Insert or overwrite several vectors with a single persistence write."""
        keys = [str(vid) for vid in vector_ids]
        matrix = np.asarray(vectors, dtype=np.float32)
        if matrix.ndim == 1 and len(keys) == 1:
            matrix = matrix.reshape(1, -1)
        if len(keys) == 0:
            return
        if matrix.ndim != 2:
            raise ValueError(f"Vectors must be 2D array, got shape {matrix.shape}")
        if len(keys) != len(matrix):
            raise ValueError(
                f"Number of ids ({len(keys)}) must match "
                f"number of vectors ({len(matrix)})"
            )
        if matrix.shape[1] == 0:
            raise ValueError("Vectors must not be empty")

        self._check_dimension(matrix[0])
        for key, vec in zip(keys, matrix):
            self._vectors[key] = vec.copy()
        if self._dimension is None:
            self._dimension = matrix.shape[1]
        self._persist()

    def remove(self, vector_id: Any) -> bool:
        """Delete a vector. Returns False (and writes nothing) if it was absent."""
        removed = self._vectors.pop(str(vector_id), None)
        if removed is None:
            return False
        self._persist()
        return True

    def get(self, vector_id: Any) -> Optional[np.ndarray]:
        return self._vectors.get(str(vector_id))

    def contains(self, vector_id: Any) -> bool:
        return str(vector_id) in self._vectors

    def count(self) -> int:
        return len(self._vectors)

    def ids(self) -> list[str]:
        return list(self._vectors)

    def items(self) -> Iterator[tuple[str, np.ndarray]]:
        return iter(list(self._vectors.items()))

    def snapshot(self) -> tuple[list[str], np.ndarray]:
        """Identifiers and a (n, d) matrix of their vectors, row-aligned."""
        ids = list(self._vectors)
        if not ids:
            return ids, np.empty((0, self._dimension or 0), dtype=np.float32)
        return ids, np.stack([self._vectors[i] for i in ids])

    def clear(self) -> None:
        """Empty the store and erase its persisted state."""
        self._vectors = {}
        self._dimension = None
        try:
            conn = self._get_conn()
            conn.execute(
                "DELETE FROM kv_store WHERE key IN (?, ?)",
                (self.persistence_key, self._dimension_key),
            )
            conn.commit()
        except sqlite3.Error:
            logger.exception("Failed to erase persisted vectors at %s", self.db_path)

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, vector_id: Any) -> bool:
        return self.contains(vector_id)

    def _check_dimension(self, vec: np.ndarray) -> np.ndarray:
        if self._dimension is not None and vec.shape[0] != self._dimension:
            raise DimensionMismatchError(self._dimension, vec.shape[0])
        return vec

    # --- Persistence ---

    def serialize(self) -> str:
        return json.dumps({key: vec.tolist() for key, vec in self._vectors.items()})

    @staticmethod
    def deserialize(blob: Any) -> dict[str, np.ndarray]:
        """Parse a persisted blob. Raises ValueError if it is malformed."""
        if isinstance(blob, bytes):
            blob = blob.decode("utf-8")
        data = json.loads(blob)
        if not isinstance(data, dict):
            raise ValueError("Persisted vector store is not a JSON object")

        vectors = {}
        dimension = None
        for key, values in data.items():
            vec = np.asarray(values, dtype=np.float32)
            if vec.ndim != 1:
                raise ValueError(f"Persisted vector {key!r} is not a flat array")
            if dimension is None:
                dimension = vec.shape[0]
            elif vec.shape[0] != dimension:
                raise ValueError(f"Persisted vector {key!r} has dimension {vec.shape[0]}, expected {dimension}")
            vectors[str(key)] = vec
        return vectors

    def save(self) -> None:
        """Write the whole mapping as one record. Raises PersistenceError on failure."""
        try:
            conn = self._get_conn()
            with conn:
                conn.execute(
                    "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                    (self.persistence_key, self.serialize()),
                )
                conn.execute(
                    "INSERT OR REPLACE INTO kv_store (key, value) VALUES (?, ?)",
                    (self._dimension_key, pickle.dumps(self._dimension)),
                )
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to persist vectors to {self.db_path}: {e}") from e

    def load(self) -> None:
        """Replace the in-memory mapping with the persisted one, if any."""
        self._vectors = {}
        self._dimension = None
        try:
            conn = self._get_conn()
            cursor = conn.execute(
                "SELECT key, value FROM kv_store WHERE key IN (?, ?)",
                (self.persistence_key, self._dimension_key),
            )
            rows = {row["key"]: row["value"] for row in cursor.fetchall()}
        except sqlite3.Error:
            logger.warning("Could not read persisted vectors from %s, starting empty",
                           self.db_path, exc_info=True)
            return

        if self.persistence_key in rows:
            try:
                self._vectors = self.deserialize(rows[self.persistence_key])
            except (ValueError, TypeError, UnicodeDecodeError):
                logger.warning("Persisted vectors under %r are corrupt, starting empty",
                               self.persistence_key, exc_info=True)
                self._vectors = {}
                return

        if self._vectors:
            self._dimension = next(iter(self._vectors.values())).shape[0]
        elif self._dimension_key in rows:
            try:
                stored = pickle.loads(rows[self._dimension_key])
            except (pickle.UnpicklingError, EOFError, TypeError, ValueError):
                stored = None
            self._dimension = stored if isinstance(stored, int) else None

    def _persist(self) -> None:
        try:
            self.save()
        except PersistenceError:
            logger.exception("Vector store write failed; keeping in-memory state")

    def close(self) -> None:
        """Close the database connection."""
        if hasattr(self._local, "conn"):
            self._local.conn.close()
            delattr(self._local, "conn")

    def __enter__(self) -> "VectorStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
