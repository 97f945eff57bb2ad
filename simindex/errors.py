"""
Exceptions raised by the vector database.
"""

from typing import Optional


class VectorDBError(Exception):
    """Base class for all simindex errors."""


class ServiceUnavailableError(VectorDBError, RuntimeError):
    """Raised when the database was closed before or during a call."""

    def __init__(self, message: str = "Vector database service unavailable"):
        super().__init__(message)


class VectorNotFoundError(VectorDBError, KeyError):
    """Raised when a lookup by identifier misses."""

    def __init__(self, vector_id: str):
        self.vector_id = vector_id
        super().__init__(vector_id)

    def __str__(self) -> str:
        return f"Vector not found: {self.vector_id}"


class DimensionMismatchError(VectorDBError, ValueError):
    """Raised when a vector's length disagrees with the store dimension."""

    def __init__(self, expected: Optional[int], actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Vector dimension {actual} does not match store dimension {expected}"
        )


class IndexNotBuiltError(VectorDBError, RuntimeError):
    """Raised when a specific index is requested but has not been built."""


class PersistenceError(VectorDBError, OSError):
    """Raised when persisted vector data cannot be written or read."""
