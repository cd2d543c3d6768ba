"""Base vector store interface.

Defines the key/value contract the ranking pipeline depends on, independent
of the backing implementation (PgVector, Redis, in-memory).

All methods are asynchronous. Vectors are keyed by item id; a write is a
full replacement of the stored vector, never a partial update.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Sequence

from ..models import EmbeddingVector


class VectorStore(ABC):
    """Abstract base class for embedding stores.

    Implementations should ensure idempotent upserts so that concurrent
    writers of the same vector are harmless.
    """

    @abstractmethod
    async def get_embeddings(self, item_ids: Sequence[str]) -> Dict[str, EmbeddingVector]:
        """Fetch stored vectors.

        Returns
        - A mapping containing only the ids that were found
        """
        pass

    @abstractmethod
    async def store_embeddings(self, embeddings: List[EmbeddingVector]) -> int:
        """Upsert vectors.

        Returns the number of vectors written.
        """
        pass

    @abstractmethod
    async def delete_embeddings(self, item_ids: Sequence[str]) -> int:
        """Delete vectors. Returns the number of vectors removed."""
        pass

    @abstractmethod
    async def get_embedding_count(self) -> int:
        """Get count of stored embeddings."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the vector store is healthy."""
        pass

    async def close(self) -> None:
        """Release connections held by the store."""
        return None


class VectorStoreError(Exception):
    """Base exception for vector store operations."""
    pass


class VectorStoreConnectionError(VectorStoreError):
    """Connection error to vector store."""
    pass


class VectorStoreQueryError(VectorStoreError):
    """Query error in vector store."""
    pass


class DimensionMismatchError(ValueError):
    """Two vectors (or a vector and a store) disagree on dimension."""

    def __init__(self, expected: int, actual: int, context: str = ""):
        self.expected = expected
        self.actual = actual
        message = f"Vector dimensions must match: {expected} vs {actual}"
        if context:
            message = f"{message} ({context})"
        super().__init__(message)
