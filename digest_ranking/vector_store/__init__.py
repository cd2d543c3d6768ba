"""Vector store adapters and the vector cache.

Primary components:
- ``base``: abstract ``VectorStore`` interface and common exceptions.
- ``memory``, ``pgvector``, ``redis_store``: concrete backends.
- ``cache``: ``VectorCache`` and the single ``reproject_vector`` step.
- ``factory``: helpers to construct a store from ``RankingConfig``.

Guidance:
- Construct via ``factory.create_vector_cache`` and inject the result so
  ranking code never depends on a specific backend.
"""

from .base import (
    DimensionMismatchError,
    VectorStore,
    VectorStoreConnectionError,
    VectorStoreError,
    VectorStoreQueryError,
)
from .cache import VectorCache, reproject_vector
from .memory import InMemoryVectorStore

__all__ = [
    "DimensionMismatchError",
    "InMemoryVectorStore",
    "VectorCache",
    "VectorStore",
    "VectorStoreConnectionError",
    "VectorStoreError",
    "VectorStoreQueryError",
    "reproject_vector",
]
