"""Construction of vector stores and the vector cache from configuration.

``rank_vector_backend`` picks the store (``memory``, ``pgvector`` or
``redis``); ``create_vector_cache`` wraps it in the ``VectorCache`` the
search manager reads through.
"""

from enum import Enum
from typing import Any, Dict, Optional

import structlog

from ..common.config import RankingConfig
from ..common.metrics import MetricsCollector
from .base import VectorStore
from .cache import VectorCache
from .memory import InMemoryVectorStore
from .pgvector import PgVectorStore
from .redis_store import RedisVectorStore

logger = structlog.get_logger("vector_store.factory")


class VectorStoreType(Enum):
    """Values accepted by ``rank_vector_backend``."""
    MEMORY = "memory"
    PGVECTOR = "pgvector"
    REDIS = "redis"


class VectorStoreFactory:
    """Builds a ``VectorStore`` for a backend type."""

    @staticmethod
    def create(
        store_type: VectorStoreType,
        config: Dict[str, Any],
        **kwargs: Any
    ) -> VectorStore:
        """Instantiate the store for ``store_type``.

        Parameters
        - store_type: Backend to build
        - config: Backend-specific parameters (e.g., DSN for pgvector)
        - kwargs: Passed through to the store constructor
        """
        if store_type == VectorStoreType.MEMORY:
            return InMemoryVectorStore()

        elif store_type == VectorStoreType.PGVECTOR:
            dsn = config.get("dsn")
            if not dsn:
                raise ValueError("pgvector backend needs a 'dsn' (set RANK_VECTOR_DB_DSN)")

            return PgVectorStore(
                dsn=dsn,
                pool_size=config.get("pool_size", 10),
                command_timeout=config.get("command_timeout", 60),
                vector_dimension=config.get("vector_dimension"),
                **kwargs
            )

        elif store_type == VectorStoreType.REDIS:
            return RedisVectorStore(
                redis_url=config.get("redis_url", "redis://localhost:6379"),
                **kwargs
            )

        else:
            raise ValueError(f"Unsupported vector store type: {store_type}")


def create_vector_store(config: RankingConfig, **kwargs: Any) -> VectorStore:
    """Create the vector store selected by ``rank_vector_backend``."""
    try:
        store_type = VectorStoreType(config.rank_vector_backend)
    except ValueError:
        raise ValueError(f"Unsupported vector backend: {config.rank_vector_backend}")

    logger.info("Creating vector store", backend=store_type.value)
    return VectorStoreFactory.create(
        store_type,
        {
            "dsn": config.rank_vector_db_dsn,
            "pool_size": config.rank_vector_pool_size,
            "command_timeout": config.rank_vector_command_timeout,
            "vector_dimension": config.rank_vector_dimension,
            "redis_url": config.rank_redis_url,
        },
        **kwargs
    )


def create_vector_cache(
    config: RankingConfig,
    store: Optional[VectorStore] = None,
    metrics: Optional[MetricsCollector] = None,
) -> VectorCache:
    """Create a ``VectorCache`` over the configured (or given) store."""
    return VectorCache(
        store=store or create_vector_store(config),
        dimension=config.rank_vector_dimension,
        model=config.rank_embedding_model,
        metrics=metrics,
    )
