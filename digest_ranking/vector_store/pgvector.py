"""Postgres/pgvector embedding store.

One row per item in ``item_embeddings`` (name configurable), holding the
vector in a pgvector column together with the model that produced it. When
the store knows its dimension the column is typed ``vector(<dimension>)`` so
Postgres itself rejects vectors of the wrong length.

Writes are ``INSERT ... ON CONFLICT DO UPDATE`` upserts: two requests
persisting the same item race harmlessly, the later write wins.
"""

import re
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Sequence

import asyncpg
import numpy as np
import structlog
from asyncpg import Connection, Pool
from pgvector.asyncpg import register_vector

from ..models import EmbeddingVector
from .base import (
    DimensionMismatchError,
    VectorStore,
    VectorStoreConnectionError,
    VectorStoreQueryError,
)

logger = structlog.get_logger("vector_store.pgvector")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Errors raised while talking to Postgres
DATABASE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class PgVectorStore(VectorStore):
    """``VectorStore`` backed by an asyncpg pool.

    Parameters
    - dsn: PostgreSQL connection string
    - pool_size: Upper bound on pooled connections
    - max_queries: Queries served by a connection before it is replaced
    - command_timeout: Per-statement timeout in seconds
    - vector_dimension: Length every stored vector must have (``None`` skips
      the check and leaves the column untyped)
    - table: Table holding the vectors
    """

    def __init__(
        self,
        dsn: str,
        pool_size: int = 10,
        max_queries: int = 50000,
        command_timeout: int = 60,
        vector_dimension: Optional[int] = None,
        table: str = "item_embeddings",
    ):
        if not _IDENTIFIER.match(table):
            raise ValueError(f"Invalid table name: {table!r}")
        self.dsn = dsn
        self.pool_size = pool_size
        self.max_queries = max_queries
        self.command_timeout = command_timeout
        self.vector_dimension = vector_dimension
        self.table = table
        self._pool: Optional[Pool] = None

    async def _pool_or_connect(self) -> Pool:
        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=1,
                max_size=self.pool_size,
                max_queries=self.max_queries,
                command_timeout=self.command_timeout,
                init=register_vector,
            )
        except DATABASE_ERRORS as e:
            logger.error("Could not connect to Postgres", error=str(e))
            raise VectorStoreConnectionError(f"Postgres unavailable: {e}")

        logger.info("Postgres pool ready", table=self.table, max_size=self.pool_size)
        return self._pool

    @asynccontextmanager
    async def _connection(self, operation: str) -> AsyncIterator[Connection]:
        """Yield a pooled connection; driver errors become ``VectorStoreQueryError``."""
        pool = await self._pool_or_connect()
        try:
            async with pool.acquire() as conn:
                yield conn
        except DATABASE_ERRORS as e:
            logger.error("Vector store statement failed", operation=operation, error=str(e))
            raise VectorStoreQueryError(f"{operation} failed: {e}")

    def _column_type(self) -> str:
        if self.vector_dimension is None:
            return "vector"
        return f"vector({self.vector_dimension})"

    async def ensure_schema(self) -> None:
        """Create the pgvector extension and the table when missing."""
        async with self._connection("ensure_schema") as conn:
            await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    item_id TEXT PRIMARY KEY,
                    embedding {self._column_type()} NOT NULL,
                    model TEXT NOT NULL DEFAULT 'default',
                    generated_at DOUBLE PRECISION NOT NULL
                )
                """
            )

    async def get_embeddings(self, item_ids: Sequence[str]) -> Dict[str, EmbeddingVector]:
        if not item_ids:
            return {}

        async with self._connection("get_embeddings") as conn:
            rows = await conn.fetch(
                f"SELECT item_id, embedding, model, generated_at FROM {self.table} "
                "WHERE item_id = ANY($1::text[])",
                list(item_ids),
            )

        logger.debug("Vectors fetched", requested=len(item_ids), found=len(rows))
        return {
            row["item_id"]: EmbeddingVector(
                item_id=row["item_id"],
                values=np.asarray(row["embedding"], dtype=np.float32),
                model=row["model"],
                generated_at=float(row["generated_at"]),
            )
            for row in rows
        }

    async def store_embeddings(self, embeddings: List[EmbeddingVector]) -> int:
        """Upsert all vectors with a single ``executemany``."""
        if not embeddings:
            return 0

        rows = [
            (emb.item_id, self._checked(emb), emb.model, emb.generated_at or time.time())
            for emb in embeddings
        ]

        async with self._connection("store_embeddings") as conn:
            await conn.executemany(
                f"INSERT INTO {self.table} (item_id, embedding, model, generated_at) "
                "VALUES ($1, $2, $3, $4) "
                "ON CONFLICT (item_id) DO UPDATE SET "
                "embedding = EXCLUDED.embedding, model = EXCLUDED.model, "
                "generated_at = EXCLUDED.generated_at",
                rows,
            )

        logger.info("Vectors upserted", count=len(rows))
        return len(rows)

    async def delete_embeddings(self, item_ids: Sequence[str]) -> int:
        if not item_ids:
            return 0

        async with self._connection("delete_embeddings") as conn:
            status = await conn.execute(
                f"DELETE FROM {self.table} WHERE item_id = ANY($1::text[])",
                list(item_ids),
            )
        # Status string looks like "DELETE 3"
        return int(status.rsplit(" ", 1)[-1])

    async def get_embedding_count(self) -> int:
        async with self._connection("get_embedding_count") as conn:
            return await conn.fetchval(f"SELECT COUNT(*) FROM {self.table}")

    async def health_check(self) -> bool:
        try:
            async with self._connection("health_check") as conn:
                await conn.fetchval("SELECT 1")
        except (VectorStoreConnectionError, VectorStoreQueryError) as e:
            logger.warning("Vector store health check failed", error=str(e))
            return False
        return True

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("Postgres pool closed")

    def _checked(self, embedding: EmbeddingVector) -> np.ndarray:
        values = np.asarray(embedding.values, dtype=np.float32)
        if values.ndim != 1:
            raise ValueError(f"Vector for {embedding.item_id} must be one-dimensional")
        if self.vector_dimension is not None and values.shape[0] != self.vector_dimension:
            raise DimensionMismatchError(self.vector_dimension, values.shape[0], embedding.item_id)
        return values
