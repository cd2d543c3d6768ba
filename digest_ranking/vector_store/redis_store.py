"""Redis implementation of the embedding store.

Each vector is stored as a JSON payload under ``<prefix><item_id>``. Useful
for deployments that already run Redis for result caching and don't need
server-side similarity queries.
"""

import json
import time
from typing import Any, Dict, List, Optional, Sequence

import redis.asyncio as redis
import structlog

from ..models import EmbeddingVector
from .base import VectorStore, VectorStoreConnectionError, VectorStoreQueryError

logger = structlog.get_logger("vector_store.redis")


class RedisVectorStore(VectorStore):
    """Key/value ``VectorStore`` on top of ``redis.asyncio``."""

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        key_prefix: str = "rank:embedding:",
        ttl: Optional[int] = None,
        client: Optional[Any] = None,
    ):
        self.redis_client = client if client is not None else redis.from_url(redis_url)
        self.key_prefix = key_prefix
        self.ttl = ttl

    def _key(self, item_id: str) -> str:
        return f"{self.key_prefix}{item_id}"

    async def get_embeddings(self, item_ids: Sequence[str]) -> Dict[str, EmbeddingVector]:
        if not item_ids:
            return {}

        try:
            payloads = await self.redis_client.mget([self._key(i) for i in item_ids])
        except (redis.ConnectionError, redis.TimeoutError) as e:
            raise VectorStoreConnectionError(f"Redis unavailable: {e}")
        except redis.RedisError as e:
            raise VectorStoreQueryError(f"Redis read failed: {e}")

        embeddings = {}
        for item_id, payload in zip(item_ids, payloads):
            if not payload:
                continue
            data = json.loads(payload)
            embeddings[item_id] = EmbeddingVector(
                item_id=item_id,
                values=data["embedding"],
                model=data.get("model", "default"),
                generated_at=data.get("generated_at", 0.0),
            )
        return embeddings

    async def store_embeddings(self, embeddings: List[EmbeddingVector]) -> int:
        if not embeddings:
            return 0

        try:
            async with self.redis_client.pipeline(transaction=False) as pipe:
                for emb in embeddings:
                    payload = json.dumps({
                        "embedding": emb.values.tolist(),
                        "model": emb.model,
                        "generated_at": emb.generated_at or time.time(),
                    })
                    if self.ttl:
                        pipe.setex(self._key(emb.item_id), self.ttl, payload)
                    else:
                        pipe.set(self._key(emb.item_id), payload)
                await pipe.execute()
        except (redis.ConnectionError, redis.TimeoutError) as e:
            raise VectorStoreConnectionError(f"Redis unavailable: {e}")
        except redis.RedisError as e:
            raise VectorStoreQueryError(f"Redis write failed: {e}")

        logger.debug("Stored embeddings", count=len(embeddings))
        return len(embeddings)

    async def delete_embeddings(self, item_ids: Sequence[str]) -> int:
        if not item_ids:
            return 0
        try:
            return await self.redis_client.delete(*[self._key(i) for i in item_ids])
        except redis.RedisError as e:
            raise VectorStoreQueryError(f"Redis delete failed: {e}")

    async def get_embedding_count(self) -> int:
        count = 0
        async for _ in self.redis_client.scan_iter(match=f"{self.key_prefix}*"):
            count += 1
        return count

    async def health_check(self) -> bool:
        try:
            return bool(await self.redis_client.ping())
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return False

    async def close(self) -> None:
        try:
            await self.redis_client.aclose()
        except Exception as e:
            logger.warning("Failed to close redis vector store", error=str(e))
