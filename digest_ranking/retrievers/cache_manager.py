"""Redis cache for query embeddings and ranked result lists.

Two kinds of entries live under separate prefixes:

- ``embeddings``: a query's vector, keyed by query text and model
- ``results``: a serialized result list, keyed by the full request
  description (query, mode, weight, limit, candidate pool, model)

Each result entry is also registered in a per-item link set so that
re-embedding an item can drop every cached ranking that mentions it. The
cache is an optimisation only: Redis failures are logged and read as misses.
"""

import hashlib
import json
import time
from typing import Any, Dict, Iterable, List, Optional

import numpy as np
import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from ..common.metrics import MetricsCollector

logger = structlog.get_logger("search_cache")

# Failures that degrade to a cache miss
CACHE_ERRORS = (RedisError, OSError, ValueError)


def request_digest(payload: Any) -> str:
    """Stable hex digest of a JSON-serializable request description."""
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.blake2b(encoded, digest_size=16).hexdigest()


class SearchCacheManager:
    """Caches query embeddings and result lists in Redis.

    Parameters
    - redis_url: Used when no ``client`` is injected
    - embedding_cache_ttl: Seconds a query embedding stays cached
    - result_cache_ttl: Seconds a result list stays cached
    - client: Pre-built ``redis.asyncio`` client (or a compatible fake)
    - metrics: Optional collector for hit/miss counters
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        embedding_cache_ttl: int = 3600,
        result_cache_ttl: int = 600,
        client: Optional[Any] = None,
        metrics: Optional[MetricsCollector] = None
    ):
        self.redis_client = client if client is not None else redis.from_url(redis_url)
        self.metrics = metrics
        self.prefixes = {
            "embeddings": "rank:embedding:query:",
            "results": "rank:result:",
        }
        self.ttls = {
            "embeddings": embedding_cache_ttl,
            "results": result_cache_ttl,
        }
        self.link_prefix = "rank:item-results:"

    @staticmethod
    def pool_fingerprint(item_ids: Iterable[str]) -> str:
        """Digest of a candidate pool's id set (order and repeats ignored)."""
        return request_digest(sorted(set(item_ids)))

    def _key(self, kind: str, payload: Any) -> str:
        return f"{self.prefixes[kind]}{request_digest(payload)}"

    def _link_key(self, item_id: str) -> str:
        return f"{self.link_prefix}{request_digest(item_id)}"

    async def _load(self, key: str, metric_type: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.redis_client.get(key)
            entry = json.loads(raw) if raw else None
        except CACHE_ERRORS as e:
            logger.warning("Cache read failed", cache_type=metric_type, error=str(e))
            return None

        if self.metrics:
            if entry is None:
                self.metrics.record_cache_miss(metric_type)
            else:
                self.metrics.record_cache_hit(metric_type)
        return entry

    async def _save(self, kind: str, key: str, entry: Dict[str, Any], item_ids: Iterable[str] = ()) -> bool:
        ttl = self.ttls[kind]
        entry["cached_at"] = time.time()
        try:
            async with self.redis_client.pipeline(transaction=False) as pipe:
                pipe.setex(key, ttl, json.dumps(entry, default=str))
                for item_id in item_ids:
                    link_key = self._link_key(item_id)
                    pipe.sadd(link_key, key)
                    pipe.expire(link_key, ttl)
                await pipe.execute()
        except CACHE_ERRORS as e:
            logger.warning("Cache write failed", kind=kind, error=str(e))
            return False
        return True

    async def get_cached_query_embedding(self, query: str, model: str = "default") -> Optional[np.ndarray]:
        entry = await self._load(self._key("embeddings", {"query": query, "model": model}), "query_embedding")
        if entry is None:
            return None
        logger.debug("Query embedding cache hit", query=query)
        return np.asarray(entry["vector"], dtype=np.float32)

    async def cache_query_embedding(self, query: str, embedding: np.ndarray, model: str = "default") -> None:
        key = self._key("embeddings", {"query": query, "model": model})
        vector = np.asarray(embedding, dtype=np.float32).tolist()
        await self._save("embeddings", key, {"model": model, "vector": vector})

    async def get_cached_search_results(self, key_data: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
        """Serialized results for an identical earlier request, if cached."""
        entry = await self._load(self._key("results", key_data), "result")
        return None if entry is None else entry["results"]

    async def cache_search_results(self, key_data: Dict[str, Any], results: List[Dict[str, Any]]) -> None:
        """Cache ``results`` and link the entry to each item it contains."""
        key = self._key("results", key_data)
        item_ids = [result["id"] for result in results]
        if await self._save("results", key, {"results": results}, item_ids):
            logger.debug("Search results cached", count=len(results))

    async def invalidate_item(self, item_id: str) -> int:
        """Drop cached result lists containing ``item_id``; returns how many."""
        link_key = self._link_key(item_id)
        try:
            members = await self.redis_client.smembers(link_key)
            keys = [key.decode() if isinstance(key, bytes) else key for key in members]
            removed = await self.redis_client.delete(*keys) if keys else 0
            await self.redis_client.delete(link_key)
        except CACHE_ERRORS as e:
            logger.warning("Cache invalidation failed", item_id=item_id, error=str(e))
            return 0

        logger.info("Cached results invalidated", item_id=item_id, removed=removed)
        return removed

    async def _matching_keys(self, pattern: str) -> List[Any]:
        return [key async for key in self.redis_client.scan_iter(match=pattern)]

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Entry counts and TTLs per kind; empty when Redis is unreachable."""
        try:
            entries = {
                kind: len(await self._matching_keys(f"{prefix}*"))
                for kind, prefix in self.prefixes.items()
            }
        except CACHE_ERRORS as e:
            logger.warning("Failed to read cache stats", error=str(e))
            return {}
        return {"entries": entries, "ttl_seconds": dict(self.ttls)}

    async def clear_cache(self, cache_type: str = "all") -> int:
        """Delete entries of one kind (``all``, ``embeddings``, ``results``)."""
        if cache_type == "all":
            patterns = [f"{prefix}*" for prefix in self.prefixes.values()] + [f"{self.link_prefix}*"]
        elif cache_type == "results":
            patterns = [f"{self.prefixes['results']}*", f"{self.link_prefix}*"]
        elif cache_type in self.prefixes:
            patterns = [f"{self.prefixes[cache_type]}*"]
        else:
            raise ValueError(f"Unknown cache type: {cache_type}")

        deleted = 0
        try:
            for pattern in patterns:
                keys = await self._matching_keys(pattern)
                if keys:
                    deleted += await self.redis_client.delete(*keys)
        except CACHE_ERRORS as e:
            logger.warning("Failed to clear cache", cache_type=cache_type, error=str(e))
            return deleted

        logger.info("Cache cleared", cache_type=cache_type, keys_deleted=deleted)
        return deleted

    async def close(self) -> None:
        try:
            await self.redis_client.aclose()
        except CACHE_ERRORS as e:
            logger.warning("Failed to close cache client", error=str(e))


def create_search_cache_manager(
    redis_url: str,
    embedding_cache_ttl: int = 3600,
    result_cache_ttl: int = 600,
    metrics: Optional[MetricsCollector] = None
) -> SearchCacheManager:
    return SearchCacheManager(
        redis_url=redis_url,
        embedding_cache_ttl=embedding_cache_ttl,
        result_cache_ttl=result_cache_ttl,
        metrics=metrics
    )
