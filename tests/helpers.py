"""In-memory fakes shared by the test modules."""

import asyncio
import fnmatch
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Sequence

import numpy as np
from redis.exceptions import ConnectionError as RedisConnectionError

from digest_ranking.common.config import RankingConfig
from digest_ranking.common.metrics import MetricsCollector
from digest_ranking.encoders.embedding_manager import EmbeddingManager
from digest_ranking.encoders.providers import EmbeddingProvider, EmbeddingProviderError
from digest_ranking.encoders.retry_handler import RetryConfig
from digest_ranking.hybrid.search_manager import SearchManager
from digest_ranking.models import Item
from digest_ranking.ranking.keyword import tokenize
from digest_ranking.vector_store.cache import VectorCache
from digest_ranking.vector_store.memory import InMemoryVectorStore

DIMENSION = 8

# Synonyms share a dimension so semantic similarity differs from keyword overlap
VOCABULARY = {
    "search": 0, "retrieval": 0, "lookup": 0,
    "code": 1, "source": 1, "program": 1,
    "company": 2, "business": 2,
    "news": 3, "report": 3,
    "weather": 4, "rain": 4,
}

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def make_item(
    item_id: str,
    title: str,
    source: str = "Source",
    url: Optional[str] = None,
    summary: Optional[str] = None,
    age_days: float = 1.0,
    **kwargs
) -> Item:
    return Item(
        id=item_id,
        title=title,
        source=source,
        url=url if url is not None else f"https://{source.lower().replace(' ', '')}.example.com/{item_id}",
        published_at=NOW - timedelta(days=age_days),
        summary=summary,
        **kwargs
    )


def bag_of_words(text: str, dimension: int = DIMENSION) -> np.ndarray:
    vector = np.zeros(dimension, dtype=np.float32)
    for token in tokenize(text):
        if token in VOCABULARY:
            vector[VOCABULARY[token]] += 1.0
    return vector


class FakeProvider(EmbeddingProvider):
    """Deterministic provider with call tracking and injectable failures."""

    name = "fake"

    def __init__(
        self,
        dimension: int = DIMENSION,
        max_chars: int = 8000,
        fail: bool = False,
        fail_batches: bool = False,
        poison: Sequence[str] = (),
        delay: float = 0.0,
    ):
        super().__init__(dimension, max_chars)
        self.fail = fail
        self.fail_batches = fail_batches
        self.poison = set(poison)
        self.delay = delay
        self.calls: List[List[str]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def texts_embedded(self) -> List[str]:
        return [text for batch in self.calls for text in batch]

    async def embed_texts(self, texts: Sequence[str]) -> List[np.ndarray]:
        self.calls.append(list(texts))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail:
                raise EmbeddingProviderError("provider down")
            if self.fail_batches and len(texts) > 1:
                raise EmbeddingProviderError("batch rejected")
            if any(text in self.poison for text in texts):
                raise EmbeddingProviderError("poisoned input")
            return [bag_of_words(text, self.dimension) for text in texts]
        finally:
            self.in_flight -= 1


def fast_retry() -> RetryConfig:
    return RetryConfig(
        max_attempts=1,
        base_delay=0.0,
        jitter=False,
        min_delay=0.0,
        retryable_exceptions=(EmbeddingProviderError,)
    )


def make_embedding_manager(provider: EmbeddingProvider, metrics=None, **kwargs) -> EmbeddingManager:
    kwargs.setdefault("retry_config", fast_retry())
    return EmbeddingManager(provider, metrics=metrics, **kwargs)


def make_manager(
    provider: Optional[EmbeddingProvider] = None,
    store: Optional[InMemoryVectorStore] = None,
    cache_manager=None,
    selection_store=None,
    metrics: Optional[MetricsCollector] = None,
    **overrides
) -> SearchManager:
    overrides.setdefault("rank_vector_dimension", DIMENSION)
    overrides.setdefault("rank_embedding_timeout", 2.0)
    config = RankingConfig(**overrides)
    metrics = metrics or MetricsCollector("test-service")
    provider = provider or FakeProvider()
    return SearchManager(
        config=config,
        vector_cache=VectorCache(store or InMemoryVectorStore(), dimension=config.rank_vector_dimension, metrics=metrics),
        embedding_manager=make_embedding_manager(provider, metrics=metrics),
        cache_manager=cache_manager,
        selection_store=selection_store,
        metrics=metrics,
    )


class FakePipeline:
    def __init__(self, client: "FakeRedis"):
        self.client = client
        self.commands = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def sadd(self, key, *members):
        self.commands.append(("sadd", key, members))

    def expire(self, key, ttl):
        self.commands.append(("expire", key, ttl))

    def set(self, key, value):
        self.commands.append(("set", key, value))

    def setex(self, key, ttl, value):
        self.commands.append(("setex", key, ttl, value))

    async def execute(self):
        results = []
        for command in self.commands:
            name, key, *args = command
            if name == "sadd":
                self.client.sets.setdefault(key, set()).update(args[0])
                results.append(len(args[0]))
            elif name == "expire":
                self.client.ttls[key] = args[0]
                results.append(True)
            elif name == "set":
                await self.client.set(key, args[0])
                results.append(True)
            else:
                await self.client.setex(key, args[0], args[1])
                results.append(True)
        self.commands = []
        return results


class FakeRedis:
    """The subset of ``redis.asyncio.Redis`` the package uses."""

    def __init__(self, broken: bool = False):
        self.values: Dict[str, str] = {}
        self.sets: Dict[str, set] = {}
        self.ttls: Dict[str, int] = {}
        self.broken = broken
        self.closed = False

    def _check(self):
        if self.broken:
            raise RedisConnectionError("redis unavailable")

    async def get(self, key):
        self._check()
        return self.values.get(key)

    async def mget(self, keys):
        self._check()
        return [self.values.get(key) for key in keys]

    async def set(self, key, value):
        self._check()
        self.values[key] = value
        return True

    async def setex(self, key, ttl, value):
        self._check()
        self.values[key] = value
        self.ttls[key] = ttl
        return True

    async def smembers(self, key):
        self._check()
        return set(self.sets.get(key, set()))

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            elif self.sets.pop(key, None) is not None:
                removed += 1
        return removed

    async def keys(self, pattern):
        self._check()
        return [key for key in list(self.values) + list(self.sets) if fnmatch.fnmatch(key, pattern)]

    async def scan_iter(self, match="*"):
        for key in await self.keys(match):
            yield key

    async def ping(self):
        self._check()
        return True

    def pipeline(self, transaction=True):
        self._check()
        return FakePipeline(self)

    async def aclose(self):
        self.closed = True
