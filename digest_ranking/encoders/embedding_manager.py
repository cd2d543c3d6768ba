"""Embedding manager: the adapter between the pipeline and a provider.

Turns arbitrary lists of texts into vectors while keeping provider load
bounded and never surfacing provider failures to callers.

Batching
- Inputs are processed in chunks of ``chunk_size``; ``iter_batches`` yields
  each chunk as soon as it is done so callers can persist progressively
- Within a chunk, provider requests of ``request_batch_size`` texts run with
  at most ``concurrency`` in flight
- Inputs past ``max_items`` get the fallback vector without a provider call

Failures
- Requests go through an ``EmbeddingRetryHandler`` and this manager's
  ``CircuitBreaker``
- A request batch that still fails is retried one text at a time; texts
  that fail again get the fallback vector
"""

import asyncio
import time
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence, Tuple

import httpx
import numpy as np
import structlog

from ..common.config import RankingConfig
from ..common.metrics import MetricsCollector
from .circuit_breaker import CircuitBreaker
from .providers import EmbeddingProvider, EmbeddingProviderError, pseudo_embedding
from .retry_handler import EmbeddingRetryHandler, RetryConfig

logger = structlog.get_logger("encoders.embedding_manager")

# Failures that count against a provider's health
PROVIDER_FAILURES = (EmbeddingProviderError, httpx.HTTPError, OSError)


@dataclass
class EmbeddingResult:
    """A vector plus whether it is a non-semantic fallback."""
    vector: np.ndarray
    is_fallback: bool = False


def truncate_text(text: str, max_chars: int) -> str:
    """Cut ``text`` to at most ``max_chars`` characters at a word boundary."""
    if len(text) <= max_chars:
        return text

    cut = text[:max_chars]
    boundary = cut.rfind(" ")
    if boundary > 0:
        cut = cut[:boundary]
    return cut.rstrip()


class EmbeddingManager:
    """Order-preserving, failure-absorbing batch embedding.

    Parameters
    - provider: The ``EmbeddingProvider`` selected at startup
    - chunk_size: Texts per yielded chunk
    - max_items: Absolute ceiling of texts sent to the provider per call
    - request_batch_size: Texts per provider request
    - concurrency: Provider requests in flight at once
    - retry_config: Backoff settings for provider requests
    - circuit_breaker: Breaker owned by this manager
    - metrics: Optional ``MetricsCollector``
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        chunk_size: int = 500,
        max_items: int = 2000,
        request_batch_size: int = 16,
        concurrency: int = 5,
        retry_config: Optional[RetryConfig] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        if chunk_size <= 0 or request_batch_size <= 0 or concurrency <= 0:
            raise ValueError("chunk_size, request_batch_size and concurrency must be positive")

        self.provider = provider
        self.chunk_size = chunk_size
        self.max_items = max_items
        self.request_batch_size = request_batch_size
        self.retry_handler = EmbeddingRetryHandler(
            retry_config or RetryConfig(retryable_exceptions=PROVIDER_FAILURES),
            provider_name=provider.name,
            metrics=metrics,
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=5,
            recovery_timeout=30.0,
            expected_exception=PROVIDER_FAILURES,
            name=f"embedding_{provider.name}",
            metrics=metrics,
        )
        self.metrics = metrics
        self._semaphore = asyncio.Semaphore(concurrency)

    @property
    def dimension(self) -> int:
        return self.provider.dimension

    @property
    def semantic(self) -> bool:
        return self.provider.semantic

    def fallback(self, text: str) -> EmbeddingResult:
        return EmbeddingResult(pseudo_embedding(text, self.provider.dimension), is_fallback=True)

    async def embed(self, text: str) -> EmbeddingResult:
        results = await self.embed_batch([text])
        return results[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[EmbeddingResult]:
        """Embed ``texts``; the output is index-aligned with the input."""
        results: List[EmbeddingResult] = []
        async for _, chunk in self.iter_batches(texts):
            results.extend(chunk)
        return results

    async def iter_batches(self, texts: Sequence[str]) -> AsyncIterator[Tuple[int, List[EmbeddingResult]]]:
        """Yield ``(offset, results)`` for each chunk of ``texts`` in order."""
        texts = list(texts)
        for offset in range(0, len(texts), self.chunk_size):
            chunk = texts[offset:offset + self.chunk_size]
            yield offset, await self._embed_chunk(chunk, offset)

    async def _embed_chunk(self, chunk: List[str], offset: int) -> List[EmbeddingResult]:
        results: List[Optional[EmbeddingResult]] = [None] * len(chunk)
        pending: List[int] = []

        for index, text in enumerate(chunk):
            if offset + index >= self.max_items:
                results[index] = self._record_fallback(text, "max_items")
            elif not text or not text.strip():
                results[index] = self._record_fallback(text or "", "empty_text")
            elif not self.provider.semantic:
                results[index] = self._record_fallback(text, "non_semantic_provider")
            else:
                pending.append(index)

        if offset + len(chunk) > self.max_items:
            logger.warning(
                "Embedding ceiling reached, assigning fallback vectors",
                max_items=self.max_items,
                requested=offset + len(chunk)
            )

        groups = [
            pending[i:i + self.request_batch_size]
            for i in range(0, len(pending), self.request_batch_size)
        ]
        batches = await asyncio.gather(*[
            self._embed_request([truncate_text(chunk[i], self.provider.max_chars) for i in group])
            for group in groups
        ])

        for group, batch in zip(groups, batches):
            for index, result in zip(group, batch):
                results[index] = result

        return results

    async def _embed_request(self, texts: List[str]) -> List[EmbeddingResult]:
        async with self._semaphore:
            try:
                vectors = await self._call_provider(texts)
                return [EmbeddingResult(vector) for vector in vectors]
            except Exception as e:
                logger.warning(
                    "Embedding batch failed, retrying items individually",
                    provider=self.provider.name,
                    batch_size=len(texts),
                    error=str(e)
                )

            results = []
            for text in texts:
                try:
                    vectors = await self._call_provider([text])
                    results.append(EmbeddingResult(vectors[0]))
                except Exception as e:
                    logger.warning(
                        "Embedding failed, using fallback vector",
                        provider=self.provider.name,
                        error=str(e)
                    )
                    results.append(self._record_fallback(text, "provider_error"))
            return results

    async def _call_provider(self, texts: List[str]) -> List[np.ndarray]:
        start = time.time()
        try:
            vectors = await self.retry_handler.execute_with_retry(
                self.circuit_breaker.call,
                self.provider.embed_texts,
                texts,
                operation_name=f"embed_{self.provider.name}"
            )
        finally:
            if self.metrics:
                self.metrics.record_embedding(self.provider.name, time.time() - start)

        if len(vectors) != len(texts):
            raise EmbeddingProviderError(
                f"Provider returned {len(vectors)} vectors for {len(texts)} texts"
            )
        return vectors

    def _record_fallback(self, text: str, reason: str) -> EmbeddingResult:
        if self.metrics:
            self.metrics.record_embedding_fallback(reason)
        return self.fallback(text)

    async def close(self) -> None:
        await self.provider.close()


def create_embedding_manager(
    config: RankingConfig,
    provider: EmbeddingProvider,
    metrics: Optional[MetricsCollector] = None,
) -> EmbeddingManager:
    """Create an embedding manager from configuration."""
    return EmbeddingManager(
        provider=provider,
        chunk_size=config.rank_embedding_chunk_size,
        max_items=config.rank_embedding_max_items,
        request_batch_size=config.rank_embedding_request_batch_size,
        concurrency=config.rank_embedding_concurrency,
        retry_config=RetryConfig(
            max_attempts=config.rank_embedding_retry_attempts,
            base_delay=config.rank_embedding_retry_base_delay,
            max_delay=config.rank_embedding_retry_max_delay,
            retryable_exceptions=PROVIDER_FAILURES
        ),
        circuit_breaker=CircuitBreaker(
            failure_threshold=config.rank_embedding_breaker_threshold,
            recovery_timeout=config.rank_embedding_breaker_recovery,
            expected_exception=PROVIDER_FAILURES,
            name=f"embedding_{provider.name}",
            metrics=metrics,
        ),
        metrics=metrics,
    )
