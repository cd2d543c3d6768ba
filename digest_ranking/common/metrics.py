"""Metrics collection for the ranking core.

Provides a thin convenience wrapper around ``prometheus_client`` so the
pipeline can consistently record search, embedding, cache, and selection
metrics.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- Each collector owns its ``CollectorRegistry`` (inject one for testing)
- Counters double as degradation signals (fallbacks, reprojections)
"""

import time
from functools import wraps
from typing import Any, Callable, Optional

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

BREAKER_STATES = {"closed": 0, "half_open": 1, "open": 2}

logger = structlog.get_logger("metrics")


class MetricsCollector:
    """Centralized metrics collection for the ranking pipeline.

    Parameters
    - service_name: Logical name used for scoping
    - registry: Optional custom ``CollectorRegistry``
    """

    def __init__(self, service_name: str = "digest-ranking", registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.search_requests = Counter(
            'rank_search_requests_total',
            'Total search requests',
            ['mode'],
            registry=self.registry
        )

        self.search_duration = Histogram(
            'rank_search_duration_seconds',
            'Search duration',
            ['mode'],
            registry=self.registry
        )

        self.semantic_degradations = Counter(
            'rank_semantic_degradations_total',
            'Requests that fell back from semantic scoring',
            ['reason'],
            registry=self.registry
        )

        self.embedding_requests = Counter(
            'rank_embedding_requests_total',
            'Total embedding provider requests',
            ['provider'],
            registry=self.registry
        )

        self.embedding_duration = Histogram(
            'rank_embedding_duration_seconds',
            'Embedding provider request duration',
            ['provider'],
            registry=self.registry
        )

        self.embedding_retries = Counter(
            'rank_embedding_retries_total',
            'Embedding provider requests retried after a failure',
            ['provider'],
            registry=self.registry
        )

        self.breaker_state = Gauge(
            'rank_embedding_breaker_state',
            'Embedding circuit breaker state (0 closed, 1 half-open, 2 open)',
            ['breaker'],
            registry=self.registry
        )

        self.embedding_fallbacks = Counter(
            'rank_embedding_fallbacks_total',
            'Items assigned a fallback vector',
            ['reason'],
            registry=self.registry
        )

        self.reprojections = Counter(
            'rank_vector_reprojections_total',
            'Vectors re-projected to the configured dimension',
            ['source_dimension', 'target_dimension'],
            registry=self.registry
        )

        self.cache_hits = Counter(
            'rank_cache_hits_total',
            'Total cache hits',
            ['cache_type'],
            registry=self.registry
        )

        self.cache_misses = Counter(
            'rank_cache_misses_total',
            'Total cache misses',
            ['cache_type'],
            registry=self.registry
        )

        self.selection_rejections = Counter(
            'rank_selection_rejections_total',
            'Items rejected by the diversity selector',
            ['reason'],
            registry=self.registry
        )

    def record_search(self, mode: str, duration: float) -> None:
        """Record search metrics (duration in seconds)."""
        self.search_requests.labels(mode=mode).inc()
        self.search_duration.labels(mode=mode).observe(duration)

    def record_semantic_degradation(self, reason: str) -> None:
        self.semantic_degradations.labels(reason=reason).inc()

    def record_embedding(self, provider: str, duration: float) -> None:
        """Record embedding provider request metrics."""
        self.embedding_requests.labels(provider=provider).inc()
        self.embedding_duration.labels(provider=provider).observe(duration)

    def record_embedding_retry(self, provider: str) -> None:
        self.embedding_retries.labels(provider=provider).inc()

    def record_breaker_state(self, breaker: str, state: str) -> None:
        self.breaker_state.labels(breaker=breaker).set(BREAKER_STATES[state])

    def record_embedding_fallback(self, reason: str, count: int = 1) -> None:
        self.embedding_fallbacks.labels(reason=reason).inc(count)

    def record_reprojection(self, source_dimension: int, target_dimension: int) -> None:
        self.reprojections.labels(
            source_dimension=str(source_dimension),
            target_dimension=str(target_dimension)
        ).inc()

    def record_cache_hit(self, cache_type: str, count: int = 1) -> None:
        """Record cache hit."""
        self.cache_hits.labels(cache_type=cache_type).inc(count)

    def record_cache_miss(self, cache_type: str, count: int = 1) -> None:
        """Record cache miss."""
        self.cache_misses.labels(cache_type=cache_type).inc(count)

    def record_selection_rejection(self, reason: str) -> None:
        self.selection_rejections.labels(reason=reason).inc()

    def get_sample(self, name: str, labels: Optional[dict] = None) -> float:
        """Read back a single sample value (0.0 when absent)."""
        value = self.registry.get_sample_value(name, labels or {})
        return value or 0.0

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')


def measure_time(operation: str, **labels: Any) -> Callable:
    """Decorator to measure coroutine execution time.

    Example
    >>> @measure_time("search", mode="hybrid")
    ... async def run(query):
    ...     ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.time()
            try:
                result = await func(*args, **kwargs)
                duration = time.time() - start_time
                logger.debug(
                    f"Operation {operation} completed",
                    operation=operation,
                    duration_ms=duration * 1000,
                    **labels
                )
                return result
            except Exception as e:
                duration = time.time() - start_time
                logger.error(
                    f"Operation {operation} failed",
                    operation=operation,
                    duration_ms=duration * 1000,
                    error=str(e),
                    **labels
                )
                raise
        return wrapper
    return decorator
