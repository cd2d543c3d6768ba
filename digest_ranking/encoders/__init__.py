"""Embedding providers and the embedding manager (provider adapter)."""

from .circuit_breaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerState
from .embedding_manager import (
    EmbeddingManager,
    EmbeddingResult,
    create_embedding_manager,
    truncate_text,
)
from .providers import (
    EmbeddingProvider,
    EmbeddingProviderError,
    EmbeddingServiceProvider,
    FallbackEmbeddingProvider,
    OpenAIEmbeddingProvider,
    create_embedding_provider,
    pseudo_embedding,
)
from .retry_handler import EmbeddingRetryHandler, RetryConfig, RetryHandler

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerError",
    "CircuitBreakerState",
    "EmbeddingManager",
    "EmbeddingProvider",
    "EmbeddingProviderError",
    "EmbeddingRetryHandler",
    "EmbeddingResult",
    "EmbeddingServiceProvider",
    "FallbackEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "RetryConfig",
    "RetryHandler",
    "create_embedding_manager",
    "create_embedding_provider",
    "pseudo_embedding",
    "truncate_text",
]
