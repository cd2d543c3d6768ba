"""Embedding providers.

A provider turns a batch of texts into vectors. Exactly one provider is
chosen at startup by ``create_embedding_provider`` and injected into the
``EmbeddingManager``; nothing else in the pipeline knows which one it is.

Providers
- ``EmbeddingServiceProvider``: the internal embedding service
  (``POST /api/v1/embed``)
- ``OpenAIEmbeddingProvider``: an OpenAI-compatible ``/embeddings`` endpoint
- ``FallbackEmbeddingProvider``: deterministic hash-derived vectors with no
  semantic meaning, used when no real provider is configured
"""

import hashlib
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import httpx
import numpy as np
import structlog

from ..common.config import RankingConfig

logger = structlog.get_logger("encoders.providers")


class EmbeddingProviderError(Exception):
    """The provider failed to return usable vectors.

    ``status_code`` is set when the provider answered with an HTTP error;
    ``retry_after`` carries its ``Retry-After`` hint in seconds.
    """

    RETRYABLE_STATUS = {408, 409, 429}

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after

    @classmethod
    def is_retryable_status(cls, status_code: int) -> bool:
        return status_code in cls.RETRYABLE_STATUS or status_code >= 500

    @property
    def retryable(self) -> bool:
        # Errors without a status (bad payloads, count mismatches) may be transient
        return self.status_code is None or self.is_retryable_status(self.status_code)

    @classmethod
    def from_response(cls, provider: str, response: httpx.Response) -> "EmbeddingProviderError":
        retry_after = None
        header = response.headers.get("retry-after")
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        return cls(
            f"{provider} returned status {response.status_code}",
            status_code=response.status_code,
            retry_after=retry_after,
        )


def pseudo_embedding(text: str, dimension: int) -> np.ndarray:
    """Deterministic hash-derived vector for ``text``.

    Identical text always yields the identical vector. Values lie in [-1, 1]
    and carry no semantic meaning.
    """
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    seed = int.from_bytes(digest[:4], "big")
    positions = seed + np.arange(dimension, dtype=np.float64) * 73
    return np.sin(positions).astype(np.float32)


class EmbeddingProvider(ABC):
    """Abstract embedding provider.

    Attributes
    - name: Identifier used in logs and metrics
    - dimension: Length of the vectors the provider returns
    - max_chars: Longest input the provider accepts
    - semantic: False for providers whose vectors carry no meaning
    """

    name = "provider"
    semantic = True

    def __init__(self, dimension: int, max_chars: int = 8000):
        self.dimension = dimension
        self.max_chars = max_chars

    @abstractmethod
    async def embed_texts(self, texts: Sequence[str]) -> List[np.ndarray]:
        """Embed ``texts``; the result is index-aligned with the input."""
        pass

    async def close(self) -> None:
        return None


class _HTTPEmbeddingProvider(EmbeddingProvider):
    """Shared HTTP client handling for remote providers."""

    def __init__(
        self,
        dimension: int,
        max_chars: int = 8000,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(dimension, max_chars)
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=timeout)

    def _to_vectors(self, raw: Sequence[Sequence[float]], expected: int) -> List[np.ndarray]:
        if len(raw) != expected:
            raise EmbeddingProviderError(
                f"{self.name} returned {len(raw)} vectors for {expected} texts"
            )
        return [np.asarray(vector, dtype=np.float32) for vector in raw]

    async def close(self) -> None:
        if self._owns_client:
            await self.http_client.aclose()


class EmbeddingServiceProvider(_HTTPEmbeddingProvider):
    """Client for the internal embedding service."""

    name = "embedding_service"

    def __init__(self, service_url: str, dimension: int, model: str = "default", **kwargs):
        super().__init__(dimension, **kwargs)
        self.service_url = service_url.rstrip("/")
        self.model = model

    async def embed_texts(self, texts: Sequence[str]) -> List[np.ndarray]:
        response = await self.http_client.post(
            f"{self.service_url}/api/v1/embed",
            json={
                "items": [{"text": text} for text in texts],
                "model": self.model
            }
        )

        if response.status_code != 200:
            raise EmbeddingProviderError.from_response("Embedding service", response)

        return self._to_vectors(response.json().get("vectors", []), len(texts))


class OpenAIEmbeddingProvider(_HTTPEmbeddingProvider):
    """Client for an OpenAI-compatible embeddings endpoint."""

    name = "openai"

    def __init__(
        self,
        api_key: str,
        dimension: int,
        model: str = "text-embedding-3-small",
        api_base: str = "https://api.openai.com/v1",
        **kwargs
    ):
        super().__init__(dimension, **kwargs)
        self.api_key = api_key
        self.model = model
        self.api_base = api_base.rstrip("/")

    async def embed_texts(self, texts: Sequence[str]) -> List[np.ndarray]:
        response = await self.http_client.post(
            f"{self.api_base}/embeddings",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={"input": list(texts), "model": self.model}
        )

        if response.status_code != 200:
            raise EmbeddingProviderError.from_response("Embeddings endpoint", response)

        # Entries carry their input index; order is not guaranteed
        data = sorted(response.json().get("data", []), key=lambda entry: entry["index"])
        return self._to_vectors([entry["embedding"] for entry in data], len(texts))


class FallbackEmbeddingProvider(EmbeddingProvider):
    """Deterministic, non-semantic provider."""

    name = "fallback"
    semantic = False

    async def embed_texts(self, texts: Sequence[str]) -> List[np.ndarray]:
        return [pseudo_embedding(text, self.dimension) for text in texts]


def create_embedding_provider(
    config: RankingConfig,
    http_client: Optional[httpx.AsyncClient] = None,
) -> EmbeddingProvider:
    """Select the embedding provider once, at startup.

    ``rank_embedding_provider`` is one of ``auto``, ``service``, ``openai``
    or ``fallback``. ``auto`` prefers the embedding service, then an API
    key, and otherwise falls back to the hash-derived provider.
    """
    choice = config.rank_embedding_provider.lower()
    common = {
        "dimension": config.rank_vector_dimension,
        "max_chars": config.rank_embedding_max_chars,
        "timeout": config.rank_embedding_http_timeout,
        "http_client": http_client,
    }

    if choice == "auto":
        if config.rank_embedding_service_url:
            choice = "service"
        elif config.rank_embedding_api_key:
            choice = "openai"
        else:
            choice = "fallback"

    if choice == "service":
        if not config.rank_embedding_service_url:
            raise ValueError("Embedding service provider requires rank_embedding_service_url")
        provider = EmbeddingServiceProvider(
            service_url=config.rank_embedding_service_url,
            model=config.rank_embedding_model,
            **common
        )
    elif choice == "openai":
        if not config.rank_embedding_api_key:
            raise ValueError("OpenAI provider requires rank_embedding_api_key")
        provider = OpenAIEmbeddingProvider(
            api_key=config.rank_embedding_api_key,
            model=config.rank_embedding_model,
            api_base=config.rank_embedding_api_base,
            **common
        )
    elif choice == "fallback":
        logger.warning("No embedding provider configured, semantic scoring disabled")
        provider = FallbackEmbeddingProvider(
            dimension=config.rank_vector_dimension,
            max_chars=config.rank_embedding_max_chars,
        )
    else:
        raise ValueError(f"Unsupported embedding provider: {config.rank_embedding_provider}")

    logger.info("Embedding provider selected", provider=provider.name, dimension=provider.dimension)
    return provider
