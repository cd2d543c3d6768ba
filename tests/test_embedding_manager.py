"""Tests for the embedding manager, providers and failure handling."""

import asyncio

import httpx
import numpy as np
import pytest

from digest_ranking.common.config import RankingConfig
from digest_ranking.common.metrics import MetricsCollector
from digest_ranking.encoders.circuit_breaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerState
from digest_ranking.encoders.embedding_manager import truncate_text
from digest_ranking.encoders.providers import (
    EmbeddingProviderError,
    EmbeddingServiceProvider,
    FallbackEmbeddingProvider,
    OpenAIEmbeddingProvider,
    create_embedding_provider,
    pseudo_embedding,
)
from digest_ranking.encoders.retry_handler import EmbeddingRetryHandler, RetryConfig, RetryHandler

from tests.helpers import DIMENSION, FakeProvider, bag_of_words, make_embedding_manager


def test_truncate_text():
    assert truncate_text("short", 10) == "short"
    assert truncate_text("hello world again", 8) == "hello"
    assert truncate_text("abcdefghij", 4) == "abcd"


def test_pseudo_embedding_is_deterministic():
    first = pseudo_embedding("same text", 16)
    second = pseudo_embedding("same text", 16)

    assert first.shape == (16,)
    assert np.array_equal(first, second)
    assert not np.array_equal(first, pseudo_embedding("other text", 16))
    assert np.all(np.abs(first) <= 1.0)


@pytest.mark.asyncio
async def test_embed_batch_preserves_order():
    """Results line up with inputs across requests and chunks."""
    provider = FakeProvider()
    manager = make_embedding_manager(provider, chunk_size=3, request_batch_size=2, concurrency=2)
    texts = ["code", "news", "weather", "search", "company", "rain", "report"]

    results = await manager.embed_batch(texts)

    assert len(results) == len(texts)
    for text, result in zip(texts, results):
        assert not result.is_fallback
        assert np.array_equal(result.vector, bag_of_words(text))


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    provider = FakeProvider(delay=0.01)
    manager = make_embedding_manager(provider, request_batch_size=1, concurrency=2)

    await manager.embed_batch([f"text {i}" for i in range(8)])

    assert len(provider.calls) == 8
    assert provider.max_in_flight <= 2


@pytest.mark.asyncio
async def test_iter_batches_yields_offsets():
    manager = make_embedding_manager(FakeProvider(), chunk_size=2)

    offsets = []
    async for offset, results in manager.iter_batches(["a b", "c d", "e f", "g h", "i j"]):
        offsets.append((offset, len(results)))

    assert offsets == [(0, 2), (2, 2), (4, 1)]


@pytest.mark.asyncio
async def test_inputs_are_truncated_before_the_provider():
    provider = FakeProvider(max_chars=10)
    manager = make_embedding_manager(provider)

    await manager.embed("code search engines explained")

    assert provider.texts_embedded == ["code"]


@pytest.mark.asyncio
async def test_items_past_ceiling_get_fallback_vectors():
    """Texts past max_items are never sent to the provider."""
    metrics = MetricsCollector("test")
    provider = FakeProvider()
    manager = make_embedding_manager(provider, metrics=metrics, max_items=3, chunk_size=2)
    texts = ["code one", "code two", "code three", "code four", "code five"]

    results = await manager.embed_batch(texts)

    assert provider.texts_embedded == ["code one", "code two", "code three"]
    assert [r.is_fallback for r in results] == [False, False, False, True, True]
    assert np.array_equal(results[4].vector, pseudo_embedding("code five", DIMENSION))
    assert metrics.get_sample("rank_embedding_fallbacks_total", {"reason": "max_items"}) == 2.0


@pytest.mark.asyncio
async def test_empty_text_gets_fallback_without_provider_call():
    provider = FakeProvider()
    manager = make_embedding_manager(provider)

    results = await manager.embed_batch(["", "   ", "code"])

    assert [r.is_fallback for r in results] == [True, True, False]
    assert provider.texts_embedded == ["code"]


@pytest.mark.asyncio
async def test_failed_batch_is_retried_per_item():
    """A rejected batch falls back to single-item requests, each tried once."""
    provider = FakeProvider(fail_batches=True)
    manager = make_embedding_manager(provider, request_batch_size=4)

    results = await manager.embed_batch(["code", "news", "rain"])

    assert not any(r.is_fallback for r in results)
    assert provider.calls == [["code", "news", "rain"], ["code"], ["news"], ["rain"]]


@pytest.mark.asyncio
async def test_only_failing_items_fall_back():
    metrics = MetricsCollector("test")
    provider = FakeProvider(poison=["bad input"])
    manager = make_embedding_manager(provider, metrics=metrics)

    results = await manager.embed_batch(["code", "bad input", "news"])

    assert [r.is_fallback for r in results] == [False, True, False]
    assert metrics.get_sample("rank_embedding_fallbacks_total", {"reason": "provider_error"}) == 1.0


@pytest.mark.asyncio
async def test_total_provider_failure_never_raises():
    provider = FakeProvider(fail=True)
    manager = make_embedding_manager(provider)

    results = await manager.embed_batch(["code", "news"])

    assert all(r.is_fallback for r in results)
    assert manager.circuit_breaker.failure_count == 3


@pytest.mark.asyncio
async def test_open_breaker_stops_provider_calls():
    provider = FakeProvider(fail=True)
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60.0, name="test")
    manager = make_embedding_manager(provider, request_batch_size=1, concurrency=1, circuit_breaker=breaker)

    results = await manager.embed_batch(["one", "two", "three", "four"])

    assert all(r.is_fallback for r in results)
    assert breaker.get_state() == CircuitBreakerState.OPEN
    # Two failed requests open the breaker; the remaining retries are rejected
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_non_semantic_provider_only_yields_fallbacks():
    manager = make_embedding_manager(FallbackEmbeddingProvider(dimension=DIMENSION))

    result = await manager.embed("code search")

    assert result.is_fallback
    assert manager.semantic is False
    assert manager.dimension == DIMENSION


@pytest.mark.asyncio
async def test_circuit_breaker_half_open_recovery():
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0.0, name="test")

    async def fail():
        raise EmbeddingProviderError("down")

    async def succeed():
        return "ok"

    with pytest.raises(EmbeddingProviderError):
        await breaker.call(fail)
    assert breaker.get_state() == CircuitBreakerState.OPEN

    # recovery_timeout of zero lets the next call probe immediately
    assert await breaker.call(succeed) == "ok"
    assert breaker.get_state() == CircuitBreakerState.CLOSED
    assert breaker.get_stats()["failure_count"] == 0


@pytest.mark.asyncio
async def test_circuit_breaker_rejects_while_open():
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60.0, name="test")

    async def fail():
        raise EmbeddingProviderError("down")

    with pytest.raises(EmbeddingProviderError):
        await breaker.call(fail)
    with pytest.raises(CircuitBreakerError):
        await breaker.call(fail)

    await breaker.force_close()
    assert breaker.get_state() == CircuitBreakerState.CLOSED


@pytest.mark.asyncio
async def test_retry_handler_retries_then_succeeds():
    handler = RetryHandler(RetryConfig(max_attempts=3, base_delay=0.0, min_delay=0.0, jitter=False))
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise EmbeddingProviderError("transient")
        return "done"

    assert await handler.execute_with_retry(flaky, operation_name="flaky") == "done"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_retry_handler_does_not_retry_other_errors():
    handler = RetryHandler(RetryConfig(
        max_attempts=3,
        base_delay=0.0,
        min_delay=0.0,
        retryable_exceptions=(EmbeddingProviderError,)
    ))
    attempts = []

    async def broken():
        attempts.append(1)
        raise KeyError("not transient")

    with pytest.raises(KeyError):
        await handler.execute_with_retry(broken)
    assert len(attempts) == 1


def test_retry_delay_is_capped():
    handler = RetryHandler(RetryConfig(base_delay=1.0, max_delay=8.0, jitter=False))

    assert handler._calculate_delay(0) == 1.0
    assert handler._calculate_delay(2) == 4.0
    assert handler._calculate_delay(10) == 8.0


@pytest.mark.asyncio
async def test_embedding_service_provider():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"vectors": [[1.0, 0.0], [0.0, 1.0]]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = EmbeddingServiceProvider("http://embed:9006/", dimension=2, model="mini", http_client=client)

    vectors = await provider.embed_texts(["first", "second"])

    assert str(requests[0].url) == "http://embed:9006/api/v1/embed"
    assert np.allclose(vectors[1], [0.0, 1.0])
    await client.aclose()


@pytest.mark.asyncio
async def test_openai_provider_orders_by_index():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer secret"
        return httpx.Response(200, json={"data": [
            {"index": 1, "embedding": [0.0, 1.0]},
            {"index": 0, "embedding": [1.0, 0.0]},
        ]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = OpenAIEmbeddingProvider("secret", dimension=2, http_client=client)

    vectors = await provider.embed_texts(["first", "second"])

    assert np.allclose(vectors[0], [1.0, 0.0])
    assert np.allclose(vectors[1], [0.0, 1.0])
    await client.aclose()


@pytest.mark.asyncio
async def test_provider_error_status_raises():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    provider = EmbeddingServiceProvider("http://embed:9006", dimension=2, http_client=client)

    with pytest.raises(EmbeddingProviderError):
        await provider.embed_texts(["text"])
    await client.aclose()


@pytest.mark.asyncio
async def test_provider_vector_count_mismatch_raises():
    client = httpx.AsyncClient(transport=httpx.MockTransport(
        lambda request: httpx.Response(200, json={"vectors": [[1.0, 0.0]]})
    ))
    provider = EmbeddingServiceProvider("http://embed:9006", dimension=2, http_client=client)

    with pytest.raises(EmbeddingProviderError):
        await provider.embed_texts(["one", "two"])
    await client.aclose()


def test_provider_selection():
    """Provider choice happens once from configuration."""
    assert isinstance(
        create_embedding_provider(RankingConfig(rank_embedding_provider="auto")),
        FallbackEmbeddingProvider
    )
    assert isinstance(
        create_embedding_provider(RankingConfig(rank_embedding_service_url="http://embed:9006")),
        EmbeddingServiceProvider
    )
    assert isinstance(
        create_embedding_provider(RankingConfig(rank_embedding_api_key="secret")),
        OpenAIEmbeddingProvider
    )

    with pytest.raises(ValueError):
        create_embedding_provider(RankingConfig(rank_embedding_provider="service"))
    with pytest.raises(ValueError):
        create_embedding_provider(RankingConfig(rank_embedding_provider="word2vec"))


def test_provider_error_from_response():
    throttled = EmbeddingProviderError.from_response(
        "Embedding service", httpx.Response(429, headers={"Retry-After": "2"})
    )
    assert throttled.status_code == 429
    assert throttled.retry_after == 2.0
    assert throttled.retryable

    rejected = EmbeddingProviderError.from_response("Embedding service", httpx.Response(400))
    assert rejected.retry_after is None
    assert not rejected.retryable

    assert EmbeddingProviderError("bad payload").retryable
    assert EmbeddingProviderError.is_retryable_status(503)


@pytest.mark.asyncio
async def test_provider_error_carries_retry_after():
    client = httpx.AsyncClient(transport=httpx.MockTransport(
        lambda request: httpx.Response(429, headers={"Retry-After": "soon"})
    ))
    provider = EmbeddingServiceProvider("http://embed:9006", dimension=2, http_client=client)

    with pytest.raises(EmbeddingProviderError) as excinfo:
        await provider.embed_texts(["text"])
    assert excinfo.value.status_code == 429
    assert excinfo.value.retry_after is None
    await client.aclose()


@pytest.mark.asyncio
async def test_embedding_retry_handler_skips_client_errors():
    metrics = MetricsCollector()
    handler = EmbeddingRetryHandler(
        RetryConfig(max_attempts=3, base_delay=0.0, min_delay=0.0, jitter=False,
                    retryable_exceptions=(EmbeddingProviderError,)),
        provider_name="fake",
        metrics=metrics,
    )
    attempts = []

    async def rejected():
        attempts.append(1)
        raise EmbeddingProviderError("bad request", status_code=400)

    with pytest.raises(EmbeddingProviderError):
        await handler.execute_with_retry(rejected)
    assert len(attempts) == 1
    assert metrics.get_sample("rank_embedding_retries_total", {"provider": "fake"}) == 0.0


@pytest.mark.asyncio
async def test_embedding_retry_handler_retries_server_errors():
    metrics = MetricsCollector()
    handler = EmbeddingRetryHandler(
        RetryConfig(max_attempts=3, base_delay=0.0, min_delay=0.0, jitter=False,
                    retryable_exceptions=(EmbeddingProviderError,)),
        provider_name="fake",
        metrics=metrics,
    )
    attempts = []

    async def unavailable():
        attempts.append(1)
        if len(attempts) < 3:
            raise EmbeddingProviderError("unavailable", status_code=503)
        return "done"

    assert await handler.execute_with_retry(unavailable) == "done"
    assert metrics.get_sample("rank_embedding_retries_total", {"provider": "fake"}) == 2.0


def test_embedding_retry_handler_classifies_http_errors():
    handler = EmbeddingRetryHandler(RetryConfig(retryable_exceptions=(EmbeddingProviderError, httpx.HTTPError)))
    request = httpx.Request("POST", "http://embed:9006/api/v1/embed")

    not_found = httpx.HTTPStatusError("missing", request=request, response=httpx.Response(404, request=request))
    bad_gateway = httpx.HTTPStatusError("gateway", request=request, response=httpx.Response(502, request=request))

    assert not handler.should_retry(not_found)
    assert handler.should_retry(bad_gateway)
    assert handler.should_retry(httpx.ConnectError("refused", request=request))
    assert not handler.should_retry(KeyError("other"))


def test_retry_delay_honours_retry_after():
    handler = RetryHandler(RetryConfig(base_delay=1.0, max_delay=8.0, jitter=False))

    assert handler._calculate_delay(0, retry_after=3.0) == 3.0
    assert handler._calculate_delay(0, retry_after=60.0) == 8.0
    assert handler._calculate_delay(2, retry_after=0.5) == 4.0


def test_retry_config_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryConfig(max_attempts=0)


@pytest.mark.asyncio
async def test_circuit_breaker_reports_state_gauge():
    metrics = MetricsCollector()
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60.0, name="gauge", metrics=metrics)

    async def fail():
        raise EmbeddingProviderError("down")

    with pytest.raises(EmbeddingProviderError):
        await breaker.call(fail)
    assert metrics.get_sample("rank_embedding_breaker_state", {"breaker": "gauge"}) == 2.0
    assert breaker.get_stats()["seconds_until_probe"] > 0

    with pytest.raises(CircuitBreakerError) as excinfo:
        await breaker.call(fail)
    assert excinfo.value.retry_after > 0

    await breaker.force_close()
    assert metrics.get_sample("rank_embedding_breaker_state", {"breaker": "gauge"}) == 0.0


@pytest.mark.asyncio
async def test_circuit_breaker_allows_single_probe():
    metrics = MetricsCollector()
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0.0, name="probe", metrics=metrics)

    async def fail():
        raise EmbeddingProviderError("down")

    with pytest.raises(EmbeddingProviderError):
        await breaker.call(fail)

    started = asyncio.Event()
    release = asyncio.Event()

    async def slow():
        started.set()
        await release.wait()
        return "ok"

    probe = asyncio.create_task(breaker.call(slow))
    await started.wait()
    assert breaker.get_state() == CircuitBreakerState.HALF_OPEN
    assert metrics.get_sample("rank_embedding_breaker_state", {"breaker": "probe"}) == 1.0

    with pytest.raises(CircuitBreakerError):
        await breaker.call(slow)

    release.set()
    assert await probe == "ok"
    assert breaker.get_state() == CircuitBreakerState.CLOSED
    assert metrics.get_sample("rank_embedding_breaker_state", {"breaker": "probe"}) == 0.0
