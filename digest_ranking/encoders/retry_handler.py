"""Retry policy for embedding provider requests.

Provider calls are retried with capped exponential backoff. Whether a
failure is worth retrying depends on the provider's answer: throttling and
server errors are, malformed requests are not. A ``Retry-After`` hint from
the provider is honoured as a lower bound on the wait.
"""

import asyncio
import inspect
import random
from typing import Any, Callable, Optional

import httpx
import structlog

from ..common.metrics import MetricsCollector
from .providers import EmbeddingProviderError

logger = structlog.get_logger("encoders.retry")


class RetryConfig:
    """Backoff settings.

    ``retryable_exceptions`` bounds which exception types are considered at
    all; ``EmbeddingRetryHandler`` narrows that further per error.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 8.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        min_delay: float = 0.1,
        retryable_exceptions: tuple = (Exception,)
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.min_delay = min_delay
        self.retryable_exceptions = retryable_exceptions


class RetryHandler:
    """Runs a callable until it succeeds or attempts run out."""

    def __init__(self, config: RetryConfig):
        self.config = config

    def should_retry(self, error: Exception) -> bool:
        return isinstance(error, self.config.retryable_exceptions)

    def retry_after(self, error: Exception) -> Optional[float]:
        """Server-requested wait for ``error``, if any."""
        return None

    def on_retry(self, operation_name: str, attempt: int, error: Exception) -> None:
        return None

    async def execute_with_retry(
        self,
        func: Callable,
        *args,
        operation_name: str = "unknown",
        **kwargs
    ) -> Any:
        """Call ``func``; re-raise the last error once retries are exhausted.

        Errors ``should_retry`` rejects propagate on the first attempt.
        """
        for attempt in range(self.config.max_attempts):
            try:
                if inspect.iscoroutinefunction(func):
                    result = await func(*args, **kwargs)
                else:
                    result = func(*args, **kwargs)
            except Exception as e:
                if not self.should_retry(e):
                    raise

                if attempt == self.config.max_attempts - 1:
                    logger.error(
                        "Operation failed after all retries",
                        operation=operation_name,
                        attempts=self.config.max_attempts,
                        error=str(e)
                    )
                    raise

                delay = self._calculate_delay(attempt, self.retry_after(e))
                logger.warning(
                    "Operation failed, retrying",
                    operation=operation_name,
                    attempt=attempt + 1,
                    total_attempts=self.config.max_attempts,
                    delay_seconds=delay,
                    error=str(e)
                )
                self.on_retry(operation_name, attempt + 1, e)
                await asyncio.sleep(delay)
                continue

            if attempt > 0:
                logger.info(
                    "Operation succeeded after retry",
                    operation=operation_name,
                    attempt=attempt + 1
                )
            return result

        raise RuntimeError("Retry loop exited without a result")

    def _calculate_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        # base_delay * (exponential_base ^ attempt), capped at max_delay
        delay = self.config.base_delay * (self.config.exponential_base ** attempt)
        delay = min(delay, self.config.max_delay)

        if self.config.jitter:
            jitter_range = delay * 0.1
            delay += random.uniform(-jitter_range, jitter_range)

        if retry_after is not None:
            delay = max(delay, min(retry_after, self.config.max_delay))

        return max(delay, self.config.min_delay)


class EmbeddingRetryHandler(RetryHandler):
    """Retry handler that understands embedding provider failures.

    - ``EmbeddingProviderError`` is retried only when the provider marked it
      retryable (throttling, server errors, transport failures)
    - ``httpx`` transport errors and timeouts are retried
    - Each retry is counted per provider
    """

    def __init__(
        self,
        config: RetryConfig,
        provider_name: str = "provider",
        metrics: Optional[MetricsCollector] = None,
    ):
        super().__init__(config)
        self.provider_name = provider_name
        self.metrics = metrics

    def should_retry(self, error: Exception) -> bool:
        if not super().should_retry(error):
            return False
        if isinstance(error, EmbeddingProviderError):
            return error.retryable
        if isinstance(error, httpx.HTTPStatusError):
            return EmbeddingProviderError.is_retryable_status(error.response.status_code)
        return True

    def retry_after(self, error: Exception) -> Optional[float]:
        if isinstance(error, EmbeddingProviderError):
            return error.retry_after
        return None

    def on_retry(self, operation_name: str, attempt: int, error: Exception) -> None:
        if self.metrics:
            self.metrics.record_embedding_retry(self.provider_name)
