"""Configuration management for the ranking core.

This module centralizes environment-driven configuration for the retrieval
and ranking pipeline. It builds on ``pydantic_settings.BaseSettings`` so
configuration can be provided via environment variables, ``.env`` files, or
defaults.

Highlights
- Strongly-typed settings with sensible defaults
- One place to discover commonly used environment variables
- Field names map 1:1 to ``RANK_*`` environment variables (case-insensitive)

Usage
- Inject the config at startup: ``config = RankingConfig()``
- Or use the helper: ``config = get_config()``
"""

import os
from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration shared by every component.

    Notes
    - Add new shared settings here so downstream configs inherit them.
    - Prefer a typed field over reading ``os.environ`` directly.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    rank_env: str = Field(default="local")

    # Logging
    rank_log_level: str = Field(default="INFO")
    rank_log_format: str = Field(default="json")

    # Vector store
    rank_vector_backend: str = Field(default="memory")
    rank_vector_db_dsn: Optional[str] = Field(default=None)
    rank_redis_url: str = Field(default="redis://localhost:6379")
    rank_vector_dimension: int = Field(default=1536)
    rank_vector_pool_size: int = Field(default=10)
    rank_vector_command_timeout: int = Field(default=60)


class RankingConfig(BaseConfig):
    """Configuration for the hybrid retrieval and ranking pipeline.

    Extends ``BaseConfig`` with embedding provider selection, blending
    weights, diversity caps, and cache TTLs.
    """

    # Embedding provider: auto | service | openai | fallback
    rank_embedding_provider: str = Field(default="auto")
    rank_embedding_service_url: Optional[str] = Field(default=None)
    rank_embedding_api_key: Optional[str] = Field(default=None)
    rank_embedding_api_base: str = Field(default="https://api.openai.com/v1")
    rank_embedding_model: str = Field(default="text-embedding-3-small")
    rank_embedding_max_chars: int = Field(default=8000)

    # Embedding batching
    rank_embedding_chunk_size: int = Field(default=500)
    rank_embedding_max_items: int = Field(default=2000)
    rank_embedding_request_batch_size: int = Field(default=16)
    rank_embedding_concurrency: int = Field(default=5)
    rank_embedding_timeout: float = Field(default=10.0)
    rank_embedding_http_timeout: float = Field(default=30.0)
    rank_embedding_retry_attempts: int = Field(default=3)
    rank_embedding_retry_base_delay: float = Field(default=1.0)
    rank_embedding_retry_max_delay: float = Field(default=8.0)
    rank_embedding_breaker_threshold: int = Field(default=5)
    rank_embedding_breaker_recovery: float = Field(default=30.0)

    # Keyword scoring
    rank_keyword_title_weight: float = Field(default=3.0)
    rank_keyword_term_cap: int = Field(default=10)
    rank_keyword_phrase_bonus: float = Field(default=5.0)
    rank_fallback_min_term_length: int = Field(default=3)

    # Blending
    rank_semantic_budget: int = Field(default=100)
    rank_search_semantic_weight: float = Field(default=0.55)
    rank_digest_semantic_weight: float = Field(default=0.2)
    rank_min_results_floor: int = Field(default=5)

    # Digest scoring
    rank_digest_relevance_weight: float = Field(default=0.45)
    rank_digest_bm25_weight: float = Field(default=0.35)
    rank_digest_recency_weight: float = Field(default=0.2)
    rank_recency_half_life_days: float = Field(default=5.0)
    rank_digest_period_days: Optional[int] = Field(default=None)

    # Diversity
    rank_per_source_cap: int = Field(default=2)
    rank_digest_target_size: int = Field(default=10)

    # Caching
    rank_cache_enabled: bool = Field(default=False)
    rank_query_embedding_cache_ttl: int = Field(default=3600)
    rank_result_cache_ttl: int = Field(default=600)

    # Selection records
    rank_selection_backend: str = Field(default="memory")


def get_config(**overrides: Any) -> RankingConfig:
    """Build the ranking configuration.

    Parameters
    - overrides: Explicit field values taking precedence over the environment

    Returns
    - A ``RankingConfig`` pre-wired to read the right env vars.
    """
    return RankingConfig(**overrides)


def load_env_file(env_file: str = ".env") -> Dict[str, Any]:
    """Load environment variables from a file.

    This helper parses a simple ``KEY=VALUE`` file, ignoring blank lines and
    comments. It does not modify the process environment.
    """
    env_vars = {}
    if os.path.exists(env_file):
        with open(env_file, "r") as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, value = line.split("=", 1)
                    env_vars[key] = value
    return env_vars
