"""Common utilities shared across the ranking core.

Includes:
- ``config``: pydantic-settings configuration from environment variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics helpers.

Import pattern:
- from digest_ranking.common.config import RankingConfig
- from digest_ranking.common.logging import configure_logging
"""
