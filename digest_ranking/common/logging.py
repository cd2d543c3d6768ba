"""Structured logging for the ranking core.

Logs go through ``structlog`` as JSON (for aggregation) or a colored console
format (for local runs). Every line carries the service name, and lines
emitted while a request is being ranked also carry that request's context
(query, mode) without each call site passing it.

Typical usage
- Call ``configure_logging(service_name, log_level, log_format)`` or
  ``configure_from_config(config)`` once at startup
- Acquire loggers via ``structlog.get_logger("<component>")``
- Wrap a ranking request in ``request_context(query=..., mode=...)``
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, MutableMapping

import structlog
from structlog.stdlib import LoggerFactory, add_logger_name

from .config import BaseConfig

# User queries are logged only up to this many characters
QUERY_LOG_CHARS = 50


def truncate_query(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]) -> MutableMapping[str, Any]:
    """Cap the ``query`` field of every event."""
    query = event_dict.get("query")
    if isinstance(query, str) and len(query) > QUERY_LOG_CHARS:
        event_dict["query"] = query[:QUERY_LOG_CHARS]
    return event_dict


def configure_logging(
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "json",
    **kwargs: Any
) -> None:
    """Configure structured logging.

    Parameters
    - service_name: Bound to each log line as ``service``
    - log_level: ``DEBUG``, ``INFO``, ``WARNING``, ``ERROR`` (case-insensitive)
    - log_format: ``json`` for production; ``console`` for local runs
    - kwargs: Extra context bound to every log line (e.g. ``env``)
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {log_level}")

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_logger_name,
        truncate_query,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name, **kwargs)


def configure_from_config(config: BaseConfig, service_name: str = "digest-ranking") -> None:
    configure_logging(service_name, config.rank_log_level, config.rank_log_format, env=config.rank_env)


@contextmanager
def request_context(**context: Any) -> Iterator[None]:
    """Bind ``context`` to every log line emitted inside the block.

    Context is task-local, so concurrent requests never see each other's
    fields.
    """
    with structlog.contextvars.bound_contextvars(**context):
        yield


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


def log_performance(operation: str, duration_ms: float, **kwargs: Any) -> None:
    """Log the duration of a unit of work.

    Parameters
    - operation: A stable identifier for the measured unit of work
    - duration_ms: Elapsed time in milliseconds
    - kwargs: Additional dimensions (e.g., mode, result count)
    """
    logger = get_logger("performance")
    logger.info(
        f"Operation {operation} completed",
        operation=operation,
        duration_ms=duration_ms,
        **kwargs
    )
