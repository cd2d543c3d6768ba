"""Hybrid pipeline orchestration: search, rerank, digest ranking, selection."""

from .digest import DigestResult, DigestScorer, recency_score
from .search_manager import SearchManager, create_search_manager

__all__ = [
    "DigestResult",
    "DigestScorer",
    "SearchManager",
    "create_search_manager",
    "recency_score",
]
