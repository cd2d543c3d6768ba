"""Hybrid retrieval and ranking core for content digests.

Ranks syndicated content items for a digest or a user query by combining
keyword relevance, embedding similarity, recency and source diversity, and
degrades to keyword ranking whenever the semantic side is unavailable.

Entry points
- ``create_search_manager(config)`` wires the full pipeline
- ``SearchManager.search`` / ``rerank`` / ``rank_digest`` / ``select``
"""

from .hybrid.search_manager import SearchManager, create_search_manager
from .models import Item, RankedItem, RejectionReason, SearchResult, SelectionRecord
from .ranking.fusion import Mode

__version__ = "0.1.0"

__all__ = [
    "Item",
    "Mode",
    "RankedItem",
    "RejectionReason",
    "SearchManager",
    "SearchResult",
    "SelectionRecord",
    "create_search_manager",
]
