"""Data model for the retrieval and ranking pipeline.

Items are owned by the ingestion collaborator and only read here. Vectors
are long-lived and keyed 1:1 by item id. Everything else (scored
candidates, search results, ranked items, selection records) is built per
request and never mutates an item or a stored vector.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np


@dataclass(frozen=True)
class Item:
    """An immutable content record."""
    id: str
    title: str
    source: str
    url: str
    published_at: datetime
    summary: Optional[str] = None
    snippet: Optional[str] = None
    body: Optional[str] = None
    category: Optional[str] = None

    @property
    def body_text(self) -> str:
        """Non-title text fields joined with spaces."""
        return " ".join(part for part in (self.summary, self.snippet, self.body) if part)

    def text_for_embedding(self) -> str:
        return " ".join(part for part in (self.title, self.body_text) if part).strip()


@dataclass
class EmbeddingVector:
    """One embedding vector for one item.

    ``values`` is always a 1-D float32 array; ``model`` records the model (or
    model/dimension) tag the vector was generated with.
    """
    item_id: str
    values: np.ndarray
    model: str = "default"
    generated_at: float = field(default_factory=time.time)

    def __post_init__(self):
        self.values = np.asarray(self.values, dtype=np.float32).reshape(-1)

    @property
    def dimension(self) -> int:
        return int(self.values.shape[0])


@dataclass
class ScoredCandidate:
    """An item with its per-query keyword, semantic, and blended scores.

    ``semantic`` is ``None`` when no semantic signal exists for the item.
    """
    item: Item
    keyword: float = 0.0
    semantic: Optional[float] = None
    blended: float = 0.0

    @property
    def id(self) -> str:
        return self.item.id


@dataclass
class SearchResult:
    """One entry of a ``search`` response.

    ``signals`` carries the matched-signal breakdown: ``keyword``,
    ``semantic``, ``blended`` and ``source`` (which scorer produced the
    entry).
    """
    id: str
    score: float
    signals: Dict[str, Any]
    item: Item

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "score": self.score, "signals": dict(self.signals)}


@dataclass
class RankedItem:
    """An item ranked for a digest.

    ``relevance``, ``bm25`` and ``recency`` are the [0,1] components that
    produced ``final_score``.
    """
    item: Item
    final_score: float
    relevance: float = 0.0
    bm25: float = 0.0
    recency: float = 0.0
    reasoning: str = ""

    @property
    def id(self) -> str:
        return self.item.id


class RejectionReason(str, Enum):
    """Why the diversity selector skipped an item."""
    DUPLICATE_URL = "duplicate_url"
    SOURCE_CAP_EXCEEDED = "source_cap_exceeded"
    BELOW_THRESHOLD = "below_threshold"


@dataclass(frozen=True)
class Rejection:
    item_id: str
    reason: RejectionReason


@dataclass
class SelectionRecord:
    """Outcome of a diversity-constrained selection.

    ``selected`` keeps the pool entries in rank order; ``rejected`` lists the
    skipped ids with a reason tag.
    """
    selected: List[Any] = field(default_factory=list)
    rejected: List[Rejection] = field(default_factory=list)

    @property
    def selected_ids(self) -> List[str]:
        return [entry_id(entry) for entry in self.selected]

    def rejected_by_reason(self, reason: RejectionReason) -> List[str]:
        return [r.item_id for r in self.rejected if r.reason == reason]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selected": self.selected_ids,
            "rejected": [{"id": r.item_id, "reason": r.reason.value} for r in self.rejected],
        }


def entry_item(entry: Any) -> Item:
    """Return the underlying ``Item`` of any pool entry."""
    if isinstance(entry, Item):
        return entry
    return entry.item


def entry_id(entry: Any) -> str:
    if isinstance(entry, SearchResult):
        return entry.id
    return entry_item(entry).id


def entry_score(entry: Any) -> Optional[float]:
    """Rank score of a pool entry, ``None`` for bare items."""
    if isinstance(entry, RankedItem):
        return entry.final_score
    if isinstance(entry, SearchResult):
        return entry.score
    if isinstance(entry, ScoredCandidate):
        return entry.blended
    return None
