"""Digest scoring: relevance, BM25 and recency combined per item.

The relevance signal comes from upstream (an opaque per-item float); when
an item has none, its BM25 score stands in for it. Recency decays
exponentially with a configurable half-life and never drops below 0.2.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Mapping, Optional
from urllib.parse import urlsplit

import structlog

from ..models import Item, RankedItem, SelectionRecord
from ..ranking.fusion import rank_key
from ..ranking.keyword import BM25Index

logger = structlog.get_logger("hybrid.digest")

RECENCY_FLOOR = 0.2


def recency_score(published_at: datetime, half_life_days: float, now: Optional[datetime] = None) -> float:
    """``2 ** (-age_days / half_life_days)`` clamped to [0.2, 1.0]."""
    now = now or datetime.now(timezone.utc)
    if published_at.tzinfo is None:
        published_at = published_at.replace(tzinfo=timezone.utc)

    age_days = (now - published_at).total_seconds() / 86400
    decayed = 2 ** (-age_days / half_life_days)
    return max(RECENCY_FLOOR, min(1.0, decayed))


def normalize_relevance(value: float) -> float:
    """Map a relevance value to [0, 1]; values on a 0-10 scale are divided by 10."""
    if value > 1.0:
        value = value / 10.0
    return min(1.0, max(0.0, value))


def has_public_url(url: str) -> bool:
    try:
        parts = urlsplit(url or "")
    except ValueError:
        return False
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return False
    return parts.hostname not in ("localhost", "127.0.0.1")


@dataclass
class DigestResult:
    """Ranked digest candidates and, when requested, the diversity selection."""
    ranked: List[RankedItem] = field(default_factory=list)
    selection: Optional[SelectionRecord] = None

    @property
    def items(self) -> List[RankedItem]:
        if self.selection is not None:
            return list(self.selection.selected)
        return list(self.ranked)


class DigestScorer:
    """Weighted combination of relevance, BM25 and recency.

    Parameters
    - relevance_weight, bm25_weight, recency_weight: Component weights
    - half_life_days: Age at which recency is 0.5
    - period_days: Optional window; older items are not ranked
    """

    def __init__(
        self,
        relevance_weight: float = 0.45,
        bm25_weight: float = 0.35,
        recency_weight: float = 0.2,
        half_life_days: float = 5.0,
        period_days: Optional[int] = None,
    ):
        if half_life_days <= 0:
            raise ValueError("half_life_days must be positive")
        self.relevance_weight = relevance_weight
        self.bm25_weight = bm25_weight
        self.recency_weight = recency_weight
        self.half_life_days = half_life_days
        self.period_days = period_days

    def eligible(self, items: Iterable[Item], now: datetime) -> List[Item]:
        """Items inside the period window that carry a public http(s) URL."""
        cutoff = now - timedelta(days=self.period_days) if self.period_days else None
        kept = []
        for item in items:
            if not has_public_url(item.url):
                logger.debug("Skipping item without public URL", item_id=item.id)
                continue
            published = item.published_at
            if published.tzinfo is None:
                published = published.replace(tzinfo=timezone.utc)
            if cutoff is not None and published < cutoff:
                continue
            kept.append(item)
        return kept

    def score(
        self,
        query: str,
        items: Iterable[Item],
        relevance: Optional[Mapping[str, float]] = None,
        now: Optional[datetime] = None,
    ) -> List[RankedItem]:
        """Rank ``items`` for a digest, best first (ties by id)."""
        now = now or datetime.now(timezone.utc)
        relevance = relevance or {}
        candidates = self.eligible(items, now)
        if not candidates:
            return []

        index = BM25Index()
        index.add_documents(candidates)
        terms = [term for term in query.lower().split() if term]
        bm25 = index.normalize_scores(index.score(terms))

        ranked = []
        for item in candidates:
            bm25_score = bm25.get(item.id, 0.0)
            has_relevance = item.id in relevance and relevance[item.id] is not None
            relevance_score = normalize_relevance(relevance[item.id]) if has_relevance else bm25_score
            recency = recency_score(item.published_at, self.half_life_days, now)

            final = (
                self.relevance_weight * relevance_score
                + self.bm25_weight * bm25_score
                + self.recency_weight * recency
            )

            reasoning = " | ".join([
                f"Relevance={relevance_score:.2f}" + ("" if has_relevance else " (BM25 proxy)"),
                f"BM25={bm25_score:.2f}",
                f"Recency={recency:.2f}",
            ])

            ranked.append(RankedItem(
                item=item,
                final_score=final,
                relevance=relevance_score,
                bm25=bm25_score,
                recency=recency,
                reasoning=reasoning,
            ))

        ranked.sort(key=lambda r: rank_key(r.id, r.final_score))
        logger.info("Digest scoring completed", candidates=len(candidates), ranked=len(ranked))
        return ranked
