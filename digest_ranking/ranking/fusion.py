"""Score fusion for hybrid retrieval.

One weighted blend serves both entry points: query search (keyword side is
the normalized keyword score) and digest reranking (keyword side is the
digest final score). Only the default weight differs between the two.
"""

from dataclasses import replace
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import structlog

from ..models import RankedItem, ScoredCandidate
from .similarity import clamp_unit

logger = structlog.get_logger("ranking.fusion")


class Mode(str, Enum):
    """Retrieval mode for ``SearchManager.search``."""
    KEYWORD_ONLY = "keyword_only"
    SEMANTIC_ONLY = "semantic_only"
    HYBRID = "hybrid"


def validate_weight(weight: float) -> float:
    if not 0.0 <= weight <= 1.0:
        raise ValueError(f"Semantic weight must be within [0, 1], got {weight}")
    return weight


def blend_score(semantic: float, keyword: float, weight: float) -> float:
    """Convex combination ``semantic * w + keyword * (1 - w)``."""
    validate_weight(weight)
    return semantic * weight + keyword * (1.0 - weight)


def rank_key(entry_id: str, score: float) -> Tuple[float, str]:
    """Sort key: score descending, then id ascending."""
    return (-score, entry_id)


class HybridBlender:
    """Blend keyword and semantic signals for a candidate subset.

    Keyword scores are normalized against the subset maximum and semantic
    scores clamped to [0, 1]. Candidates without a semantic score keep their
    normalized keyword score. Zero blended scores are dropped.
    """

    def __init__(self, semantic_weight: float = 0.55):
        self.semantic_weight = validate_weight(semantic_weight)

    def blend(
        self,
        candidates: Sequence[ScoredCandidate],
        semantic_weight: Optional[float] = None,
    ) -> List[ScoredCandidate]:
        weight = self.semantic_weight if semantic_weight is None else validate_weight(semantic_weight)
        if not candidates:
            return []

        top_keyword = max(c.keyword for c in candidates)
        blended = []
        for candidate in candidates:
            keyword = candidate.keyword / top_keyword if top_keyword > 0 else 0.0
            if candidate.semantic is None:
                score = keyword
            else:
                score = blend_score(clamp_unit(candidate.semantic), keyword, weight)

            if score <= 0:
                continue
            blended.append(replace(candidate, keyword=keyword, blended=score))

        blended.sort(key=lambda c: rank_key(c.id, c.blended))

        logger.debug(
            "Hybrid blend completed",
            candidate_count=len(candidates),
            blended_count=len(blended),
            semantic_weight=weight
        )
        return blended


def rerank(
    ranked_items: Sequence[RankedItem],
    semantic_scores: Mapping[str, float],
    weight: float = 0.2,
) -> List[RankedItem]:
    """Fold semantic scores into already-ranked items.

    ``final * (1 - w) + semantic * w`` for items with a semantic score;
    others keep their score. Without any semantic score the input order is
    returned unchanged.
    """
    validate_weight(weight)
    if not semantic_scores:
        return list(ranked_items)

    reranked = []
    for item in ranked_items:
        if item.id not in semantic_scores:
            reranked.append(item)
            continue

        semantic = clamp_unit(semantic_scores[item.id])
        reranked.append(replace(
            item,
            final_score=blend_score(semantic, item.final_score, weight),
            reasoning=f"{item.reasoning} | Semantic={semantic:.2f} (blended with weight={weight})",
        ))

    reranked.sort(key=lambda r: rank_key(r.id, r.final_score))
    return reranked


def keyword_order(scores: Dict[str, float]) -> List[Tuple[str, float]]:
    """Positive scores normalized to the pool max, best first."""
    positive = {key: value for key, value in scores.items() if value > 0}
    if not positive:
        return []
    top = max(positive.values())
    ordered = [(key, value / top) for key, value in positive.items()]
    ordered.sort(key=lambda pair: rank_key(pair[0], pair[1]))
    return ordered
