"""Scoring and selection building blocks.

- ``keyword``: keyword scorer, term-overlap fallback, BM25
- ``similarity``: cosine similarity and top-k
- ``fusion``: retrieval modes, weighted blending, reranking
- ``diversity``: diversity-constrained selection
"""

from .diversity import DiversitySelector, normalize_url_key
from .fusion import HybridBlender, Mode, blend_score, rank_key, rerank
from .keyword import BM25Index, KeywordScorer, TermOverlapScorer, normalize_scores, tokenize
from .similarity import SimilarityMatch, clamp_unit, cosine_similarity, top_k

__all__ = [
    "BM25Index",
    "DiversitySelector",
    "HybridBlender",
    "KeywordScorer",
    "Mode",
    "SimilarityMatch",
    "TermOverlapScorer",
    "blend_score",
    "clamp_unit",
    "cosine_similarity",
    "normalize_scores",
    "normalize_url_key",
    "rank_key",
    "rerank",
    "tokenize",
    "top_k",
]
