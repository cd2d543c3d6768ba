"""Vector similarity engine.

Cosine similarity and top-k selection over in-memory candidate vectors.
Vectors must share a dimension; reconciling foreign dimensions is the
vector cache's job, not this module's.
"""

from dataclasses import dataclass
from typing import Iterable, List, Tuple

import numpy as np

from ..vector_store.base import DimensionMismatchError


@dataclass(frozen=True)
class SimilarityMatch:
    id: str
    score: float


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine of the angle between ``a`` and ``b``.

    Raises ``DimensionMismatchError`` when the lengths differ; returns 0.0
    when either vector has zero magnitude.
    """
    a = np.asarray(a, dtype=np.float32).reshape(-1)
    b = np.asarray(b, dtype=np.float32).reshape(-1)
    if a.shape[0] != b.shape[0]:
        raise DimensionMismatchError(a.shape[0], b.shape[0])

    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


def clamp_unit(value: float) -> float:
    return min(1.0, max(0.0, value))


def top_k(
    query: np.ndarray,
    candidates: Iterable[Tuple[str, np.ndarray]],
    k: int,
) -> List[SimilarityMatch]:
    """The ``k`` most similar candidates, best first, ties by id."""
    if k <= 0:
        return []

    matches = [
        SimilarityMatch(id=candidate_id, score=cosine_similarity(query, vector))
        for candidate_id, vector in candidates
    ]
    matches.sort(key=lambda match: (-match.score, match.id))
    return matches[:k]
