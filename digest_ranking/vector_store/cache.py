"""Vector cache in front of a ``VectorStore``.

The cache is the only place dimensions are reconciled: every vector read
from or written to the store, and every query vector, passes through
``VectorCache.conform``. Backend failures never propagate; a failed read is
an empty lookup and a failed write reports zero vectors written.
"""

from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from ..common.metrics import MetricsCollector
from ..models import EmbeddingVector
from .base import DimensionMismatchError, VectorStore

logger = structlog.get_logger("vector_store.cache")


def reproject_vector(
    vector: np.ndarray,
    target_dim: int,
    metrics: Optional[MetricsCollector] = None,
) -> np.ndarray:
    """Bring ``vector`` to ``target_dim``.

    Equal dimensions pass through. When the target is an exact multiple of
    the source, the vector is tiled and every copy after the first is scaled
    by 0.5, so 768 -> 1536 keeps the leading block intact. Any other shape
    raises ``DimensionMismatchError``.
    """
    array = np.asarray(vector, dtype=np.float32).reshape(-1)
    source_dim = array.shape[0]

    if source_dim == target_dim:
        return array

    if source_dim == 0 or target_dim < source_dim or target_dim % source_dim != 0:
        raise DimensionMismatchError(target_dim, source_dim, "no reprojection available")

    copies = target_dim // source_dim
    scales = np.repeat(
        np.array([1.0] + [0.5] * (copies - 1), dtype=np.float32),
        source_dim,
    )
    projected = np.tile(array, copies) * scales

    logger.warning(
        "Re-projected vector to configured dimension",
        source_dimension=source_dim,
        target_dimension=target_dim,
    )
    if metrics is not None:
        metrics.record_reprojection(source_dim, target_dim)

    return projected.astype(np.float32)


class VectorCache:
    """Read-through/write-through facade over a ``VectorStore``.

    Parameters
    - store: Backing key/value store
    - dimension: The one dimension every returned vector has
    - model: Model tag recorded on written vectors
    - metrics: Optional collector for hits, misses and reprojections
    """

    def __init__(
        self,
        store: VectorStore,
        dimension: int,
        model: str = "default",
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.dimension = dimension
        self.model = model
        self.metrics = metrics

    def conform(self, vector: np.ndarray) -> np.ndarray:
        return reproject_vector(vector, self.dimension, self.metrics)

    async def get(self, item_ids: Sequence[str]) -> Dict[str, EmbeddingVector]:
        """Look up vectors by id; misses are simply absent."""
        ids = list(dict.fromkeys(item_ids))
        if not ids:
            return {}

        try:
            found = await self.store.get_embeddings(ids)
        except Exception as e:
            logger.warning("Vector cache lookup failed", requested=len(ids), error=str(e))
            if self.metrics:
                self.metrics.record_cache_miss("vector", len(ids))
            return {}

        vectors = {}
        for item_id, embedding in found.items():
            try:
                values = self.conform(embedding.values)
            except DimensionMismatchError as e:
                # Foreign vectors that cannot be reconciled are treated as misses
                logger.warning("Discarding cached vector", item_id=item_id, error=str(e))
                continue
            vectors[item_id] = EmbeddingVector(
                item_id=item_id,
                values=values,
                model=embedding.model,
                generated_at=embedding.generated_at,
            )

        if self.metrics:
            self.metrics.record_cache_hit("vector", len(vectors))
            self.metrics.record_cache_miss("vector", len(ids) - len(vectors))

        return vectors

    async def put(self, item_id: str, vector: np.ndarray) -> int:
        return await self.put_batch([(item_id, vector)])

    async def put_batch(self, entries: Iterable[Tuple[str, np.ndarray]]) -> int:
        """Write (full replacement) a batch of vectors.

        Returns the number written; 0 when the backend failed.
        """
        embeddings: List[EmbeddingVector] = [
            EmbeddingVector(item_id=item_id, values=self.conform(vector), model=self.model)
            for item_id, vector in entries
        ]
        if not embeddings:
            return 0

        try:
            return await self.store.store_embeddings(embeddings)
        except Exception as e:
            logger.warning("Vector cache write failed", count=len(embeddings), error=str(e))
            return 0

    async def delete(self, item_ids: Sequence[str]) -> int:
        try:
            return await self.store.delete_embeddings(list(item_ids))
        except Exception as e:
            logger.warning("Vector cache delete failed", error=str(e))
            return 0

    async def close(self) -> None:
        await self.store.close()
