"""In-memory vector store.

Process-local backend used for tests and single-process deployments. It can
be switched "offline" to simulate an unreachable backing store.
"""

from typing import Dict, List, Sequence

from ..models import EmbeddingVector
from .base import VectorStore, VectorStoreConnectionError


class InMemoryVectorStore(VectorStore):
    """Dictionary-backed ``VectorStore``."""

    def __init__(self):
        self._vectors: Dict[str, EmbeddingVector] = {}
        self.available = True
        self.reads = 0
        self.writes = 0

    def _check(self):
        if not self.available:
            raise VectorStoreConnectionError("In-memory vector store is offline")

    async def get_embeddings(self, item_ids: Sequence[str]) -> Dict[str, EmbeddingVector]:
        self._check()
        self.reads += 1
        return {item_id: self._vectors[item_id] for item_id in item_ids if item_id in self._vectors}

    async def store_embeddings(self, embeddings: List[EmbeddingVector]) -> int:
        self._check()
        self.writes += 1
        for embedding in embeddings:
            self._vectors[embedding.item_id] = embedding
        return len(embeddings)

    async def delete_embeddings(self, item_ids: Sequence[str]) -> int:
        self._check()
        removed = 0
        for item_id in item_ids:
            if self._vectors.pop(item_id, None) is not None:
                removed += 1
        return removed

    async def get_embedding_count(self) -> int:
        self._check()
        return len(self._vectors)

    async def health_check(self) -> bool:
        return self.available
