"""Request-level caches for search (query embeddings and results)."""
