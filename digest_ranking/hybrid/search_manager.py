"""Search manager for hybrid keyword and semantic ranking.

One pipeline serves every retrieval mode. The keyword scorer always runs
first and bounds the candidate set; embeddings are resolved for that subset
only (vector cache first, the embedding manager for gaps); the hybrid blender
combines both signals. When the semantic side is unavailable for any reason
the pipeline degrades to keyword ordering instead of failing.

Fallback chain
- HYBRID: blended ranking, else keyword ranking
- SEMANTIC_ONLY: semantic ranking, topped up from term overlap
- KEYWORD_ONLY: keyword ranking
"""

import asyncio
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np
import structlog

from ..common.config import RankingConfig, get_config
from ..common.logging import configure_from_config, log_performance, request_context
from ..common.metrics import MetricsCollector, measure_time
from ..encoders.embedding_manager import EmbeddingManager, create_embedding_manager
from ..encoders.providers import create_embedding_provider
from ..models import Item, RankedItem, ScoredCandidate, SearchResult, SelectionRecord
from ..ranking.diversity import DiversitySelector
from ..ranking.fusion import HybridBlender, Mode, keyword_order, rank_key, rerank, validate_weight
from ..ranking.keyword import KeywordScorer, TermOverlapScorer
from ..ranking.similarity import clamp_unit, top_k
from ..retrievers.cache_manager import SearchCacheManager, create_search_cache_manager
from ..storage.selections import SelectionStore, create_selection_store
from ..vector_store.cache import VectorCache
from ..vector_store.factory import create_vector_cache
from .digest import DigestResult, DigestScorer

logger = structlog.get_logger("hybrid.search_manager")


def dedupe_items(items: Iterable[Item]) -> List[Item]:
    """Drop repeated ids; the first occurrence wins."""
    seen: Set[str] = set()
    unique = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        unique.append(item)
    return unique


class SearchManager:
    """Manages hybrid search and digest ranking.

    Responsibilities
    - Score the pool lexically and bound the semantic candidate set
    - Resolve vectors through the vector cache and the embedding manager
    - Blend, fall back, and rank
    - Apply diversity-constrained selection and persist its record
    """

    def __init__(
        self,
        config: RankingConfig,
        vector_cache: VectorCache,
        embedding_manager: EmbeddingManager,
        keyword_scorer: Optional[KeywordScorer] = None,
        cache_manager: Optional[SearchCacheManager] = None,
        selection_store: Optional[SelectionStore] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """Construct a search manager.

        Parameters
        - config: ``RankingConfig`` with budgets, weights and timeouts
        - vector_cache: Injected ``VectorCache``
        - embedding_manager: Injected ``EmbeddingManager``
        - keyword_scorer: Optional scorer; built from config when omitted
        - cache_manager: Optional query-embedding and result cache
        - selection_store: Optional store for selection records
        - metrics: Optional ``MetricsCollector``
        """
        self.config = config
        self.vector_cache = vector_cache
        self.embedding_manager = embedding_manager
        self.keyword_scorer = keyword_scorer or KeywordScorer(
            title_weight=config.rank_keyword_title_weight,
            term_cap=config.rank_keyword_term_cap,
            phrase_bonus=config.rank_keyword_phrase_bonus,
        )
        self.fallback_scorer = TermOverlapScorer(min_term_length=config.rank_fallback_min_term_length)
        self.blender = HybridBlender(semantic_weight=config.rank_search_semantic_weight)
        self.digest_scorer = DigestScorer(
            relevance_weight=config.rank_digest_relevance_weight,
            bm25_weight=config.rank_digest_bm25_weight,
            recency_weight=config.rank_digest_recency_weight,
            half_life_days=config.rank_recency_half_life_days,
            period_days=config.rank_digest_period_days,
        )
        self.metrics = metrics
        self.diversity_selector = DiversitySelector(
            per_source_cap=config.rank_per_source_cap,
            metrics=metrics,
        )
        self.cache_manager = cache_manager
        self.selection_store = selection_store
        self._pending_writes: Set[asyncio.Task] = set()

    async def search(
        self,
        query: str,
        items: Sequence[Item],
        limit: int = 10,
        mode: Mode = Mode.HYBRID,
        semantic_weight: Optional[float] = None,
    ) -> List[SearchResult]:
        """Rank ``items`` for ``query``.

        Returns at most ``limit`` results, best first, with no repeated id.
        Raises ``ValueError`` for a non-positive ``limit`` or a weight
        outside [0, 1].
        """
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise ValueError(f"limit must be a positive integer, got {limit!r}")
        mode = Mode(mode)
        weight = validate_weight(
            self.config.rank_search_semantic_weight if semantic_weight is None else semantic_weight
        )

        start_time = time.time()
        pool = dedupe_items(items)
        by_id = {item.id: item for item in pool}

        key_data = None
        if self.cache_manager is not None:
            key_data = {
                "query": query,
                "mode": mode.value,
                "weight": weight,
                "limit": limit,
                "pool": self.cache_manager.pool_fingerprint(by_id),
                "model": self.vector_cache.model,
            }
            cached = await self.cache_manager.get_cached_search_results(key_data)
            if cached is not None:
                logger.info("Search cache hit", query=query[:50])
                return [
                    SearchResult(id=entry["id"], score=entry["score"], signals=entry["signals"], item=by_id[entry["id"]])
                    for entry in cached
                    if entry["id"] in by_id
                ]

        with request_context(query=query, mode=mode.value):
            results, degraded = await self._search(query, pool, limit, mode, weight)

        # Degraded rankings are not cached so they don't outlive the outage
        if key_data is not None and not degraded:
            await self.cache_manager.cache_search_results(key_data, [r.to_dict() for r in results])

        duration = time.time() - start_time
        if self.metrics:
            self.metrics.record_search(mode.value, duration)
        log_performance(
            "search",
            duration * 1000,
            mode=mode.value,
            pool_size=len(pool),
            results_count=len(results),
            degraded=degraded
        )
        return results

    async def _search(
        self,
        query: str,
        pool: List[Item],
        limit: int,
        mode: Mode,
        weight: float,
    ) -> Tuple[List[SearchResult], bool]:
        by_id = {item.id: item for item in pool}
        keyword_scores = self.keyword_scorer.score(query, pool)
        if not keyword_scores:
            return [], False

        if mode is Mode.KEYWORD_ONLY:
            return self._keyword_results(keyword_scores, by_id, limit), False

        subset = self._candidate_subset(keyword_scores, by_id)
        semantic = await self._resolve_semantic(query, subset)

        if mode is Mode.HYBRID:
            if semantic is None:
                return self._keyword_results(keyword_scores, by_id, limit), True

            candidates = [
                ScoredCandidate(
                    item=item,
                    keyword=keyword_scores[item.id],
                    semantic=clamp_unit(semantic[item.id]) if item.id in semantic else None,
                )
                for item in subset
            ]
            blended = self.blender.blend(candidates, weight)
            return [
                SearchResult(
                    id=c.id,
                    score=c.blended,
                    signals={"keyword": c.keyword, "semantic": c.semantic, "blended": c.blended, "source": "hybrid"},
                    item=c.item,
                )
                for c in blended[:limit]
            ], False

        return self._semantic_results(query, pool, semantic, keyword_scores, by_id, limit), semantic is None

    def _candidate_subset(self, keyword_scores: Mapping[str, float], by_id: Mapping[str, Item]) -> List[Item]:
        """Top ``semantic_budget`` items by raw keyword score (ties by id)."""
        ordered = sorted(keyword_scores.items(), key=lambda pair: rank_key(pair[0], pair[1]))
        return [by_id[item_id] for item_id, _ in ordered[:self.config.rank_semantic_budget]]

    def _keyword_results(
        self,
        keyword_scores: Mapping[str, float],
        by_id: Mapping[str, Item],
        limit: int,
    ) -> List[SearchResult]:
        return [
            SearchResult(
                id=item_id,
                score=score,
                signals={"keyword": score, "semantic": None, "blended": score, "source": "keyword"},
                item=by_id[item_id],
            )
            for item_id, score in keyword_order(dict(keyword_scores))[:limit]
        ]

    def _semantic_results(
        self,
        query: str,
        pool: List[Item],
        semantic: Optional[Dict[str, float]],
        keyword_scores: Mapping[str, float],
        by_id: Mapping[str, Item],
        limit: int,
    ) -> List[SearchResult]:
        results: List[SearchResult] = []
        if semantic is not None:
            # Insertion order is best first
            ranked = [(item_id, clamp_unit(score)) for item_id, score in semantic.items() if score > 0]
            results = [
                SearchResult(
                    id=item_id,
                    score=score,
                    signals={"keyword": keyword_scores.get(item_id, 0.0), "semantic": score, "blended": score, "source": "semantic"},
                    item=by_id[item_id],
                )
                for item_id, score in ranked[:limit]
            ]

        floor = max(self.config.rank_min_results_floor, limit // 2)
        if len(results) >= floor:
            return results

        present = {r.id for r in results}
        overlap = self.fallback_scorer.score(query, pool)
        for item_id, score in sorted(overlap.items(), key=lambda pair: rank_key(*pair)):
            if len(results) >= limit:
                break
            if score <= 0 or item_id in present:
                continue
            results.append(SearchResult(
                id=item_id,
                score=score,
                signals={"keyword": keyword_scores.get(item_id, 0.0), "semantic": None, "blended": score, "source": "term_overlap"},
                item=by_id[item_id],
            ))
            present.add(item_id)

        logger.debug("Semantic results topped up from term overlap", results_count=len(results), floor=floor)
        return results

    async def _resolve_semantic(self, query: str, subset: Sequence[Item]) -> Optional[Dict[str, float]]:
        """Cosine scores for ``subset``, or ``None`` when unavailable."""
        if not subset:
            return None
        try:
            return await asyncio.wait_for(
                self._semantic_scores(query, subset),
                timeout=self.config.rank_embedding_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Embedding resolution timed out, ranking keyword-only",
                timeout=self.config.rank_embedding_timeout,
                candidates=len(subset)
            )
            self._record_degradation("timeout")
            return None

    async def _semantic_scores(self, query: str, subset: Sequence[Item]) -> Optional[Dict[str, float]]:
        query_vector = await self._query_vector(query)
        if query_vector is None:
            logger.warning("No semantic query vector, ranking keyword-only", query=query[:50])
            self._record_degradation("query_fallback")
            return None

        vectors = await self._item_vectors(subset)
        if not vectors:
            logger.warning("No candidate vectors available, ranking keyword-only", candidates=len(subset))
            self._record_degradation("no_vectors")
            return None

        # Best first, ties by id
        matches = top_k(query_vector, vectors.items(), len(vectors))
        return {match.id: match.score for match in matches}

    async def _query_vector(self, query: str) -> Optional[np.ndarray]:
        model = self.vector_cache.model
        if self.cache_manager is not None:
            cached = await self.cache_manager.get_cached_query_embedding(query, model)
            if cached is not None:
                return self.vector_cache.conform(cached)

        result = await self.embedding_manager.embed(query)
        if result.is_fallback:
            return None

        vector = self.vector_cache.conform(result.vector)
        if self.cache_manager is not None:
            await self.cache_manager.cache_query_embedding(query, vector, model)
        return vector

    async def _item_vectors(self, items: Sequence[Item]) -> Dict[str, np.ndarray]:
        """Vectors for ``items``: cache hits plus freshly embedded gaps.

        Fresh real vectors are written back per chunk as independent tasks,
        so a timeout or cancellation here never aborts writes already issued.
        Fallback vectors are neither returned nor written.
        """
        cached = await self.vector_cache.get([item.id for item in items])
        vectors = {item_id: embedding.values for item_id, embedding in cached.items()}

        missing = [item for item in items if item.id not in vectors]
        if not missing:
            return vectors

        writes = []
        texts = [item.text_for_embedding() for item in missing]
        async for offset, results in self.embedding_manager.iter_batches(texts):
            fresh = []
            for item, result in zip(missing[offset:offset + len(results)], results):
                if result.is_fallback:
                    continue
                vector = self.vector_cache.conform(result.vector)
                vectors[item.id] = vector
                fresh.append((item.id, vector))
            if fresh:
                writes.append(self._schedule_write(fresh))

        if writes:
            await asyncio.shield(asyncio.gather(*writes))

        logger.debug(
            "Resolved candidate vectors",
            cached=len(cached),
            embedded=len(vectors) - len(cached),
            missing=len(items) - len(vectors)
        )
        return vectors

    def _schedule_write(self, entries: List[Tuple[str, np.ndarray]]) -> asyncio.Task:
        task = asyncio.ensure_future(self.vector_cache.put_batch(entries))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)
        return task

    def _record_degradation(self, reason: str) -> None:
        if self.metrics:
            self.metrics.record_semantic_degradation(reason)

    def rerank(
        self,
        ranked_items: Sequence[RankedItem],
        semantic_scores: Mapping[str, float],
        weight: Optional[float] = None,
    ) -> List[RankedItem]:
        """Blend semantic scores into ranked items (digest weight by default)."""
        return rerank(
            ranked_items,
            semantic_scores,
            self.config.rank_digest_semantic_weight if weight is None else weight,
        )

    @measure_time("rank_digest")
    async def rank_digest(
        self,
        query: str,
        items: Sequence[Item],
        relevance: Optional[Mapping[str, float]] = None,
        limit: int = 10,
        semantic_weight: Optional[float] = None,
        target_size: Optional[int] = None,
        per_source_cap: Optional[int] = None,
        category: Optional[str] = None,
        period: Optional[str] = None,
    ) -> DigestResult:
        """Rank ``items`` for a digest and optionally select a diverse subset.

        Digest scores (relevance, BM25, recency) are computed for the whole
        pool; semantic scores for the top ``semantic_budget`` are folded in
        with the digest semantic weight. ``ranked`` is capped at ``limit``;
        selection walks the full reranked pool.
        """
        if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
            raise ValueError(f"limit must be a positive integer, got {limit!r}")
        weight = validate_weight(
            self.config.rank_digest_semantic_weight if semantic_weight is None else semantic_weight
        )

        ranked = self.digest_scorer.score(query, dedupe_items(items), relevance)
        if not ranked:
            return DigestResult(ranked=[], selection=SelectionRecord() if target_size is not None else None)

        if query.strip():
            head = [r.item for r in ranked[:self.config.rank_semantic_budget]]
            with request_context(query=query, mode="digest"):
                semantic = await self._resolve_semantic(query, head)
            if semantic:
                ranked = rerank(ranked, semantic, weight)

        selection = None
        if target_size is not None:
            selection = await self.select(
                ranked,
                target_size,
                per_source_cap=per_source_cap,
                category=category,
                period=period,
            )

        return DigestResult(ranked=ranked[:limit], selection=selection)

    async def select(
        self,
        ranked_pool: Sequence[Any],
        target_size: int,
        per_source_cap: Optional[int] = None,
        min_score: Optional[float] = None,
        category: Optional[str] = None,
        period: Optional[str] = None,
    ) -> SelectionRecord:
        """Diversity-constrained selection; persisted when ``category`` and ``period`` are given."""
        record = self.diversity_selector.select(
            ranked_pool,
            target_size,
            per_source_cap=per_source_cap,
            min_score=min_score,
        )

        if self.selection_store is not None and category and period:
            try:
                await self.selection_store.save_selection(record, category, period)
            except Exception as e:
                logger.warning("Failed to persist selection record", category=category, period=period, error=str(e))

        return record

    async def invalidate_item(self, item_id: str) -> int:
        """Drop cached results that mention ``item_id``."""
        if self.cache_manager is None:
            return 0
        return await self.cache_manager.invalidate_item(item_id)

    async def health_check(self) -> bool:
        try:
            return await self.vector_cache.store.health_check()
        except Exception as e:
            logger.error("Health check failed", error=str(e))
            return False

    async def flush_pending_writes(self) -> None:
        """Wait for every vector write issued so far."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    async def close(self) -> None:
        """Await pending cache writes and close owned resources."""
        await self.flush_pending_writes()

        await self.embedding_manager.close()
        await self.vector_cache.close()
        if self.cache_manager is not None:
            await self.cache_manager.close()
        if self.selection_store is not None:
            await self.selection_store.close()

        logger.info("Search manager closed")


def create_search_manager(
    config: Optional[RankingConfig] = None,
    metrics: Optional[MetricsCollector] = None,
) -> SearchManager:
    """Wire a ``SearchManager`` from configuration.

    Configures logging, selects the embedding provider once, and builds the
    vector cache, optional result cache and selection store.
    """
    config = config or get_config()
    configure_from_config(config)
    metrics = metrics or MetricsCollector()

    provider = create_embedding_provider(config)
    cache_manager = None
    if config.rank_cache_enabled:
        cache_manager = create_search_cache_manager(
            redis_url=config.rank_redis_url,
            embedding_cache_ttl=config.rank_query_embedding_cache_ttl,
            result_cache_ttl=config.rank_result_cache_ttl,
            metrics=metrics
        )

    return SearchManager(
        config=config,
        vector_cache=create_vector_cache(config, metrics=metrics),
        embedding_manager=create_embedding_manager(config, provider, metrics),
        cache_manager=cache_manager,
        selection_store=create_selection_store(config.rank_selection_backend, config.rank_vector_db_dsn),
        metrics=metrics,
    )
