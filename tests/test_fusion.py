"""Tests for score fusion."""

import itertools

import pytest

from digest_ranking.models import RankedItem, ScoredCandidate
from digest_ranking.ranking.fusion import HybridBlender, Mode, blend_score, keyword_order, rank_key, rerank

from tests.helpers import make_item


def test_blend_score_is_convex():
    """The blend always lies between its two inputs."""
    grid = [0.0, 0.1, 0.35, 0.5, 0.9, 1.0]
    for semantic, keyword, weight in itertools.product(grid, grid, grid):
        score = blend_score(semantic, keyword, weight)
        assert min(semantic, keyword) - 1e-9 <= score <= max(semantic, keyword) + 1e-9


def test_blend_score_endpoints():
    assert blend_score(0.8, 0.2, 1.0) == pytest.approx(0.8)
    assert blend_score(0.8, 0.2, 0.0) == pytest.approx(0.2)


@pytest.mark.parametrize("weight", [-0.1, 1.5])
def test_invalid_weight_raises(weight):
    with pytest.raises(ValueError):
        blend_score(0.5, 0.5, weight)
    with pytest.raises(ValueError):
        HybridBlender(semantic_weight=weight)


def test_rank_key_breaks_ties_by_id():
    entries = [("b", 0.5), ("a", 0.5), ("c", 0.9)]
    assert [e for e, _ in sorted(entries, key=lambda pair: rank_key(*pair))] == ["c", "a", "b"]


def test_mode_values():
    assert Mode("hybrid") is Mode.HYBRID
    assert Mode.KEYWORD_ONLY.value == "keyword_only"


def test_hybrid_blender():
    """Keyword scores normalize to the subset max; missing semantic keeps keyword."""
    blender = HybridBlender(semantic_weight=0.5)
    candidates = [
        ScoredCandidate(item=make_item("a", "A"), keyword=10.0, semantic=0.2),
        ScoredCandidate(item=make_item("b", "B"), keyword=5.0, semantic=1.0),
        ScoredCandidate(item=make_item("c", "C"), keyword=4.0, semantic=None),
        ScoredCandidate(item=make_item("d", "D"), keyword=0.0, semantic=0.0),
        ScoredCandidate(item=make_item("e", "E"), keyword=0.0, semantic=1.4),
    ]

    blended = blender.blend(candidates)

    assert [c.id for c in blended] == ["b", "a", "e", "c"]
    scores = {c.id: c.blended for c in blended}
    assert scores["b"] == pytest.approx(0.75)
    assert scores["a"] == pytest.approx(0.6)
    # Semantic scores are clamped to [0, 1]
    assert scores["e"] == pytest.approx(0.5)
    assert scores["c"] == pytest.approx(0.4)
    # Inputs are not mutated
    assert candidates[0].keyword == 10.0


def test_hybrid_blender_weight_override():
    blender = HybridBlender(semantic_weight=0.5)
    candidates = [
        ScoredCandidate(item=make_item("a", "A"), keyword=1.0, semantic=0.0),
        ScoredCandidate(item=make_item("b", "B"), keyword=0.5, semantic=1.0),
    ]

    assert [c.id for c in blender.blend(candidates, semantic_weight=0.0)] == ["a", "b"]
    assert [c.id for c in blender.blend(candidates, semantic_weight=1.0)] == ["b"]
    assert blender.blend([]) == []


def _ranked(item_id, score):
    return RankedItem(item=make_item(item_id, item_id.upper()), final_score=score, reasoning="base")


def test_rerank_blends_semantic_scores():
    ranked = [_ranked("a", 0.9), _ranked("b", 0.6), _ranked("c", 0.5)]

    reranked = rerank(ranked, {"b": 1.0, "c": 0.0}, weight=0.5)

    assert [r.id for r in reranked] == ["a", "b", "c"]
    scores = {r.id: r.final_score for r in reranked}
    assert scores["a"] == pytest.approx(0.9)
    assert scores["b"] == pytest.approx(0.8)
    assert scores["c"] == pytest.approx(0.25)
    assert "Semantic=1.00" in reranked[1].reasoning


def test_rerank_without_semantic_scores_keeps_order():
    ranked = [_ranked("b", 0.1), _ranked("a", 0.9)]

    assert [r.id for r in rerank(ranked, {})] == ["b", "a"]


def test_keyword_order():
    ordered = keyword_order({"a": 2.0, "b": 4.0, "c": 0.0, "d": 2.0})

    assert ordered == [("b", 1.0), ("a", 0.5), ("d", 0.5)]
    assert keyword_order({"a": 0.0}) == []
