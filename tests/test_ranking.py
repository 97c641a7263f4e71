"""Unit tests for ranking algorithms and rank fusion."""

import math
from datetime import datetime, timedelta, timezone

import pytest

from context_engine.errors import InvalidInput
from context_engine.rag.ranking import (FusionMethod, RankingAlgorithm, SimpleBM25,
                                        approximate_idf, assign_ranks, freshness_score, fuse,
                                        hybrid_fusion, merge_results, rank,
                                        reciprocal_rank_fusion, weighted_fusion)

from conftest import make_result


NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


class TestScorers:
    """Tests for the per-algorithm scorers."""

    def test_semantic_orders_by_score_stably(self):
        results = [make_result("a#0", "alpha", 0.5), make_result("b#0", "beta", 0.9),
                   make_result("c#0", "gamma", 0.5)]
        ranked = rank(results, "anything", RankingAlgorithm.SEMANTIC)
        assert [r.id for r in ranked] == ["b#0", "a#0", "c#0"]

    def test_bm25_prefers_matching_terms(self):
        results = [make_result("a#0", "cooking pasta recipes", 0.9),
                   make_result("b#0", "python programming guide for python developers", 0.1)]
        ranked = rank(results, "python guide", "bm25")
        assert ranked[0].id == "b#0"
        assert ranked[0].score > 0
        assert ranked[1].score == 0

    def test_bm25_uses_approximate_idf(self):
        bm25 = SimpleBM25()
        bm25.index(["python"])
        # Single term, tf=1, doc length equals average length
        expected = approximate_idf() * (1.2 + 1) / (1 + 1.2)
        assert bm25.score("python") == [pytest.approx(expected)]
        assert approximate_idf() == pytest.approx(math.log(1 + 1000 / 2))

    def test_bm25_empty_candidates(self):
        bm25 = SimpleBM25()
        bm25.index([])
        assert bm25.avg_doc_length == 100
        assert bm25.score("anything") == []

    def test_tf_idf_counts_term_frequency(self):
        results = [make_result("a#0", "python", 0.0), make_result("b#0", "python python", 0.0)]
        ranked = rank(results, "python", "tf_idf")
        assert [r.id for r in ranked] == ["b#0", "a#0"]
        assert ranked[0].score == pytest.approx(2 * ranked[1].score)

    def test_learning_to_rank_blends_features(self):
        fresh = make_result("a#0", "python tips", 0.5, created_at=NOW.isoformat())
        stale = make_result("b#0", "python tips", 0.5,
                            created_at=(NOW - timedelta(days=90)).isoformat())
        ranked = rank([stale, fresh], "python tips", "learning_to_rank", now=NOW)
        assert ranked[0].id == "a#0"
        # 0.4*0.5 + 0.2*1 + 0.2*1 + 0.1*1 + 0.1*0
        assert ranked[0].score == pytest.approx(0.7)

    def test_freshness_of_undated_chunk(self):
        assert freshness_score(None, NOW) == 0.5
        assert freshness_score(NOW - timedelta(days=60), NOW) == 0.0

    def test_unknown_algorithm_is_rejected(self):
        with pytest.raises(InvalidInput):
            rank([], "q", "magic")

    def test_assign_ranks_with_offset(self):
        results = assign_ranks([make_result("a#0", "a"), make_result("b#0", "b")], offset=5)
        assert [r.rank for r in results] == [6, 7]


class TestFusion:
    """Tests for fusing several ranked lists."""

    def test_rrf_single_list_keeps_order(self):
        results = [make_result("a#0", "a", 0.9), make_result("b#0", "b", 0.8)]
        fused = reciprocal_rank_fusion([results])
        assert [r.id for r in fused] == ["a#0", "b#0"]
        assert fused[0].score == pytest.approx(1 / 61)
        assert fused[1].score == pytest.approx(1 / 62)

    def test_rrf_rewards_agreement(self):
        list_a = [make_result("x#0", "x"), make_result("y#0", "y")]
        list_b = [make_result("y#0", "y"), make_result("z#0", "z")]
        fused = reciprocal_rank_fusion([list_a, list_b])
        assert fused[0].id == "y#0"
        assert fused[0].score == pytest.approx(1 / 62 + 1 / 61)

    def test_weighted_fusion(self):
        semantic = [make_result("a#0", "a", 1.0), make_result("b#0", "b", 0.5)]
        keyword = [make_result("b#0", "b", 1.0)]
        fused = weighted_fusion([semantic, keyword], [0.7, 0.3])
        scores = {r.id: r.score for r in fused}
        assert scores["a#0"] == pytest.approx(0.7)
        assert scores["b#0"] == pytest.approx(0.85)
        assert fused[0].id == "b#0"

    def test_weighted_fusion_defaults_to_equal_weights(self):
        fused = weighted_fusion([[make_result("a#0", "a", 1.0)], [make_result("a#0", "a", 0.5)]])
        assert fused[0].score == pytest.approx(0.75)

    def test_weighted_fusion_rejects_wrong_weight_count(self):
        with pytest.raises(InvalidInput):
            weighted_fusion([[make_result("a#0", "a")]], [0.5, 0.5])

    def test_hybrid_fusion_uses_default_split(self):
        fused = hybrid_fusion([make_result("a#0", "a", 1.0)], [make_result("a#0", "a", 1.0)])
        assert fused[0].score == pytest.approx(1.0)

    def test_merge_keeps_best_score(self):
        fused = merge_results([[make_result("a#0", "a", 0.2)],
                               [make_result("a#0", "a", 0.6), make_result("b#0", "b", -0.1)]])
        assert [(r.id, r.score) for r in fused] == [("a#0", 0.6), ("b#0", -0.1)]

    def test_fusion_ties_keep_first_seen_order(self):
        fused = weighted_fusion([[make_result("a#0", "a", 0.5)], [make_result("b#0", "b", 0.5)]])
        assert [r.id for r in fused] == ["a#0", "b#0"]

    def test_fuse_dispatch(self):
        lists = [[make_result("a#0", "a", 0.3)]]
        assert fuse(lists, FusionMethod.MERGE)[0].score == 0.3
        assert fuse(lists, "weighted")[0].score == pytest.approx(0.3)
        with pytest.raises(InvalidInput):
            fuse(lists, "average")
