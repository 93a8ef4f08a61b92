"""
Tests for similarity scoring: vector, structured, hybrid and recency.
"""

from datetime import timedelta

import pytest

from adorb.core.config import RAGConfig
from adorb.services.rag.models import CategoricalTrait
from adorb.services.rag.similarity import (
    hybrid_similarity,
    jaccard_similarity,
    neighbor_sort_key,
    recency_weight,
    score_neighbor,
    structured_similarity,
    vector_similarity,
    weighted_jaccard_similarity,
)


class TestVectorSimilarity:
    def test_identical(self):
        assert vector_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal_and_opposite_clamp_to_zero(self):
        assert vector_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert vector_similarity([1.0, 0.0], [-1.0, 0.0]) == 0.0

    def test_missing_or_mismatched_is_none(self):
        assert vector_similarity(None, [1.0]) is None
        assert vector_similarity([1.0], None) is None
        assert vector_similarity([1.0, 0.0], [1.0]) is None


class TestStructuredSimilarity:
    def test_identical_traits(self, make_orb):
        a = make_orb("a", traits={"hook": "curiosity", "ugc": True})
        b = make_orb("b", traits={"hook": "curiosity", "ugc": True})
        assert structured_similarity(a, b) == 1.0

    def test_disjoint_traits(self, make_orb):
        a = make_orb("a", traits={"hook": "curiosity"})
        b = make_orb("b", traits={"editing": "fast_cuts"})
        assert structured_similarity(a, b) == 0.0

    def test_jaccard_counts_matching_pairs_over_union(self, make_orb):
        a = make_orb("a", traits={"hook": "curiosity", "ugc": True, "subtitles": True})
        b = make_orb("b", traits={"hook": "curiosity", "ugc": False, "music": "upbeat"})
        # 1 match over {hook, ugc, subtitles, music}
        assert jaccard_similarity(a.traits, b.traits) == pytest.approx(0.25)

    def test_weighted_partial_credit(self):
        a = {"talent": CategoricalTrait(value="ugc")}
        b = {"talent": CategoricalTrait(value="ugc_testimonial")}
        assert weighted_jaccard_similarity(a, b) == pytest.approx(0.5)

    def test_weighted_uses_trait_weights(self, make_orb):
        a = make_orb("a", traits={"platform": "tiktok", "tone": "calm"})
        b = make_orb("b", traits={"platform": "tiktok", "tone": "urgent"})
        # platform (2.0) matches, tone (0.8) does not
        assert structured_similarity(a, b, "weighted-jaccard-v1") == pytest.approx(2.0 / 2.8)

    def test_unknown_method(self, make_orb):
        with pytest.raises(ValueError):
            structured_similarity(make_orb("a"), make_orb("b"), "cosine")

    def test_empty_traits(self):
        assert jaccard_similarity({}, {}) == 0.0


class TestHybridSimilarity:
    def test_blend(self):
        assert hybrid_similarity(1.0, 0.5, 0.6, 0.4) == pytest.approx(0.8)

    def test_missing_vector_credits_zero(self):
        assert hybrid_similarity(None, 0.5, 0.6, 0.4) == pytest.approx(0.2)
        assert hybrid_similarity(None, 1.0, 0.6, 0.4) == pytest.approx(0.4)

    def test_missing_vector_never_beats_full_match(self):
        assert hybrid_similarity(None, 1.0) < hybrid_similarity(0.9, 1.0)


class TestRecencyWeight:
    def test_fresh_is_one(self, now):
        assert recency_weight(now, now) == pytest.approx(1.0)

    def test_future_is_one(self, now):
        assert recency_weight(now + timedelta(days=3), now) == pytest.approx(1.0)

    def test_half_life(self, now):
        assert recency_weight(now - timedelta(days=30), now, 30.0, 0.1) == pytest.approx(0.55)

    def test_monotone_and_floored(self, now):
        weights = [recency_weight(now - timedelta(days=d), now) for d in (0, 10, 100, 1000, 10000)]
        assert weights == sorted(weights, reverse=True)
        assert all(w >= 0.1 for w in weights)
        assert weights[-1] > 0


class TestScoreNeighbor:
    def test_scores_in_unit_interval(self, make_orb, now):
        query = make_orb("q", embedding=[1.0, 0.0, 0.0])
        candidate = make_orb("c", score=70, embedding=[0.5, 0.5, 0.0], days_old=45)
        neighbor = score_neighbor(query, candidate, RAGConfig(), now)

        for value in (
            neighbor.vector_similarity,
            neighbor.structured_similarity,
            neighbor.hybrid_similarity,
            neighbor.recency_weight,
            neighbor.weighted_similarity,
        ):
            assert 0.0 <= value <= 1.0
        assert neighbor.vector_available is True
        assert neighbor.weighted_similarity == pytest.approx(neighbor.hybrid_similarity * neighbor.recency_weight)

    def test_newer_twin_ranks_higher(self, make_orb, now):
        traits = {"hook": "curiosity", "ugc": True}
        query = make_orb("q", traits=traits, embedding=[1.0, 0.0])
        recent = make_orb("recent", traits=traits, score=60, embedding=[1.0, 0.0], days_old=1)
        old = make_orb("old", traits=traits, score=60, embedding=[1.0, 0.0], days_old=400)

        config = RAGConfig()
        n_recent = score_neighbor(query, recent, config, now)
        n_old = score_neighbor(query, old, config, now)

        assert n_recent.hybrid_similarity == n_old.hybrid_similarity
        assert n_recent.weighted_similarity > n_old.weighted_similarity
        assert sorted([n_old, n_recent], key=neighbor_sort_key)[0].orb.id == "recent"

    def test_sort_key_breaks_ties_by_id(self, make_orb, now, make_neighbor):
        a = make_neighbor(make_orb("b-orb", days_old=1))
        b = make_neighbor(make_orb("a-orb", days_old=1))
        assert [n.orb.id for n in sorted([a, b], key=neighbor_sort_key)] == ["a-orb", "b-orb"]
