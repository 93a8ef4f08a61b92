"""
Tests for template explanations, recommendations and experiment suggestions.
"""

import pytest

from adorb.services.rag.explanation import (
    explain_neighbors,
    explain_trait_effect,
    generate_experiment_suggestions,
    generate_explanation,
    generate_recommendations,
    legacy_explanation,
    summarize,
)
from adorb.services.rag.models import (
    BoolTrait,
    CategoricalTrait,
    ContrastiveAnalysis,
    EffectDirection,
    TraitEffect,
)


def _effect(trait="hook", value="curiosity", lift=20.0, lift_percent=33.3, confidence=0.4,
            n_with=5, n_without=5, in_query=True, recommendation=None):
    trait_value = BoolTrait(value=value) if isinstance(value, bool) else CategoricalTrait(value=value)
    return TraitEffect(
        trait=trait, trait_value=trait_value, lift=lift, lift_percent=lift_percent,
        confidence=confidence, n_with=n_with, n_without=n_without,
        avg_with=80.0, avg_without=60.0, direction=EffectDirection.USE,
        in_query=in_query, recommendation=recommendation,
    )


class TestExplainTraitEffect:
    def test_large_lift_uses_percent(self):
        text = explain_trait_effect(_effect())
        assert text == "Among 10 similar ads, those with hook:curiosity performed 33% better."

    def test_small_lift_uses_points(self):
        text = explain_trait_effect(_effect(lift=-6.0, lift_percent=-9.0))
        assert text == "Among 10 similar ads, those with hook:curiosity performed 6 points worse."

    def test_minimal_impact(self):
        assert "minimal impact" in explain_trait_effect(_effect(lift=1.0, lift_percent=1.5))

    def test_low_confidence(self):
        text = explain_trait_effect(_effect(confidence=0.1, n_with=1, n_without=2))
        assert text.startswith("Not enough data to determine impact of hook:curiosity")
        assert "(1 with, 2 without)" in text


class TestSummaries:
    @pytest.mark.parametrize("confidence,n,expected", [
        (90.0, 2, "limited data"),
        (80.0, 12, "high confidence"),
        (50.0, 12, "moderate confidence"),
        (10.0, 12, "confidence is low"),
    ])
    def test_bands(self, confidence, n, expected):
        assert expected in summarize(72.4, confidence, n)

    def test_legacy_explanation(self):
        text = legacy_explanation(61.0, 35.0, "provider_error")
        assert text.startswith("Predicted 61% success from creative heuristics")
        assert "provider_error" in text
        assert "unavailable" not in legacy_explanation(61.0, 35.0)


class TestNeighborEvidence:
    def test_no_neighbors(self):
        assert explain_neighbors([]).text == "No similar ads found in the database."

    def test_neighbor_summary(self, make_orb, make_neighbor):
        neighbors = [make_neighbor(make_orb(f"o{i}", score=s)) for i, s in enumerate([90, 70])]
        detail = explain_neighbors(neighbors)
        assert detail.text == (
            "Found 2 similar ads with average 80% similarity. "
            "Their average success score was 80. Most similar ad scored 90."
        )
        assert detail.data["neighbor_count"] == 2


class TestRecommendationsAndExperiments:
    def test_recommendations_from_top_effects(self):
        analysis = ContrastiveAnalysis(
            top_positive=[_effect(recommendation="Consider using hook:curiosity")],
            low_confidence=[_effect(trait="ugc", value=True, confidence=0.1)],
            total_neighbors=3,
        )
        recs = generate_recommendations(analysis)
        assert recs[0] == "Consider using hook:curiosity"
        assert any(r.startswith("A/B test recommended for: ugc") for r in recs)
        assert any(r.startswith("Low sample size (3 similar ads)") for r in recs)

    def test_bool_experiment_flips_value(self, make_orb):
        query = make_orb("q", traits={"ugc": True, "hook": "curiosity"})
        suggestions = generate_experiment_suggestions(
            query, [_effect(trait="ugc", value=True), _effect(trait="hook", value="curiosity")]
        )
        assert suggestions[0].trait == "ugc"
        assert suggestions[0].current_value == "true"
        assert suggestions[0].suggested_variant == "false"
        assert suggestions[1].suggested_variant == "alternative"

    def test_generate_explanation_without_analysis(self, make_orb):
        summary, details, recs, experiments = generate_explanation(make_orb("q"), 55.0, 0.0, [], None)
        assert "limited data" in summary
        assert details[0].type == "neighbor_evidence"
        assert any(d.type == "low_confidence" for d in details)
        assert experiments == []
        assert recs == ["Low sample size (0 similar ads). Results will improve as you add more ads."]
