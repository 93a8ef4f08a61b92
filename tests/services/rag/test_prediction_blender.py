"""
Tests for PredictionBlender - blending math and the degradation state machine.
"""

import asyncio
import time
from typing import List
from unittest.mock import MagicMock

import pytest

from adorb.core.config import FeatureFlags, RAGConfig
from adorb.services.rag.contrastive_service import ContrastiveAttributionService
from adorb.services.rag.embedding_provider import EmbeddingProvider
from adorb.services.rag.errors import LegacyScorerError
from adorb.services.rag.legacy_scorer import HeuristicLegacyScorer
from adorb.services.rag.models import (
    FallbackReason,
    LegacyScore,
    PredictionMethod,
    PredictionMode,
)
from adorb.services.rag.orb_store import InMemoryOrbStore
from adorb.services.rag.prediction_blender import (
    PredictionBlender,
    calculate_blend_alpha,
    compute_confidence,
    weighted_neighbor_score,
)
from adorb.services.rag.retrieval_service import SimilarityRetriever


class AlwaysFailingProvider(EmbeddingProvider):
    dimension = 3

    async def embed(self, orb) -> List[float]:
        raise RuntimeError("provider unavailable")


class SlowStore(InMemoryOrbStore):
    def snapshot(self):
        time.sleep(0.3)
        return super().snapshot()


def _blender(store, legacy_scorer=None, provider=None, config=None, flags=None):
    config = config or RAGConfig()
    return PredictionBlender(
        retriever=SimilarityRetriever(store, config),
        attribution=ContrastiveAttributionService(config),
        legacy_scorer=legacy_scorer or HeuristicLegacyScorer(),
        embedding_provider=provider,
        config=config,
        flags=flags or FeatureFlags(),
    )


@pytest.fixture
def history(make_orb):
    orbs = []
    for i in range(8):
        orbs.append(make_orb(f"cur-{i}", score=76 + i, days_old=i + 1,
                             traits={"platform": "tiktok", "hook": "curiosity", "ugc": True}))
        orbs.append(make_orb(f"q-{i}", score=56 + i, days_old=i + 1,
                             traits={"platform": "tiktok", "hook": "question", "ugc": True}))
    return orbs


@pytest.fixture
def query(make_orb):
    return make_orb("query", traits={"platform": "tiktok", "hook": "curiosity", "ugc": True})


class TestBlendMath:
    def test_alpha_zero_without_neighbors(self):
        assert calculate_blend_alpha([], RAGConfig()) == 0.0

    def test_alpha_saturates(self, make_orb, make_neighbor):
        config = RAGConfig()
        full = [make_neighbor(make_orb(f"o{i}", score=70 + i % 2)) for i in range(15)]
        partial = full[:5]

        assert calculate_blend_alpha(full, config) == pytest.approx(0.7 * 0.8)
        assert calculate_blend_alpha(partial, config) == pytest.approx(0.7 * (5 / 15) * 0.8)

    def test_alpha_variance_penalty(self, make_orb, make_neighbor):
        config = RAGConfig()
        noisy = [make_neighbor(make_orb(f"o{i}", score=0 if i % 2 else 100)) for i in range(15)]
        assert calculate_blend_alpha(noisy, config) == pytest.approx(0.7 * 0.8 * 0.7)

    def test_alpha_ignores_neighbors_without_outcomes(self, make_orb, make_neighbor):
        assert calculate_blend_alpha([make_neighbor(make_orb("a"))], RAGConfig()) == 0.0

    def test_confidence(self, make_orb, make_neighbor):
        neighbors = [make_neighbor(make_orb(f"o{i}", score=70 + i % 2)) for i in range(15)]
        assert compute_confidence(neighbors, RAGConfig()) == pytest.approx(93.0)
        assert compute_confidence([], RAGConfig()) == 0.0

    def test_weighted_score(self, make_orb, make_neighbor):
        neighbors = [
            make_neighbor(make_orb("a", score=90), hybrid=0.9),
            make_neighbor(make_orb("b", score=60), hybrid=0.3),
        ]
        assert weighted_neighbor_score(neighbors) == pytest.approx((90 * 0.9 + 60 * 0.3) / 1.2)
        assert weighted_neighbor_score([]) is None


class TestInitialMode:
    @pytest.mark.parametrize("flags,use_hybrid,expected", [
        (FeatureFlags(), True, PredictionMode.HYBRID),
        (FeatureFlags(), False, PredictionMode.RAG_ONLY),
        (FeatureFlags(enable_hybrid_blend=False), True, PredictionMode.RAG_ONLY),
        (FeatureFlags(enable_rag=False), True, PredictionMode.DISABLED),
    ])
    def test_modes(self, flags, use_hybrid, expected):
        assert PredictionBlender.initial_mode(flags, use_hybrid) == expected


class TestPredict:
    @pytest.mark.asyncio
    async def test_hybrid_blend(self, history, query):
        prediction = await _blender(InMemoryOrbStore(history)).predict(query)

        assert prediction.method == PredictionMethod.HYBRID
        assert prediction.fallback_reason is None
        assert prediction.degradation_path == []
        assert prediction.neighbor_count == 16
        assert 0 < prediction.blend_alpha <= 1
        assert prediction.success_probability == pytest.approx(
            prediction.blend_alpha * prediction.rag_score
            + (1 - prediction.blend_alpha) * prediction.legacy_score
        )
        assert len(prediction.neighbors) == RAGConfig().display_neighbors
        assert any(e.label == "hook:curiosity" for e in prediction.trait_effects)
        assert prediction.explanation
        assert prediction.compute_time_ms >= 0

    @pytest.mark.asyncio
    async def test_no_neighbors_falls_back_to_legacy_score(self, query):
        prediction = await _blender(InMemoryOrbStore()).predict(query)

        assert prediction.method == PredictionMethod.HYBRID
        assert prediction.blend_alpha == 0.0
        assert prediction.rag_score is None
        assert prediction.success_probability == prediction.legacy_score

    @pytest.mark.asyncio
    async def test_rag_only(self, history, query):
        prediction = await _blender(InMemoryOrbStore(history)).predict(query, use_hybrid=False)

        assert prediction.method == PredictionMethod.RAG
        assert prediction.legacy_score is None
        assert prediction.success_probability == prediction.rag_score

    @pytest.mark.asyncio
    async def test_attribution_metric_keeps_success_scale(self, make_orb, query):
        traits = {"platform": "tiktok", "hook": "curiosity", "ugc": True}
        store = InMemoryOrbStore([
            make_orb(f"r-{i}", score=80, roas=3.0, traits=traits, days_old=i + 1) for i in range(6)
        ])
        config = RAGConfig(outcome_metric="roas")

        baseline = await _blender(store).predict(query, use_hybrid=False)
        prediction = await _blender(store, config=config).predict(query, use_hybrid=False)

        assert prediction.method == PredictionMethod.RAG
        assert prediction.fallback_reason is None
        assert prediction.success_probability == pytest.approx(80.0)
        assert prediction.confidence == pytest.approx(baseline.confidence)

    @pytest.mark.asyncio
    async def test_attribution_metric_above_100_does_not_invalidate_hybrid(self, make_orb, query):
        traits = {"platform": "tiktok", "hook": "curiosity", "ugc": True}
        store = InMemoryOrbStore([
            make_orb(f"r-{i}", score=70, roas=150.0, traits=traits, days_old=i + 1) for i in range(6)
        ])
        prediction = await _blender(store, config=RAGConfig(outcome_metric="roas")).predict(query)

        assert prediction.method == PredictionMethod.HYBRID
        assert prediction.fallback_reason is None
        assert prediction.rag_score == pytest.approx(70.0)

    @pytest.mark.asyncio
    async def test_rag_only_without_neighbors_uses_neutral_default(self, query):
        prediction = await _blender(InMemoryOrbStore()).predict(query, use_hybrid=False)

        assert prediction.method == PredictionMethod.RAG
        assert prediction.success_probability == 50.0
        assert prediction.confidence == 0.0

    @pytest.mark.asyncio
    async def test_rag_disabled(self, history, query):
        blender = _blender(InMemoryOrbStore(history), flags=FeatureFlags(enable_rag=False))
        prediction = await blender.predict(query)

        assert prediction.method == PredictionMethod.LEGACY
        assert prediction.fallback_reason == FallbackReason.RAG_DISABLED
        assert prediction.degradation_path == []
        assert prediction.neighbor_count == 0

    @pytest.mark.asyncio
    async def test_provider_failure_degrades_to_legacy(self, history, query):
        blender = _blender(InMemoryOrbStore(history), provider=AlwaysFailingProvider())
        prediction = await blender.predict(query)

        assert prediction.method == PredictionMethod.LEGACY
        assert prediction.fallback_reason == FallbackReason.PROVIDER_ERROR
        step = prediction.degradation_path[0]
        assert (step.from_mode, step.to_mode) == (PredictionMode.HYBRID, PredictionMode.DISABLED)
        assert "provider unavailable" in step.error

    @pytest.mark.asyncio
    async def test_provider_failure_can_continue_on_structure(self, history, query):
        config = RAGConfig(degrade_on_provider_error=False)
        blender = _blender(InMemoryOrbStore(history), provider=AlwaysFailingProvider(), config=config)
        prediction = await blender.predict(query)

        assert prediction.method == PredictionMethod.HYBRID
        assert prediction.neighbor_count == 16
        assert not any(n.vector_available for n in prediction.neighbors)

    @pytest.mark.asyncio
    async def test_legacy_failure_in_hybrid_moves_to_rag_only(self, history, query):
        legacy = MagicMock()
        legacy.score.side_effect = LegacyScorerError("heuristic broken")
        prediction = await _blender(InMemoryOrbStore(history), legacy_scorer=legacy).predict(query)

        assert prediction.method == PredictionMethod.RAG
        assert prediction.fallback_reason == FallbackReason.LEGACY_ERROR
        assert [(s.from_mode, s.to_mode) for s in prediction.degradation_path] == [
            (PredictionMode.HYBRID, PredictionMode.RAG_ONLY)
        ]
        assert prediction.success_probability == prediction.rag_score

    @pytest.mark.asyncio
    async def test_retrieval_failure(self, query):
        store = MagicMock()
        store.snapshot.side_effect = ConnectionError("db down")
        prediction = await _blender(store).predict(query)

        assert prediction.method == PredictionMethod.LEGACY
        assert prediction.fallback_reason == FallbackReason.RETRIEVAL_ERROR

    @pytest.mark.asyncio
    async def test_attribution_failure(self, history, query):
        blender = _blender(InMemoryOrbStore(history))
        blender.attribution = MagicMock()
        blender.attribution.analyze_contrast.side_effect = ZeroDivisionError("bad split")
        prediction = await blender.predict(query)

        assert prediction.method == PredictionMethod.LEGACY
        assert prediction.fallback_reason == FallbackReason.ATTRIBUTION_ERROR

    @pytest.mark.asyncio
    async def test_invalid_score(self, history, query):
        legacy = MagicMock()
        legacy.score.return_value = LegacyScore(score=40.0, confidence=30.0)
        config = RAGConfig(max_score=50.0)
        prediction = await _blender(InMemoryOrbStore(history), legacy_scorer=legacy, config=config).predict(
            query, use_hybrid=False
        )

        assert prediction.method == PredictionMethod.LEGACY
        assert prediction.fallback_reason == FallbackReason.INVALID_SCORE
        assert prediction.success_probability == 40.0

    @pytest.mark.asyncio
    async def test_everything_failing_still_predicts(self, query):
        store = MagicMock()
        store.snapshot.side_effect = ConnectionError("db down")
        legacy = MagicMock()
        legacy.score.side_effect = LegacyScorerError("heuristic broken")
        prediction = await _blender(store, legacy_scorer=legacy).predict(query)

        assert prediction.method == PredictionMethod.LEGACY
        assert prediction.success_probability == 50.0
        assert prediction.confidence == 0.0
        assert prediction.fallback_reason == FallbackReason.RETRIEVAL_ERROR
        assert [s.reason for s in prediction.degradation_path] == [
            FallbackReason.RETRIEVAL_ERROR, FallbackReason.LEGACY_ERROR,
        ]

    @pytest.mark.asyncio
    async def test_timeout(self, history, query):
        config = RAGConfig(prediction_timeout_s=0.05)
        prediction = await _blender(SlowStore(history), config=config).predict(query)

        assert prediction.method == PredictionMethod.LEGACY
        assert prediction.fallback_reason == FallbackReason.TIMEOUT

    @pytest.mark.asyncio
    async def test_concurrent_predictions_are_independent(self, history, query, make_orb):
        blender = _blender(InMemoryOrbStore(history))
        other = make_orb("other", traits={"platform": "tiktok", "hook": "question", "ugc": True})

        first, second = await asyncio.gather(blender.predict(query), blender.predict(other))
        again = await blender.predict(query)

        assert first.success_probability == pytest.approx(again.success_probability)
        assert first.rag_score != second.rag_score
