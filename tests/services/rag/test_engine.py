"""
Tests for RAGEngine - the public prediction, retrieval, gap and ingest API.
"""

from typing import List
from unittest.mock import MagicMock

import pytest

from adorb.core.config import FeatureFlags, RAGConfig
from adorb.services.rag import InMemoryOrbStore, OrbBuilder, RAGEngine, ValidationError
from adorb.services.rag.embedding_provider import EmbeddingProvider
from adorb.services.rag.models import PredictionMethod, RetrievalFilters, SimilarAdsResult


class UnitProvider(EmbeddingProvider):
    dimension = 2

    async def embed(self, orb) -> List[float]:
        return [1.0, 0.0] if "curiosity" in (orb.canonical_text or "") else [0.0, 1.0]


class BrokenProvider(EmbeddingProvider):
    dimension = 2

    async def embed(self, orb) -> List[float]:
        raise TimeoutError("embedding service unreachable")


@pytest.fixture
def store(history_ads):
    return InMemoryOrbStore(OrbBuilder().build_many(history_ads))


@pytest.fixture
def engine(store):
    return RAGEngine(store=store)


class TestPredict:
    @pytest.mark.asyncio
    async def test_predicts_from_history(self, engine, make_ad):
        prediction = await engine.predict(make_ad("new-ad"))

        assert prediction.method == PredictionMethod.HYBRID
        assert prediction.neighbor_count == 12
        assert 0 <= prediction.success_probability <= 100
        assert 0 <= prediction.confidence <= 100

    @pytest.mark.asyncio
    async def test_invalid_ad_rejected_before_retrieval(self, make_ad):
        store = MagicMock()
        engine = RAGEngine(store=store)

        with pytest.raises(ValidationError):
            await engine.predict({"extracted_content": {"hook_type": "curiosity"}})
        store.snapshot.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_overrides(self, engine, make_ad):
        with pytest.raises(ValidationError, match="overrides"):
            await engine.predict(make_ad("new-ad"), overrides={"vector_weight": 0.9})

    @pytest.mark.asyncio
    async def test_overrides_apply_per_call(self, engine, make_ad):
        prediction = await engine.predict(make_ad("new-ad"), overrides={"default_k": 4})
        assert prediction.neighbor_count == 4
        assert engine.config.default_k == RAGConfig().default_k

    @pytest.mark.asyncio
    async def test_provider_always_failing_returns_legacy(self, store, make_ad):
        engine = RAGEngine(store=store, embedding_provider=BrokenProvider())
        prediction = await engine.predict(make_ad("new-ad"))

        assert prediction.method == PredictionMethod.LEGACY
        assert prediction.fallback_reason.value == "provider_error"

    @pytest.mark.asyncio
    async def test_per_call_flags(self, engine, make_ad):
        prediction = await engine.predict(make_ad("new-ad"), flags=FeatureFlags(enable_rag=False))
        assert prediction.method == PredictionMethod.LEGACY
        assert engine.flags.enable_rag is True

    @pytest.mark.asyncio
    async def test_batch_keeps_invalid_ads_in_place(self, engine, make_ad):
        results = await engine.predict_batch([make_ad("a"), {"id": "b"}, make_ad("c")])

        assert len(results) == 3
        assert results[0].method == PredictionMethod.HYBRID
        assert isinstance(results[1], ValidationError)
        assert results[2].method == PredictionMethod.HYBRID


class TestFindSimilar:
    @pytest.mark.asyncio
    async def test_fewer_matches_than_k(self, make_ad):
        engine = RAGEngine(store=InMemoryOrbStore(OrbBuilder().build_many(
            [make_ad(f"h{i}", score=60 + i) for i in range(3)]
        )))
        result = await engine.find_similar(make_ad("q"), k=20)

        assert isinstance(result, SimilarAdsResult)
        assert len(result.neighbors) == 3
        assert result.stats.count == 3
        assert result.query_id == "q"

    @pytest.mark.asyncio
    async def test_include_without_results(self, make_ad):
        ads = [make_ad("scored", score=70), make_ad("unscored")]
        engine = RAGEngine(store=InMemoryOrbStore(OrbBuilder().build_many(ads)))

        default = await engine.find_similar(make_ad("q"))
        everything = await engine.find_similar(make_ad("q"), include_without_results=True)

        assert [n.orb.id for n in default.neighbors] == ["scored"]
        assert sorted(n.orb.id for n in everything.neighbors) == ["scored", "unscored"]

    @pytest.mark.asyncio
    async def test_filters(self, make_ad):
        ads = [make_ad("tt", score=70, platform="tiktok"), make_ad("meta", score=70, platform="meta")]
        engine = RAGEngine(store=InMemoryOrbStore(OrbBuilder().build_many(ads)))

        result = await engine.find_similar(make_ad("q"), filters=RetrievalFilters(platform="meta"))
        assert [n.orb.id for n in result.neighbors] == ["meta"]

    @pytest.mark.asyncio
    async def test_provider_failure_falls_back_to_structure(self, store, make_ad):
        engine = RAGEngine(store=store, embedding_provider=BrokenProvider())
        result = await engine.find_similar(make_ad("q"))

        assert result.embedding_available is False
        assert len(result.neighbors) == 12

    @pytest.mark.asyncio
    async def test_embedded_query(self, store, make_ad):
        engine = RAGEngine(store=store, embedding_provider=UnitProvider())
        result = await engine.find_similar(make_ad("q"))
        assert result.embedding_available is True


class TestDetectGaps:
    @pytest.mark.asyncio
    async def test_empty_history(self, make_ad):
        engine = RAGEngine(store=InMemoryOrbStore())
        analysis = await engine.detect_gaps(make_ad("q", platform="tiktok"))

        assert analysis.has_significant_gaps is True
        assert any(n.dimension == "platform" and n.value == "tiktok" for n in analysis.data_needs)
        assert analysis.current_confidence == 0.0

    @pytest.mark.asyncio
    async def test_provider_failure_does_not_block_gap_detection(self, store, make_ad):
        engine = RAGEngine(store=store, embedding_provider=BrokenProvider())
        analysis = await engine.detect_gaps(make_ad("q"))
        assert analysis.current_confidence > 0


class TestSuggest:
    @pytest.mark.asyncio
    async def test_suggestions_are_scored_and_not_stored(self, engine, store, make_ad):
        result = await engine.suggest(
            make_ad("new-ad"), max_suggestions=2, overrides={"suggestion_confidence_ceiling": 100.0}
        )

        assert result.generated is True
        assert result.neighbor_count == 12
        assert len(result.suggestions) == 2
        assert len({s.lever.id for s in result.suggestions}) == 2
        assert all(s.parent_id == "new-ad" and s.score is not None for s in result.suggestions)
        assert len(store) == 12
        assert all(store.get(s.id) is None for s in result.suggestions)

    @pytest.mark.asyncio
    async def test_disabled_by_flag(self, store, make_ad):
        engine = RAGEngine(store=store, flags=FeatureFlags(enable_suggestions=False))
        result = await engine.suggest(make_ad("new-ad"))

        assert result.generated is False
        assert result.suggestions == []

    @pytest.mark.asyncio
    async def test_invalid_ad(self, engine):
        with pytest.raises(ValidationError):
            await engine.suggest({"extracted_content": {"hook_type": "curiosity"}})


class TestIngest:
    @pytest.mark.asyncio
    async def test_ingest_then_reingest_bumps_version(self, make_ad):
        store = InMemoryOrbStore()
        engine = RAGEngine(store=store, embedding_provider=UnitProvider())

        first = await engine.ingest(make_ad("a", score=70))
        second = await engine.ingest(make_ad("a", score=75))

        assert first.version == 1
        assert first.embedding == [1.0, 0.0]
        assert second.version == 2
        assert store.get("a").success_score == 75
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_ingest_without_provider(self, make_ad):
        engine = RAGEngine(store=InMemoryOrbStore())
        orb = await engine.ingest(make_ad("a"))
        assert orb.embedding is None

    @pytest.mark.asyncio
    async def test_ingest_invalid(self):
        with pytest.raises(ValidationError):
            await RAGEngine(store=InMemoryOrbStore()).ingest({"id": "a"})


class TestReadiness:
    def test_readiness(self, engine):
        readiness = engine.readiness()
        assert readiness["rag_enabled"] is True
        assert readiness["rag_ready"] is True
        assert readiness["orb_count"] == 12
        assert readiness["min_required"] == 5

    def test_not_ready_when_empty(self):
        readiness = RAGEngine(store=InMemoryOrbStore()).readiness()
        assert readiness["rag_ready"] is False
        assert readiness["total_orbs"] == 0
