"""
RAG Engine - the public entrypoint for prediction, retrieval and gap detection.

Wires the orb builder, embedding provider, store, retriever, attribution and
the prediction blender. Each call is stateless: per-call configuration is
derived from the engine defaults plus optional overrides, and nothing is
shared between requests except the read-only store snapshot.

Usage:
    engine = RAGEngine(store=InMemoryOrbStore(orbs))
    prediction = await engine.predict(ad)
"""

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from adorb.core.config import FeatureFlags, RAGConfig
from adorb.core.observability import get_logfire
from .contrastive_service import ContrastiveAttributionService
from .data_needs import detect_data_needs
from .embedding_provider import EmbeddingProvider, try_embed_orb
from .errors import ValidationError
from .legacy_scorer import HeuristicLegacyScorer, LegacyScorer
from .models import (
    AdInput,
    GapAnalysis,
    Orb,
    Prediction,
    RetrievalFilters,
    SimilarAdsResult,
    SuggestionResult,
)
from .neighbor_stats import compute_neighbor_stats
from .orb_builder import OrbBuilder
from .orb_store import OrbStore
from .prediction_blender import PredictionBlender, compute_confidence
from .retrieval_service import SimilarityRetriever
from .suggestion_service import SuggestionService

logger = logging.getLogger(__name__)

AdLike = Union[AdInput, Mapping[str, Any]]


class RAGEngine:
    """Hybrid retrieval and contrastive attribution engine."""

    def __init__(
        self,
        store: OrbStore,
        embedding_provider: Optional[EmbeddingProvider] = None,
        legacy_scorer: Optional[LegacyScorer] = None,
        config: Optional[RAGConfig] = None,
        flags: Optional[FeatureFlags] = None,
        builder: Optional[OrbBuilder] = None,
    ):
        self.store = store
        self.embedding_provider = embedding_provider
        self.legacy_scorer = legacy_scorer or HeuristicLegacyScorer()
        self.config = config or RAGConfig()
        self.flags = flags or FeatureFlags()
        self.builder = builder or OrbBuilder()

        self.retriever = SimilarityRetriever(store, self.config)
        self.attribution = ContrastiveAttributionService(self.config)
        self.blender = PredictionBlender(
            retriever=self.retriever,
            attribution=self.attribution,
            legacy_scorer=self.legacy_scorer,
            embedding_provider=embedding_provider,
            config=self.config,
            flags=self.flags,
        )
        self.suggestions = SuggestionService(
            retriever=self.retriever,
            attribution=self.attribution,
            embedding_provider=embedding_provider,
            config=self.config,
            flags=self.flags,
        )

    def _config(self, overrides: Optional[Dict[str, Any]]) -> RAGConfig:
        try:
            return self.config.with_overrides(overrides)
        except ValueError as e:
            raise ValidationError(f"Invalid configuration overrides: {e}") from e

    async def predict(
        self,
        ad: AdLike,
        use_hybrid: bool = True,
        overrides: Optional[Dict[str, Any]] = None,
        flags: Optional[FeatureFlags] = None,
    ) -> Prediction:
        """
        Score an ad.

        Args:
            ad: Ad payload
            use_hybrid: False forces RAG-only mode
            overrides: Per-call RAGConfig field overrides
            flags: Per-call feature flags

        Returns:
            Prediction (always, possibly degraded to the legacy path)

        Raises:
            ValidationError: Malformed ad or overrides, before any retrieval
        """
        config = self._config(overrides)
        orb = self.builder.build(ad)
        return await self.blender.predict(orb, use_hybrid=use_hybrid, config=config, flags=flags or self.flags)

    async def predict_batch(
        self,
        ads: List[AdLike],
        use_hybrid: bool = True,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> List[Union[Prediction, ValidationError]]:
        """Predict many ads concurrently; an invalid ad yields its ValidationError in place."""
        results = await asyncio.gather(
            *(self.predict(ad, use_hybrid=use_hybrid, overrides=overrides) for ad in ads),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, ValidationError):
                raise result
        return list(results)

    async def find_similar(
        self,
        ad: AdLike,
        k: Optional[int] = None,
        filters: Optional[RetrievalFilters] = None,
        include_without_results: bool = False,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> SimilarAdsResult:
        """
        Retrieval-only lookup for exploratory views.

        Embedding failures fall back to structured-only similarity here; a
        retrieval failure propagates as RetrievalError.
        """
        config = self._config(overrides)
        orb = self.builder.build(ad)
        query = orb
        if not orb.embedding:
            query = await try_embed_orb(self.embedding_provider, orb, config.embedding_timeout_s)

        filters = (filters or RetrievalFilters()).model_copy(
            update={"require_results": not include_without_results}
        )

        lf = get_logfire()
        with lf.span("rag.find_similar", orb_id=orb.id, k=k):
            neighbors = await asyncio.to_thread(self.retriever.retrieve, query, k, filters, config)

        return SimilarAdsResult(
            query_id=orb.id,
            neighbors=neighbors,
            stats=compute_neighbor_stats(neighbors),
            embedding_available=bool(query.embedding),
        )

    async def detect_gaps(self, ad: AdLike, overrides: Optional[Dict[str, Any]] = None) -> GapAnalysis:
        """Coverage gaps behind the prediction confidence for an ad."""
        config = self._config(overrides)
        orb = self.builder.build(ad)
        evidence = await self.blender.gather_evidence(
            orb, config.model_copy(update={"degrade_on_provider_error": False}), self.flags
        )
        effects = evidence.analysis.trait_effects if evidence.analysis is not None else []
        return detect_data_needs(
            evidence.neighbors,
            effects,
            query_platform=orb.metadata.platform,
            current_confidence=compute_confidence(evidence.neighbors, config),
            config=config,
        )

    async def suggest(
        self,
        ad: AdLike,
        max_suggestions: Optional[int] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> SuggestionResult:
        """
        Suggest scored variants of an ad, each changing one experimental lever.

        Suggestions are returned only; they are never stored.

        Raises:
            ValidationError: Malformed ad or overrides
            RetrievalError: Retrieval for the ad failed
        """
        config = self._config(overrides)
        orb = self.builder.build(ad)
        return await self.suggestions.suggest(orb, max_suggestions=max_suggestions, config=config, flags=self.flags)

    async def ingest(self, ad: AdLike) -> Orb:
        """
        Build, embed (best effort) and store an ad as a new orb version.

        An ad already in the store is saved as the next version.
        """
        orb = self.builder.build(ad)
        orb = await try_embed_orb(self.embedding_provider, orb, self.config.embedding_timeout_s)

        existing = await asyncio.to_thread(self.store.get, orb.id)
        if existing is not None:
            orb = orb.model_copy(update={"version": existing.version + 1})

        saved = await asyncio.to_thread(self.store.save, orb)
        logger.info(f"Ingested orb {saved.id} v{saved.version} (embedding={'yes' if saved.embedding else 'no'})")
        return saved

    def readiness(self) -> Dict[str, Any]:
        stats = self.store.stats()
        return {
            "rag_enabled": self.flags.enable_rag,
            "rag_ready": stats["orbs_with_results"] >= self.config.min_neighbors,
            "orb_count": stats["orbs_with_results"],
            "total_orbs": stats["total_orbs"],
            "orbs_with_embeddings": stats["orbs_with_embeddings"],
            "min_required": self.config.min_neighbors,
        }
