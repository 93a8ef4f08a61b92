"""
Prediction Blender - the per-request prediction state machine.

States (PredictionMode):
    HYBRID    retrieval + attribution + legacy score, blended by alpha
    RAG_ONLY  retrieval + attribution, score from weighted neighbor outcomes
    DISABLED  legacy score only

Every fallback is an explicit transition recorded as a DegradationStep:
    HYBRID    --legacy_error-->                     RAG_ONLY
    HYBRID/RAG_ONLY --provider/retrieval/attribution error--> DISABLED
    HYBRID/RAG_ONLY --invalid_score / timeout-->    DISABLED
    DISABLED  --legacy_error-->                     DISABLED (neutral default score)

A Prediction is always returned; no exception escapes ``predict``.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from adorb.core.config import FeatureFlags, RAGConfig
from adorb.core.observability import get_logfire
from .contrastive_service import ContrastiveAttributionService
from .embedding_provider import EmbeddingProvider, embed_orb
from .errors import AttributionError, ProviderError, RetrievalError
from .explanation import generate_explanation, legacy_explanation
from .legacy_scorer import LegacyScorer
from .models import (
    ContrastiveAnalysis,
    DegradationStep,
    FallbackReason,
    LegacyScore,
    Neighbor,
    NeighborStats,
    Orb,
    Prediction,
    PredictionMethod,
    PredictionMode,
    RetrievalFilters,
)
from .neighbor_stats import compute_neighbor_stats
from .retrieval_service import SimilarityRetriever

logger = logging.getLogger(__name__)

# Weights of the evidence confidence components
SAMPLE_WEIGHT = 0.35
SIMILARITY_WEIGHT = 0.35
VARIANCE_WEIGHT = 0.15
RECENCY_WEIGHT = 0.15

# Alpha multiplier when outcome spread exceeds twice the full-confidence variance
HIGH_VARIANCE_ALPHA_PENALTY = 0.7


def _outcome_neighbors(neighbors: Sequence[Neighbor]) -> List[Neighbor]:
    return [n for n in neighbors if n.orb.success_score is not None]


def _std_dev(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    return float(np.std(values, ddof=1))


def weighted_neighbor_score(neighbors: Sequence[Neighbor]) -> Optional[float]:
    """Weighted-similarity mean of neighbor success scores, None without outcomes."""
    valid = _outcome_neighbors(neighbors)
    if not valid:
        return None
    values = np.array([n.orb.success_score for n in valid], dtype=float)
    weights = np.array([n.weighted_similarity for n in valid], dtype=float)
    if weights.sum() <= 0:
        return float(values.mean())
    return float(np.average(values, weights=weights))


def compute_confidence(neighbors: Sequence[Neighbor], config: RAGConfig) -> float:
    """
    Evidence confidence (0-100) from neighbor count, similarity, outcome
    spread and recency. Zero when no neighbor carries an outcome.
    """
    valid = _outcome_neighbors(neighbors)
    if not valid:
        return 0.0

    sample_factor = min(1.0, len(valid) / config.neighbor_saturation)
    similarity_factor = float(np.mean([n.hybrid_similarity for n in valid]))
    recency_factor = float(np.mean([n.recency_weight for n in valid]))

    variance_factor = 1.0
    if config.variance_penalty_enabled:
        std_dev = _std_dev([n.orb.success_score for n in valid])
        if std_dev > config.max_variance_for_full_confidence:
            variance_factor = config.max_variance_for_full_confidence / std_dev

    confidence = (
        sample_factor * SAMPLE_WEIGHT
        + similarity_factor * SIMILARITY_WEIGHT
        + variance_factor * VARIANCE_WEIGHT
        + recency_factor * RECENCY_WEIGHT
    ) * 100
    return max(0.0, min(100.0, confidence))


def calculate_blend_alpha(neighbors: Sequence[Neighbor], config: RAGConfig) -> float:
    """
    Weight of the data-driven score in the hybrid blend.

    Grows with the number of outcome-bearing neighbors (saturating at
    ``neighbor_saturation``) and with their average similarity; 0 with no
    evidence.
    """
    valid = _outcome_neighbors(neighbors)
    if not valid:
        return 0.0

    alpha = config.base_alpha
    alpha *= min(1.0, len(valid) / config.neighbor_saturation)
    alpha *= float(np.mean([n.hybrid_similarity for n in valid]))

    if config.variance_penalty_enabled:
        std_dev = _std_dev([n.orb.success_score for n in valid])
        if std_dev > config.max_variance_for_full_confidence * 2:
            alpha *= HIGH_VARIANCE_ALPHA_PENALTY

    return max(0.0, min(1.0, alpha))


def apply_contrastive_adjustment(score: float, analysis: ContrastiveAnalysis, config: RAGConfig) -> float:
    """Nudge a score by confidence-weighted lifts of significant query effects."""
    adjustment = 0.0
    for effect in analysis.top_positive + analysis.top_negative:
        if effect.in_query:
            adjustment += effect.lift * effect.confidence * config.contrastive_adjustment_damping
    return max(config.min_score, min(config.max_score, score + adjustment))


def _valid_score(value: Optional[float], config: RAGConfig) -> bool:
    return value is not None and math.isfinite(value) and config.min_score <= value <= config.max_score


@dataclass
class Evidence:
    neighbors: List[Neighbor]
    stats: NeighborStats
    analysis: Optional[ContrastiveAnalysis]
    embedded: bool


@dataclass
class _RunState:
    mode: PredictionMode
    path: List[DegradationStep] = field(default_factory=list)
    reason: Optional[FallbackReason] = None

    def transition(self, to_mode: PredictionMode, reason: FallbackReason, error: Optional[BaseException] = None):
        step = DegradationStep(
            from_mode=self.mode,
            to_mode=to_mode,
            reason=reason,
            error=str(error) if error is not None else None,
        )
        logger.warning(
            f"Prediction degraded {self.mode.value} -> {to_mode.value} ({reason.value})"
            + (f": {error}" if error is not None else "")
        )
        self.path.append(step)
        self.mode = to_mode
        if self.reason is None:
            self.reason = reason


class PredictionBlender:
    """Runs the prediction state machine for one query orb per call."""

    def __init__(
        self,
        retriever: SimilarityRetriever,
        attribution: ContrastiveAttributionService,
        legacy_scorer: LegacyScorer,
        embedding_provider: Optional[EmbeddingProvider] = None,
        config: Optional[RAGConfig] = None,
        flags: Optional[FeatureFlags] = None,
    ):
        self.retriever = retriever
        self.attribution = attribution
        self.legacy_scorer = legacy_scorer
        self.embedding_provider = embedding_provider
        self.config = config or RAGConfig()
        self.flags = flags or FeatureFlags()

    @staticmethod
    def initial_mode(flags: FeatureFlags, use_hybrid: bool = True) -> PredictionMode:
        if not flags.enable_rag:
            return PredictionMode.DISABLED
        if use_hybrid and flags.enable_hybrid_blend:
            return PredictionMode.HYBRID
        return PredictionMode.RAG_ONLY

    async def predict(
        self,
        orb: Orb,
        use_hybrid: bool = True,
        config: Optional[RAGConfig] = None,
        flags: Optional[FeatureFlags] = None,
        filters: Optional[RetrievalFilters] = None,
    ) -> Prediction:
        """
        Predict success for an already validated orb.

        Args:
            orb: Query orb
            use_hybrid: False forces RAG-only mode
            config: Per-call configuration
            flags: Per-call feature flags
            filters: Retrieval filters (default: outcome-bearing orbs only)

        Returns:
            Prediction, degraded as far as needed but always present
        """
        config = config or self.config
        flags = flags or self.flags
        started = time.perf_counter()
        state = _RunState(mode=self.initial_mode(flags, use_hybrid))

        lf = get_logfire()
        with lf.span("rag.predict", orb_id=orb.id, mode=state.mode.value):
            try:
                prediction = await asyncio.wait_for(
                    self._run(orb, state, config, flags, filters),
                    timeout=config.prediction_timeout_s,
                )
            except asyncio.TimeoutError:
                state.transition(PredictionMode.DISABLED, FallbackReason.TIMEOUT)
                prediction = self._legacy_prediction(orb, state, config)
            except Exception as e:
                # Last line of the ladder: treat anything unexpected as a retrieval failure
                logger.exception(f"Unexpected prediction failure for orb {orb.id}")
                state.transition(PredictionMode.DISABLED, FallbackReason.RETRIEVAL_ERROR, e)
                prediction = self._legacy_prediction(orb, state, config)

        prediction = prediction.model_copy(update={
            "fallback_reason": state.reason,
            "degradation_path": list(state.path),
            "compute_time_ms": (time.perf_counter() - started) * 1000,
        })
        self._log(orb, prediction, flags)
        return prediction

    async def _run(
        self,
        orb: Orb,
        state: _RunState,
        config: RAGConfig,
        flags: FeatureFlags,
        filters: Optional[RetrievalFilters],
    ) -> Prediction:
        if state.mode is PredictionMode.DISABLED:
            state.reason = FallbackReason.RAG_DISABLED
            return self._legacy_prediction(orb, state, config)

        try:
            evidence = await self.gather_evidence(orb, config, flags, filters)
        except ProviderError as e:
            state.transition(PredictionMode.DISABLED, FallbackReason.PROVIDER_ERROR, e)
            return self._legacy_prediction(orb, state, config)
        except RetrievalError as e:
            state.transition(PredictionMode.DISABLED, FallbackReason.RETRIEVAL_ERROR, e)
            return self._legacy_prediction(orb, state, config)
        except AttributionError as e:
            state.transition(PredictionMode.DISABLED, FallbackReason.ATTRIBUTION_ERROR, e)
            return self._legacy_prediction(orb, state, config)

        legacy: Optional[LegacyScore] = None
        if state.mode is PredictionMode.HYBRID:
            try:
                legacy = self.legacy_scorer.score(orb)
            except Exception as e:
                state.transition(PredictionMode.RAG_ONLY, FallbackReason.LEGACY_ERROR, e)

        return self._evidence_prediction(orb, state, evidence, legacy, config)

    async def gather_evidence(
        self,
        orb: Orb,
        config: RAGConfig,
        flags: FeatureFlags,
        filters: Optional[RetrievalFilters] = None,
    ) -> Evidence:
        """
        Embed the query (when possible), retrieve neighbors and attribute.

        Raises:
            ProviderError: Embedding failed and ``degrade_on_provider_error`` is set
            RetrievalError: Retrieval failed
            AttributionError: Attribution failed
        """
        query = orb
        embedded = bool(orb.embedding)
        if not embedded and self.embedding_provider is not None:
            try:
                query = orb.with_embedding(
                    await embed_orb(self.embedding_provider, orb, config.embedding_timeout_s)
                )
                embedded = True
            except ProviderError as e:
                if config.degrade_on_provider_error:
                    raise
                logger.warning(f"Scoring orb {orb.id} on structure only: {e}")

        neighbors = await asyncio.to_thread(
            self.retriever.retrieve, query, config.default_k, filters, config
        )
        stats = compute_neighbor_stats(neighbors)
        if stats.count < config.min_neighbors:
            logger.debug(f"Insufficient neighbors for orb {orb.id}: {stats.count} < {config.min_neighbors}")

        analysis = None
        if flags.enable_contrastive:
            try:
                analysis = self.attribution.analyze_contrast(query, neighbors, config)
            except AttributionError:
                raise
            except Exception as e:
                raise AttributionError(f"Attribution failed for orb {orb.id}: {e}") from e

        return Evidence(neighbors=neighbors, stats=stats, analysis=analysis, embedded=embedded)

    def _evidence_prediction(
        self,
        orb: Orb,
        state: _RunState,
        evidence: Evidence,
        legacy: Optional[LegacyScore],
        config: RAGConfig,
    ) -> Prediction:
        neighbors = evidence.neighbors
        rag_score = weighted_neighbor_score(neighbors)
        if rag_score is not None and evidence.analysis is not None and config.apply_contrastive_adjustment:
            rag_score = apply_contrastive_adjustment(rag_score, evidence.analysis, config)

        confidence = compute_confidence(neighbors, config)

        if state.mode is PredictionMode.HYBRID:
            alpha = calculate_blend_alpha(neighbors, config) if rag_score is not None else 0.0
            success = alpha * rag_score + (1 - alpha) * legacy.score if rag_score is not None else legacy.score
            method = PredictionMethod.HYBRID
        else:
            alpha = 0.0
            success = rag_score if rag_score is not None else config.default_fallback_score
            if rag_score is None:
                confidence = config.default_fallback_confidence
            method = PredictionMethod.RAG

        if not _valid_score(success, config) or (rag_score is not None and not math.isfinite(rag_score)):
            state.transition(PredictionMode.DISABLED, FallbackReason.INVALID_SCORE)
            return self._legacy_prediction(orb, state, config)

        analysis = evidence.analysis
        summary, details, recommendations, experiments = generate_explanation(
            orb, success, confidence, neighbors, analysis,
            confidence_threshold=config.recommendation_confidence_threshold,
        )
        if not recommendations and legacy is not None:
            recommendations = list(legacy.recommendations)

        effects = analysis.trait_effects if analysis is not None else []
        effects = sorted(effects, key=lambda e: (-abs(e.lift), e.trait, e.trait_value.text))

        return Prediction(
            success_probability=success,
            confidence=confidence,
            method=method,
            rag_score=rag_score,
            legacy_score=legacy.score if legacy is not None else None,
            blend_alpha=alpha,
            neighbors=neighbors[:config.display_neighbors],
            neighbor_count=len(neighbors),
            avg_neighbor_similarity=evidence.stats.avg_similarity,
            trait_effects=effects[:config.display_trait_effects],
            explanation=summary,
            explanation_details=details,
            recommendations=recommendations,
            experiments_to_run=experiments,
        )

    def _legacy_prediction(self, orb: Orb, state: _RunState, config: RAGConfig) -> Prediction:
        try:
            legacy = self.legacy_scorer.score(orb)
            if not _valid_score(legacy.score, config):
                raise ValueError(f"legacy score {legacy.score} out of range")
        except Exception as e:
            state.transition(PredictionMode.DISABLED, FallbackReason.LEGACY_ERROR, e)
            score = config.default_fallback_score
            confidence = config.default_fallback_confidence
            return Prediction(
                success_probability=score,
                confidence=confidence,
                method=PredictionMethod.LEGACY,
                explanation=legacy_explanation(score, confidence, "no scorer available"),
            )

        reason = state.reason.value if state.reason is not None else None
        return Prediction(
            success_probability=legacy.score,
            confidence=legacy.confidence,
            method=PredictionMethod.LEGACY,
            legacy_score=legacy.score,
            explanation=legacy_explanation(legacy.score, legacy.confidence, reason),
            recommendations=list(legacy.recommendations),
        )

    @staticmethod
    def _log(orb: Orb, prediction: Prediction, flags: FeatureFlags):
        level = logging.INFO if flags.enable_debug_logging else logging.DEBUG
        fallback = prediction.fallback_reason.value if prediction.fallback_reason else None
        logger.log(
            level,
            f"Prediction orb={orb.id} method={prediction.method.value} fallback={fallback} "
            f"score={prediction.success_probability:.2f} confidence={prediction.confidence:.1f} "
            f"rag={prediction.rag_score} legacy={prediction.legacy_score} "
            f"alpha={prediction.blend_alpha:.3f} neighbors={prediction.neighbor_count} "
            f"steps={len(prediction.degradation_path)} ms={prediction.compute_time_ms:.1f}",
        )
