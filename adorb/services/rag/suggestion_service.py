"""
Suggestion Service - deterministic ad variants that reduce uncertainty.

Each suggestion keeps the proven core of the query's best neighbors and
changes exactly one experimental lever whose effect is still uncertain.
Suggestions are scored through the same retrieve / attribute / score path
as real ads and are never stored or published by the engine.
"""

import asyncio
import logging
import math
from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from adorb.core.config import FeatureFlags, RAGConfig
from adorb.core.observability import get_logfire
from .contrastive_service import ContrastiveAttributionService
from .embedding_provider import EmbeddingProvider, build_canonical_text, try_embed_orb
from .models import (
    BoolTrait,
    CategoricalTrait,
    ExperimentalLever,
    Neighbor,
    Orb,
    OrbMetadata,
    ProvenCore,
    SuggestedAd,
    SuggestionResult,
    SuggestionScore,
    SuggestionTrigger,
    TraitEffect,
)
from .prediction_blender import apply_contrastive_adjustment, compute_confidence, weighted_neighbor_score
from .retrieval_service import SimilarityRetriever

logger = logging.getLogger(__name__)

# Attribution confidence below which an effect still needs data
LEVER_EFFECT_CONFIDENCE = 0.4
PROVEN_EFFECT_CONFIDENCE = 0.6
MAX_PROVEN_EFFECTS = 5
PROVEN_CORE_NEIGHBORS = 5

# Lever scoring when no neighbor evidence exists for its trait
DEFAULT_LEVER_UNCERTAINTY = 40.0
DEFAULT_LEVER_IMPACT = 50.0
UNCERTAINTY_WEIGHT = 0.6
IMPACT_WEIGHT = 0.4

# Neighbor count at which the top-neighbor average is worth reporting
EVIDENCE_NEIGHBORS = 10

# The proven core never moves a suggestion to another platform or objective
PINNED_TRAITS = ("platform", "objective")


def _lever(lever_id: str, name: str, description: str, trait: str, control, variant) -> ExperimentalLever:
    def as_trait(value):
        return BoolTrait(value=value) if isinstance(value, bool) else CategoricalTrait(value=value)

    return ExperimentalLever(
        id=lever_id,
        name=name,
        description=description,
        trait=trait,
        control=as_trait(control),
        variant=as_trait(variant),
    )


LEVER_CATALOG: List[ExperimentalLever] = [
    _lever("brand_timing", "Brand Reveal Timing", "Early vs late brand reveal",
           "custom:late_brand_reveal", False, True),
    _lever("voiceover", "Voiceover", "Voiceover on vs off", "voiceover", False, True),
    _lever("animation", "Animation Style", "Animation vs live action",
           "media_type", "live_action", "animated"),
    _lever("jingle", "Audio Jingle", "Jingle vs silence/ambient", "music", "music", "jingle"),
    _lever("subtitles", "Subtitles", "Subtitles on vs off", "subtitles", False, True),
    _lever("ugc_style", "UGC Style", "UGC creator vs professional", "ugc", False, True),
    _lever("hook_type", "Hook Type", "Different hook approaches", "hook", "curiosity", "question"),
    _lever("cta_strength", "CTA Strength", "Strong vs subtle CTA", "cta_strength", "moderate", "strong"),
]


def should_generate(
    orb: Orb,
    confidence: float,
    config: RAGConfig,
    flags: FeatureFlags,
) -> Tuple[bool, Optional[SuggestionTrigger], str]:
    """Decide whether a prediction at ``confidence`` warrants suggestions."""
    if not flags.enable_suggestions:
        return False, None, "Suggestions disabled"
    if confidence >= config.suggestion_confidence_ceiling:
        return False, None, f"Confidence already high ({confidence:.0f}%)"
    if confidence < config.suggestion_low_confidence:
        return True, SuggestionTrigger.LOW_CONFIDENCE, f"Confidence is {confidence:.0f}%"
    if not orb.has_outcome:
        return True, SuggestionTrigger.NEW_AD, "Ad has no results yet"
    return False, None, "No trigger conditions met"


def extract_proven_core(neighbors: Sequence[Neighbor], effects: Sequence[TraitEffect]) -> ProvenCore:
    """
    Traits shared by at least half of the top neighbors, plus the strongest
    significant positive effects.
    """
    proven = sorted(
        (e for e in effects if e.is_significant and e.lift > 0 and e.confidence >= PROVEN_EFFECT_CONFIDENCE),
        key=lambda e: (-e.lift, e.trait, e.trait_value.text),
    )[:MAX_PROVEN_EFFECTS]

    top = list(neighbors[:PROVEN_CORE_NEIGHBORS])
    if not top:
        return ProvenCore(effects=[e.label for e in proven])

    scores = [n.orb.success_score if n.orb.success_score is not None else 50.0 for n in top]

    counts: Counter = Counter()
    for neighbor in top:
        for name, value in neighbor.orb.traits.items():
            counts[(name, value)] += 1

    threshold = math.ceil(len(top) / 2)
    common: Dict[str, object] = {}
    ranked = sorted(counts.items(), key=lambda item: (-item[1], item[0][0], item[0][1].text))
    for (name, value), count in ranked:
        if count >= threshold and name not in common:
            common[name] = value

    return ProvenCore(traits=common, effects=[e.label for e in proven], avg_score=float(np.mean(scores)))


def select_lever(
    query: Orb,
    uncertain: Sequence[TraitEffect],
    used: Sequence[str],
    min_uncertainty: float = DEFAULT_LEVER_UNCERTAINTY,
) -> Optional[ExperimentalLever]:
    """
    Pick the unused lever with the best uncertainty/impact score.

    Levers the query already sets to the variant value are skipped; ties
    keep catalog order.
    """
    best: Optional[Tuple[float, int, ExperimentalLever]] = None

    for index, base in enumerate(LEVER_CATALOG):
        if base.id in used or query.traits.get(base.trait) == base.variant:
            continue

        match = next((e for e in uncertain if e.trait == base.trait), None)
        if match is not None:
            uncertainty = 100.0 - match.confidence * 100.0
            impact = min(100.0, abs(match.lift) * 2)
            sample_size = match.n_with + match.n_without
        else:
            uncertainty, impact, sample_size = DEFAULT_LEVER_UNCERTAINTY, DEFAULT_LEVER_IMPACT, 0

        if uncertainty < min_uncertainty:
            continue

        lever = base.model_copy(update={
            "uncertainty": uncertainty,
            "potential_impact": impact,
            "sample_size": sample_size,
        })
        score = uncertainty * UNCERTAINTY_WEIGHT + impact * IMPACT_WEIGHT
        if best is None or score > best[0]:
            best = (score, index, lever)

    return best[2] if best is not None else None


def build_suggested_traits(query: Orb, core: ProvenCore, lever: ExperimentalLever) -> Dict[str, object]:
    """Parent traits, overlaid with the proven core, then the lever's variant."""
    traits: Dict[str, object] = dict(query.traits)
    for name, value in core.traits.items():
        if name not in PINNED_TRAITS:
            traits[name] = value
    traits[lever.trait] = lever.variant
    return traits


class SuggestionService:
    """Generates and scores suggested ad variants for a query orb."""

    def __init__(
        self,
        retriever: SimilarityRetriever,
        attribution: ContrastiveAttributionService,
        embedding_provider: Optional[EmbeddingProvider] = None,
        config: Optional[RAGConfig] = None,
        flags: Optional[FeatureFlags] = None,
    ):
        self.retriever = retriever
        self.attribution = attribution
        self.embedding_provider = embedding_provider
        self.config = config or RAGConfig()
        self.flags = flags or FeatureFlags()

    async def suggest(
        self,
        orb: Orb,
        max_suggestions: Optional[int] = None,
        config: Optional[RAGConfig] = None,
        flags: Optional[FeatureFlags] = None,
    ) -> SuggestionResult:
        """
        Suggest up to ``max_suggestions`` variants of an orb.

        Args:
            orb: Parent orb
            max_suggestions: Requested count, capped at ``config.max_suggestions``
            config: Per-call configuration
            flags: Per-call feature flags

        Returns:
            SuggestionResult; ``generated`` is False when no trigger fired

        Raises:
            RetrievalError: Retrieval for the parent failed
            AttributionError: Attribution for the parent failed
        """
        config = config or self.config
        flags = flags or self.flags
        limit = min(max_suggestions or config.max_suggestions, config.max_suggestions)

        lf = get_logfire()
        with lf.span("rag.suggest", orb_id=orb.id, limit=limit):
            query = orb
            if not orb.embedding:
                query = await try_embed_orb(self.embedding_provider, orb, config.embedding_timeout_s)
            neighbors = await asyncio.to_thread(self.retriever.retrieve, query, config.default_k, None, config)
            confidence = compute_confidence(neighbors, config)

            generate, trigger, reason = should_generate(orb, confidence, config, flags)
            result = SuggestionResult(
                query_id=orb.id,
                trigger=trigger,
                reason=reason,
                confidence=confidence,
                neighbor_count=len(neighbors),
            )
            if not generate:
                logger.debug(f"No suggestions for orb {orb.id}: {reason}")
                return result

            if len(neighbors) < config.min_neighbors_for_suggestion:
                return result.model_copy(update={
                    "reason": f"Not enough similar ads ({len(neighbors)} < {config.min_neighbors_for_suggestion})",
                })

            analysis = self.attribution.analyze_contrast(query, neighbors, config)
            uncertain = [e for e in analysis.trait_effects if e.confidence < LEVER_EFFECT_CONFIDENCE]
            core = extract_proven_core(neighbors, analysis.trait_effects)

            used: List[str] = []
            suggestions: List[SuggestedAd] = []
            for _ in range(limit):
                lever = select_lever(orb, uncertain, used, config.min_lever_uncertainty)
                if lever is None:
                    break
                used.append(lever.id)

                suggestion = SuggestedAd(
                    id=f"{orb.id}:suggested:{lever.id}",
                    parent_id=orb.id,
                    traits=build_suggested_traits(orb, core, lever),
                    lever=lever,
                    reason=(
                        f"Testing {lever.name}: {lever.description}. "
                        f"Current uncertainty: {lever.uncertainty:.0f}%"
                    ),
                    notes=f"Testing: {lever.name} ({lever.description})",
                )
                score = await self.score_suggestion(suggestion, orb, config)
                suggestions.append(suggestion.model_copy(update={"score": score}))

        logger.info(
            f"Generated {len(suggestions)} suggestions for orb {orb.id} "
            f"(trigger={trigger.value}, confidence={confidence:.1f})"
        )
        return result.model_copy(update={
            "generated": True,
            "proven_core": core,
            "suggestions": suggestions,
        })

    async def score_suggestion(self, suggestion: SuggestedAd, parent: Orb, config: RAGConfig) -> SuggestionScore:
        """
        Score a suggestion like a real ad. Always returns a score: too few
        neighbors gives a low-confidence neutral score, any failure a
        zero-confidence one.
        """
        try:
            orb = self._suggestion_orb(suggestion, parent)
            orb = await try_embed_orb(self.embedding_provider, orb, config.embedding_timeout_s)
            neighbors = await asyncio.to_thread(self.retriever.retrieve, orb, config.default_k, None, config)

            base = weighted_neighbor_score(neighbors)
            if len(neighbors) < config.min_neighbors or base is None:
                return SuggestionScore(
                    predicted_score=config.default_fallback_score,
                    confidence=min(len(neighbors) * 10.0, 30.0),
                    whats_proven=["Insufficient data for proven patterns"],
                    whats_tested=suggestion.lever.id,
                    why_suggested="To gather more data for future predictions",
                    neighbor_count=len(neighbors),
                )

            analysis = self.attribution.analyze_contrast(orb, neighbors, config)
            predicted = apply_contrastive_adjustment(base, analysis, config)

            whats_proven = [f"{e.label} adds +{e.lift:.0f} points" for e in analysis.top_positive[:3]]
            if len(neighbors) >= EVIDENCE_NEIGHBORS:
                top = [n.orb.success_score or 50.0 for n in neighbors[:PROVEN_CORE_NEIGHBORS]]
                whats_proven.insert(0, f"Top similar ads average {np.mean(top):.0f}% success")

            created = [n.orb.metadata.created_at for n in neighbors]
            return SuggestionScore(
                predicted_score=predicted,
                confidence=compute_confidence(neighbors, config),
                whats_proven=whats_proven,
                whats_tested=f"{suggestion.lever.id}: {suggestion.reason}",
                why_suggested=f"Expected to reduce uncertainty by {suggestion.lever.potential_impact:.0f}%",
                neighbor_count=len(neighbors),
                avg_similarity=float(np.mean([n.hybrid_similarity for n in neighbors])),
                platforms=sorted({n.orb.metadata.platform for n in neighbors if n.orb.metadata.platform}),
                trait_effects=analysis.trait_effects[:config.display_trait_effects],
                oldest_neighbor=min(created),
                newest_neighbor=max(created),
            )
        except Exception as e:
            logger.error(f"Error scoring suggestion {suggestion.id}: {e}")
            return SuggestionScore(
                predicted_score=config.default_fallback_score,
                confidence=0.0,
                whats_proven=["Unable to analyze similar ads"],
                whats_tested=suggestion.lever.id,
                why_suggested="Scoring system encountered an error",
            )

    @staticmethod
    def _suggestion_orb(suggestion: SuggestedAd, parent: Orb) -> Orb:
        orb = Orb(
            id=suggestion.id,
            traits=suggestion.traits,
            metadata=OrbMetadata(
                platform=parent.metadata.platform,
                objective=parent.metadata.objective,
                created_at=parent.metadata.created_at,
            ),
        )
        return orb.model_copy(update={"canonical_text": build_canonical_text(orb)})
