"""
Contrastive Attribution Service - trait lift from neighbor subpopulations.

For every trait/value observed across the outcome-bearing neighbors, split
the neighbors into a WITH group (carries the pair) and a WITHOUT group and
compare their mean outcomes. Numeric traits are split at the neighbor median.

Confidence is capped by the smaller group:
    confidence = m / (m + C) * |lift| / (|lift| + S),   m = min(n_with, n_without)
so a handful of examples can never produce a high-confidence claim.
"""

import logging
import math
from collections import Counter
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import stats as scipy_stats

from adorb.core.config import RAGConfig
from .errors import AttributionError
from .models import (
    BoolTrait,
    CategoricalTrait,
    ContrastiveAnalysis,
    EffectDirection,
    Neighbor,
    NumericTrait,
    Orb,
    OrbResults,
    TraitEffect,
    trait_label,
)

logger = logging.getLogger(__name__)

# Effects surfaced in the top_positive / top_negative lists
TOP_EFFECTS = 5

AnyTrait = Union[BoolTrait, CategoricalTrait, NumericTrait]

# (trait name, value, partition)
Candidate = Tuple[str, AnyTrait, str]


def effect_confidence(n_with: int, n_without: int, lift: float, calibration: float, scale: float) -> float:
    """Sample-size capped confidence in [0, 1)."""
    m = min(n_with, n_without)
    if m <= 0:
        return 0.0
    size_factor = m / (m + calibration)
    separation = abs(lift) / (abs(lift) + scale)
    return size_factor * separation


def welch_p_value(with_values: Sequence[float], without_values: Sequence[float]) -> Optional[float]:
    """Two-sided Welch t-test p-value, None when not computable."""
    if len(with_values) < 2 or len(without_values) < 2:
        return None
    if np.var(with_values) == 0 and np.var(without_values) == 0:
        return None
    result = scipy_stats.ttest_ind(with_values, without_values, equal_var=False)
    p_value = float(result.pvalue)
    if not math.isfinite(p_value):
        return None
    return min(1.0, max(0.0, p_value))


def _carries(orb: Orb, name: str, value: AnyTrait, partition: str) -> bool:
    own = orb.traits.get(name)
    if own is None:
        return False
    if partition == "at_or_above":
        return isinstance(own, NumericTrait) and own.value >= value.value
    return own == value


def _query_pair(query: Orb, name: str, value: AnyTrait, partition: str) -> bool:
    if partition == "at_or_above":
        return isinstance(query.traits.get(name), NumericTrait)
    return _carries(query, name, value, partition)


class ContrastiveAttributionService:
    """Estimate per-trait outcome lift by contrasting neighbor groups."""

    def __init__(self, config: Optional[RAGConfig] = None):
        self.config = config or RAGConfig()

    def analyze(
        self,
        query: Orb,
        neighbors: Sequence[Neighbor],
        config: Optional[RAGConfig] = None,
    ) -> List[TraitEffect]:
        """Ordered trait effects (|lift| * confidence desc, then trait, then value)."""
        return self.analyze_contrast(query, neighbors, config).trait_effects

    def analyze_contrast(
        self,
        query: Orb,
        neighbors: Sequence[Neighbor],
        config: Optional[RAGConfig] = None,
    ) -> ContrastiveAnalysis:
        """
        Full contrastive analysis for a query orb.

        Args:
            query: The orb being predicted
            neighbors: Retrieved neighbors
            config: Per-call configuration

        Returns:
            ContrastiveAnalysis with ordered effects, top positive/negative
            lists and the query traits no neighbor carries

        Raises:
            AttributionError: If the configured outcome metric is unknown
        """
        config = config or self.config
        metric = config.outcome_metric
        if metric not in OrbResults.model_fields:
            raise AttributionError(f"Unknown outcome metric '{metric}'")

        scored = [(n, n.orb.metric(metric)) for n in neighbors]
        scored = [(n, float(v)) for n, v in scored if v is not None]

        avg_similarity = (
            float(np.mean([n.hybrid_similarity for n in neighbors])) if neighbors else 0.0
        )

        effects: List[TraitEffect] = []
        for name, value, partition in self._candidates(query, scored, config.max_traits):
            effect = self._effect(query, scored, name, value, partition, config)
            if effect is not None:
                effects.append(effect)

        effects.sort(key=lambda e: (-abs(e.lift) * e.confidence, e.trait, e.trait_value.text))

        by_lift = sorted(effects, key=lambda e: (-abs(e.lift), e.trait, e.trait_value.text))
        top_positive = [e for e in by_lift if e.lift > 0 and e.is_significant][:TOP_EFFECTS]
        top_negative = [e for e in by_lift if e.lift < 0 and e.is_significant][:TOP_EFFECTS]
        low_confidence = [
            e for e in effects
            if e.in_query and e.confidence < config.recommendation_confidence_threshold
        ]

        analysis = ContrastiveAnalysis(
            trait_effects=effects,
            top_positive=top_positive,
            top_negative=top_negative,
            low_confidence=low_confidence,
            unobserved_query_traits=self._unobserved(query, scored),
            total_neighbors=len(neighbors),
            avg_similarity=avg_similarity,
        )

        logger.debug(
            f"Contrastive analysis for orb {query.id}: {len(effects)} effects from "
            f"{len(scored)}/{len(neighbors)} outcome-bearing neighbors"
        )
        return analysis

    @staticmethod
    def _candidates(query: Orb, scored: Sequence[Tuple[Neighbor, float]], max_traits: int) -> List[Candidate]:
        """
        Trait/value pairs to contrast: the most frequent up to ``max_traits``,
        plus every pair the query itself carries.
        """
        counts: Counter = Counter()
        numeric: Dict[str, List[float]] = {}

        for neighbor, _ in scored:
            for name, value in neighbor.orb.traits.items():
                if isinstance(value, NumericTrait):
                    numeric.setdefault(name, []).append(value.value)
                elif isinstance(value, BoolTrait):
                    if value.value:
                        counts[(name, value, "equals")] += 1
                else:
                    counts[(name, value, "equals")] += 1

        for name, values in numeric.items():
            median = NumericTrait(value=float(np.median(values)))
            counts[(name, median, "at_or_above")] = sum(1 for v in values if v >= median.value)

        ranked = [c for c, _ in sorted(counts.items(), key=lambda item: (-item[1], item[0][0], item[0][1].text))]
        selected = ranked[:max_traits]
        selected += [c for c in ranked[max_traits:] if _query_pair(query, *c)]
        return selected

    def _effect(
        self,
        query: Orb,
        scored: Sequence[Tuple[Neighbor, float]],
        name: str,
        value: AnyTrait,
        partition: str,
        config: RAGConfig,
    ) -> Optional[TraitEffect]:
        with_group = [(n, v) for n, v in scored if _carries(n.orb, name, value, partition)]
        without_group = [(n, v) for n, v in scored if not _carries(n.orb, name, value, partition)]
        if not with_group or not without_group:
            return None

        avg_with = self._mean(with_group, config.similarity_weighted_means)
        avg_without = self._mean(without_group, config.similarity_weighted_means)

        raw_lift = avg_with - avg_without
        lift = max(-config.max_abs_lift, min(config.max_abs_lift, raw_lift))
        lift_percent = 100.0 * lift / avg_without if avg_without != 0 else None

        n_with, n_without = len(with_group), len(without_group)
        confidence = effect_confidence(
            n_with, n_without, lift, config.confidence_calibration, config.separation_scale
        )
        p_value = welch_p_value([v for _, v in with_group], [v for _, v in without_group])

        confident = confidence > config.recommendation_confidence_threshold
        if not confident:
            direction = EffectDirection.TEST
        elif abs(lift) < config.significance_threshold:
            direction = EffectDirection.NEUTRAL
        else:
            direction = EffectDirection.USE if lift > 0 else EffectDirection.AVOID

        is_significant = (
            confident
            and n_with >= config.min_sample_size
            and n_without >= config.min_sample_size
            and abs(lift) >= config.significance_threshold
        )

        label = (
            f"{name}>={value.text}" if partition == "at_or_above" else trait_label(name, value)
        )

        return TraitEffect(
            trait=name,
            trait_value=value,
            partition=partition,
            lift=lift,
            lift_percent=lift_percent,
            confidence=confidence,
            n_with=n_with,
            n_without=n_without,
            avg_with=avg_with,
            avg_without=avg_without,
            p_value=p_value,
            is_significant=is_significant,
            direction=direction,
            recommendation=self._recommendation(label, direction, lift, n_with + n_without) if confident else None,
            in_query=_carries(query, name, value, partition),
        )

    @staticmethod
    def _mean(group: Sequence[Tuple[Neighbor, float]], weighted: bool) -> float:
        values = np.array([v for _, v in group], dtype=float)
        if weighted:
            weights = np.array([n.weighted_similarity for n, _ in group], dtype=float)
            if weights.sum() > 0:
                return float(np.average(values, weights=weights))
        return float(values.mean())

    @staticmethod
    def _recommendation(label: str, direction: EffectDirection, lift: float, n_total: int) -> str:
        if direction == EffectDirection.USE:
            return f"Consider using {label}: associated with {abs(lift):.0f} points higher success."
        if direction == EffectDirection.AVOID:
            return f"Caution with {label}: associated with {abs(lift):.0f} points lower success."
        return f"{label} shows minimal impact among {n_total} similar ads."

    @staticmethod
    def _unobserved(query: Orb, scored: Sequence[Tuple[Neighbor, float]]) -> List[str]:
        """Query traits no outcome-bearing neighbor carries."""
        missing = []
        for name, value in query.traits.items():
            if isinstance(value, BoolTrait) and not value.value:
                continue
            if isinstance(value, NumericTrait):
                seen = any(isinstance(n.orb.traits.get(name), NumericTrait) for n, _ in scored)
            else:
                seen = any(n.orb.traits.get(name) == value for n, _ in scored)
            if not seen:
                missing.append(trait_label(name, value))
        return sorted(missing)
