"""
Data Needs Detection - coverage gaps behind a low-confidence prediction.

Generates DataNeed entries when confidence is limited by:
- too few neighbors
- low similarity to the historical population
- inconsistent outcomes among neighbors
- thin coverage of the query's platform
- query traits whose effect is still uncertain
"""

import logging
import math
from collections import Counter
from typing import Dict, List, Optional, Sequence

import numpy as np

from adorb.core.config import RAGConfig
from .models import DataNeed, GapAnalysis, Neighbor, Severity, TraitEffect

logger = logging.getLogger(__name__)

# Severity thresholds (samples, confidence in percent)
MIN_SAMPLES_FOR_LOW = 5
MIN_SAMPLES_FOR_MEDIUM = 10
MIN_CONFIDENCE_FOR_HIGH = 40
MIN_CONFIDENCE_FOR_MEDIUM = 60

# Outcome standard deviation above which neighbors disagree
HIGH_VARIANCE_STD = 25.0
SEVERE_VARIANCE_STD = 35.0

LOW_SIMILARITY_SEVERE = 0.3

_SEVERITY_ORDER = {Severity.HIGH: 0, Severity.MEDIUM: 1, Severity.LOW: 2}


def calculate_severity(current_samples: int, confidence: float) -> Severity:
    if current_samples < MIN_SAMPLES_FOR_LOW or confidence < MIN_CONFIDENCE_FOR_HIGH:
        return Severity.HIGH
    if current_samples < MIN_SAMPLES_FOR_MEDIUM or confidence < MIN_CONFIDENCE_FOR_MEDIUM:
        return Severity.MEDIUM
    return Severity.LOW


def estimate_confidence_impact(current_samples: int, required_samples: int, current_confidence: float) -> int:
    """Confidence points gained by filling a gap, with diminishing returns."""
    if required_samples <= 0:
        return 0
    deficit = max(0, required_samples - current_samples)
    max_gain = max(0.0, 100.0 - current_confidence)
    return int(round(max_gain * (1 - math.exp(-deficit / required_samples))))


def _neighbor_needs(neighbors: Sequence[Neighbor], config: RAGConfig) -> List[DataNeed]:
    needs = []

    if len(neighbors) < config.min_neighbors:
        needs.append(DataNeed(
            dimension="trait",
            value="similar_ads",
            reason=f"Only {len(neighbors)} similar ads found (need {config.min_neighbors} minimum)",
            severity=Severity.HIGH,
            current_samples=len(neighbors),
            required_samples=config.min_neighbors,
            confidence_impact=estimate_confidence_impact(len(neighbors), config.min_neighbors, 30),
        ))

    if neighbors:
        avg_similarity = float(np.mean([n.hybrid_similarity for n in neighbors]))
        if avg_similarity < config.gap_min_similarity_threshold:
            needs.append(DataNeed(
                dimension="trait",
                value="similarity_quality",
                reason=f"Low similarity scores (avg: {avg_similarity * 100:.1f}%)",
                severity=Severity.HIGH if avg_similarity < LOW_SIMILARITY_SEVERE else Severity.MEDIUM,
                current_samples=len(neighbors),
                required_samples=config.min_neighbors,
                confidence_impact=max(0, int(round((config.gap_min_similarity_threshold - avg_similarity) * 100))),
                context={"avg_similarity": avg_similarity},
            ))

    scores = [s for s in (n.orb.success_score for n in neighbors) if s is not None]
    if len(scores) >= 3:
        std_dev = float(np.std(scores))
        if std_dev > HIGH_VARIANCE_STD:
            needs.append(DataNeed(
                dimension="trait",
                value="outcome_variance",
                reason=f"High outcome variance (std dev: {std_dev:.1f}) - results are inconsistent",
                severity=Severity.HIGH if std_dev > SEVERE_VARIANCE_STD else Severity.MEDIUM,
                current_samples=len(scores),
                required_samples=math.ceil(len(scores) * 1.5),
                confidence_impact=int(round(std_dev - 15)),
                context={"std_dev": std_dev},
            ))

    return needs


def _platform_needs(neighbors: Sequence[Neighbor], platform: Optional[str], config: RAGConfig) -> List[DataNeed]:
    if not platform:
        return []

    on_platform = [n for n in neighbors if n.orb.metadata.platform == platform]
    current = len(on_platform)
    required = max(1, config.min_neighbors * 2)
    if current >= required:
        return []

    confidence = current / required * 100
    avg_similarity = float(np.mean([n.weighted_similarity for n in on_platform])) if on_platform else 0.0
    return [DataNeed(
        dimension="platform",
        value=platform,
        reason=f"Only {current} similar ads on {platform} (need {required} for reliable prediction)",
        severity=calculate_severity(current, confidence),
        current_samples=current,
        required_samples=required,
        confidence_impact=estimate_confidence_impact(current, required, confidence),
        context={"avg_similarity": avg_similarity},
    )]


def _trait_needs(effects: Sequence[TraitEffect], config: RAGConfig) -> List[DataNeed]:
    needs = []
    required = config.min_sample_size * 4
    for effect in effects:
        if not effect.in_query or effect.confidence >= config.recommendation_confidence_threshold:
            continue
        confidence = effect.confidence * 100
        needs.append(DataNeed(
            dimension="trait",
            value=effect.label,
            reason=f'Only {effect.n_with} examples with "{effect.label}" (confidence: {confidence:.0f}%)',
            severity=calculate_severity(effect.n_with, confidence),
            current_samples=effect.n_with,
            required_samples=required,
            confidence_impact=estimate_confidence_impact(effect.n_with, required, confidence),
            context={"trait_confidence": confidence, "lift": effect.lift},
        ))
    return needs


def detect_data_needs(
    neighbors: Sequence[Neighbor],
    trait_effects: Sequence[TraitEffect],
    query_platform: Optional[str] = None,
    current_confidence: float = 50.0,
    config: Optional[RAGConfig] = None,
) -> GapAnalysis:
    """
    Detect every data need behind the current prediction state.

    Args:
        neighbors: Retrieved neighbors
        trait_effects: Contrastive attribution results
        query_platform: Platform of the query ad
        current_confidence: Prediction confidence (0-100)
        config: Engine configuration

    Returns:
        GapAnalysis; empty when confidence and neighbor count both clear
        the gap thresholds
    """
    config = config or RAGConfig()

    if (
        current_confidence >= config.gap_confidence_threshold
        and len(neighbors) >= config.gap_min_neighbor_threshold
    ):
        return GapAnalysis(current_confidence=current_confidence, potential_confidence=current_confidence)

    all_needs = (
        _neighbor_needs(neighbors, config)
        + _platform_needs(neighbors, query_platform, config)
        + _trait_needs(trait_effects, config)
    )

    unique: Dict[str, DataNeed] = {}
    for need in all_needs:
        key = f"{need.dimension}:{need.value}"
        current = unique.get(key)
        if current is None or _SEVERITY_ORDER[need.severity] < _SEVERITY_ORDER[current.severity]:
            unique[key] = need

    data_needs = sorted(
        unique.values(),
        key=lambda n: (_SEVERITY_ORDER[n.severity], -n.confidence_impact, n.dimension, n.value),
    )

    counts = Counter(n.severity for n in data_needs)
    max_gain = sum(n.confidence_impact for n in data_needs)

    primary = None
    if data_needs:
        dimensions = Counter(n.dimension for n in data_needs)
        primary = sorted(dimensions.items(), key=lambda item: (-item[1], item[0]))[0][0]

    analysis = GapAnalysis(
        data_needs=data_needs,
        total_gaps=len(data_needs),
        high_severity_count=counts[Severity.HIGH],
        medium_severity_count=counts[Severity.MEDIUM],
        low_severity_count=counts[Severity.LOW],
        has_significant_gaps=counts[Severity.HIGH] > 0 or counts[Severity.MEDIUM] >= 2,
        primary_gap_dimension=primary,
        current_confidence=current_confidence,
        potential_confidence=min(100.0, current_confidence + max_gain),
        max_confidence_gain=max_gain,
    )

    logger.debug(
        f"Detected {analysis.total_gaps} data needs "
        f"(high={analysis.high_severity_count}, medium={analysis.medium_severity_count})"
    )
    return analysis
