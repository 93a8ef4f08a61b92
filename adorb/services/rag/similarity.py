"""
Similarity scoring between orbs.

Vector (embedding cosine), structured (trait overlap), hybrid blend and
recency decay. All scores lie in [0, 1] and are never rounded here.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Mapping, Optional, Tuple

from adorb.core.config import RAGConfig
from adorb.core.embeddings import cosine_similarity
from .models import CategoricalTrait, Neighbor, Orb

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0

# Per-trait weights for weighted-jaccard-v1; unlisted traits weigh DEFAULT_TRAIT_WEIGHT
TRAIT_WEIGHTS: Dict[str, float] = {
    "platform": 2.0,
    "hook": 1.5,
    "category": 1.5,
    "editing": 1.2,
    "ugc": 1.3,
    "subtitles": 1.0,
    "voiceover": 1.0,
    "music": 1.0,
    "objective": 1.5,
    "audience": 1.2,
    "placement": 1.0,
    "cta_type": 0.8,
    "tone": 0.8,
    "pattern": 0.8,
}
DEFAULT_TRAIT_WEIGHT = 0.5

# Credit for categorical values where one contains the other ("ugc" / "ugc_testimonial")
PARTIAL_MATCH_CREDIT = 0.5


def _clamp01(value: float) -> float:
    return min(1.0, max(0.0, value))


def vector_similarity(a: Optional[list], b: Optional[list]) -> Optional[float]:
    """Cosine similarity clamped to [0, 1].

    Returns None when either embedding is missing or dimensions differ, so the
    caller can tell "no vector signal" apart from "orthogonal".
    """
    if not a or not b:
        return None
    if len(a) != len(b):
        logger.debug(f"Embedding dimension mismatch: {len(a)} vs {len(b)}")
        return None
    return _clamp01(cosine_similarity(a, b))


def jaccard_similarity(traits_a: Mapping, traits_b: Mapping) -> float:
    """jaccard-v1: matching key/value pairs over the union of trait keys."""
    keys = set(traits_a) | set(traits_b)
    if not keys:
        return 0.0
    matches = sum(1 for key in keys if key in traits_a and key in traits_b and traits_a[key] == traits_b[key])
    return matches / len(keys)


def weighted_jaccard_similarity(
    traits_a: Mapping,
    traits_b: Mapping,
    weights: Optional[Mapping[str, float]] = None,
) -> float:
    """weighted-jaccard-v1: per-trait weighted overlap with partial categorical credit."""
    weights = TRAIT_WEIGHTS if weights is None else weights
    keys = set(traits_a) | set(traits_b)

    match_score = 0.0
    total_weight = 0.0
    for key in keys:
        weight = weights.get(key, DEFAULT_TRAIT_WEIGHT)
        total_weight += weight

        value_a = traits_a.get(key)
        value_b = traits_b.get(key)
        if value_a is None or value_b is None:
            continue
        if value_a == value_b:
            match_score += weight
        elif isinstance(value_a, CategoricalTrait) and isinstance(value_b, CategoricalTrait):
            if value_a.value in value_b.value or value_b.value in value_a.value:
                match_score += weight * PARTIAL_MATCH_CREDIT

    if total_weight <= 0:
        return 0.0
    return _clamp01(match_score / total_weight)


def structured_similarity(
    a: Orb,
    b: Orb,
    method: str = "jaccard-v1",
    weights: Optional[Mapping[str, float]] = None,
) -> float:
    if method == "weighted-jaccard-v1":
        return weighted_jaccard_similarity(a.traits, b.traits, weights)
    if method == "jaccard-v1":
        return jaccard_similarity(a.traits, b.traits)
    raise ValueError(f"Unknown structured similarity method: {method}")


def hybrid_similarity(
    vector: Optional[float],
    structured: float,
    vector_weight: float = 0.6,
    structured_weight: float = 0.4,
) -> float:
    """Blend vector and structured similarity.

    A missing vector signal counts as 0; the vector weight is not credited.
    """
    if vector is None:
        return _clamp01(structured_weight * structured)
    return _clamp01(vector_weight * vector + structured_weight * structured)


def recency_weight(
    created_at: datetime,
    now: Optional[datetime] = None,
    half_life_days: float = 30.0,
    floor: float = 0.1,
) -> float:
    """
    Half-life decay on ad age.

    1.0 at age 0 (and for future dates), strictly decreasing with age, and
    asymptotic to ``floor`` so old ads never drop to zero weight.
    """
    now = now or datetime.now(timezone.utc)
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    age_days = max(0.0, (now - created_at).total_seconds() / SECONDS_PER_DAY)
    return floor + (1.0 - floor) * 0.5 ** (age_days / half_life_days)


def score_neighbor(
    query: Orb,
    candidate: Orb,
    config: RAGConfig,
    now: Optional[datetime] = None,
) -> Neighbor:
    """Score one candidate against the query orb."""
    vector = vector_similarity(query.embedding, candidate.embedding)
    structured = structured_similarity(
        query, candidate, config.structured_similarity, config.trait_weights
    )
    hybrid = hybrid_similarity(vector, structured, config.vector_weight, config.structured_weight)
    recency = recency_weight(
        candidate.metadata.created_at, now, config.recency_half_life_days, config.recency_floor
    )

    return Neighbor(
        orb=candidate,
        vector_similarity=vector if vector is not None else 0.0,
        structured_similarity=structured,
        hybrid_similarity=hybrid,
        recency_weight=recency,
        weighted_similarity=hybrid * recency,
        vector_available=vector is not None,
    )


def neighbor_sort_key(neighbor: Neighbor) -> Tuple[float, float, str]:
    """Total order: weighted similarity desc, newer first, then id."""
    return (
        -neighbor.weighted_similarity,
        -neighbor.orb.metadata.created_at.timestamp(),
        neighbor.orb.id,
    )
