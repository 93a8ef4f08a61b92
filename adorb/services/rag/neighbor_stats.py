"""Aggregate statistics over a neighbor set."""

from typing import Sequence

import numpy as np

from adorb.core.config import RAGConfig
from .models import Neighbor, NeighborStats


def compute_neighbor_stats(neighbors: Sequence[Neighbor]) -> NeighborStats:
    """
    Summarize similarity and outcome distribution of a neighbor set.

    Similarity averages cover every neighbor; success score mean
    and spread cover only neighbors carrying one. ``variance`` is the sample
    variance and ``std_dev`` its square root (both 0 with fewer than two outcomes).
    Empty input yields all zeros.
    """
    if not neighbors:
        return NeighborStats()

    hybrid = np.array([n.hybrid_similarity for n in neighbors], dtype=float)
    outcomes = np.array(
        [v for v in (n.orb.success_score for n in neighbors) if v is not None],
        dtype=float,
    )

    variance = float(np.var(outcomes, ddof=1)) if len(outcomes) > 1 else 0.0

    return NeighborStats(
        count=len(neighbors),
        avg_similarity=float(hybrid.mean()),
        avg_vector_similarity=float(np.mean([n.vector_similarity for n in neighbors])),
        avg_structured_similarity=float(np.mean([n.structured_similarity for n in neighbors])),
        avg_recency=float(np.mean([n.recency_weight for n in neighbors])),
        avg_success_score=float(outcomes.mean()) if len(outcomes) else 0.0,
        variance=variance,
        std_dev=float(np.sqrt(variance)),
        min_similarity=float(hybrid.min()),
        max_similarity=float(hybrid.max()),
    )


def has_enough_neighbors(neighbors: Sequence[Neighbor], config: RAGConfig) -> bool:
    """At least ``min_neighbors`` with average hybrid similarity above the floor."""
    if len(neighbors) < config.min_neighbors:
        return False
    return compute_neighbor_stats(neighbors).avg_similarity >= config.min_similarity
