"""
Similarity Retriever - top-k neighbors for a query orb.

Reads one store snapshot per call, filters candidates, scores them with the
hybrid similarity, and returns a deterministically ordered top-k. Large
populations are scored in partitions on a thread pool.
"""

import heapq
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from adorb.core.config import RAGConfig
from adorb.core.observability import get_logfire
from .errors import RetrievalError
from .models import Neighbor, Orb, RetrievalFilters
from .orb_store import OrbStore
from .similarity import neighbor_sort_key, score_neighbor

logger = logging.getLogger(__name__)


def apply_filters(
    orbs: Sequence[Orb],
    filters: RetrievalFilters,
    now: Optional[datetime] = None,
) -> List[Orb]:
    """Candidate orbs passing every active filter."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=filters.max_age_days) if filters.max_age_days else None
    platform = filters.platform.strip().lower() if filters.platform else None
    objective = filters.objective.strip().lower() if filters.objective else None

    kept = []
    for orb in orbs:
        if platform and orb.metadata.platform != platform:
            continue
        if objective and orb.metadata.objective != objective:
            continue
        if cutoff is not None and orb.metadata.created_at < cutoff:
            continue
        if filters.min_success_score is not None:
            score = orb.success_score
            if score is None or score < filters.min_success_score:
                continue
        if filters.require_results and not orb.has_outcome:
            continue
        kept.append(orb)
    return kept


class SimilarityRetriever:
    """Retrieve the most similar historical orbs from a store."""

    def __init__(self, store: OrbStore, config: Optional[RAGConfig] = None):
        self.store = store
        self.config = config or RAGConfig()

    def retrieve(
        self,
        query: Orb,
        k: Optional[int] = None,
        filters: Optional[RetrievalFilters] = None,
        config: Optional[RAGConfig] = None,
        now: Optional[datetime] = None,
    ) -> List[Neighbor]:
        """
        Top-k neighbors of ``query``.

        Args:
            query: Query orb (its own id is never returned)
            k: Neighbor count (default ``config.default_k``, capped at ``max_k``)
            filters: Candidate filters (default: outcome-bearing orbs only)
            config: Per-call configuration
            now: Reference time for recency and age filters

        Returns:
            Neighbors sorted by weighted similarity desc, created_at desc, id

        Raises:
            RetrievalError: If the store snapshot can't be read or scoring fails
        """
        config = config or self.config
        filters = filters or RetrievalFilters()
        now = now or datetime.now(timezone.utc)
        k = min(k or config.default_k, config.max_k)

        lf = get_logfire()
        with lf.span("rag.retrieve", k=k, orb_id=query.id):
            try:
                population = self.store.snapshot()
            except Exception as e:
                raise RetrievalError(f"Failed to read orb snapshot: {e}") from e

            candidates = [o for o in apply_filters(population, filters, now) if o.id != query.id]
            if not candidates:
                logger.debug(f"No candidates for orb {query.id} after filtering {len(population)} orbs")
                return []

            try:
                if len(candidates) > config.partition_size:
                    neighbors = self._score_partitioned(query, candidates, k, config, now)
                else:
                    neighbors = self._score(query, candidates, k, config, now)
            except Exception as e:
                raise RetrievalError(f"Scoring failed for orb {query.id}: {e}") from e

        logger.debug(
            f"Retrieved {len(neighbors)}/{len(candidates)} neighbors for orb {query.id}"
        )
        return neighbors

    @staticmethod
    def _score(
        query: Orb,
        candidates: Sequence[Orb],
        k: int,
        config: RAGConfig,
        now: datetime,
    ) -> List[Neighbor]:
        scored = (score_neighbor(query, c, config, now) for c in candidates)
        kept = (n for n in scored if n.hybrid_similarity >= config.min_similarity)
        return heapq.nsmallest(k, kept, key=neighbor_sort_key)

    def _score_partitioned(
        self,
        query: Orb,
        candidates: Sequence[Orb],
        k: int,
        config: RAGConfig,
        now: datetime,
    ) -> List[Neighbor]:
        size = config.partition_size
        partitions = [candidates[i:i + size] for i in range(0, len(candidates), size)]
        logger.debug(f"Scoring {len(candidates)} candidates in {len(partitions)} partitions")

        with ThreadPoolExecutor(max_workers=config.max_workers) as pool:
            results = list(pool.map(lambda part: self._score(query, part, k, config, now), partitions))

        merged = [n for part in results for n in part]
        return heapq.nsmallest(k, merged, key=neighbor_sort_key)
