"""
RAG prediction engine: orbs, hybrid retrieval, contrastive attribution and
the prediction state machine.
"""

from .engine import RAGEngine
from .errors import (
    AttributionError,
    LegacyScorerError,
    ProviderError,
    RAGError,
    RetrievalError,
    ValidationError,
)
from .models import (
    AdInput,
    ContrastiveAnalysis,
    GapAnalysis,
    Neighbor,
    Orb,
    Prediction,
    PredictionMethod,
    PredictionMode,
    RetrievalFilters,
    SimilarAdsResult,
    SuggestedAd,
    SuggestionResult,
    TraitEffect,
)
from .orb_builder import OrbBuilder
from .orb_store import InMemoryOrbStore, OrbStore, SupabaseOrbStore

__all__ = [
    "RAGEngine",
    "OrbBuilder",
    "OrbStore",
    "InMemoryOrbStore",
    "SupabaseOrbStore",
    "AdInput",
    "Orb",
    "Neighbor",
    "RetrievalFilters",
    "TraitEffect",
    "ContrastiveAnalysis",
    "Prediction",
    "PredictionMethod",
    "PredictionMode",
    "GapAnalysis",
    "SimilarAdsResult",
    "SuggestedAd",
    "SuggestionResult",
    "RAGError",
    "ValidationError",
    "ProviderError",
    "RetrievalError",
    "AttributionError",
    "LegacyScorerError",
]
