"""
API Request and Response Models.

Pydantic models for FastAPI request/response validation and automatic
OpenAPI documentation. Scores are rounded to two decimals here and only
here; the engine itself never rounds.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..services.rag.models import (
    GapAnalysis,
    Neighbor,
    NeighborStats,
    Prediction,
    SimilarAdsResult,
    SuggestionResult,
    TraitEffect,
)


def _r2(value: Optional[float]) -> Optional[float]:
    return round(value, 2) if value is not None else None


# ============================================================================
# Requests
# ============================================================================

class PredictRequest(BaseModel):
    """Request model for ad success prediction."""
    ad: Dict[str, Any] = Field(..., description="Ad payload (id, platform, extracted_content, ...)")
    use_hybrid: bool = Field(default=True, description="False forces RAG-only mode")
    overrides: Optional[Dict[str, Any]] = Field(None, description="Per-call engine configuration overrides")

    class Config:
        json_schema_extra = {
            "example": {
                "ad": {
                    "id": "ad-123",
                    "platform": "tiktok",
                    "extracted_content": {
                        "hook_type": "curiosity",
                        "is_ugc_style": True,
                        "has_subtitles": True,
                    },
                },
                "use_hybrid": True,
            }
        }


class SimilarRequest(BaseModel):
    """Request model for similar ad retrieval."""
    ad: Dict[str, Any]
    k: Optional[int] = Field(None, ge=1, le=50)
    platform: Optional[str] = None
    objective: Optional[str] = None
    max_age_days: Optional[float] = Field(None, gt=0)
    min_success_score: Optional[float] = Field(None, ge=0, le=100)
    include_without_results: bool = False


class DataNeedsRequest(BaseModel):
    """Request model for data gap detection."""
    ad: Dict[str, Any]
    overrides: Optional[Dict[str, Any]] = None


class SuggestRequest(BaseModel):
    """Request model for suggested ad variants."""
    ad: Dict[str, Any]
    max_suggestions: Optional[int] = Field(None, ge=1, le=10)
    overrides: Optional[Dict[str, Any]] = None


# ============================================================================
# Responses
# ============================================================================

class NeighborResponse(BaseModel):
    id: str
    platform: Optional[str] = None
    success_score: Optional[float] = None
    vector_similarity: float
    structured_similarity: float
    hybrid_similarity: float
    recency_weight: float
    weighted_similarity: float
    vector_available: bool

    @classmethod
    def from_neighbor(cls, neighbor: Neighbor) -> "NeighborResponse":
        return cls(
            id=neighbor.orb.id,
            platform=neighbor.orb.metadata.platform,
            success_score=_r2(neighbor.orb.success_score),
            vector_similarity=_r2(neighbor.vector_similarity),
            structured_similarity=_r2(neighbor.structured_similarity),
            hybrid_similarity=_r2(neighbor.hybrid_similarity),
            recency_weight=_r2(neighbor.recency_weight),
            weighted_similarity=_r2(neighbor.weighted_similarity),
            vector_available=neighbor.vector_available,
        )


class TraitEffectResponse(BaseModel):
    trait: str
    value: str
    label: str
    lift: float
    lift_percent: Optional[float] = None
    confidence: float
    n_with: int
    n_without: int
    p_value: Optional[float] = None
    is_significant: bool
    direction: str
    recommendation: Optional[str] = None
    in_query: bool

    @classmethod
    def from_effect(cls, effect: TraitEffect) -> "TraitEffectResponse":
        return cls(
            trait=effect.trait,
            value=effect.trait_value.text,
            label=effect.label,
            lift=_r2(effect.lift),
            lift_percent=_r2(effect.lift_percent),
            confidence=_r2(effect.confidence),
            n_with=effect.n_with,
            n_without=effect.n_without,
            p_value=effect.p_value,
            is_significant=effect.is_significant,
            direction=effect.direction.value,
            recommendation=effect.recommendation,
            in_query=effect.in_query,
        )


class NeighborStatsResponse(BaseModel):
    count: int
    avg_similarity: float
    avg_vector_similarity: float
    avg_structured_similarity: float
    avg_recency: float
    avg_success_score: float
    std_dev: float

    @classmethod
    def from_stats(cls, stats: NeighborStats) -> "NeighborStatsResponse":
        return cls(
            count=stats.count,
            avg_similarity=_r2(stats.avg_similarity),
            avg_vector_similarity=_r2(stats.avg_vector_similarity),
            avg_structured_similarity=_r2(stats.avg_structured_similarity),
            avg_recency=_r2(stats.avg_recency),
            avg_success_score=_r2(stats.avg_success_score),
            std_dev=_r2(stats.std_dev),
        )


class PredictResponse(BaseModel):
    """Response model for ad success prediction."""
    success_probability: float
    confidence: float
    method: str
    rag_score: Optional[float] = None
    legacy_score: Optional[float] = None
    blend_alpha: float
    neighbor_count: int
    avg_neighbor_similarity: float
    neighbors: List[NeighborResponse] = Field(default_factory=list)
    trait_effects: List[TraitEffectResponse] = Field(default_factory=list)
    explanation: str
    explanation_details: List[Dict[str, Any]] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    experiments_to_run: List[Dict[str, Any]] = Field(default_factory=list)
    fallback_reason: Optional[str] = None
    degradation_path: List[Dict[str, Any]] = Field(default_factory=list)
    compute_time_ms: float
    timestamp: datetime = Field(default_factory=datetime.now)

    @classmethod
    def from_prediction(cls, prediction: Prediction) -> "PredictResponse":
        return cls(
            success_probability=_r2(prediction.success_probability),
            confidence=_r2(prediction.confidence),
            method=prediction.method.value,
            rag_score=_r2(prediction.rag_score),
            legacy_score=_r2(prediction.legacy_score),
            blend_alpha=_r2(prediction.blend_alpha),
            neighbor_count=prediction.neighbor_count,
            avg_neighbor_similarity=_r2(prediction.avg_neighbor_similarity),
            neighbors=[NeighborResponse.from_neighbor(n) for n in prediction.neighbors],
            trait_effects=[TraitEffectResponse.from_effect(e) for e in prediction.trait_effects],
            explanation=prediction.explanation,
            explanation_details=[d.model_dump() for d in prediction.explanation_details],
            recommendations=prediction.recommendations,
            experiments_to_run=[e.model_dump() for e in prediction.experiments_to_run],
            fallback_reason=prediction.fallback_reason.value if prediction.fallback_reason else None,
            degradation_path=[s.model_dump(mode="json") for s in prediction.degradation_path],
            compute_time_ms=_r2(prediction.compute_time_ms),
        )


class SimilarResponse(BaseModel):
    """Response model for similar ad retrieval."""
    query_id: str
    neighbors: List[NeighborResponse]
    stats: NeighborStatsResponse
    embedding_available: bool

    @classmethod
    def from_result(cls, result: SimilarAdsResult) -> "SimilarResponse":
        return cls(
            query_id=result.query_id,
            neighbors=[NeighborResponse.from_neighbor(n) for n in result.neighbors],
            stats=NeighborStatsResponse.from_stats(result.stats),
            embedding_available=result.embedding_available,
        )


class DataNeedsResponse(BaseModel):
    """Response model for data gap detection."""
    data_needs: List[Dict[str, Any]]
    has_significant_gaps: bool
    total_gaps: int
    primary_gap_dimension: Optional[str] = None
    current_confidence: float
    potential_confidence: float

    @classmethod
    def from_analysis(cls, analysis: GapAnalysis) -> "DataNeedsResponse":
        return cls(
            data_needs=[n.model_dump(mode="json") for n in analysis.data_needs],
            has_significant_gaps=analysis.has_significant_gaps,
            total_gaps=analysis.total_gaps,
            primary_gap_dimension=analysis.primary_gap_dimension,
            current_confidence=_r2(analysis.current_confidence),
            potential_confidence=_r2(analysis.potential_confidence),
        )


class SuggestedAdResponse(BaseModel):
    id: str
    parent_id: str
    lever: str
    traits: Dict[str, Any]
    reason: str
    notes: str
    predicted_score: Optional[float] = None
    confidence: Optional[float] = None
    whats_proven: List[str] = Field(default_factory=list)
    whats_tested: Optional[str] = None
    why_suggested: Optional[str] = None


class SuggestResponse(BaseModel):
    """Response model for suggested ad variants."""
    query_id: str
    generated: bool
    trigger: Optional[str] = None
    reason: str
    confidence: float
    neighbor_count: int
    proven_traits: Dict[str, Any] = Field(default_factory=dict)
    proven_effects: List[str] = Field(default_factory=list)
    suggestions: List[SuggestedAdResponse]

    @classmethod
    def from_result(cls, result: SuggestionResult) -> "SuggestResponse":
        core = result.proven_core
        suggestions = []
        for s in result.suggestions:
            score = s.score
            suggestions.append(SuggestedAdResponse(
                id=s.id,
                parent_id=s.parent_id,
                lever=s.lever.id,
                traits={name: value.value for name, value in s.traits.items()},
                reason=s.reason,
                notes=s.notes,
                predicted_score=_r2(score.predicted_score) if score else None,
                confidence=_r2(score.confidence) if score else None,
                whats_proven=score.whats_proven if score else [],
                whats_tested=score.whats_tested if score else None,
                why_suggested=score.why_suggested if score else None,
            ))
        return cls(
            query_id=result.query_id,
            generated=result.generated,
            trigger=result.trigger.value if result.trigger else None,
            reason=result.reason,
            confidence=_r2(result.confidence),
            neighbor_count=result.neighbor_count,
            proven_traits={name: value.value for name, value in core.traits.items()} if core else {},
            proven_effects=core.effects if core else [],
            suggestions=suggestions,
        )


# ============================================================================
# Health / Errors
# ============================================================================

class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str = Field(..., description="Service status")
    version: str = Field(..., description="API version")
    timestamp: datetime = Field(default_factory=datetime.now)
    services: Dict[str, Any] = Field(
        default_factory=dict,
        description="Status of dependent services and engine readiness"
    )


class ErrorResponse(BaseModel):
    """Standard error response model."""
    error: str = Field(..., description="Error message")
    detail: Optional[str] = Field(None, description="Detailed error information")
    timestamp: datetime = Field(default_factory=datetime.now)
