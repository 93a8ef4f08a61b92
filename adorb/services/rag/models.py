"""Pydantic models for the RAG prediction engine.

Enums, trait value variants, orbs, neighbors, attribution and prediction
results. No retrieval or storage logic in this file -- pure type definitions.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from typing_extensions import Annotated


# =============================================================================
# Enums
# =============================================================================

class PredictionMethod(str, Enum):
    RAG = "rag"
    HYBRID = "hybrid"
    LEGACY = "legacy"


class PredictionMode(str, Enum):
    """States of the prediction state machine."""
    DISABLED = "disabled"
    RAG_ONLY = "rag_only"
    HYBRID = "hybrid"


class FallbackReason(str, Enum):
    RAG_DISABLED = "rag_disabled"
    PROVIDER_ERROR = "provider_error"
    RETRIEVAL_ERROR = "retrieval_error"
    ATTRIBUTION_ERROR = "attribution_error"
    LEGACY_ERROR = "legacy_error"
    TIMEOUT = "timeout"
    INVALID_SCORE = "invalid_score"


class EffectDirection(str, Enum):
    USE = "use"
    AVOID = "avoid"
    NEUTRAL = "neutral"
    TEST = "test"


class Severity(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# =============================================================================
# Trait values (tagged variant)
# =============================================================================

class BoolTrait(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["bool"] = "bool"
    value: bool

    @property
    def text(self) -> str:
        return "true" if self.value else "false"


class CategoricalTrait(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["categorical"] = "categorical"
    value: str

    @property
    def text(self) -> str:
        return self.value


class NumericTrait(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["numeric"] = "numeric"
    value: float

    @field_validator("value")
    @classmethod
    def _finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError("numeric trait must be finite")
        return v

    @property
    def text(self) -> str:
        return f"{self.value:g}"


TraitValue = Annotated[
    Union[BoolTrait, CategoricalTrait, NumericTrait],
    Field(discriminator="kind"),
]

_TRAIT_ADAPTER = TypeAdapter(TraitValue)


def coerce_trait_value(raw: Any) -> Union[BoolTrait, CategoricalTrait, NumericTrait]:
    """Convert a plain Python value (or a tagged dict) into a TraitValue.

    bool is checked before int; strings are lower-cased and trimmed.
    """
    if isinstance(raw, (BoolTrait, CategoricalTrait, NumericTrait)):
        return raw
    if isinstance(raw, dict) and "kind" in raw:
        return _TRAIT_ADAPTER.validate_python(raw)
    if isinstance(raw, bool):
        return BoolTrait(value=raw)
    if isinstance(raw, (int, float)):
        return NumericTrait(value=float(raw))
    if isinstance(raw, str):
        text = raw.strip().lower()
        if not text:
            raise ValueError("categorical trait must not be empty")
        return CategoricalTrait(value=text)
    raise ValueError(f"Unsupported trait value type: {type(raw).__name__}")


def trait_label(name: str, value: Union[BoolTrait, CategoricalTrait, NumericTrait]) -> str:
    """Render a trait pair as ``name:value`` (e.g. ``hook:curiosity``)."""
    return f"{name}:{value.text}"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# Ad input
# =============================================================================

class AdInput(BaseModel):
    """Raw ad as handed to the engine by the surrounding application.

    ``extracted_content`` holds the creative analysis fields (snake_case or
    camelCase keys); ``results`` holds raw outcome metrics when known.
    """

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    name: Optional[str] = None
    platform: Optional[str] = None
    objective: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    has_results: bool = False
    extracted_content: Dict[str, Any] = Field(default_factory=dict)
    results: Optional[Dict[str, Any]] = None


# =============================================================================
# Orb
# =============================================================================

class OrbMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    platform: Optional[str] = None
    objective: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    has_results: bool = False

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v) if v is not None else None


class OrbResults(BaseModel):
    model_config = ConfigDict(frozen=True)

    success_score: Optional[float] = Field(None, ge=0, le=100)
    roas: Optional[float] = None
    ctr: Optional[float] = None
    conversions: Optional[float] = None
    impressions: Optional[float] = None
    clicks: Optional[float] = None
    ad_spend: Optional[float] = None
    revenue: Optional[float] = None


class Orb(BaseModel):
    """One ad as a single structured retrieval document.

    Immutable: ``revise`` returns a new version instead of mutating.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    traits: Dict[str, TraitValue] = Field(default_factory=dict)
    embedding: Optional[List[float]] = None
    metadata: OrbMetadata
    results: Optional[OrbResults] = None
    canonical_text: Optional[str] = None
    version: int = Field(1, ge=1)

    @field_validator("traits", mode="before")
    @classmethod
    def _coerce_traits(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): coerce_trait_value(val) for k, val in v.items()}
        return v

    @field_validator("embedding")
    @classmethod
    def _non_empty_embedding(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        if v is not None and len(v) == 0:
            return None
        return v

    @property
    def has_outcome(self) -> bool:
        """True when the orb carries a measured success score."""
        return (
            self.metadata.has_results
            and self.results is not None
            and self.results.success_score is not None
        )

    @property
    def success_score(self) -> Optional[float]:
        return self.metric("success_score")

    def metric(self, name: str) -> Optional[float]:
        """Outcome metric by name, None when the orb has no results."""
        if not self.metadata.has_results or self.results is None:
            return None
        return getattr(self.results, name, None)

    def trait_labels(self) -> List[str]:
        return sorted(trait_label(k, v) for k, v in self.traits.items())

    def revise(self, **changes: Any) -> "Orb":
        """Create the next version of this orb with ``changes`` applied."""
        data = self.model_dump()
        data.update(changes)
        data["version"] = self.version + 1
        return Orb.model_validate(data)

    def with_embedding(self, embedding: Optional[List[float]]) -> "Orb":
        """Copy carrying a (re)computed embedding; content version unchanged."""
        return self.model_copy(update={"embedding": list(embedding) if embedding else None})


# =============================================================================
# Retrieval
# =============================================================================

class RetrievalFilters(BaseModel):
    platform: Optional[str] = None
    objective: Optional[str] = None
    max_age_days: Optional[float] = Field(None, gt=0)
    min_success_score: Optional[float] = Field(None, ge=0, le=100)
    require_results: bool = True


class Neighbor(BaseModel):
    """An orb scored against one query."""

    orb: Orb
    vector_similarity: float = Field(..., ge=0, le=1)
    structured_similarity: float = Field(..., ge=0, le=1)
    hybrid_similarity: float = Field(..., ge=0, le=1)
    recency_weight: float = Field(..., gt=0, le=1)
    weighted_similarity: float = Field(..., ge=0, le=1)
    vector_available: bool = False


class NeighborStats(BaseModel):
    count: int = 0
    avg_similarity: float = 0.0
    avg_vector_similarity: float = 0.0
    avg_structured_similarity: float = 0.0
    avg_recency: float = 0.0
    avg_success_score: float = 0.0
    variance: float = 0.0
    std_dev: float = 0.0
    min_similarity: float = 0.0
    max_similarity: float = 0.0


class SimilarAdsResult(BaseModel):
    query_id: str
    neighbors: List[Neighbor] = Field(default_factory=list)
    stats: NeighborStats = Field(default_factory=NeighborStats)
    embedding_available: bool = False


# =============================================================================
# Contrastive attribution
# =============================================================================

class TraitEffect(BaseModel):
    """Contrast of one trait/value pair across the neighbor set."""

    trait: str
    trait_value: TraitValue
    partition: Literal["equals", "at_or_above"] = "equals"

    lift: float
    lift_percent: Optional[float] = None
    confidence: float = Field(..., ge=0, le=1)

    n_with: int = Field(..., ge=1)
    n_without: int = Field(..., ge=1)
    avg_with: float
    avg_without: float

    p_value: Optional[float] = Field(None, ge=0, le=1)
    is_significant: bool = False
    direction: EffectDirection = EffectDirection.TEST
    recommendation: Optional[str] = None
    in_query: bool = False

    @property
    def label(self) -> str:
        if self.partition == "at_or_above":
            return f"{self.trait}>={self.trait_value.text}"
        return trait_label(self.trait, self.trait_value)


class ContrastiveAnalysis(BaseModel):
    trait_effects: List[TraitEffect] = Field(default_factory=list)
    top_positive: List[TraitEffect] = Field(default_factory=list)
    top_negative: List[TraitEffect] = Field(default_factory=list)
    low_confidence: List[TraitEffect] = Field(default_factory=list)
    # Query traits no neighbor carries: "no signal", as opposed to a conflicting one
    unobserved_query_traits: List[str] = Field(default_factory=list)
    total_neighbors: int = 0
    avg_similarity: float = 0.0


# =============================================================================
# Prediction
# =============================================================================

class LegacyScore(BaseModel):
    score: float = Field(..., ge=0, le=100)
    confidence: float = Field(..., ge=0, le=100)
    key_factors: List[Dict[str, Any]] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class ExplanationDetail(BaseModel):
    type: Literal["neighbor_evidence", "trait_impact", "low_confidence", "recommendation"]
    text: str
    confidence: float = 0.0
    data: Dict[str, Any] = Field(default_factory=dict)


class ExperimentSuggestion(BaseModel):
    trait: str
    current_value: Optional[str] = None
    suggested_variant: str
    reason: str
    expected_impact: Literal["unknown", "potentially_positive", "potentially_negative"] = "unknown"


class DegradationStep(BaseModel):
    from_mode: PredictionMode
    to_mode: PredictionMode
    reason: FallbackReason
    error: Optional[str] = None


class Prediction(BaseModel):
    success_probability: float = Field(..., ge=0, le=100)
    confidence: float = Field(..., ge=0, le=100)
    method: PredictionMethod

    rag_score: Optional[float] = None
    legacy_score: Optional[float] = None
    blend_alpha: float = Field(0.0, ge=0, le=1)

    neighbors: List[Neighbor] = Field(default_factory=list)
    neighbor_count: int = 0
    avg_neighbor_similarity: float = 0.0
    trait_effects: List[TraitEffect] = Field(default_factory=list)

    explanation: str = ""
    explanation_details: List[ExplanationDetail] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    experiments_to_run: List[ExperimentSuggestion] = Field(default_factory=list)

    fallback_reason: Optional[FallbackReason] = None
    degradation_path: List[DegradationStep] = Field(default_factory=list)

    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    compute_time_ms: float = 0.0


# =============================================================================
# Gap detection
# =============================================================================

class DataNeed(BaseModel):
    dimension: Literal["platform", "trait", "format", "objective", "audience"]
    value: str
    reason: str
    severity: Severity
    current_samples: int = 0
    required_samples: int = 0
    confidence_impact: int = 0
    context: Dict[str, Any] = Field(default_factory=dict)


class GapAnalysis(BaseModel):
    data_needs: List[DataNeed] = Field(default_factory=list)
    total_gaps: int = 0
    high_severity_count: int = 0
    medium_severity_count: int = 0
    low_severity_count: int = 0
    has_significant_gaps: bool = False
    primary_gap_dimension: Optional[str] = None
    current_confidence: float = 0.0
    potential_confidence: float = 0.0
    max_confidence_gain: int = 0


# =============================================================================
# Suggested variants
# =============================================================================

class SuggestionTrigger(str, Enum):
    LOW_CONFIDENCE = "low_confidence"
    NEW_AD = "new_ad"


class ExperimentalLever(BaseModel):
    """One creative dimension a suggestion changes to learn its effect."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    trait: str
    control: TraitValue
    variant: TraitValue
    sample_size: int = 0
    uncertainty: float = Field(0.0, ge=0, le=100)
    potential_impact: float = Field(0.0, ge=0, le=100)


class ProvenCore(BaseModel):
    """What the best-performing neighbors have in common."""

    traits: Dict[str, TraitValue] = Field(default_factory=dict)
    effects: List[str] = Field(default_factory=list)
    avg_score: float = 0.0


class SuggestionScore(BaseModel):
    predicted_score: float = Field(..., ge=0, le=100)
    confidence: float = Field(..., ge=0, le=100)
    whats_proven: List[str] = Field(default_factory=list)
    whats_tested: str = ""
    why_suggested: str = ""
    neighbor_count: int = 0
    avg_similarity: float = 0.0
    platforms: List[str] = Field(default_factory=list)
    trait_effects: List[TraitEffect] = Field(default_factory=list)
    oldest_neighbor: Optional[datetime] = None
    newest_neighbor: Optional[datetime] = None


class SuggestedAd(BaseModel):
    """A variant of a parent ad changing exactly one experimental lever."""

    id: str
    parent_id: str
    traits: Dict[str, TraitValue]
    lever: ExperimentalLever
    reason: str
    notes: str = ""
    score: Optional[SuggestionScore] = None


class SuggestionResult(BaseModel):
    query_id: str
    generated: bool = False
    trigger: Optional[SuggestionTrigger] = None
    reason: str = ""
    confidence: float = 0.0
    neighbor_count: int = 0
    proven_core: Optional[ProvenCore] = None
    suggestions: List[SuggestedAd] = Field(default_factory=list)
