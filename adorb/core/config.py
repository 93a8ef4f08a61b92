"""
Configuration management for adorb
"""

import os
import logging
from pathlib import Path
from typing import Optional, Dict, Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


STRUCTURED_SIMILARITY_METHODS = ("jaccard-v1", "weighted-jaccard-v1")


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    """Application configuration"""

    # Supabase (orb store collaborator)
    SUPABASE_URL: str = os.getenv('SUPABASE_URL', '')
    SUPABASE_SERVICE_KEY: str = os.getenv('SUPABASE_SERVICE_KEY', '')
    ORB_TABLE: str = os.getenv('ORB_TABLE', 'ad_orbs')

    # Gemini (embedding provider)
    GEMINI_API_KEY: str = os.getenv('GEMINI_API_KEY', '')
    EMBED_TIMEOUT_SECONDS: float = float(os.getenv('EMBED_TIMEOUT_SECONDS', '3.0'))

    # Engine configuration overrides (YAML)
    RAG_CONFIG_PATH: str = os.getenv('RAG_CONFIG_PATH', '')

    # API
    ADORB_API_KEY: str = os.getenv('ADORB_API_KEY', '')

    @classmethod
    def validate(cls) -> bool:
        """Validate required configuration"""
        required = {
            'SUPABASE_URL': cls.SUPABASE_URL,
            'SUPABASE_SERVICE_KEY': cls.SUPABASE_SERVICE_KEY,
        }

        missing = [k for k, v in required.items() if not v]

        if missing:
            raise ValueError(f"Missing required configuration: {', '.join(missing)}")

        return True

    @classmethod
    def get(cls, key: str, default: Optional[str] = None) -> Optional[str]:
        """Get configuration value"""
        return getattr(cls, key, default)


# ============================================================================
# Engine configuration
# ============================================================================

class RAGConfig(BaseModel):
    """Tunable parameters for retrieval, attribution and blending.

    Every field has a default; callers override per request with
    ``config.model_copy(update={...})`` or through ``load_rag_config``.
    """

    # Retrieval
    default_k: int = Field(20, ge=1)
    max_k: int = Field(50, ge=1)
    min_neighbors: int = Field(5, ge=0)
    min_similarity: float = Field(0.0, ge=0, le=1)

    # Similarity weights (must sum to 1)
    vector_weight: float = Field(0.6, ge=0, le=1)
    structured_weight: float = Field(0.4, ge=0, le=1)
    structured_similarity: str = "jaccard-v1"
    trait_weights: Optional[Dict[str, float]] = None

    # Recency decay
    recency_half_life_days: float = Field(30.0, gt=0)
    recency_floor: float = Field(0.1, gt=0, lt=1)

    # Parallel scoring for large populations
    partition_size: int = Field(5000, ge=1)
    max_workers: int = Field(4, ge=1)

    # Contrastive attribution
    # Attribution metric only; prediction scores always use success_score
    outcome_metric: str = "success_score"
    max_traits: int = Field(25, ge=1)
    min_sample_size: int = Field(3, ge=1)
    significance_threshold: float = Field(5.0, ge=0)
    confidence_calibration: float = Field(5.0, gt=0)
    separation_scale: float = Field(5.0, gt=0)
    recommendation_confidence_threshold: float = Field(0.3, ge=0, le=1)
    max_abs_lift: float = Field(50.0, gt=0)
    similarity_weighted_means: bool = False

    # Hybrid blending
    base_alpha: float = Field(0.7, ge=0, le=1)
    neighbor_saturation: int = Field(15, ge=1)
    variance_penalty_enabled: bool = True
    max_variance_for_full_confidence: float = Field(15.0, gt=0)
    apply_contrastive_adjustment: bool = False
    contrastive_adjustment_damping: float = Field(0.5, ge=0, le=1)

    # Safety bounds
    min_score: float = 0.0
    max_score: float = 100.0
    default_fallback_score: float = 50.0
    default_fallback_confidence: float = 0.0
    embedding_timeout_s: float = Field(default_factory=lambda: Config.EMBED_TIMEOUT_SECONDS, gt=0)
    prediction_timeout_s: float = Field(10.0, gt=0)
    degrade_on_provider_error: bool = True

    # Gap detection
    gap_min_neighbor_threshold: int = Field(10, ge=0)
    gap_confidence_threshold: float = Field(60.0, ge=0, le=100)
    gap_min_similarity_threshold: float = Field(0.5, ge=0, le=1)

    # Suggested variants
    max_suggestions: int = Field(3, ge=1)
    suggestion_confidence_ceiling: float = Field(80.0, ge=0, le=100)
    suggestion_low_confidence: float = Field(60.0, ge=0, le=100)
    min_neighbors_for_suggestion: int = Field(5, ge=1)
    min_lever_uncertainty: float = Field(40.0, ge=0, le=100)

    # Presentation
    display_neighbors: int = Field(5, ge=0)
    display_trait_effects: int = Field(10, ge=0)

    @model_validator(mode="after")
    def _check_weights(self) -> "RAGConfig":
        if abs(self.vector_weight + self.structured_weight - 1.0) > 1e-6:
            raise ValueError(
                f"vector_weight + structured_weight must equal 1 "
                f"(got {self.vector_weight} + {self.structured_weight})"
            )
        if self.structured_similarity not in STRUCTURED_SIMILARITY_METHODS:
            raise ValueError(
                f"Unknown structured_similarity '{self.structured_similarity}', "
                f"expected one of {STRUCTURED_SIMILARITY_METHODS}"
            )
        return self

    def with_overrides(self, overrides: Optional[Dict[str, Any]] = None) -> "RAGConfig":
        """Return a validated copy with per-call overrides applied."""
        if not overrides:
            return self
        data = self.model_dump()
        data.update(overrides)
        return RAGConfig(**data)


class FeatureFlags(BaseModel):
    """Feature flags for the prediction path.

    Environment variables (read by ``from_env``):
        RAG_ENABLE_RAG, RAG_ENABLE_CONTRASTIVE, RAG_ENABLE_HYBRID, RAG_ENABLE_DEBUG,
        RAG_ENABLE_SUGGESTIONS
    """

    enable_rag: bool = True
    enable_contrastive: bool = True
    enable_hybrid_blend: bool = True
    enable_debug_logging: bool = False
    enable_suggestions: bool = True

    @classmethod
    def from_env(cls) -> "FeatureFlags":
        return cls(
            enable_rag=_env_flag('RAG_ENABLE_RAG', True),
            enable_contrastive=_env_flag('RAG_ENABLE_CONTRASTIVE', True),
            enable_hybrid_blend=_env_flag('RAG_ENABLE_HYBRID', True),
            enable_debug_logging=_env_flag('RAG_ENABLE_DEBUG', False),
            enable_suggestions=_env_flag('RAG_ENABLE_SUGGESTIONS', True),
        )


def load_rag_config(path: Optional[str] = None) -> RAGConfig:
    """
    Load engine configuration from a YAML file.

    Loads from ``path`` or ``Config.RAG_CONFIG_PATH``. Missing keys keep
    their defaults; no file configured means all defaults.

    Args:
        path: Path to a YAML mapping of RAGConfig fields

    Returns:
        RAGConfig instance

    Raises:
        FileNotFoundError: If the configured file doesn't exist
        ValueError: If the configuration is invalid
    """
    config_path = path or Config.RAG_CONFIG_PATH
    if not config_path:
        return RAGConfig()

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"RAG configuration not found at {config_file}")

    with open(config_file, 'r') as f:
        raw_config = yaml.safe_load(f) or {}

    if not isinstance(raw_config, dict):
        raise ValueError(f"RAG configuration at {config_file} must be a mapping")

    logger.info(f"Loaded RAG config overrides from {config_file}: {sorted(raw_config)}")
    return RAGConfig(**raw_config)
