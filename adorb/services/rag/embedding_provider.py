"""
Embedding Provider - canonical text and orb embeddings.

The provider contract is async and dimension-fixed. Every call made by the
engine goes through ``embed_orb`` which enforces a timeout and turns any
failure into a ProviderError, so a slow or broken provider never stalls a
prediction.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import numpy as np

from adorb.core.embeddings import EMBED_DIM, Embedder, cosine_similarity
from .errors import ProviderError
from .models import Orb

logger = logging.getLogger(__name__)

# Trait keys in the order they appear in canonical text
CANONICAL_TRAIT_ORDER = [
    # Platform & media
    "platform", "placement", "media_type", "aspect_ratio", "duration",
    # Creative style
    "hook", "category", "editing", "color", "pattern", "tone", "sentiment",
    # Audio
    "music", "bpm", "voiceover", "voiceover_style",
    # Visual elements
    "ugc", "subtitles", "text_overlays", "face_presence", "scene_velocity", "composition",
    # Talent
    "actors", "talent",
    # CTA & engagement
    "cta_type", "cta_strength", "hook_velocity", "curiosity_gap",
    "social_proof", "urgency", "trust_signals",
    # Brand
    "logo", "brand_color",
    # Campaign
    "objective", "budget_tier", "audience", "age_group", "retention",
]

_CANONICAL_SET = frozenset(CANONICAL_TRAIT_ORDER)


def build_canonical_text(orb: Orb) -> str:
    """
    Build the deterministic text representation embedded for an orb.

    Format (one ``key=value`` per line)::

        platform=tiktok
        hook=curiosity
        ugc=true

    Known traits come first in a fixed order, then any remaining keys
    alphabetically. Ids, timestamps and results never appear.
    """
    lines: List[str] = []

    for key in CANONICAL_TRAIT_ORDER:
        value = orb.traits.get(key)
        if value is not None:
            lines.append(f"{key}={value.text}")

    for key in sorted(k for k in orb.traits if k not in _CANONICAL_SET):
        lines.append(f"{key}={orb.traits[key].text}")

    return "\n".join(lines)


class EmbeddingProvider(ABC):
    """Async embedding contract: one orb in, one ``dimension``-length vector out."""

    dimension: int = EMBED_DIM

    @abstractmethod
    async def embed(self, orb: Orb) -> List[float]:
        ...


class GeminiEmbeddingProvider(EmbeddingProvider):
    """Embeds orb canonical text with the Gemini embedder.

    The underlying client is synchronous, so calls run in a worker thread.
    """

    def __init__(self, embedder: Optional[Embedder] = None, task_type: str = "RETRIEVAL_DOCUMENT"):
        self.embedder = embedder or Embedder()
        self.dimension = self.embedder.dimension
        self.task_type = task_type

    async def embed(self, orb: Orb) -> List[float]:
        text = orb.canonical_text or build_canonical_text(orb)
        return await asyncio.to_thread(self.embedder.embed_text, text, self.task_type)


async def embed_orb(provider: EmbeddingProvider, orb: Orb, timeout_s: float = 3.0) -> List[float]:
    """
    Embed an orb under a mandatory timeout.

    Args:
        provider: Embedding provider
        orb: Orb to embed
        timeout_s: Seconds before the call is abandoned

    Returns:
        Embedding vector of length ``provider.dimension``

    Raises:
        ProviderError: On timeout, provider failure, or a malformed vector
    """
    try:
        vector = await asyncio.wait_for(provider.embed(orb), timeout=timeout_s)
    except asyncio.TimeoutError as e:
        raise ProviderError(f"Embedding timed out after {timeout_s}s for orb {orb.id}") from e
    except ProviderError:
        raise
    except Exception as e:
        raise ProviderError(f"Embedding failed for orb {orb.id}: {e}") from e

    if vector is None or len(vector) != provider.dimension:
        got = 0 if vector is None else len(vector)
        raise ProviderError(
            f"Embedding dimension mismatch for orb {orb.id}: expected {provider.dimension}, got {got}"
        )

    arr = np.asarray(vector, dtype=float)
    if not np.all(np.isfinite(arr)):
        raise ProviderError(f"Embedding for orb {orb.id} contains non-finite values")

    return [float(x) for x in arr]


async def try_embed_orb(provider: Optional[EmbeddingProvider], orb: Orb, timeout_s: float = 3.0) -> Orb:
    """Attach an embedding when possible; on failure return the orb without one."""
    if provider is None:
        return orb.with_embedding(None)

    try:
        vector = await embed_orb(provider, orb, timeout_s)
    except ProviderError as e:
        logger.warning(f"Continuing without embedding for orb {orb.id}: {e}")
        return orb.with_embedding(None)

    return orb.with_embedding(vector)


async def embedding_stability(provider: EmbeddingProvider, orb: Orb, timeout_s: float = 3.0) -> float:
    """Cosine similarity between two embeddings of the same orb content."""
    first = await embed_orb(provider, orb, timeout_s)
    second = await embed_orb(provider, orb, timeout_s)
    return cosine_similarity(first, second)
