"""
Embedding Infrastructure

Provides text embedding generation using Gemini with an in-process cache
keyed by content hash, plus vector math shared by the retriever.
"""

import os
import time
import hashlib
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from google import genai
from google.genai import types
from tenacity import retry, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)

# Gemini embedding model and dimensions
EMBED_MODEL = "gemini-embedding-001"
EMBED_DIM = 768

# Cached embeddings expire after a day
EMBED_CACHE_TTL_SECONDS = 24 * 60 * 60


def _cache_key(text: str, task_type: str) -> str:
    """Generate cache key from text (SHA256 hash)"""
    return hashlib.sha256(f"{task_type}|{text}".encode('utf-8')).hexdigest()[:16]


@dataclass
class Embedder:
    """
    Text embedding generator using the Gemini API.

    Attributes:
        api_key: API key (default: GEMINI_API_KEY env var)
        model: Embedding model name
        dimension: Output dimensionality
        cache_ttl_seconds: Lifetime of cached vectors
    """
    api_key: Optional[str] = None
    model: str = EMBED_MODEL
    dimension: int = EMBED_DIM
    cache_ttl_seconds: float = EMBED_CACHE_TTL_SECONDS
    _cache: Dict[str, Tuple[float, List[float]]] = field(default_factory=dict, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self):
        """Initialize API client"""
        if self.api_key is None:
            self.api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_GEMINI_API_KEY")

        if not self.api_key:
            raise ValueError("GEMINI_API_KEY environment variable not set")

        self.client = genai.Client(api_key=self.api_key)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=4), reraise=True)
    def _embed_batch(self, texts: List[str], task_type: str) -> List[List[float]]:
        result = self.client.models.embed_content(
            model=self.model,
            contents=texts,
            config=types.EmbedContentConfig(
                task_type=task_type,
                output_dimensionality=self.dimension
            )
        )
        return [list(embedding_obj.values) for embedding_obj in result.embeddings]

    def embed_texts(self, texts: List[str], task_type: str = "RETRIEVAL_DOCUMENT") -> List[List[float]]:
        """
        Embed multiple texts, serving repeats from the cache.

        Args:
            texts: List of text strings to embed
            task_type: Task type (RETRIEVAL_DOCUMENT or RETRIEVAL_QUERY)

        Returns:
            List of embedding vectors, in input order
        """
        if not texts:
            return []

        now = time.time()
        keys = [_cache_key(t, task_type) for t in texts]
        vectors: Dict[str, List[float]] = {}
        missing: List[str] = []

        with self._lock:
            for key, text in zip(keys, texts):
                cached = self._cache.get(key)
                if cached and now - cached[0] < self.cache_ttl_seconds:
                    vectors[key] = cached[1]
                elif key not in vectors and text not in missing:
                    missing.append(text)

        batch_size = 100  # Gemini allows up to 100 texts per request
        for i in range(0, len(missing), batch_size):
            batch = missing[i:i + batch_size]
            try:
                embedded = self._embed_batch(batch, task_type)
            except Exception as e:
                logger.error(f"Failed to embed batch after retries: {e}")
                raise

            with self._lock:
                for text, vector in zip(batch, embedded):
                    key = _cache_key(text, task_type)
                    self._cache[key] = (time.time(), vector)
                    vectors[key] = vector

        return [vectors[key] for key in keys]

    def embed_text(self, text: str, task_type: str = "RETRIEVAL_DOCUMENT") -> List[float]:
        """Embed a single text string."""
        return self.embed_texts([text], task_type=task_type)[0]


def cosine_similarity(vec1: Sequence[float], vec2: Sequence[float]) -> float:
    """
    Compute cosine similarity between two vectors.

    Args:
        vec1: First vector
        vec2: Second vector

    Returns:
        Cosine similarity in [-1, 1]; 0.0 when either vector has zero norm

    Raises:
        ValueError: On dimension mismatch
    """
    a = np.asarray(vec1, dtype=float)
    b = np.asarray(vec2, dtype=float)

    if a.shape != b.shape:
        raise ValueError(f"Vector dimension mismatch: {a.shape[0]} vs {b.shape[0]}")

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.clip(np.dot(a, b) / (norm_a * norm_b), -1.0, 1.0))
