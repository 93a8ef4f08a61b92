"""Error taxonomy for the RAG engine.

Only ``ValidationError`` reaches callers of ``RAGEngine.predict``; the other
errors are absorbed by the prediction degradation ladder.
"""


class RAGError(Exception):
    """Base class for engine errors."""


class ValidationError(RAGError, ValueError):
    """Malformed ad input (missing id or no derivable content)."""


class ProviderError(RAGError):
    """Embedding provider failed, timed out, or returned a bad vector."""


class RetrievalError(RAGError):
    """Similarity retrieval could not complete."""


class AttributionError(RAGError):
    """Contrastive attribution could not complete."""


class LegacyScorerError(RAGError):
    """The fallback heuristic scorer failed."""
