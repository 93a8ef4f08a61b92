"""
adorb FastAPI Application.

REST API over the RAG prediction engine.

Features:
- Ad success prediction with hybrid retrieval and attribution
- Similar-ad retrieval for exploratory views
- Data gap detection
- Suggested ad variants
- API key authentication
- Rate limiting
- Health check endpoint
"""

# Load environment variables FIRST before any other imports
from dotenv import load_dotenv
load_dotenv()

import logging
import os
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from .. import __version__
from ..core.config import Config, FeatureFlags, load_rag_config
from ..core.observability import setup_logfire
from ..services.rag import RAGEngine, RetrievalError, ValidationError
from ..services.rag.models import RetrievalFilters
from ..services.rag.orb_store import InMemoryOrbStore, SupabaseOrbStore
from .models import (
    DataNeedsRequest,
    DataNeedsResponse,
    ErrorResponse,
    HealthResponse,
    PredictRequest,
    PredictResponse,
    SimilarRequest,
    SimilarResponse,
    SuggestRequest,
    SuggestResponse,
)

# ============================================================================
# Logging Configuration
# ============================================================================

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

RATE_LIMIT = os.getenv("RATE_LIMIT_PER_MINUTE", "60") + "/minute"

# ============================================================================
# FastAPI Application Setup
# ============================================================================

app = FastAPI(
    title="adorb API",
    description="Ad success prediction with hybrid retrieval and contrastive attribution",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ============================================================================
# Engine
# ============================================================================

_engine: Optional[RAGEngine] = None


def build_engine() -> RAGEngine:
    """
    Build the engine from environment configuration.

    Uses the Supabase orb store when credentials are configured (otherwise an
    empty in-memory store) and the Gemini embedding provider when
    GEMINI_API_KEY is set (otherwise structured-only similarity).
    """
    if Config.SUPABASE_URL and Config.SUPABASE_SERVICE_KEY:
        store = SupabaseOrbStore()
    else:
        logger.warning("Supabase not configured - serving from an empty in-memory orb store")
        store = InMemoryOrbStore()

    provider = None
    if Config.GEMINI_API_KEY:
        from ..services.rag.embedding_provider import GeminiEmbeddingProvider
        provider = GeminiEmbeddingProvider()
    else:
        logger.warning("GEMINI_API_KEY not set - similarity will be structured-only")

    return RAGEngine(store=store, embedding_provider=provider, config=load_rag_config(), flags=FeatureFlags.from_env())


def get_engine() -> RAGEngine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


# ============================================================================
# API Key Authentication
# ============================================================================

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


async def verify_api_key(api_key: Optional[str] = Depends(API_KEY_HEADER)):
    """
    Verify API key from request header.

    Checks against environment variable ADORB_API_KEY.
    If not set, allows all requests (development mode).

    Raises:
        HTTPException: If API key is invalid or missing
    """
    expected_key = os.getenv("ADORB_API_KEY") or Config.ADORB_API_KEY

    if not expected_key:
        logger.debug("ADORB_API_KEY not set - running in development mode (no auth)")
        return True

    if not api_key:
        logger.warning("API key missing from request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Provide via X-API-Key header."
        )

    if api_key != expected_key:
        logger.warning(f"Invalid API key attempt: {api_key[:4]}...")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key"
        )

    return True


# ============================================================================
# Health Check Endpoint
# ============================================================================

@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["System"],
    summary="Health check endpoint"
)
async def health_check(engine: RAGEngine = Depends(get_engine)):
    """
    Check API health and engine readiness.

    Reports whether retrieval is enabled and whether enough outcome-bearing
    orbs exist for data-driven predictions.
    """
    services = {}

    try:
        readiness = engine.readiness()
        services["orb_store"] = "connected"
        services["rag"] = "ready" if readiness["rag_ready"] else "insufficient_data"
        services["orb_count"] = readiness["orb_count"]
    except Exception as e:
        logger.error(f"Orb store health check failed: {e}")
        services["orb_store"] = "error"

    services["embeddings"] = "available" if engine.embedding_provider is not None else "disabled"

    overall_status = "healthy" if services.get("orb_store") != "error" else "degraded"

    return HealthResponse(
        status=overall_status,
        version=__version__,
        timestamp=datetime.now(),
        services=services
    )


# ============================================================================
# RAG Endpoints
# ============================================================================

@app.post(
    "/rag/predict",
    response_model=PredictResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized - Invalid API key"},
        422: {"model": ErrorResponse, "description": "Malformed ad"},
        429: {"model": ErrorResponse, "description": "Too many requests"},
    },
    tags=["RAG"],
    summary="Predict ad success"
)
@limiter.limit(RATE_LIMIT)
async def predict(
    request: Request,
    body: PredictRequest,
    authenticated: bool = Depends(verify_api_key),
    engine: RAGEngine = Depends(get_engine),
):
    """
    Predict the success probability of an ad.

    Always returns a prediction; ``method`` and ``confidence`` tell the
    caller how much data-driven evidence backs it, and ``fallback_reason``
    / ``degradation_path`` explain any fallback.
    """
    prediction = await engine.predict(body.ad, use_hybrid=body.use_hybrid, overrides=body.overrides)
    return PredictResponse.from_prediction(prediction)


@app.post(
    "/rag/similar",
    response_model=SimilarResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized - Invalid API key"},
        422: {"model": ErrorResponse, "description": "Malformed ad"},
        503: {"model": ErrorResponse, "description": "Orb store unavailable"},
    },
    tags=["RAG"],
    summary="Find similar ads"
)
@limiter.limit(RATE_LIMIT)
async def similar(
    request: Request,
    body: SimilarRequest,
    authenticated: bool = Depends(verify_api_key),
    engine: RAGEngine = Depends(get_engine),
):
    """Retrieve the most similar historical ads with similarity breakdowns."""
    filters = RetrievalFilters(
        platform=body.platform,
        objective=body.objective,
        max_age_days=body.max_age_days,
        min_success_score=body.min_success_score,
    )
    result = await engine.find_similar(
        body.ad, k=body.k, filters=filters, include_without_results=body.include_without_results
    )
    return SimilarResponse.from_result(result)


@app.post(
    "/rag/data-needs",
    response_model=DataNeedsResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized - Invalid API key"},
        422: {"model": ErrorResponse, "description": "Malformed ad"},
        503: {"model": ErrorResponse, "description": "Orb store unavailable"},
    },
    tags=["RAG"],
    summary="Detect data gaps"
)
@limiter.limit(RATE_LIMIT)
async def data_needs(
    request: Request,
    body: DataNeedsRequest,
    authenticated: bool = Depends(verify_api_key),
    engine: RAGEngine = Depends(get_engine),
):
    """Coverage gaps that limit prediction confidence for an ad."""
    analysis = await engine.detect_gaps(body.ad, overrides=body.overrides)
    return DataNeedsResponse.from_analysis(analysis)


@app.post(
    "/rag/suggest",
    response_model=SuggestResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized - Invalid API key"},
        422: {"model": ErrorResponse, "description": "Malformed ad"},
        503: {"model": ErrorResponse, "description": "Orb store unavailable"},
    },
    tags=["RAG"],
    summary="Suggest ad variants"
)
@limiter.limit(RATE_LIMIT)
async def suggest(
    request: Request,
    body: SuggestRequest,
    authenticated: bool = Depends(verify_api_key),
    engine: RAGEngine = Depends(get_engine),
):
    """
    Scored variants of an ad, each changing one experimental lever.

    Returned only when confidence is low or the ad has no results yet;
    ``reason`` explains why nothing was generated otherwise.
    """
    result = await engine.suggest(body.ad, max_suggestions=body.max_suggestions, overrides=body.overrides)
    return SuggestResponse.from_result(result)


# ============================================================================
# Error Handlers
# ============================================================================

def _error(status_code: int, error: str, detail: Optional[str] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail).model_dump(mode="json")
    )


@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    """Malformed ads are rejected before any retrieval work."""
    logger.info(f"Rejected ad: {exc}")
    return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "Invalid ad", str(exc))


@app.exception_handler(RetrievalError)
async def retrieval_exception_handler(request: Request, exc: RetrievalError):
    logger.error(f"Retrieval failed: {exc}")
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Orb store unavailable", str(exc))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with consistent error format."""
    return _error(exc.status_code, exc.detail, str(exc))


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error(500, "Internal server error", str(exc))


# ============================================================================
# Startup
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Configure tracing and log startup information."""
    setup_logfire()
    logger.info("=" * 60)
    logger.info("adorb API Starting...")
    logger.info(f"API Version: {__version__}")
    logger.info(f"Auth mode: {'Production (API key required)' if os.getenv('ADORB_API_KEY') else 'Development (no auth)'}")
    logger.info("=" * 60)


@app.get("/", tags=["System"])
async def root():
    """API root endpoint with basic information."""
    return {
        "name": "adorb API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "predict": "/rag/predict",
            "similar": "/rag/similar",
            "data_needs": "/rag/data-needs",
            "suggest": "/rag/suggest",
        }
    }
