"""
adorb API - FastAPI application over the RAG prediction engine.
"""

__version__ = "1.0.0"
