"""
Core module - Database, configuration, embeddings and observability
"""

from .database import get_supabase_client
from .config import Config, RAGConfig, FeatureFlags

__all__ = ['get_supabase_client', 'Config', 'RAGConfig', 'FeatureFlags']
