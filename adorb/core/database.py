"""
Supabase client and paging helpers for the orb store collaborator.
"""

import logging
from typing import Any, Dict, List, Optional

from supabase import create_client, Client

from .config import Config

logger = logging.getLogger(__name__)

# PostgREST caps a single select at 1000 rows
DEFAULT_PAGE_SIZE = 1000

_supabase_client: Optional[Client] = None


def get_supabase_client() -> Client:
    """
    Get or create the shared Supabase client.

    Raises:
        ValueError: If SUPABASE_URL / SUPABASE_SERVICE_KEY are not configured
    """
    global _supabase_client

    if _supabase_client is None:
        Config.validate()
        _supabase_client = create_client(Config.SUPABASE_URL, Config.SUPABASE_SERVICE_KEY)
        logger.info("Supabase client created")

    return _supabase_client


def reset_supabase_client():
    """Drop the cached client (tests, credential rotation)."""
    global _supabase_client
    _supabase_client = None


def fetch_all_rows(
    client: Client,
    table: str,
    columns: str = "*",
    page_size: int = DEFAULT_PAGE_SIZE,
) -> List[Dict[str, Any]]:
    """
    Read every row of a table using range paging.

    Args:
        client: Supabase client
        table: Table name
        columns: Select expression
        page_size: Rows per request

    Returns:
        All rows, in id order
    """
    rows: List[Dict[str, Any]] = []
    start = 0

    while True:
        result = client.table(table).select(columns).order("id").range(
            start, start + page_size - 1
        ).execute()
        page = result.data or []
        rows.extend(page)

        if len(page) < page_size:
            break
        start += page_size

    logger.debug(f"Fetched {len(rows)} rows from {table}")
    return rows
