"""
Orb Store - thin persistence adapter for historical orbs.

Readers always work on an immutable snapshot (a tuple of frozen orbs), so a
prediction never observes a half-applied write.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional, Tuple

from supabase import Client

from adorb.core.config import Config
from adorb.core.database import fetch_all_rows, get_supabase_client
from .models import Orb

logger = logging.getLogger(__name__)


def _summarize(orbs: Iterable[Orb]) -> Dict[str, int]:
    total = with_embeddings = with_results = 0
    for orb in orbs:
        total += 1
        if orb.embedding:
            with_embeddings += 1
        if orb.has_outcome:
            with_results += 1
    return {
        "total_orbs": total,
        "orbs_with_embeddings": with_embeddings,
        "orbs_with_results": with_results,
    }


class OrbStore(ABC):
    """Storage contract used by the retriever and the ingest path."""

    @abstractmethod
    def snapshot(self) -> Tuple[Orb, ...]:
        """Consistent point-in-time view of every stored orb."""

    @abstractmethod
    def get(self, orb_id: str) -> Optional[Orb]:
        ...

    @abstractmethod
    def save(self, orb: Orb) -> Orb:
        """Store a new orb or a newer version of an existing one.

        Raises:
            ValueError: If the stored version is not older than ``orb.version``
        """

    def stats(self) -> Dict[str, int]:
        return _summarize(self.snapshot())


class InMemoryOrbStore(OrbStore):
    """Copy-on-write in-process store."""

    def __init__(self, orbs: Optional[Iterable[Orb]] = None):
        self._lock = threading.Lock()
        self._orbs: Dict[str, Orb] = {}
        self._snapshot: Tuple[Orb, ...] = ()
        for orb in orbs or []:
            self.save(orb)

    def snapshot(self) -> Tuple[Orb, ...]:
        return self._snapshot

    def get(self, orb_id: str) -> Optional[Orb]:
        return self._orbs.get(orb_id)

    def save(self, orb: Orb) -> Orb:
        with self._lock:
            existing = self._orbs.get(orb.id)
            if existing is not None and orb.version <= existing.version:
                raise ValueError(
                    f"Orb {orb.id} version {orb.version} is not newer than stored version {existing.version}"
                )
            orbs = dict(self._orbs)
            orbs[orb.id] = orb
            self._orbs = orbs
            self._snapshot = tuple(orbs.values())
        return orb

    def __len__(self) -> int:
        return len(self._snapshot)


class SupabaseOrbStore(OrbStore):
    """Orbs persisted in a Supabase table, one row per orb id.

    Row columns mirror ``Orb.model_dump(mode="json")``: id, version, traits,
    embedding, metadata, results, canonical_text.
    """

    def __init__(
        self,
        client: Optional[Client] = None,
        table: Optional[str] = None,
        cache_ttl_seconds: float = 60.0,
    ):
        self.client = client or get_supabase_client()
        self.table = table or Config.ORB_TABLE
        self.cache_ttl_seconds = cache_ttl_seconds
        self._lock = threading.Lock()
        self._cache: Optional[Tuple[Orb, ...]] = None
        self._loaded_at = 0.0

    def snapshot(self) -> Tuple[Orb, ...]:
        with self._lock:
            fresh = time.monotonic() - self._loaded_at < self.cache_ttl_seconds
            if self._cache is not None and fresh:
                return self._cache

        rows = fetch_all_rows(self.client, self.table)
        orbs = []
        for row in rows:
            try:
                orbs.append(self._from_row(row))
            except ValueError as e:
                logger.warning(f"Skipping unreadable orb row {row.get('id')}: {e}")

        snapshot = tuple(orbs)
        with self._lock:
            self._cache = snapshot
            self._loaded_at = time.monotonic()

        logger.info(f"Loaded {len(snapshot)} orbs from {self.table}")
        return snapshot

    def get(self, orb_id: str) -> Optional[Orb]:
        result = self.client.table(self.table).select("*").eq("id", orb_id).limit(1).execute()
        rows = result.data or []
        return self._from_row(rows[0]) if rows else None

    def save(self, orb: Orb) -> Orb:
        existing = self.get(orb.id)
        if existing is not None and orb.version <= existing.version:
            raise ValueError(
                f"Orb {orb.id} version {orb.version} is not newer than stored version {existing.version}"
            )

        self.client.table(self.table).upsert(self._to_row(orb), on_conflict="id").execute()

        with self._lock:
            self._cache = None

        logger.debug(f"Saved orb {orb.id} v{orb.version}")
        return orb

    @staticmethod
    def _to_row(orb: Orb) -> Dict[str, Any]:
        return orb.model_dump(mode="json")

    @staticmethod
    def _from_row(row: Dict[str, Any]) -> Orb:
        return Orb.model_validate(row)
