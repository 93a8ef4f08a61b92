"""
Shared factories for orb, neighbor and ad fixtures.
"""

from datetime import datetime, timedelta, timezone

import pytest

from adorb.core.config import FeatureFlags, RAGConfig
from adorb.services.rag.models import Neighbor, Orb, OrbMetadata, OrbResults

NOW = datetime.now(timezone.utc).replace(microsecond=0)


def _orb(
    orb_id,
    traits=None,
    score=None,
    days_old=1,
    platform="tiktok",
    objective=None,
    embedding=None,
    version=1,
    roas=None,
):
    return Orb(
        id=orb_id,
        traits=traits if traits is not None else {"platform": platform, "hook": "curiosity", "ugc": True},
        embedding=embedding,
        metadata=OrbMetadata(
            platform=platform,
            objective=objective,
            created_at=NOW - timedelta(days=days_old),
            has_results=score is not None,
        ),
        results=OrbResults(success_score=score, roas=roas) if score is not None else None,
        version=version,
    )


def _neighbor(orb, hybrid=0.8, recency=1.0):
    return Neighbor(
        orb=orb,
        vector_similarity=0.0,
        structured_similarity=hybrid,
        hybrid_similarity=hybrid,
        recency_weight=recency,
        weighted_similarity=hybrid * recency,
    )


def _ad(ad_id, score=None, days_old=1, platform="tiktok", **content):
    ad = {
        "id": ad_id,
        "platform": platform,
        "created_at": (NOW - timedelta(days=days_old)).isoformat(),
        "extracted_content": content or {"hook_type": "curiosity", "is_ugc_style": True, "has_subtitles": True},
    }
    if score is not None:
        ad["has_results"] = True
        ad["results"] = {"success_score": score}
    return ad


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_orb():
    return _orb


@pytest.fixture
def make_neighbor():
    return _neighbor


@pytest.fixture
def make_ad():
    return _ad


@pytest.fixture
def config():
    return RAGConfig()


@pytest.fixture
def flags():
    return FeatureFlags()


@pytest.fixture
def history_ads():
    """Twelve outcome-bearing TikTok ads; curiosity hooks outperform question hooks."""
    ads = []
    for i in range(6):
        ads.append(_ad(
            f"hist-cur-{i}", score=78 + i, days_old=2 + i,
            hook_type="curiosity", is_ugc_style=True, has_subtitles=True,
        ))
    for i in range(6):
        ads.append(_ad(
            f"hist-q-{i}", score=58 + i, days_old=2 + i,
            hook_type="question", is_ugc_style=True, has_subtitles=True,
        ))
    return ads
