"""
Legacy scorer - the rule-based fallback score.

The blender only depends on the ``LegacyScorer`` interface; the heuristic
below is the default implementation and can be swapped without touching
retrieval or attribution.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from .errors import LegacyScorerError
from .models import LegacyScore, Orb

logger = logging.getLogger(__name__)

BASE_SCORE = 50.0
BASE_CONFIDENCE = 20.0
CONFIDENCE_PER_SIGNAL = 5.0
MAX_CONFIDENCE = 50.0
MAX_RECOMMENDATIONS = 5

STRONG_HOOKS = ("curiosity", "shock")


class LegacyScorer(ABC):
    """Produces a fallback score for an orb without consulting history."""

    @abstractmethod
    def score(self, orb: Orb) -> LegacyScore:
        ...


class HeuristicLegacyScorer(LegacyScorer):
    """Point-addition heuristic over the strongest known creative signals."""

    # (points when present, points when absent)
    UGC_POINTS = (10.0, 0.0)
    SUBTITLE_POINTS = (7.0, -5.0)
    VOICEOVER_POINTS = 4.0
    STRONG_HOOK_POINTS = 8.0
    OTHER_HOOK_POINTS = 3.0
    TIKTOK_POINTS = 5.0
    FAST_CUTS_POINTS = 4.0

    def score(self, orb: Orb) -> LegacyScore:
        try:
            return self._score(orb)
        except Exception as e:
            raise LegacyScorerError(f"Heuristic scoring failed for orb {orb.id}: {e}") from e

    def _score(self, orb: Orb) -> LegacyScore:
        traits = {name: value.text for name, value in orb.traits.items()}
        ugc = traits.get("ugc") == "true"
        subtitles = traits.get("subtitles") == "true"
        voiceover = traits.get("voiceover") == "true"
        hook = traits.get("hook")
        platform = traits.get("platform")
        editing = traits.get("editing")

        score = BASE_SCORE
        signals = 0
        factors: List[Dict[str, Any]] = []

        if ugc:
            score += self.UGC_POINTS[0]
            factors.append({"factor": "UGC Style", "impact": "positive", "weight": 0.95})
        else:
            score += self.UGC_POINTS[1]
            factors.append({"factor": "Non-UGC Style", "impact": "neutral", "weight": 0.5})
        signals += "ugc" in traits

        if hook in STRONG_HOOKS:
            score += self.STRONG_HOOK_POINTS
            factors.append({"factor": f"{hook.capitalize()} Hook", "impact": "positive", "weight": 0.85})
            signals += 1
        elif hook and hook != "other":
            score += self.OTHER_HOOK_POINTS
            factors.append({"factor": f"{hook.capitalize()} Hook", "impact": "neutral", "weight": 0.65})
            signals += 1

        if subtitles:
            score += self.SUBTITLE_POINTS[0]
            factors.append({"factor": "Has Subtitles", "impact": "positive", "weight": 0.9})
        else:
            score += self.SUBTITLE_POINTS[1]
            factors.append({"factor": "No Subtitles", "impact": "negative", "weight": 0.4})
        signals += "subtitles" in traits

        if platform == "tiktok":
            score += self.TIKTOK_POINTS
            factors.append({"factor": "TikTok Platform", "impact": "positive", "weight": 0.8})
        elif platform == "facebook":
            factors.append({"factor": "Facebook Platform", "impact": "neutral", "weight": 0.7})
        signals += platform is not None

        if voiceover:
            score += self.VOICEOVER_POINTS
            factors.append({"factor": "Has Voiceover", "impact": "positive", "weight": 0.75})

        if editing == "fast_cuts":
            score += self.FAST_CUTS_POINTS
            factors.append({"factor": "Fast Cuts Editing", "impact": "positive", "weight": 0.7})
        signals += editing is not None

        score = max(0.0, min(100.0, score))
        confidence = min(MAX_CONFIDENCE, BASE_CONFIDENCE + CONFIDENCE_PER_SIGNAL * signals)

        return LegacyScore(
            score=score,
            confidence=confidence,
            key_factors=factors,
            recommendations=self._recommendations(ugc, subtitles, voiceover, hook, editing, score),
        )

    @staticmethod
    def _recommendations(ugc, subtitles, voiceover, hook, editing, score) -> List[str]:
        recommendations = []
        if not ugc:
            recommendations.append("Consider using UGC-style content for +15% engagement")
        if not subtitles:
            recommendations.append("Add subtitles/captions for +12% watch time")
        if not voiceover and not subtitles:
            recommendations.append("Add voiceover or subtitles to improve accessibility")
        if hook == "other":
            recommendations.append("Try a curiosity or transformation hook for better engagement")
        if score < 60 and editing != "fast_cuts":
            recommendations.append("Consider faster editing pace to maintain viewer attention")
        return recommendations[:MAX_RECOMMENDATIONS]
