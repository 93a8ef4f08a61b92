"""
Orb Builder - converts raw ads into the canonical orb representation.

Each ad becomes one structured retrieval document: a flat trait map, the
metadata used for filtering, and outcome results when they are known.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError as PydanticValidationError

from .embedding_provider import build_canonical_text
from .errors import ValidationError
from .models import AdInput, Orb, OrbMetadata, OrbResults, coerce_trait_value

logger = logging.getLogger(__name__)

# trait name -> source field (snake_case); camelCase spelling is derived
CATEGORICAL_FIELDS: List[Tuple[str, str]] = [
    ("hook", "hook_type"),
    ("category", "content_category"),
    ("editing", "editing_style"),
    ("color", "color_scheme"),
    ("music", "music_type"),
    ("platform", "platform"),
    ("placement", "placement"),
    ("media_type", "media_type"),
    ("aspect_ratio", "aspect_ratio"),
    ("duration", "duration_category"),
    ("pattern", "pattern_type"),
    ("tone", "emotional_tone"),
    ("sentiment", "overall_sentiment"),
    ("hook_velocity", "hook_velocity"),
    ("cta_strength", "cta_strength"),
    ("cta_type", "cta"),
    ("talent", "talent_type"),
    ("scene_velocity", "scene_velocity"),
    ("composition", "shot_composition"),
    ("voiceover_style", "voiceover_style"),
    ("logo", "logo_consistency"),
    ("brand_color", "brand_color_usage"),
    ("budget_tier", "budget_tier"),
    ("objective", "objective_type"),
    ("audience", "audience_type"),
    ("age_group", "target_age_group"),
    ("retention", "hook_retention"),
]

NUMERIC_FIELDS: List[Tuple[str, str]] = [
    ("actors", "number_of_actors"),
    ("bpm", "bpm"),
]

# Always present on a built orb (false when the source omits them)
BOOLEAN_FIELDS: List[Tuple[str, str]] = [
    ("ugc", "is_ugc_style"),
    ("subtitles", "has_subtitles"),
    ("voiceover", "has_voiceover"),
    ("text_overlays", "has_text_overlays"),
    ("face_presence", "face_presence"),
]

# Set to true only when the source list is non-empty
LIST_FLAG_FIELDS: List[Tuple[str, str]] = [
    ("social_proof", "social_proof_elements"),
    ("urgency", "urgency_triggers"),
    ("trust_signals", "trust_signals"),
]

RESULT_FIELDS = [
    "success_score", "roas", "ctr", "conversions",
    "impressions", "clicks", "ad_spend", "revenue",
]


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.upper() if part == "ugc" else part.capitalize() for part in rest)


def _lookup(data: Mapping[str, Any], field: str) -> Any:
    if field in data:
        return data[field]
    return data.get(_camel(field))


def _slug(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", text.strip().lower()).strip("_")


def _present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


class OrbBuilder:
    """Build immutable orbs from ad payloads."""

    def build(self, ad: Union[AdInput, Mapping[str, Any]], now: Optional[datetime] = None) -> Orb:
        """
        Convert an ad into an Orb.

        Args:
            ad: AdInput model or a plain mapping with the same fields
            now: Creation timestamp used when the ad carries none

        Returns:
            Orb with traits, metadata, optional results and canonical text

        Raises:
            ValidationError: Missing id, malformed payload, or no derivable traits
        """
        ad = self._coerce_input(ad)

        if not ad.id or not ad.id.strip():
            raise ValidationError("Ad is missing an id")

        content = ad.extracted_content or {}
        traits = self.extract_traits(content, ad)
        if not traits:
            raise ValidationError(f"No traits could be derived for ad {ad.id}")

        created_at = ad.created_at or now or datetime.now(timezone.utc)
        metadata = OrbMetadata(
            platform=self._normalized(ad.platform or _lookup(content, "platform")),
            objective=self._normalized(ad.objective or _lookup(content, "objective_type")),
            created_at=created_at,
            updated_at=ad.updated_at,
            has_results=ad.has_results,
        )

        results = None
        if ad.has_results and ad.results:
            results = self._extract_results(ad.id, ad.results)

        try:
            orb = Orb(id=ad.id.strip(), traits=traits, metadata=metadata, results=results)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid orb for ad {ad.id}: {e}") from e

        return orb.model_copy(update={"canonical_text": build_canonical_text(orb)})

    def build_many(self, ads: List[Union[AdInput, Mapping[str, Any]]]) -> List[Orb]:
        return [self.build(ad) for ad in ads]

    def extract_traits(self, content: Mapping[str, Any], ad: Optional[AdInput] = None) -> Dict[str, Any]:
        """Flatten extracted creative content into a trait map.

        Returns an empty dict when the content holds no recognized field.
        """
        traits: Dict[str, Any] = {}

        for trait, field in CATEGORICAL_FIELDS:
            value = _lookup(content, field)
            if _present(value):
                traits[trait] = self._scalar(ad, trait, value)

        if ad is not None:
            # Top-level platform/objective fill gaps in the creative analysis
            if "platform" not in traits and _present(ad.platform):
                traits["platform"] = ad.platform
            if "objective" not in traits and _present(ad.objective):
                traits["objective"] = ad.objective

        for trait, field in NUMERIC_FIELDS:
            value = _lookup(content, field)
            if isinstance(value, bool) or not _present(value):
                continue
            try:
                traits[trait] = float(value)
            except (TypeError, ValueError):
                raise ValidationError(f"Trait '{trait}' must be numeric, got {value!r}")

        curiosity = _lookup(content, "curiosity_gap")
        if curiosity is not None:
            traits["curiosity_gap"] = bool(curiosity)

        for trait, field in LIST_FLAG_FIELDS:
            value = _lookup(content, field)
            if value:
                traits[trait] = True

        customs = _lookup(content, "custom_traits") or []
        if isinstance(customs, str):
            customs = [customs]
        if not isinstance(customs, (list, tuple)):
            raise ValidationError(f"custom_traits must be a list, got {type(customs).__name__}")
        for custom in customs:
            if isinstance(custom, str) and _slug(custom):
                traits[f"custom:{_slug(custom)}"] = True

        if not traits and not any(_lookup(content, field) is not None for _, field in BOOLEAN_FIELDS):
            return {}

        for trait, field in BOOLEAN_FIELDS:
            traits[trait] = bool(_lookup(content, field))

        return traits

    @staticmethod
    def _coerce_input(ad: Union[AdInput, Mapping[str, Any]]) -> AdInput:
        if isinstance(ad, AdInput):
            return ad
        if not isinstance(ad, Mapping):
            raise ValidationError(f"Ad must be a mapping, got {type(ad).__name__}")

        data = dict(ad)
        # Accept the camelCase payloads produced by the web client
        for snake in ("extracted_content", "has_results", "created_at", "updated_at"):
            camel = _camel(snake)
            if snake not in data and camel in data:
                data[snake] = data[camel]
        if "results" not in data and "extractedResults" in data:
            data["results"] = data["extractedResults"]

        try:
            return AdInput.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"Malformed ad payload: {e}") from e

    @staticmethod
    def _scalar(ad: Optional[AdInput], trait: str, value: Any) -> Any:
        if isinstance(value, (str, bool, int, float)):
            return value
        ad_id = ad.id if ad is not None else "?"
        raise ValidationError(f"Trait '{trait}' on ad {ad_id} has unsupported value {value!r}")

    @staticmethod
    def _normalized(value: Any) -> Optional[str]:
        if not _present(value):
            return None
        return coerce_trait_value(value).text

    @staticmethod
    def _extract_results(ad_id: str, raw: Mapping[str, Any]) -> OrbResults:
        values = {}
        for field in RESULT_FIELDS:
            value = _lookup(raw, field)
            if value is not None:
                values[field] = value
        try:
            return OrbResults(**values)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid results for ad {ad_id}: {e}") from e
