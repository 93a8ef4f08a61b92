"""
Tests for OrbBuilder - trait extraction, metadata, results and validation.
"""

import pytest

from adorb.services.rag.errors import ValidationError
from adorb.services.rag.models import AdInput, BoolTrait, CategoricalTrait, NumericTrait
from adorb.services.rag.orb_builder import OrbBuilder


@pytest.fixture
def builder():
    return OrbBuilder()


class TestTraitExtraction:
    def test_snake_case_content(self, builder):
        orb = builder.build({
            "id": "ad-1",
            "platform": "TikTok",
            "extracted_content": {
                "hook_type": "Curiosity",
                "is_ugc_style": True,
                "number_of_actors": 2,
                "social_proof_elements": ["reviews"],
            },
        })

        assert orb.traits["hook"] == CategoricalTrait(value="curiosity")
        assert orb.traits["ugc"] == BoolTrait(value=True)
        assert orb.traits["actors"] == NumericTrait(value=2.0)
        assert orb.traits["social_proof"] == BoolTrait(value=True)
        assert orb.traits["platform"] == CategoricalTrait(value="tiktok")
        # Booleans default to false when omitted
        assert orb.traits["subtitles"] == BoolTrait(value=False)

    def test_camel_case_payload(self, builder):
        orb = builder.build({
            "id": "ad-2",
            "hasResults": True,
            "extractedResults": {"successScore": 72},
            "extractedContent": {"hookType": "question", "isUGCStyle": True, "hasSubtitles": True},
        })

        assert orb.traits["hook"].value == "question"
        assert orb.traits["ugc"].value is True
        assert orb.traits["subtitles"].value is True
        assert orb.success_score == 72

    def test_custom_traits_are_slugged(self, builder):
        orb = builder.build({
            "id": "ad-3",
            "extracted_content": {"hook_type": "shock", "custom_traits": ["Before / After", "  "]},
        })
        assert orb.traits["custom:before_after"] == BoolTrait(value=True)
        assert not any(k == "custom:" for k in orb.traits)

    def test_single_custom_trait_string(self, builder):
        orb = builder.build({
            "id": "ad-3",
            "extracted_content": {"hook_type": "shock", "custom_traits": "Unboxing"},
        })
        customs = sorted(k for k in orb.traits if k.startswith("custom:"))
        assert customs == ["custom:unboxing"]

    def test_custom_traits_must_be_a_list(self, builder):
        with pytest.raises(ValidationError, match="custom_traits"):
            builder.build({
                "id": "ad-3",
                "extracted_content": {"hook_type": "shock", "custom_traits": {"a": 1}},
            })

    def test_accepts_ad_input_model(self, builder):
        orb = builder.build(AdInput(id="ad-4", extracted_content={"hook_type": "story"}))
        assert orb.traits["hook"].value == "story"


class TestMetadataAndResults:
    def test_platform_normalized(self, builder):
        orb = builder.build({"id": "a", "platform": " Meta ", "extracted_content": {"hook_type": "story"}})
        assert orb.metadata.platform == "meta"

    def test_results_only_when_flagged(self, builder):
        orb = builder.build({
            "id": "a",
            "has_results": False,
            "results": {"success_score": 90},
            "extracted_content": {"hook_type": "story"},
        })
        assert orb.results is None
        assert orb.has_outcome is False

    def test_results_attached(self, builder):
        orb = builder.build({
            "id": "a",
            "has_results": True,
            "results": {"success_score": 64.5, "roas": 2.1},
            "extracted_content": {"hook_type": "story"},
        })
        assert orb.has_outcome is True
        assert orb.results.roas == 2.1

    def test_canonical_text_set_without_id(self, builder):
        orb = builder.build({"id": "secret-id", "extracted_content": {"hook_type": "story"}})
        assert orb.canonical_text
        assert "secret-id" not in orb.canonical_text
        assert "hook=story" in orb.canonical_text

    def test_build_many(self, builder, make_ad):
        orbs = builder.build_many([make_ad("a"), make_ad("b")])
        assert [o.id for o in orbs] == ["a", "b"]


class TestValidation:
    def test_missing_id(self, builder):
        with pytest.raises(ValidationError, match="missing an id"):
            builder.build({"extracted_content": {"hook_type": "story"}})

    def test_blank_id(self, builder):
        with pytest.raises(ValidationError):
            builder.build({"id": "  ", "extracted_content": {"hook_type": "story"}})

    def test_not_a_mapping(self, builder):
        with pytest.raises(ValidationError, match="mapping"):
            builder.build(["not", "an", "ad"])

    def test_no_derivable_traits(self, builder):
        with pytest.raises(ValidationError, match="No traits"):
            builder.build({"id": "a", "extracted_content": {"unrelated": 1}})

    def test_non_numeric_actor_count(self, builder):
        with pytest.raises(ValidationError, match="numeric"):
            builder.build({"id": "a", "extracted_content": {"number_of_actors": "two"}})

    def test_out_of_range_score(self, builder):
        with pytest.raises(ValidationError):
            builder.build({
                "id": "a",
                "has_results": True,
                "results": {"success_score": 150},
                "extracted_content": {"hook_type": "story"},
            })

    def test_malformed_payload(self, builder):
        with pytest.raises(ValidationError, match="Malformed"):
            builder.build({"id": "a", "created_at": "not a date", "extracted_content": {"hook_type": "story"}})

    def test_validation_error_is_value_error(self, builder):
        with pytest.raises(ValueError):
            builder.build({})
