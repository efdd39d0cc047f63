"""Tests for metadata field rules and locale helpers."""

import pytest

from asogate.app.core.localization import (
    get_country_name,
    to_connect_locale,
)
from asogate.app.core.metadata_rules import (
    MetadataFields,
    decode_html_entities,
    ensure_valid,
    validate_fields,
)
from asogate.app.exceptions import ValidationError


class TestMetadataFields:
    """Test field mapping between our names and upstream attributes."""

    def test_from_mapping_accepts_both_spellings(self):
        fields = MetadataFields.from_mapping(
            {"name": "Fit", "promotionalText": "New!", "whats_new": "Fixes", "extra": 1}
        )

        assert fields.provided() == {
            "name": "Fit",
            "promotional_text": "New!",
            "whats_new": "Fixes",
        }

    def test_split_between_app_info_and_version(self):
        fields = MetadataFields(
            name="Fit", subtitle="Workouts", keywords="gym,yoga", support_url="https://x.test"
        )

        assert fields.app_info_attributes() == {"name": "Fit", "subtitle": "Workouts"}
        assert fields.version_attributes() == {
            "keywords": "gym,yoga",
            "supportUrl": "https://x.test",
        }

    def test_empty_string_counts_as_provided(self):
        assert MetadataFields(subtitle="").is_empty() is False
        assert MetadataFields().is_empty() is True

    def test_decoded(self):
        fields = MetadataFields(name="Tom &amp; Jerry", keywords="a,b")

        assert fields.decoded() == MetadataFields(name="Tom & Jerry", keywords="a,b")


class TestValidation:
    """Test character limits and keyword warnings."""

    def test_within_limits(self):
        assert validate_fields(MetadataFields(name="x" * 30, keywords="k" * 100)) == ([], [])

    def test_over_limit_message(self):
        errors, _ = validate_fields(MetadataFields(name="x" * 31), prefix="[en-US] ")

        assert errors == ["[en-US] Name exceeds 30 char limit (31 chars)"]

    def test_urls_are_not_limited(self):
        errors, _ = validate_fields(MetadataFields(marketing_url="https://" + "x" * 5000))

        assert errors == []

    def test_keyword_spacing_warning(self):
        errors, warnings = validate_fields(MetadataFields(keywords="gym, yoga"))

        assert errors == []
        assert len(warnings) == 1
        assert "comma-separated without spaces" in warnings[0]

    def test_ensure_valid_collects_all_violations(self):
        with pytest.raises(ValidationError) as exc_info:
            ensure_valid(
                MetadataFields(name="x" * 31, promotional_text="p" * 171, keywords="a, b")
            )

        error = exc_info.value
        assert len(error.violations) == 2
        assert len(error.warnings) == 1
        assert error.to_dict()["error"] == "validation_failed"

    def test_ensure_valid_rejects_empty(self):
        with pytest.raises(ValidationError, match="No metadata fields"):
            ensure_valid(MetadataFields())

    def test_ensure_valid_returns_warnings(self):
        assert len(ensure_valid(MetadataFields(keywords="a, b"))) == 1


class TestTextHelpers:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Tom &amp; Jerry", "Tom & Jerry"),
            ("It&#39;s", "It's"),
            ("&quot;best&quot;", '"best"'),
            ("plain text", "plain text"),
        ],
    )
    def test_decode_html_entities(self, raw, expected):
        assert decode_html_entities(raw) == expected

    def test_to_connect_locale(self):
        assert to_connect_locale("us") == "en-US"
        assert to_connect_locale(" TR ") == "tr"
        assert to_connect_locale("de-DE") == "de-DE"

    def test_country_helpers(self):
        assert get_country_name("TR") == "Turkey"
        assert get_country_name("zz") == "ZZ"
