"""App Store metadata fields, character limits and text sanitation.

Metadata for one locale is split upstream between an app-level localization
(name, subtitle) and a version-level localization (everything else). This
module knows which field lives where, the store's character limits, and how
to clean text before it is written.
"""

import html
from dataclasses import dataclass, fields
from typing import Any, Mapping

from asogate.app.exceptions import ValidationError

CHAR_LIMITS: dict[str, int] = {
    "name": 30,
    "subtitle": 30,
    "keywords": 100,
    "description": 4000,
    "promotional_text": 170,
    "whats_new": 4000,
}

FIELD_LABELS: dict[str, str] = {
    "name": "Name",
    "subtitle": "Subtitle",
    "keywords": "Keywords",
    "description": "Description",
    "promotional_text": "Promotional text",
    "whats_new": "What's New",
    "support_url": "Support URL",
    "marketing_url": "Marketing URL",
}

APP_INFO_FIELDS = ("name", "subtitle")
VERSION_FIELDS = (
    "keywords",
    "description",
    "promotional_text",
    "whats_new",
    "support_url",
    "marketing_url",
)

# Field name -> App Store Connect attribute name
API_ATTRIBUTES: dict[str, str] = {
    "name": "name",
    "subtitle": "subtitle",
    "keywords": "keywords",
    "description": "description",
    "promotional_text": "promotionalText",
    "whats_new": "whatsNew",
    "support_url": "supportUrl",
    "marketing_url": "marketingUrl",
}
_FROM_API = {v: k for k, v in API_ATTRIBUTES.items()}


def decode_html_entities(text: str) -> str:
    """Decode HTML entities (``&amp;``, ``&#39;``...) left by upstream tooling.

    Plain text passes through unchanged.
    """
    return html.unescape(text)


@dataclass
class MetadataFields:
    """Optional metadata values for one locale; None means "leave as is"."""

    name: str | None = None
    subtitle: str | None = None
    keywords: str | None = None
    description: str | None = None
    promotional_text: str | None = None
    whats_new: str | None = None
    support_url: str | None = None
    marketing_url: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "MetadataFields":
        """Build from snake_case or App Store Connect camelCase keys.

        Unknown keys are ignored so callers can pass a whole request payload.
        """
        values: dict[str, Any] = {}
        for key, value in data.items():
            name = _FROM_API.get(key, key)
            if name in API_ATTRIBUTES and value is not None:
                values[name] = str(value)
        return cls(**values)

    def provided(self) -> dict[str, str]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    def is_empty(self) -> bool:
        return not self.provided()

    def decoded(self) -> "MetadataFields":
        return MetadataFields(
            **{k: decode_html_entities(v) for k, v in self.provided().items()}
        )

    def app_info_attributes(self) -> dict[str, str]:
        provided = self.provided()
        return {API_ATTRIBUTES[k]: provided[k] for k in APP_INFO_FIELDS if k in provided}

    def version_attributes(self) -> dict[str, str]:
        provided = self.provided()
        return {API_ATTRIBUTES[k]: provided[k] for k in VERSION_FIELDS if k in provided}


def validate_fields(
    metadata: MetadataFields, prefix: str = ""
) -> tuple[list[str], list[str]]:
    """Check character limits and keyword formatting.

    Returns:
        (errors, warnings). Errors block a write, warnings do not.
    """
    errors: list[str] = []
    warnings: list[str] = []

    for field_name, value in metadata.provided().items():
        limit = CHAR_LIMITS.get(field_name)
        if limit is not None and len(value) > limit:
            errors.append(
                f"{prefix}{FIELD_LABELS[field_name]} exceeds {limit} char limit "
                f"({len(value)} chars)"
            )

    if metadata.keywords is not None and ", " in metadata.keywords:
        warnings.append(
            f"{prefix}Keywords contain spaces after commas. App Store keywords "
            "should be comma-separated without spaces."
        )

    return errors, warnings


def ensure_valid(metadata: MetadataFields) -> list[str]:
    """Raise ValidationError on limit violations, otherwise return warnings."""
    if metadata.is_empty():
        raise ValidationError(
            ["No metadata fields provided to update. Specify at least one of: "
             + ", ".join(API_ATTRIBUTES.values()) + "."]
        )
    errors, warnings = validate_fields(metadata)
    if errors:
        raise ValidationError(
            errors,
            warnings,
            message="Fix character limit violations before updating.",
        )
    return warnings
