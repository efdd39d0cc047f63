"""Country and locale helpers shared by the catalog and Connect layers."""

COUNTRY_NAMES: dict[str, str] = {
    "tr": "Turkey",
    "us": "United States",
    "gb": "United Kingdom",
    "de": "Germany",
    "fr": "France",
    "es": "Spain",
    "it": "Italy",
    "nl": "Netherlands",
    "br": "Brazil",
    "jp": "Japan",
    "kr": "South Korea",
    "cn": "China",
    "au": "Australia",
    "ca": "Canada",
    "mx": "Mexico",
    "ru": "Russia",
    "in": "India",
    "sa": "Saudi Arabia",
    "ae": "United Arab Emirates",
    "se": "Sweden",
}

# Storefront country code -> App Store Connect locale
COUNTRY_TO_LOCALE: dict[str, str] = {
    "tr": "tr",
    "us": "en-US",
    "gb": "en-GB",
    "de": "de-DE",
    "fr": "fr-FR",
    "es": "es-ES",
    "it": "it",
    "nl": "nl-NL",
    "br": "pt-BR",
    "jp": "ja",
    "kr": "ko",
    "cn": "zh-Hans",
    "au": "en-AU",
    "ca": "en-CA",
    "mx": "es-MX",
    "ru": "ru",
    "in": "hi",
    "sa": "ar-SA",
    "ae": "ar-SA",
    "se": "sv",
}


def get_country_name(code: str) -> str:
    return COUNTRY_NAMES.get(code.lower(), code.upper())


def to_connect_locale(code: str) -> str:
    """Resolve a storefront country code or Apple locale to an Apple locale.

    Country codes known to the storefront map to their primary locale
    (``"us"`` -> ``"en-US"``); anything else is assumed to already be an
    Apple locale and is returned unchanged (``"en-US"``, ``"ja"``).

    Examples:
        >>> to_connect_locale("us")
        'en-US'
        >>> to_connect_locale("de-DE")
        'de-DE'
    """
    return COUNTRY_TO_LOCALE.get(code.strip().lower(), code.strip())
