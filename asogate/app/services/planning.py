"""Keyword pool and listing copy helpers for the planning tools.

Pure functions: the tool handlers fetch catalog data and scores, these turn
them into keyword pools, tiers, ranking positions and metadata drafts that
fit the store's character limits.
"""

import re
from typing import Dict, Iterable, List, Optional, Sequence

from asogate.app.core.metadata_rules import CHAR_LIMITS
from asogate.app.providers.catalog import CatalogApp
from asogate.app.services.metrics import extract_title_keywords

TITLE_LIMIT = CHAR_LIMITS["name"]
SUBTITLE_LIMIT = CHAR_LIMITS["subtitle"]
KEYWORD_FIELD_LIMIT = CHAR_LIMITS["keywords"]

TIER_LABELS = {
    "A": "High opportunity",
    "B": "Medium opportunity",
    "C": "Low opportunity",
    "D": "Weak",
}

_NICHE_SPLIT_RE = re.compile(r"\s+ve\s+|\s+and\s+|,\s*")
_BRAND_SPLIT_RE = re.compile(r"[-:|]")


def opportunity_tier(opportunity: float) -> str:
    if opportunity >= 7:
        return "A"
    if opportunity >= 5:
        return "B"
    if opportunity >= 3:
        return "C"
    return "D"


def split_niche(niche: str) -> List[str]:
    """``"calorie tracking and diet planning"`` -> two search terms."""
    return [t.strip() for t in _NICHE_SPLIT_RE.split(niche) if t.strip()]


def brand_name(title: str) -> str:
    """The part of a store title before the first ``-``, ``:`` or ``|``."""
    return _BRAND_SPLIT_RE.split(title, maxsplit=1)[0].strip()


def app_keywords(app: CatalogApp, description_chars: int = 500) -> List[str]:
    """Unique keywords from the title and the start of the description."""
    words = extract_title_keywords(app.title)
    words += extract_title_keywords(app.description[:description_chars])
    return list(dict.fromkeys(words))


def rank_position(apps: Sequence[CatalogApp], app_id: str) -> Optional[int]:
    """1-based position of an app given by numeric id or bundle id."""
    wanted = app_id.strip().lower()
    for position, app in enumerate(apps, start=1):
        if str(app.id) == wanted or app.bundle_id.lower() == wanted:
            return position
    return None


def suggest_title(current_title: str, keywords: Sequence[str]) -> str:
    """Brand name plus up to three keywords it does not already contain."""
    name = brand_name(current_title)
    remaining = TITLE_LIMIT - len(name) - 3
    parts = [name]
    if remaining > 3:
        suffix = " ".join(
            k for k in keywords[:3] if k.lower() not in name.lower()
        )
        if suffix and len(suffix) <= remaining:
            parts.append(suffix)
    return " - ".join(parts)[:TITLE_LIMIT]


def suggest_subtitle(title: str, keywords: Sequence[str]) -> str:
    lower_title = title.lower()
    picked = [k for k in keywords if k.lower() not in lower_title][:4]
    return ", ".join(picked)[:SUBTITLE_LIMIT]


def build_keyword_field(keywords: Iterable[str], used: Iterable[str]) -> str:
    """Comma-separated keywords, no spaces after commas, within the limit.

    Whole phrases go first, then their single words. Anything already in
    ``used`` (title and subtitle words) is skipped since the store indexes
    those fields anyway.
    """
    used_set = {u.lower() for u in used}
    keywords = list(keywords)
    candidates = [k for k in keywords if k.lower() not in used_set]
    for k in keywords:
        candidates.extend(
            w for w in k.split() if len(w) > 1 and w.lower() not in used_set
        )

    field = ""
    for word in dict.fromkeys(candidates):
        joined = f"{field},{word}" if field else word
        if len(joined) <= KEYWORD_FIELD_LIMIT:
            field = joined
    return field


def metadata_warnings(title: str, subtitle: str, keyword_field: str) -> List[str]:
    warnings = []
    for label, value, limit in (
        ("Title", title, TITLE_LIMIT),
        ("Subtitle", subtitle, SUBTITLE_LIMIT),
        ("Keyword field", keyword_field, KEYWORD_FIELD_LIMIT),
    ):
        if len(value) > limit:
            warnings.append(f"{label} is {len(value)} chars, limit is {limit}")
    if " " in keyword_field:
        warnings.append("Do not use spaces in the keyword field, separate with commas")
    return warnings


def character_usage(used: int, limit: int) -> Dict[str, int]:
    return {"used": used, "max": limit, "remaining": limit - used}
