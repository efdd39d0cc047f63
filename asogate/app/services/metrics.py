"""Keyword and app scoring math.

All scores live on a 0-10 scale. These functions are pure; the scoring
resolver and the tool handlers feed them catalog data.
"""

import math
import re
from typing import Iterable, List, Optional, Protocol

TITLE_STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "is", "it", "this", "that", "are", "was",
        "be", "has", "had", "not", "no", "do", "does", "did",
        # Turkish
        "ve", "ile", "bir", "bu", "da", "de", "mi", "mu", "için", "gibi",
        "olan", "olarak", "den", "dan", "ya", "en",
    }
)

_TITLE_SPLIT_RE = re.compile(r"[\s\-&|:/,.]+")


class RatedApp(Protocol):
    rating: float
    review_count: int
    is_free: bool


def clamp(low: float, high: float, value: float) -> float:
    return max(low, min(high, value))


def competitive_score(apps: Iterable[RatedApp]) -> float:
    """Strength of the apps ranking for a keyword (higher = harder).

    Rating contributes up to 3 points, review volume up to 4 (log scale)
    and the share of free apps up to 3.
    """
    apps = list(apps)
    if not apps:
        return 0.0

    count = len(apps)
    avg_rating = sum(a.rating or 0 for a in apps) / count
    avg_reviews = sum(a.review_count or 0 for a in apps) / count
    free_fraction = sum(1 for a in apps if a.is_free) / count

    rating_part = (avg_rating / 5) * 3
    review_part = min(4.0, math.log10(max(1.0, avg_reviews)) / 1.25)
    free_part = free_fraction * 3
    return clamp(0.0, 10.0, rating_part + review_part + free_part)


def opportunity_score(traffic: float, difficulty: float) -> float:
    """High traffic and low difficulty make a good opportunity.

    A keyword with no data at all (both 0) scores a neutral 5.
    """
    if traffic == 0 and difficulty == 0:
        return 5.0
    return clamp(0.0, 10.0, traffic * 1.5 - difficulty * 0.8 + 5)


def estimate_traffic(apps: Iterable[RatedApp]) -> float:
    """Traffic estimate from the average review volume of search results."""
    apps = list(apps)
    if not apps:
        return 1.0
    avg_reviews = sum(a.review_count or 0 for a in apps) / len(apps)
    return clamp(1.0, 10.0, math.log10(max(1.0, avg_reviews)) * 1.8)


def visibility_score(
    rating: float,
    review_count: int,
    rank: Optional[int] = None,
    total: Optional[int] = None,
) -> float:
    """How visible an app is for a keyword, from rating, reviews and rank."""
    if rating >= 4.5:
        rating_part = 3.0
    elif rating >= 4.0:
        rating_part = 2.0
    elif rating >= 3.0:
        rating_part = 1.0
    else:
        rating_part = 0.0

    review_part = min(3.0, math.log10(max(1, review_count)) / 1.5)

    rank_part = 2.0
    if rank is not None and total:
        rank_part = (1 - rank / total) * 4

    return min(10.0, rating_part + review_part + rank_part)


def overall_score(visibility: float, competitive: float, opportunity: float) -> float:
    # visibility 40%, opportunity 35%, inverse competitiveness 25%
    return visibility * 0.4 + opportunity * 0.35 + (10 - competitive) * 0.25


def extract_title_keywords(title: str) -> List[str]:
    """Lower-cased title words without stop words or one-letter tokens."""
    words = (w.strip() for w in _TITLE_SPLIT_RE.split(title.lower()))
    return [w for w in words if len(w) > 1 and w not in TITLE_STOP_WORDS]


def level(score: float) -> str:
    if score > 7:
        return "High"
    if score > 4:
        return "Medium"
    return "Low"


def competition_level(difficulty: float) -> str:
    return level(difficulty)


def traffic_level(traffic: float) -> str:
    return level(traffic)


def recommendation(traffic: float, difficulty: float) -> str:
    if traffic > 6 and difficulty < 5:
        return "Excellent opportunity! High traffic, low competition."
    if traffic > 6 and difficulty > 6:
        return "High traffic but competition is also high. Try long-tail variations."
    if traffic < 4 and difficulty < 4:
        return "Low traffic, low competition. Niche keyword, support it with additional keywords."
    return "Low traffic, high competition. Consider alternative keywords."
