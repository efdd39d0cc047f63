"""Lightweight review analysis: word-list sentiment, feature requests, keywords."""

import re
from collections import Counter
from typing import Any, Dict, List, Sequence

from asogate.app.providers.catalog import CatalogReview

POSITIVE_WORDS = frozenset(
    {
        # Turkish
        "harika", "mukemmel", "super", "guzel", "kolay", "hizli", "sevdim",
        "basarili", "kaliteli", "tavsiye", "ederim", "ideal", "faydali",
        "kullanisli", "pratik", "efektif", "begendim",
        # English
        "great", "amazing", "awesome", "love", "excellent", "perfect",
        "good", "best", "fantastic", "wonderful", "helpful", "easy",
        "fast", "recommend", "nice", "useful",
    }
)

NEGATIVE_WORDS = frozenset(
    {
        # Turkish
        "kotu", "berbat", "yavaş", "hata", "cokma", "calısmiyor", "bozuk",
        "sikiyor", "reklam", "pahali", "gereksiz", "zor", "karmasik",
        "siliyorum", "cöp", "rezalet", "felaket", "saçma",
        # English
        "bad", "terrible", "awful", "hate", "worst", "horrible", "slow",
        "crash", "bug", "broken", "ads", "expensive", "useless",
        "annoying", "frustrating", "delete", "uninstall",
    }
)

FEATURE_INDICATORS = (
    # Turkish
    "eklensin", "eklenmeli", "olsa", "istiyorum", "lazim", "gerek",
    "olmali", "bekliyorum", "güncelleme", "özellik",
    # English
    "should", "please add", "would be nice", "wish", "need", "want",
    "feature request", "missing",
)

REVIEW_STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "is", "it", "this", "that", "ve", "ile", "bir", "bu", "da",
        "de", "mi", "mu", "icin", "çok", "var", "ben", "app", "uygulama",
    }
)

_WORD_SPLIT_RE = re.compile(r"[\s,.!?;:]+")
SNIPPET_LENGTH = 150


def sentiment(text: str) -> str:
    """Classify text as positive, negative or neutral by word counts."""
    words = text.lower().split()
    positive = sum(1 for w in words if w in POSITIVE_WORDS)
    negative = sum(1 for w in words if w in NEGATIVE_WORDS)
    if positive > negative:
        return "positive"
    if negative > positive:
        return "negative"
    return "neutral"


def is_feature_request(text: str) -> bool:
    lower = text.lower()
    return any(indicator in lower for indicator in FEATURE_INDICATORS)


def review_keywords(text: str) -> List[str]:
    return [
        w for w in _WORD_SPLIT_RE.split(text.lower())
        if len(w) > 2 and w not in REVIEW_STOP_WORDS
    ]


def _snippet(text: str) -> str:
    return text if len(text) <= SNIPPET_LENGTH else text[:SNIPPET_LENGTH] + "..."


def _percent(part: int, total: int) -> int:
    return round(part / total * 100) if total else 0


def summarize_reviews(reviews: Sequence[CatalogReview]) -> Dict[str, Any]:
    """Aggregate sentiment, rating distribution, complaints and keywords."""
    counts: Counter = Counter()
    keywords: Counter = Counter()
    ratings = {str(star): 0 for star in range(1, 6)}
    complaints: List[str] = []
    feature_requests: List[str] = []

    for review in reviews:
        full_text = f"{review.title} {review.text}"
        mood = sentiment(full_text)
        counts[mood] += 1

        if mood == "negative" and len(review.text) > 10:
            complaints.append(_snippet(review.text))
        if is_feature_request(full_text):
            feature_requests.append(_snippet(full_text))
        keywords.update(review_keywords(full_text))
        if 1 <= review.rating <= 5:
            ratings[str(review.rating)] += 1

    total = len(reviews)
    return {
        "total_reviewed": total,
        "sentiment": {
            "positive": counts["positive"],
            "negative": counts["negative"],
            "neutral": counts["neutral"],
            "positive_percent": _percent(counts["positive"], total),
            "negative_percent": _percent(counts["negative"], total),
            "neutral_percent": _percent(counts["neutral"], total),
        },
        "rating_distribution": ratings,
        "top_complaints": complaints[:10],
        "feature_requests": feature_requests[:10],
        "keyword_insights": [
            {"keyword": k, "count": c} for k, c in keywords.most_common(20)
        ],
    }


def rating_summary(reviews: Sequence[CatalogReview], samples: int = 3) -> Dict[str, Any]:
    """Star-based split: 4-5 positive, 3 neutral, 1-2 negative."""
    summary: Dict[str, Any] = {
        "total": len(reviews),
        "positive": 0,
        "negative": 0,
        "neutral": 0,
        "sample_complaints": [],
    }
    for review in reviews:
        if review.rating >= 4:
            summary["positive"] += 1
        elif review.rating <= 2:
            summary["negative"] += 1
            if review.text and len(summary["sample_complaints"]) < samples:
                summary["sample_complaints"].append(review.text[:120])
        else:
            summary["neutral"] += 1
    return summary
