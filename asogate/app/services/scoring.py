"""Keyword score resolution with provider fallback.

Scores come from the external scoring service while it is healthy. When it
fails, the service is put in cooldown and scores are estimated locally from
catalog search results until the cooldown elapses. Callers always get a
score; they cannot tell which path produced it.
"""

import asyncio
import re
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Sequence

from asogate.app.core.logging import get_log_context, get_logger
from asogate.app.providers.catalog import CatalogProvider
from asogate.app.providers.health import ProviderHealthTracker, get_health_tracker
from asogate.app.providers.rate_limit import SOURCE_SCORES
from asogate.app.providers.scoring import ScoringProvider
from asogate.app.services.metrics import competitive_score, estimate_traffic

logger = get_logger(__name__)

ESTIMATE_SEARCH_LIMIT = 20
ESTIMATE_DIFFICULTY_TOP = 10
SUGGEST_STRATEGIES = ("category", "similar", "competition")

_FRAGMENT_SPLIT_RE = re.compile(r"[.\-_]")


@dataclass
class ScoreResult:
    keyword: str
    traffic: float
    difficulty: float

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


class ScoringResolver:
    """Resolves keyword scores and suggestions, falling back on outage.

    Usage:
        resolver = ScoringResolver(catalog, scoring, health=tracker)
        score = await resolver.get_score("fitness", "us")
    """

    provider_name = SOURCE_SCORES

    def __init__(
        self,
        catalog: CatalogProvider,
        scoring: ScoringProvider,
        health: Optional[ProviderHealthTracker] = None,
        group_size: int = 5,
    ):
        self.catalog = catalog
        self.scoring = scoring
        self.health = health or get_health_tracker()
        self.group_size = group_size

    async def get_score(self, keyword: str, country: str) -> ScoreResult:
        """Score one keyword; never raises because of a scoring outage."""
        if self.health.is_available(self.provider_name):
            try:
                scores = await self.scoring.scores(keyword, country)
                return ScoreResult(
                    keyword=keyword,
                    traffic=scores.get("traffic", 0.0),
                    difficulty=scores.get("difficulty", 0.0),
                )
            except Exception as e:
                self.health.mark_failed(self.provider_name, e)
        return await self.estimate_score(keyword, country)

    async def estimate_score(self, keyword: str, country: str) -> ScoreResult:
        """Estimate scores from the apps ranking for ``keyword``.

        Traffic follows the average review volume of the top results,
        difficulty is the competitive score of the top ten.
        """
        apps = await self.catalog.search(keyword, country, limit=ESTIMATE_SEARCH_LIMIT)
        if not apps:
            return ScoreResult(keyword=keyword, traffic=1.0, difficulty=1.0)

        traffic = estimate_traffic(apps)
        difficulty = competitive_score(apps[:ESTIMATE_DIFFICULTY_TOP])
        logger.debug(
            f"Estimated scores for '{keyword}' from {len(apps)} apps",
            extra=get_log_context(provider=self.provider_name, country=country),
        )
        return ScoreResult(
            keyword=keyword,
            traffic=round(traffic, 1),
            difficulty=round(difficulty, 1),
        )

    async def _score_or_zero(self, keyword: str, country: str) -> ScoreResult:
        try:
            return await self.get_score(keyword, country)
        except Exception as e:
            logger.warning(
                f"Scoring failed for '{keyword}': {e}",
                extra=get_log_context(provider=self.provider_name, country=country),
            )
            return ScoreResult(keyword=keyword, traffic=0.0, difficulty=0.0)

    async def batch_scores(
        self,
        keywords: Sequence[str],
        country: str,
        group_size: Optional[int] = None,
    ) -> List[ScoreResult]:
        """Score many keywords in concurrent groups, preserving input order."""
        size = group_size or self.group_size
        results: List[ScoreResult] = []
        for start in range(0, len(keywords), size):
            group = keywords[start:start + size]
            results.extend(
                await asyncio.gather(*(self._score_or_zero(k, country) for k in group))
            )
        return results

    async def suggest_keywords(
        self, app_id: str, strategy: str, country: str, count: int
    ) -> List[str]:
        """Keyword ideas for an app; falls back to catalog autocomplete."""
        if self.health.is_available(self.provider_name):
            try:
                keywords = await self.scoring.suggest(app_id, strategy, country, count)
                return keywords[:count]
            except Exception as e:
                self.health.mark_failed(self.provider_name, e)
        return await self.fallback_suggestions(app_id, count)

    async def fallback_suggestions(self, app_id: str, count: int) -> List[str]:
        """Autocomplete hints for the app id and up to three of its fragments.

        ``"com.spotify.client"`` is also queried as ``"com"``, ``"spotify"``
        and ``"client"``.
        """
        try:
            suggestions = await self.catalog.autocomplete(app_id)
        except Exception as e:
            logger.warning(f"Autocomplete fallback failed for '{app_id}': {e}")
            return []

        combined = list(dict.fromkeys(suggestions))
        if len(combined) >= count:
            return combined[:count]

        fragments = [t for t in _FRAGMENT_SPLIT_RE.split(app_id) if len(t) > 2]
        for fragment in fragments[:3]:
            try:
                more = await self.catalog.autocomplete(fragment)
            except Exception as e:
                logger.debug(f"Autocomplete failed for fragment '{fragment}': {e}")
                continue
            for term in more:
                if term not in combined:
                    combined.append(term)
        return combined[:count]


_resolver: Optional[ScoringResolver] = None


def get_scoring_resolver() -> ScoringResolver:
    """Get or create the process-wide resolver on the shared HTTP client."""
    global _resolver
    if _resolver is None:
        from asogate.app.core.config import settings
        from asogate.app.core.http_client import get_or_create_http_client

        client = get_or_create_http_client()
        _resolver = ScoringResolver(
            catalog=CatalogProvider(http_client=client),
            scoring=ScoringProvider(http_client=client),
            group_size=settings.scoring_batch_size,
        )
    return _resolver


def reset_scoring_resolver() -> None:
    """Reset the global resolver (for testing)."""
    global _resolver
    _resolver = None
