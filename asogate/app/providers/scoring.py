"""Client for the external keyword scoring service.

The service answers traffic/difficulty scores on a 0-10 scale and keyword
suggestions for an app. It is the primary, but optional, source of scores;
the scoring resolver falls back to catalog-based estimates when it fails.
"""

from typing import Any, Dict, List, Optional

import httpx

from asogate.app.core.config import settings
from asogate.app.exceptions import ConfigurationError
from asogate.app.providers.base import BaseProvider
from asogate.app.providers.rate_limit import (
    SOURCE_SCORES,
    RateLimitConfig,
    RateLimiter,
)


def _as_score(value: Any) -> float:
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


class ScoringProvider(BaseProvider):
    """Keyword scores and suggestions from the scoring service."""

    source = SOURCE_SCORES

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[RateLimiter] = None,
        rate_limit: Optional[RateLimitConfig] = None,
    ):
        super().__init__(
            settings.scoring_base_url if base_url is None else base_url,
            http_client=http_client,
            limiter=limiter,
            rate_limit=rate_limit,
        )
        self.api_key = settings.scoring_api_key if api_key is None else api_key

    def _build_headers(self) -> Dict[str, str]:
        headers = super()._build_headers()
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _require_configured(self) -> None:
        if not self.base_url:
            raise ConfigurationError(
                "Scoring service URL not configured. Set ASO_SCORING_BASE_URL."
            )

    async def scores(self, keyword: str, country: str) -> Dict[str, float]:
        """Return ``{"traffic": .., "difficulty": ..}``; missing values are 0."""
        self._require_configured()
        response = await self._request(
            "GET",
            self._get_endpoint_url("/scores"),
            params={"keyword": keyword, "country": country},
        )
        data = response.json() or {}
        return {
            "traffic": _as_score(data.get("traffic")),
            "difficulty": _as_score(data.get("difficulty")),
        }

    async def suggest(
        self, app_id: str, strategy: str, country: str, num: int
    ) -> List[str]:
        """Return keyword suggestions for an app."""
        self._require_configured()
        response = await self._request(
            "GET",
            self._get_endpoint_url("/suggest"),
            params={
                "strategy": strategy,
                "appId": app_id,
                "country": country,
                "num": num,
            },
        )
        data = response.json() or {}
        keywords = data.get("keywords") if isinstance(data, dict) else data
        terms = [
            (k.get("keyword") or k.get("term") or "") if isinstance(k, dict) else str(k)
            for k in (keywords or [])
        ]
        return [t for t in terms if t]
