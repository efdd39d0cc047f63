"""ASO tool handlers.

Each tool validates its arguments, serves from the cache when it can, calls
the providers otherwise, and returns a ``ToolResult``. Failures of any kind
are turned into a failed ``ToolResult`` at this boundary; callers never see
raw exceptions.

Cache keys follow ``"<operation>:<param1>:<param2>..."`` so whole families
can be invalidated by prefix.
"""

import asyncio
import json
import time
from collections import Counter
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Type

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from asogate.app.core.cache import CacheBackend, get_cache
from asogate.app.core.config import settings
from asogate.app.core.http_client import get_or_create_http_client
from asogate.app.core.localization import get_country_name
from asogate.app.core.logging import get_log_context, get_logger
from asogate.app.core.metadata_rules import CHAR_LIMITS, MetadataFields
from asogate.app.exceptions import AsoGatewayError, ConfigurationError
from asogate.app.providers.catalog import CatalogApp, CatalogProvider, CatalogReview
from asogate.app.providers.connect import (
    ConnectClient,
    ConnectCredentials,
    ConnectLocalization,
    load_credentials,
    save_credentials,
)
from asogate.app.services.metrics import (
    competition_level,
    competitive_score,
    extract_title_keywords,
    level,
    opportunity_score,
    overall_score,
    recommendation,
    traffic_level,
    visibility_score,
)
from asogate.app.services.planning import (
    TIER_LABELS,
    app_keywords,
    brand_name,
    build_keyword_field,
    character_usage,
    metadata_warnings,
    opportunity_tier,
    rank_position,
    split_niche,
    suggest_subtitle,
    suggest_title,
)
from asogate.app.services.reviews import rating_summary, summarize_reviews
from asogate.app.services.scoring import (
    SUGGEST_STRATEGIES,
    ScoreResult,
    ScoringResolver,
    get_scoring_resolver,
)

logger = get_logger(__name__)

ConnectFactory = Callable[[ConnectCredentials], ConnectClient]

RANKING_DEPTH = 100
GAP_SCORED_PER_APP = 15
BRIEF_POOL_SIZE = 40


# =============================================================================
# Results
# =============================================================================


@dataclass
class ToolResult:
    """Structured outcome of a tool call."""

    ok: bool
    data: Any = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    status_code: int = 200
    details: Optional[Dict[str, Any]] = None
    cached: bool = False

    @classmethod
    def failure(
        cls,
        error: str,
        error_type: str,
        status_code: int,
        details: Optional[Dict[str, Any]] = None,
    ) -> "ToolResult":
        return cls(
            ok=False,
            error=error,
            error_type=error_type,
            status_code=status_code,
            details=details,
        )

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True, "cached": self.cached, "data": self.data}
        body: Dict[str, Any] = {
            "ok": False,
            "error": self.error,
            "error_type": self.error_type,
        }
        if self.details:
            body["details"] = self.details
        return body


# =============================================================================
# Arguments
# =============================================================================


def _default_country() -> str:
    return settings.default_country


class ToolArgs(BaseModel):
    """Arguments accept snake_case or camelCase names."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class SearchKeywordsArgs(ToolArgs):
    keyword: str = Field(min_length=1, max_length=100)
    country: str = Field(default_factory=_default_country, min_length=2, max_length=5)
    num: int = Field(default=10, ge=1, le=50)


class SuggestKeywordsArgs(ToolArgs):
    app_id: str = Field(min_length=1)
    strategy: Literal["category", "similar", "competition", "all"] = "all"
    country: str = Field(default_factory=_default_country, min_length=2, max_length=5)
    num: int = Field(default=20, ge=1, le=50)


class AppArgs(ToolArgs):
    app_id: str = Field(min_length=1)
    country: str = Field(default_factory=_default_country, min_length=2, max_length=5)


class AnalyzeCompetitorsArgs(ToolArgs):
    keyword: str = Field(min_length=1, max_length=100)
    country: str = Field(default_factory=_default_country, min_length=2, max_length=5)
    num: int = Field(default=10, ge=1, le=50)


class AnalyzeReviewsArgs(AppArgs):
    pages: int = Field(default=3, ge=1, le=10)


class LocalizedKeywordsArgs(ToolArgs):
    keywords: List[str] = Field(min_length=1, max_length=20)
    source_country: str = Field(default_factory=_default_country, min_length=2, max_length=5)
    target_countries: List[str] = Field(min_length=1, max_length=10)


class TrackRankingArgs(ToolArgs):
    app_id: str = Field(min_length=1)
    keywords: List[str] = Field(min_length=1, max_length=20)
    country: str = Field(default_factory=_default_country, min_length=2, max_length=5)


class KeywordGapArgs(ToolArgs):
    app_id1: str = Field(min_length=1)
    app_id2: str = Field(min_length=1)
    country: str = Field(default_factory=_default_country, min_length=2, max_length=5)


class DiscoverKeywordsArgs(ToolArgs):
    category: str = Field(min_length=1)
    niche: str = Field(min_length=1)
    features: List[str] = Field(min_length=1, max_length=20)
    country: str = Field(default_factory=_default_country, min_length=2, max_length=5)
    max_results: int = Field(default=50, ge=10, le=100)


class AsoReportArgs(AppArgs):
    competitors: int = Field(default=5, ge=1, le=20)


class OptimizeMetadataArgs(AppArgs):
    target_keywords: List[str] = Field(min_length=1, max_length=15)


def _default_countries() -> List[str]:
    return [settings.default_country]


class AsoBriefArgs(ToolArgs):
    app_name: str = Field(min_length=1, max_length=50)
    category: str = Field(min_length=1)
    features: List[str] = Field(min_length=1, max_length=20)
    target_audience: str = Field(min_length=1)
    countries: List[str] = Field(default_factory=_default_countries, min_length=1, max_length=10)
    competitor_app_ids: List[str] = Field(default_factory=list, max_length=10)


class ClearCacheArgs(ToolArgs):
    pattern: Optional[str] = None


class ConnectSetupArgs(ToolArgs):
    issuer_id: str = Field(min_length=1)
    api_key_id: str = Field(min_length=1)
    private_key_path: str = Field(min_length=1)


class ConnectGetAppArgs(ToolArgs):
    bundle_id: str = Field(min_length=1)


class ConnectAppArgs(ToolArgs):
    app_id: str = Field(min_length=1)


class ConnectGetMetadataArgs(ConnectAppArgs):
    locale: str = Field(default_factory=_default_country, min_length=2)


class MetadataArgs(ToolArgs):
    name: Optional[str] = None
    subtitle: Optional[str] = None
    keywords: Optional[str] = None
    description: Optional[str] = None
    promotional_text: Optional[str] = None
    whats_new: Optional[str] = None
    support_url: Optional[str] = None
    marketing_url: Optional[str] = None

    def to_fields(self) -> MetadataFields:
        return MetadataFields(
            name=self.name,
            subtitle=self.subtitle,
            keywords=self.keywords,
            description=self.description,
            promotional_text=self.promotional_text,
            whats_new=self.whats_new,
            support_url=self.support_url,
            marketing_url=self.marketing_url,
        )


class ConnectUpdateMetadataArgs(MetadataArgs):
    app_id: str = Field(min_length=1)
    locale: str = Field(default_factory=_default_country, min_length=2)


class LocaleUpdateArgs(MetadataArgs):
    locale: str = Field(min_length=2)


class ConnectBatchUpdateArgs(ToolArgs):
    app_id: str = Field(min_length=1)
    updates: List[LocaleUpdateArgs] = Field(min_length=1, max_length=40)


# =============================================================================
# Registry
# =============================================================================


@dataclass
class ToolEntry:
    name: str
    description: str
    args_model: Type[ToolArgs]
    handler: Callable[..., Awaitable[ToolResult]]


TOOL_REGISTRY: Dict[str, ToolEntry] = {}


def tool(name: str, args_model: Type[ToolArgs], description: str):
    """Register a ToolService method as a named tool."""

    def decorator(func):
        TOOL_REGISTRY[name] = ToolEntry(name, description, args_model, func)
        return func

    return decorator


def _app_summary(app: CatalogApp) -> Dict[str, Any]:
    return {
        "title": app.title,
        "developer": app.developer,
        "rating": app.rating,
        "reviews": app.review_count,
        "free": app.is_free,
        "price": app.price,
        "url": app.url,
    }


def _character_limits(metadata: ConnectLocalization) -> Dict[str, Dict[str, int]]:
    limits = {}
    for field_name in ("name", "subtitle", "keywords", "description", "promotional_text", "whats_new"):
        used = len(getattr(metadata, field_name) or "")
        limits[field_name] = character_usage(used, CHAR_LIMITS[field_name])
    return limits


# =============================================================================
# Service
# =============================================================================


class ToolService:
    """Runs ASO tools against the cache, catalog, scoring and Connect layers.

    Usage:
        service = ToolService()
        result = await service.call("search_keywords", {"keyword": "fitness"})
        if result.ok:
            print(result.data["scores"])
    """

    def __init__(
        self,
        cache: Optional[CacheBackend] = None,
        catalog: Optional[CatalogProvider] = None,
        resolver: Optional[ScoringResolver] = None,
        connect_factory: Optional[ConnectFactory] = None,
        connect_config_path: Optional[Path] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._cache = cache
        self._catalog = catalog
        self._resolver = resolver
        self._connect_factory = connect_factory
        self._http_client = http_client
        self.connect_config_path = connect_config_path

    @property
    def cache(self) -> CacheBackend:
        return self._cache or get_cache()

    @property
    def resolver(self) -> ScoringResolver:
        if self._resolver is None:
            self._resolver = get_scoring_resolver()
        return self._resolver

    @property
    def catalog(self) -> CatalogProvider:
        if self._catalog is None:
            self._catalog = self.resolver.catalog
        return self._catalog

    @staticmethod
    def list_tools() -> List[Dict[str, Any]]:
        return [
            {
                "name": entry.name,
                "description": entry.description,
                "parameters": entry.args_model.model_json_schema(by_alias=True),
            }
            for entry in TOOL_REGISTRY.values()
        ]

    async def call(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        """Validate arguments and run a tool, converting failures to results."""
        entry = TOOL_REGISTRY.get(name)
        if entry is None:
            return ToolResult.failure(f"Unknown tool: {name}", "unknown_tool", 404)

        log_extra = get_log_context(tool=name)
        started = time.perf_counter()
        try:
            args = entry.args_model.model_validate(arguments or {})
            result = await entry.handler(self, args)
        except PydanticValidationError as e:
            return ToolResult.failure(
                "Invalid arguments",
                "invalid_arguments",
                422,
                details={"errors": json.loads(e.json(include_url=False))},
            )
        except AsoGatewayError as e:
            logger.warning(f"Tool {name} failed: {e.message}", extra=log_extra)
            return ToolResult.failure(e.message, e.error_type, e.status_code, details=e.to_dict())
        except Exception as e:
            logger.exception(f"Tool {name} crashed: {e}", extra=log_extra)
            return ToolResult.failure(str(e) or type(e).__name__, "internal_error", 500)

        duration_ms = round((time.perf_counter() - started) * 1000, 1)
        logger.info(
            f"Tool {name} completed{' (cached)' if result.cached else ''}",
            extra={**log_extra, "duration_ms": duration_ms},
        )
        return result

    # --- helpers -------------------------------------------------------------

    async def _cached(
        self,
        key: str,
        ttl: float,
        produce: Callable[[], Awaitable[Any]],
    ) -> ToolResult:
        cached = await self.cache.get(key)
        if cached is not None:
            return ToolResult(ok=True, data=json.loads(cached), cached=True)
        data = await produce()
        await self.cache.set(key, json.dumps(data, ensure_ascii=False), ttl)
        return ToolResult(ok=True, data=data)

    def _build_connect_client(self, credentials: ConnectCredentials) -> ConnectClient:
        if self._connect_factory is not None:
            return self._connect_factory(credentials)
        return ConnectClient(
            credentials, http_client=self._http_client or get_or_create_http_client()
        )

    def _connect_client(self) -> ConnectClient:
        credentials = load_credentials(self.connect_config_path)
        if credentials is None:
            raise ConfigurationError(
                "App Store Connect credentials not configured. Use connect_setup first."
            )
        return self._build_connect_client(credentials)

    async def _invalidate_connect(self, app_id: str) -> None:
        removed = await self.cache.delete_pattern(f"connect-metadata:{app_id}:%")
        await self.cache.delete(f"connect-localizations:{app_id}")
        logger.debug(f"Invalidated {removed} cached metadata entries for app {app_id}")

    async def _safe_score(self, keyword: str, country: str) -> ScoreResult:
        try:
            return await self.resolver.get_score(keyword, country)
        except Exception as e:
            logger.warning(f"Could not score '{keyword}': {e}")
            return ScoreResult(keyword=keyword, traffic=0.0, difficulty=0.0)

    async def _search_or_empty(self, term: str, country: str, limit: int) -> List[CatalogApp]:
        try:
            return await self.catalog.search(term, country, limit)
        except Exception as e:
            logger.debug(f"Search for '{term}' in {country} failed: {e}")
            return []

    async def _hints_or_empty(self, term: str) -> List[str]:
        try:
            return await self.catalog.autocomplete(term)
        except Exception as e:
            logger.debug(f"Autocomplete for '{term}' failed: {e}")
            return []

    async def _details_or_none(self, app_id: str, country: str) -> Optional[CatalogApp]:
        try:
            return await self.catalog.app_details(app_id, country)
        except Exception as e:
            logger.debug(f"Lookup of {app_id} in {country} failed: {e}")
            return None

    async def _reviews_or_empty(self, app_id: int, country: str) -> List[CatalogReview]:
        try:
            return await self.catalog.reviews(app_id, country, 1)
        except Exception as e:
            logger.debug(f"Reviews for {app_id} in {country} failed: {e}")
            return []

    # --- catalog tools ------------------------------------------------------

    @tool(
        "search_keywords",
        SearchKeywordsArgs,
        "Traffic and difficulty scores plus the top ranking apps for a keyword.",
    )
    async def search_keywords(self, args: SearchKeywordsArgs) -> ToolResult:
        async def produce() -> Dict[str, Any]:
            score, apps = await asyncio.gather(
                self.resolver.get_score(args.keyword, args.country),
                self.catalog.search(args.keyword, args.country, args.num),
            )
            return {
                "keyword": args.keyword,
                "country": args.country,
                "scores": {"traffic": score.traffic, "difficulty": score.difficulty},
                "opportunity": round(opportunity_score(score.traffic, score.difficulty), 1),
                "top_apps": [_app_summary(a) for a in apps],
                "analysis": {
                    "competition_level": competition_level(score.difficulty),
                    "traffic_level": traffic_level(score.traffic),
                    "recommendation": recommendation(score.traffic, score.difficulty),
                },
            }

        return await self._cached(
            f"search:{args.keyword}:{args.country}:{args.num}",
            settings.cache_ttl_keyword_scores,
            produce,
        )

    @tool(
        "suggest_keywords",
        SuggestKeywordsArgs,
        "Keyword ideas for an app by category, similar apps or competition, with scores.",
    )
    async def suggest_keywords(self, args: SuggestKeywordsArgs) -> ToolResult:
        async def produce() -> Dict[str, Any]:
            strategies = SUGGEST_STRATEGIES if args.strategy == "all" else (args.strategy,)
            by_strategy: Dict[str, List[str]] = {}
            for strategy in strategies:
                by_strategy[strategy] = await self.resolver.suggest_keywords(
                    args.app_id, strategy, args.country, args.num
                )

            unique = list(dict.fromkeys(k for ks in by_strategy.values() for k in ks))[:30]
            scores = await self.resolver.batch_scores(unique, args.country)
            scored = sorted(
                (
                    {
                        "keyword": s.keyword,
                        "traffic": s.traffic,
                        "difficulty": s.difficulty,
                        "opportunity": round(opportunity_score(s.traffic, s.difficulty), 1),
                    }
                    for s in scores
                ),
                key=lambda item: item["traffic"],
                reverse=True,
            )
            return {
                "app_id": args.app_id,
                "strategy": args.strategy,
                "country": args.country,
                "suggestions": by_strategy,
                "scored_keywords": scored,
                "total": len(scored),
            }

        return await self._cached(
            f"suggest:{args.app_id}:{args.strategy}:{args.country}:{args.num}",
            settings.cache_ttl_suggestions,
            produce,
        )

    @tool(
        "get_app_details",
        AppArgs,
        "All ASO-relevant attributes of one app, with a title/description analysis.",
    )
    async def get_app_details(self, args: AppArgs) -> ToolResult:
        async def produce() -> Dict[str, Any]:
            app = await self.catalog.app_details(args.app_id, args.country)
            title_length = len(app.title)
            return {
                "app": app.model_dump(),
                "metadata_analysis": {
                    "title_length": title_length,
                    "title_limit_remaining": CHAR_LIMITS["name"] - title_length,
                    "title_optimal": title_length <= CHAR_LIMITS["name"],
                    "description_word_count": len(app.description.split()),
                    "title_keywords": extract_title_keywords(app.title),
                },
            }

        return await self._cached(
            f"app:{args.app_id}:{args.country}",
            settings.cache_ttl_app_details,
            produce,
        )

    @tool(
        "analyze_competitors",
        AnalyzeCompetitorsArgs,
        "Compares the top apps for a keyword and finds title keyword gaps.",
    )
    async def analyze_competitors(self, args: AnalyzeCompetitorsArgs) -> ToolResult:
        async def produce() -> Dict[str, Any]:
            apps, score = await asyncio.gather(
                self.catalog.search(args.keyword, args.country, args.num),
                self._safe_score(args.keyword, args.country),
            )
            count = len(apps)
            competitive = competitive_score(apps)
            opportunity = opportunity_score(score.traffic, score.difficulty)
            analyzed = []
            for rank, a in enumerate(apps):
                visibility = visibility_score(a.rating, a.review_count, rank, count)
                analyzed.append(
                    {
                        **_app_summary(a),
                        "title_keywords": extract_title_keywords(a.title),
                        "visibility_score": round(visibility, 1),
                        "aso_score": round(overall_score(visibility, competitive, opportunity), 1),
                    }
                )

            frequency: Counter = Counter(k for a in analyzed for k in a["title_keywords"])
            common = [k for k, count in frequency.most_common() if count >= 2]
            common_set = set(common)
            all_keywords = list(dict.fromkeys(k for a in analyzed for k in a["title_keywords"]))
            developers = Counter(a.developer for a in apps)

            return {
                "keyword": args.keyword,
                "country": args.country,
                "competitive_score": round(competitive, 1),
                "keyword_scores": {"traffic": score.traffic, "difficulty": score.difficulty},
                "apps": analyzed,
                "common_keywords": common,
                "keyword_gap": [k for k in all_keywords if k not in common_set],
                "metrics": {
                    "avg_rating": round(sum(a.rating for a in apps) / count, 2) if count else 0,
                    "avg_reviews": round(sum(a.review_count for a in apps) / count) if count else 0,
                    "free_percentage": round(sum(1 for a in apps if a.is_free) / count * 100) if count else 0,
                    "top_developers": [d for d, _ in developers.most_common(5)],
                    "total_apps_analyzed": count,
                },
            }

        return await self._cached(
            f"competitors:{args.keyword}:{args.country}:{args.num}",
            settings.cache_ttl_search_results,
            produce,
        )

    @tool(
        "analyze_reviews",
        AnalyzeReviewsArgs,
        "Sentiment, complaints, feature requests and frequent words in recent reviews.",
    )
    async def analyze_reviews(self, args: AnalyzeReviewsArgs) -> ToolResult:
        async def produce() -> Dict[str, Any]:
            app = await self.catalog.app_details(args.app_id, args.country)
            reviews: List[CatalogReview] = []
            for page in range(1, args.pages + 1):
                try:
                    page_reviews = await self.catalog.reviews(app.id, args.country, page)
                except AsoGatewayError as e:
                    logger.debug(f"Stopping at review page {page}: {e}")
                    break
                if not page_reviews:
                    break
                reviews.extend(page_reviews)

            summary = summarize_reviews(reviews)
            return {"app_id": args.app_id, "app_title": app.title, "country": args.country, **summary}

        return await self._cached(
            f"reviews:{args.app_id}:{args.country}:{args.pages}",
            settings.cache_ttl_reviews,
            produce,
        )

    @tool(
        "localized_keywords",
        LocalizedKeywordsArgs,
        "Scores a keyword set in several storefronts to compare markets.",
    )
    async def localized_keywords(self, args: LocalizedKeywordsArgs) -> ToolResult:
        countries = [args.source_country] + [
            c for c in dict.fromkeys(args.target_countries) if c != args.source_country
        ]
        keywords = args.keywords[:15]

        async def top_app(keyword: str, country: str) -> str:
            try:
                apps = await self.catalog.search(keyword, country, 1)
            except Exception as e:
                logger.debug(f"Top app lookup failed for '{keyword}' in {country}: {e}")
                return ""
            return apps[0].title if apps else ""

        async def for_country(country: str) -> Dict[str, Any]:
            scores, tops = await asyncio.gather(
                self.resolver.batch_scores(keywords, country),
                asyncio.gather(*(top_app(k, country) for k in keywords)),
            )
            rows = [
                {
                    "keyword": s.keyword,
                    "traffic": s.traffic,
                    "difficulty": s.difficulty,
                    "top_app": top,
                }
                for s, top in zip(scores, tops)
            ]
            avg_traffic = sum(r["traffic"] for r in rows) / len(rows) if rows else 0.0
            best = min(rows, key=lambda r: (-r["traffic"], r["difficulty"]), default=None)
            return {
                "country": country,
                "country_name": get_country_name(country),
                "keywords": rows,
                "best_keyword": best["keyword"] if best else None,
                "avg_traffic": round(avg_traffic, 1),
            }

        async def produce() -> Dict[str, Any]:
            localizations = list(await asyncio.gather(*(for_country(c) for c in countries)))
            localizations.sort(key=lambda loc: loc["avg_traffic"], reverse=True)
            cross_country = {
                keyword: [
                    {
                        "country": loc["country"],
                        "traffic": row["traffic"],
                        "difficulty": row["difficulty"],
                    }
                    for loc in localizations
                    for row in loc["keywords"]
                    if row["keyword"] == keyword
                ]
                for keyword in keywords
            }
            return {
                "source_country": args.source_country,
                "target_countries": args.target_countries,
                "total_keywords": len(args.keywords),
                "localizations": localizations,
                "cross_country_comparison": cross_country,
                "best_market": localizations[0]["country"] if localizations else args.source_country,
            }

        return await self._cached(
            f"localized:{','.join(keywords)}:{','.join(countries)}",
            settings.cache_ttl_keyword_scores,
            produce,
        )

    # --- planning tools -----------------------------------------------------

    @tool(
        "track_ranking",
        TrackRankingArgs,
        "Position of an app within the top 100 search results for each keyword.",
    )
    async def track_ranking(self, args: TrackRankingArgs) -> ToolResult:
        async def position(keyword: str) -> Dict[str, Any]:
            try:
                apps = await self.catalog.search(keyword, args.country, RANKING_DEPTH)
            except Exception as e:
                logger.warning(f"Ranking search for '{keyword}' failed: {e}")
                return {
                    "keyword": keyword,
                    "position": None,
                    "top_app": None,
                    "total_results": 0,
                    "error": str(e),
                }
            return {
                "keyword": keyword,
                "position": rank_position(apps, args.app_id),
                "top_app": apps[0].title if apps else None,
                "total_results": len(apps),
            }

        async def produce() -> Dict[str, Any]:
            rankings = list(await asyncio.gather(*(position(k) for k in args.keywords)))
            found = sorted(
                (r for r in rankings if r["position"] is not None),
                key=lambda r: r["position"],
            )
            return {
                "app_id": args.app_id,
                "country": args.country,
                "total_keywords": len(args.keywords),
                "rankings": rankings,
                "summary": {
                    "ranked_keywords": len(found),
                    "not_ranked": len(rankings) - len(found),
                    "top10_count": sum(1 for r in found if r["position"] <= 10),
                    "top50_count": sum(1 for r in found if r["position"] <= 50),
                    "best_position": found[0]["position"] if found else None,
                    "best_keyword": found[0]["keyword"] if found else None,
                },
            }

        return await self._cached(
            f"ranking:{args.app_id}:{','.join(args.keywords)}:{args.country}",
            settings.cache_ttl_search_results,
            produce,
        )

    @tool(
        "keyword_gap",
        KeywordGapArgs,
        "Keywords only one of two apps uses, shared keywords, and scored opportunities.",
    )
    async def keyword_gap(self, args: KeywordGapArgs) -> ToolResult:
        async def produce() -> Dict[str, Any]:
            app1, app2 = await asyncio.gather(
                self.catalog.app_details(args.app_id1, args.country),
                self.catalog.app_details(args.app_id2, args.country),
            )
            keywords1 = app_keywords(app1)
            keywords2 = app_keywords(app2)
            set1, set2 = set(keywords1), set(keywords2)
            only1 = [k for k in keywords1 if k not in set2]
            only2 = [k for k in keywords2 if k not in set1]
            shared = [k for k in keywords1 if k in set2]

            # What each app could borrow from the other
            candidates = [(k, app2.title) for k in only2[:GAP_SCORED_PER_APP]]
            candidates += [(k, app1.title) for k in only1[:GAP_SCORED_PER_APP]]
            scores = await self.resolver.batch_scores([k for k, _ in candidates], args.country)
            opportunities = [
                {
                    "keyword": keyword,
                    "traffic": s.traffic,
                    "difficulty": s.difficulty,
                    "opportunity_score": round(opportunity_score(s.traffic, s.difficulty), 1),
                    "unique_to": title,
                }
                for (keyword, title), s in zip(candidates, scores)
            ]
            opportunities.sort(key=lambda o: o["opportunity_score"], reverse=True)

            union = len(set1 | set2)
            return {
                "app1": {"app_id": args.app_id1, "title": app1.title, "total_keywords": len(keywords1)},
                "app2": {"app_id": args.app_id2, "title": app2.title, "total_keywords": len(keywords2)},
                "country": args.country,
                "comparison": {
                    "only_app1": only1,
                    "only_app2": only2,
                    "shared": shared,
                    "overlap_percentage": round(len(shared) / union * 100) if shared else 0,
                },
                "opportunities": opportunities[:20],
            }

        return await self._cached(
            f"gap:{args.app_id1}:{args.app_id2}:{args.country}",
            settings.cache_ttl_search_results,
            produce,
        )

    @tool(
        "discover_keywords",
        DiscoverKeywordsArgs,
        "Builds and scores a keyword pool for a new app from its niche, features and category.",
    )
    async def discover_keywords(self, args: DiscoverKeywordsArgs) -> ToolResult:
        terms = list(
            dict.fromkeys(split_niche(args.niche) + args.features[:8] + [args.category])
        )

        async def produce() -> Dict[str, Any]:
            results = await asyncio.gather(
                *(self._search_or_empty(t, args.country, 10) for t in terms[:10])
            )
            apps: Dict[str, CatalogApp] = {}
            for found in results:
                for app in found:
                    apps.setdefault(app.bundle_id or str(app.id), app)

            pool: Dict[str, Dict[str, Any]] = {}
            for app in apps.values():
                for keyword in app_keywords(app, description_chars=300):
                    entry = pool.setdefault(keyword, {"count": 0, "sources": []})
                    entry["count"] += 1
                    if app.title not in entry["sources"]:
                        entry["sources"].append(app.title)

            for hints in await asyncio.gather(*(self._hints_or_empty(t) for t in terms[:5])):
                for hint in hints:
                    pool.setdefault(hint.lower(), {"count": 1, "sources": ["autocomplete"]})

            for feature in args.features:
                for keyword in extract_title_keywords(feature) + [feature.lower().strip()]:
                    pool.setdefault(keyword, {"count": 1, "sources": ["app-feature"]})

            ranked = sorted(pool.items(), key=lambda item: item[1]["count"], reverse=True)
            ranked = ranked[: args.max_results]
            scores = await self.resolver.batch_scores([k for k, _ in ranked], args.country)

            keywords = []
            for (keyword, entry), s in zip(ranked, scores):
                opportunity = opportunity_score(s.traffic, s.difficulty)
                tier = opportunity_tier(opportunity)
                keywords.append(
                    {
                        "keyword": keyword,
                        "traffic": s.traffic,
                        "difficulty": s.difficulty,
                        "opportunity_score": round(opportunity, 1),
                        "frequency": entry["count"],
                        "sources": entry["sources"][:3],
                        "tier": tier,
                        "tier_label": TIER_LABELS[tier],
                    }
                )
            keywords.sort(key=lambda k: k["opportunity_score"], reverse=True)

            count = len(keywords)
            tier_a = [k["keyword"] for k in keywords if k["tier"] == "A"]
            top_competitors = sorted(apps.values(), key=lambda a: a.review_count, reverse=True)
            return {
                "category": args.category,
                "niche": args.niche,
                "country": args.country,
                "features": args.features,
                "total_apps_analyzed": len(apps),
                "total_keywords_found": count,
                "summary": {
                    "tier_a": len(tier_a),
                    "tier_b": sum(1 for k in keywords if k["tier"] == "B"),
                    "top_opportunities": tier_a[:10],
                    "avg_traffic": round(sum(k["traffic"] for k in keywords) / count, 1) if count else 0,
                    "avg_difficulty": round(sum(k["difficulty"] for k in keywords) / count, 1) if count else 0,
                },
                "keywords": keywords,
                "search_terms_used": terms,
                "top_competitors": [
                    {
                        "title": a.title,
                        "developer": a.developer,
                        "rating": a.rating,
                        "reviews": a.review_count,
                    }
                    for a in top_competitors[:5]
                ],
            }

        return await self._cached(
            f"discover:{args.category}:{args.niche}:{','.join(args.features)}:{args.country}",
            settings.cache_ttl_keyword_scores,
            produce,
        )

    @tool(
        "get_aso_report",
        AsoReportArgs,
        "One-call ASO report: scores, title keywords, competitors, reviews and metadata gaps.",
    )
    async def get_aso_report(self, args: AsoReportArgs) -> ToolResult:
        async def produce() -> Dict[str, Any]:
            app = await self.catalog.app_details(args.app_id, args.country)
            title_keywords = extract_title_keywords(app.title)
            scores, found, reviews = await asyncio.gather(
                self.resolver.batch_scores(title_keywords[:10], args.country),
                self._search_or_empty(
                    brand_name(app.title) or args.app_id, args.country, args.competitors + 1
                ),
                self._reviews_or_empty(app.id, args.country),
            )
            competitors = [a for a in found if a.id != app.id][: args.competitors]

            scored = len(scores)
            avg_traffic = sum(s.traffic for s in scores) / scored if scored else 0.0
            avg_difficulty = sum(s.difficulty for s in scores) / scored if scored else 0.0
            visibility = visibility_score(app.rating, app.review_count)
            competitive = competitive_score(competitors)
            opportunity = opportunity_score(avg_traffic, avg_difficulty)
            overall = overall_score(visibility, competitive, opportunity)

            competitor_keywords = dict.fromkeys(
                k for a in competitors for k in extract_title_keywords(a.title)
            )
            title_length = len(app.title)
            return {
                "app": {
                    **_app_summary(app),
                    "id": app.id,
                    "bundle_id": app.bundle_id,
                    "genre": app.genre,
                    "version": app.version,
                    "updated": app.updated,
                    "description": app.description[:500],
                },
                "scores": {
                    "overall": round(overall, 1),
                    "visibility": round(visibility, 1),
                    "competitive": round(competitive, 1),
                    "opportunity": round(opportunity, 1),
                },
                "metadata": {
                    "title_length": title_length,
                    "title_limit": CHAR_LIMITS["name"],
                    "title_remaining": CHAR_LIMITS["name"] - title_length,
                    "title_keywords": title_keywords,
                    "missing_competitor_keywords": [
                        k for k in competitor_keywords if k not in title_keywords
                    ][:10],
                },
                "keyword_analysis": [s.to_dict() for s in scores],
                "competitors": [
                    {**_app_summary(a), "title_keywords": extract_title_keywords(a.title)}
                    for a in competitors
                ],
                "reviews": rating_summary(reviews),
                "country": args.country,
            }

        return await self._cached(
            f"report:{args.app_id}:{args.country}:{args.competitors}",
            settings.cache_ttl_app_details,
            produce,
        )

    @tool(
        "optimize_metadata",
        OptimizeMetadataArgs,
        "Suggests a title, subtitle and keyword field for target keywords within the character limits.",
    )
    async def optimize_metadata(self, args: OptimizeMetadataArgs) -> ToolResult:
        async def produce() -> Dict[str, Any]:
            app, scores = await asyncio.gather(
                self.catalog.app_details(args.app_id, args.country),
                self.resolver.batch_scores(args.target_keywords, args.country),
            )
            keyword_scores = {
                s.keyword: {"traffic": s.traffic, "difficulty": s.difficulty} for s in scores
            }
            by_traffic = sorted(
                args.target_keywords,
                key=lambda k: keyword_scores[k]["traffic"],
                reverse=True,
            )

            title = suggest_title(app.title, by_traffic)
            subtitle = suggest_subtitle(title, by_traffic)
            used = extract_title_keywords(title) + extract_title_keywords(subtitle)
            keyword_field = build_keyword_field(by_traffic, used)

            top_apps = await self._search_or_empty(by_traffic[0], args.country, 5)
            used_set = set(used)
            competitor_keywords = [
                k
                for k in dict.fromkeys(
                    kw for a in top_apps for kw in extract_title_keywords(a.title)
                )
                if k not in used_set
            ]
            return {
                "app_id": args.app_id,
                "country": args.country,
                "current": {
                    "title": app.title,
                    "title_length": len(app.title),
                    "title_keywords": extract_title_keywords(app.title),
                },
                "suggested": {
                    "title": title,
                    "subtitle": subtitle,
                    "keyword_field": keyword_field,
                },
                "character_limits": {
                    "title": character_usage(len(title), CHAR_LIMITS["name"]),
                    "subtitle": character_usage(len(subtitle), CHAR_LIMITS["subtitle"]),
                    "keywords": character_usage(len(keyword_field), CHAR_LIMITS["keywords"]),
                },
                "keyword_scores": keyword_scores,
                "competitor_keywords": competitor_keywords[:15],
                "warnings": metadata_warnings(title, subtitle, keyword_field),
            }

        return await self._cached(
            f"metadata:{args.app_id}:{','.join(args.target_keywords)}:{args.country}",
            settings.cache_ttl_search_results,
            produce,
        )

    @tool(
        "generate_aso_brief",
        AsoBriefArgs,
        "Full launch brief for a new app: scored keyword pool, competitor patterns and metadata guidance.",
    )
    async def generate_aso_brief(self, args: AsoBriefArgs) -> ToolResult:
        countries = list(dict.fromkeys(args.countries))
        primary = countries[0]

        async def market(country: str, top: List[Dict[str, Any]]) -> Dict[str, Any]:
            if country == primary:
                rows = [
                    {"keyword": k["keyword"], "traffic": k["traffic"], "difficulty": k["difficulty"]}
                    for k in top[:10]
                ]
            else:
                scores = await self.resolver.batch_scores([k["keyword"] for k in top[:8]], country)
                rows = [
                    {"keyword": s.keyword, "traffic": s.traffic, "difficulty": s.difficulty}
                    for s in scores
                ]
            return {
                "country": country,
                "country_name": get_country_name(country),
                "top_keywords": rows,
            }

        async def produce() -> Dict[str, Any]:
            terms = args.features[:6] + [args.category] + [f"{f} app" for f in args.features[:3]]
            pool: Dict[str, str] = {}
            for found in await asyncio.gather(
                *(self._search_or_empty(t, primary, 8) for t in terms[:8])
            ):
                for app in found:
                    for keyword in extract_title_keywords(app.title):
                        pool.setdefault(keyword, "competitor-title")
            for hints in await asyncio.gather(
                *(self._hints_or_empty(f) for f in args.features[:4])
            ):
                for hint in hints:
                    pool.setdefault(hint.lower(), "autocomplete")
            for feature in args.features:
                pool.setdefault(feature.lower().strip(), "app-feature")

            entries = list(pool.items())[:BRIEF_POOL_SIZE]
            scores = await self.resolver.batch_scores([k for k, _ in entries], primary)
            scored = [
                {
                    "keyword": keyword,
                    "traffic": s.traffic,
                    "difficulty": s.difficulty,
                    "opportunity_score": round(opportunity_score(s.traffic, s.difficulty), 1),
                    "source": source,
                }
                for (keyword, source), s in zip(entries, scores)
            ]
            scored.sort(key=lambda k: k["opportunity_score"], reverse=True)

            competitors = [
                app
                for app in await asyncio.gather(
                    *(self._details_or_none(c, primary) for c in args.competitor_app_ids[:3])
                )
                if app is not None
            ]
            if len(competitors) < 5:
                for app in await self._search_or_empty(args.features[0], primary, 5):
                    if len(competitors) >= 5:
                        break
                    if all(c.title != app.title for c in competitors):
                        competitors.append(app)

            frequency: Counter = Counter(
                k for c in competitors for k in extract_title_keywords(c.title)
            )
            common = [k for k, n in frequency.most_common() if n >= 2]
            avg_title_length = (
                round(sum(len(c.title) for c in competitors) / len(competitors))
                if competitors
                else 0
            )
            competitive = competitive_score(competitors)

            top = [k for k in scored if k["traffic"] > 0][:20]
            title_candidates = [k["keyword"] for k in top[:5]]
            subtitle_candidates = [k["keyword"] for k in top[3:10]]
            placed = set(title_candidates) | set(subtitle_candidates)
            field_candidates = [k["keyword"] for k in top if k["keyword"] not in placed]
            must_include = [k["keyword"] for k in top[:8]]

            markets = await asyncio.gather(*(market(c, top) for c in countries))
            name_limit = CHAR_LIMITS["name"]
            subtitle_limit = CHAR_LIMITS["subtitle"]
            field_limit = CHAR_LIMITS["keywords"]
            return {
                "app_name": args.app_name,
                "category": args.category,
                "target_audience": args.target_audience,
                "features": args.features,
                "countries": [{"code": c, "name": get_country_name(c)} for c in countries],
                "primary_country": primary,
                "competitive_analysis": {
                    "competitive_score": round(competitive, 1),
                    "level": f"{level(competitive)} competition",
                    "competitors": [
                        {
                            **_app_summary(c),
                            "title_keywords": extract_title_keywords(c.title),
                            "title_length": len(c.title),
                        }
                        for c in competitors
                    ],
                    "common_competitor_keywords": common,
                    "avg_competitor_title_length": avg_title_length,
                },
                "keyword_pool": {
                    "total": len(scored),
                    "top_opportunities": [k for k in scored if k["opportunity_score"] >= 6][:15],
                    "all_keywords": scored,
                },
                "metadata_guidelines": {
                    "title": {
                        "max_length": name_limit,
                        "candidate_keywords": title_candidates,
                        "pattern": f"{args.app_name} - [keyword1] [keyword2]",
                        "examples": [c.title for c in competitors[:3]],
                    },
                    "subtitle": {
                        "max_length": subtitle_limit,
                        "candidate_keywords": subtitle_candidates,
                    },
                    "keyword_field": {
                        "max_length": field_limit,
                        "candidate_keywords": field_candidates,
                    },
                    "description": {"must_include_keywords": must_include},
                },
                "market_analysis": list(markets),
                "action_plan": [
                    f'Title: "{args.app_name}" + [{", ".join(title_candidates[:2])}] (max {name_limit} chars)',
                    f"Subtitle: [{', '.join(subtitle_candidates[:3])}] (max {subtitle_limit} chars)",
                    f"Keyword field: {','.join(field_candidates[:5])} (max {field_limit} chars, comma-separated)",
                    f"Description: use [{', '.join(must_include[:3])}] in the first 3 sentences",
                    f"Localize for {len(countries)} markets" if len(countries) > 1 else "Optimize for a single market",
                    f"Competitor patterns: {', '.join(common[:5]) or 'unique space'}",
                ],
            }

        return await self._cached(
            f"brief:{args.app_name}:{args.category}:{','.join(sorted(args.features))}:"
            f"{args.target_audience}:{','.join(countries)}",
            settings.cache_ttl_keyword_scores,
            produce,
        )

    @tool(
        "clear_cache",
        ClearCacheArgs,
        "Clears the local data cache, or only keys matching a pattern such as 'search:%'.",
    )
    async def clear_cache(self, args: ClearCacheArgs) -> ToolResult:
        before = await self.cache.stats()
        if args.pattern:
            removed = await self.cache.delete_pattern(args.pattern)
        else:
            removed = await self.cache.clear()
        after = await self.cache.stats()
        return ToolResult(
            ok=True,
            data={
                "status": "cleared",
                "pattern": args.pattern,
                "entries_removed": removed,
                "before": before.to_dict(),
                "after": after.to_dict(),
            },
        )

    # --- App Store Connect tools -----------------------------------------------

    @tool(
        "connect_setup",
        ConnectSetupArgs,
        "Verifies and stores App Store Connect API credentials.",
    )
    async def connect_setup(self, args: ConnectSetupArgs) -> ToolResult:
        credentials = ConnectCredentials(
            issuer_id=args.issuer_id,
            api_key_id=args.api_key_id,
            private_key_path=args.private_key_path,
        )
        if not credentials.key_file.exists():
            raise ConfigurationError(f"Private key file not found: {credentials.key_file}")

        client = self._build_connect_client(credentials)
        await client.validate_credentials()
        path = save_credentials(credentials, self.connect_config_path)
        return ToolResult(
            ok=True,
            data={
                "status": "connected",
                "issuer_id": credentials.issuer_id,
                "api_key_id": credentials.api_key_id,
                "config_path": str(path),
            },
        )

    @tool(
        "connect_get_app",
        ConnectGetAppArgs,
        "Finds an app in App Store Connect by bundle id.",
    )
    async def connect_get_app(self, args: ConnectGetAppArgs) -> ToolResult:
        client = self._connect_client()

        async def produce() -> Dict[str, Any]:
            app = await client.get_app(args.bundle_id)
            return app.to_dict()

        return await self._cached(
            f"connect-app:{args.bundle_id}",
            settings.cache_ttl_connect_app,
            produce,
        )

    @tool(
        "connect_get_metadata",
        ConnectGetMetadataArgs,
        "Current listing metadata for one locale, with character limit usage.",
    )
    async def connect_get_metadata(self, args: ConnectGetMetadataArgs) -> ToolResult:
        client = self._connect_client()

        async def produce() -> Dict[str, Any]:
            metadata = await client.get_metadata(args.app_id, args.locale)
            return {
                "metadata": metadata.to_dict(),
                "character_limits": _character_limits(metadata),
            }

        return await self._cached(
            f"connect-metadata:{args.app_id}:{args.locale}",
            settings.cache_ttl_connect_metadata,
            produce,
        )

    @tool(
        "connect_list_localizations",
        ConnectAppArgs,
        "Locales present for an app at app level and version level.",
    )
    async def connect_list_localizations(self, args: ConnectAppArgs) -> ToolResult:
        client = self._connect_client()

        async def produce() -> Dict[str, Any]:
            summaries = await client.list_localizations(args.app_id)
            return {
                "app_id": args.app_id,
                "total": len(summaries),
                "localizations": [asdict(s) for s in summaries],
            }

        return await self._cached(
            f"connect-localizations:{args.app_id}",
            settings.cache_ttl_connect_localizations,
            produce,
        )

    @tool(
        "connect_update_metadata",
        ConnectUpdateMetadataArgs,
        "Updates listing metadata for one locale after checking character limits.",
    )
    async def connect_update_metadata(self, args: ConnectUpdateMetadataArgs) -> ToolResult:
        client = self._connect_client()
        try:
            outcome = await client.update_metadata(args.app_id, args.locale, args.to_fields())
        finally:
            # The app-level write may have landed before a later step failed
            await self._invalidate_connect(args.app_id)

        diff = {
            field_name: {
                "before": getattr(outcome.before, field_name),
                "after": getattr(outcome.after, field_name),
            }
            for field_name in outcome.fields_updated
        }
        return ToolResult(
            ok=True,
            data={
                "status": "success",
                "locale": outcome.locale,
                "diff": diff,
                "warnings": outcome.warnings,
                "character_limits": _character_limits(outcome.after),
            },
        )

    @tool(
        "connect_batch_update_metadata",
        ConnectBatchUpdateArgs,
        "Updates listing metadata for several locales one after another.",
    )
    async def connect_batch_update_metadata(self, args: ConnectBatchUpdateArgs) -> ToolResult:
        client = self._connect_client()
        try:
            outcome = await client.batch_update_metadata(
                args.app_id, [(u.locale, u.to_fields()) for u in args.updates]
            )
        finally:
            # Failed locales may still have written app-level fields
            await self._invalidate_connect(args.app_id)
        return ToolResult(ok=True, data=outcome.to_dict())


_tool_service: Optional[ToolService] = None


def get_tool_service() -> ToolService:
    """Get or create the process-wide tool service."""
    global _tool_service
    if _tool_service is None:
        _tool_service = ToolService()
    return _tool_service


def reset_tool_service() -> None:
    """Reset the global tool service (for testing)."""
    global _tool_service
    _tool_service = None
