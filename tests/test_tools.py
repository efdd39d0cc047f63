"""Tests for the tool service: argument handling, caching and error mapping."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from asogate.app.core.cache import InMemoryCache
from asogate.app.exceptions import ResourceNotFoundError, UpstreamError
from asogate.app.providers.catalog import CatalogReview
from asogate.app.providers.connect import (
    BatchUpdateResult,
    ConnectApp,
    ConnectCredentials,
    ConnectLocalization,
    LocaleUpdateResult,
    LocalizationSummary,
    MetadataUpdateResult,
    save_credentials,
)
from asogate.app.providers.health import ProviderHealthTracker
from asogate.app.services.scoring import ScoringResolver
from asogate.app.services.tools import TOOL_REGISTRY, ToolResult, ToolService
from conftest import make_app


@pytest.fixture(autouse=True)
def no_connect_env(monkeypatch):
    for name in ("ASC_ISSUER_ID", "ASC_KEY_ID", "ASC_PRIVATE_KEY_PATH"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def cache(clock):
    return InMemoryCache(capacity=100, clock=clock)


@pytest.fixture
def connect_client():
    """Connect client double returned by the service's factory."""
    before = ConnectLocalization(locale="en-US", name="FitLife", subtitle="Daily workouts")
    after = ConnectLocalization(locale="en-US", name="FitLife Pro", subtitle="Daily workouts")

    mock = MagicMock()
    mock.validate_credentials = AsyncMock(return_value=True)
    mock.get_app = AsyncMock(
        return_value=ConnectApp(
            id="123", bundle_id="com.example.fitlife", name="FitLife", primary_locale="en-US"
        )
    )
    mock.get_metadata = AsyncMock(return_value=before)
    mock.list_localizations = AsyncMock(
        return_value=[LocalizationSummary(locale="en-US", has_app_info=True, has_version=True)]
    )
    mock.update_metadata = AsyncMock(
        return_value=MetadataUpdateResult(
            locale="en-US", before=before, after=after, fields_updated=["name"]
        )
    )
    mock.batch_update_metadata = AsyncMock()
    return mock


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "connect-config.json"


@pytest.fixture
def configured(config_path, private_key_file):
    save_credentials(
        ConnectCredentials(
            issuer_id="issuer-1", api_key_id="ABC123", private_key_path=str(private_key_file)
        ),
        config_path,
    )


@pytest.fixture
def service(cache, catalog, scoring, clock, connect_client, config_path):
    resolver = ScoringResolver(
        catalog, scoring, health=ProviderHealthTracker(clock=clock)
    )
    return ToolService(
        cache=cache,
        catalog=catalog,
        resolver=resolver,
        connect_factory=lambda credentials: connect_client,
        connect_config_path=config_path,
    )


class TestToolDispatch:
    """Test registry lookup, argument validation and error mapping."""

    def test_registry(self):
        assert set(TOOL_REGISTRY) == {
            "search_keywords",
            "suggest_keywords",
            "get_app_details",
            "analyze_competitors",
            "analyze_reviews",
            "localized_keywords",
            "track_ranking",
            "keyword_gap",
            "discover_keywords",
            "get_aso_report",
            "optimize_metadata",
            "generate_aso_brief",
            "clear_cache",
            "connect_setup",
            "connect_get_app",
            "connect_get_metadata",
            "connect_list_localizations",
            "connect_update_metadata",
            "connect_batch_update_metadata",
        }

    def test_list_tools_uses_camel_case_parameters(self):
        tools = {t["name"]: t for t in ToolService.list_tools()}

        assert "appId" in tools["suggest_keywords"]["parameters"]["properties"]
        assert tools["search_keywords"]["description"]

    @pytest.mark.asyncio
    async def test_unknown_tool(self, service):
        result = await service.call("does_not_exist", {})

        assert result.ok is False
        assert result.status_code == 404
        assert result.error_type == "unknown_tool"

    @pytest.mark.asyncio
    async def test_invalid_arguments(self, service, catalog):
        result = await service.call("search_keywords", {"keyword": "", "num": 500})

        assert result.status_code == 422
        assert result.error_type == "invalid_arguments"
        fields = {tuple(e["loc"]) for e in result.details["errors"]}
        assert fields == {("keyword",), ("num",)}
        catalog.search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gateway_error_mapped(self, service, catalog):
        catalog.app_details.side_effect = ResourceNotFoundError("App not found: 999")

        result = await service.call("get_app_details", {"app_id": "999", "country": "us"})

        assert result.status_code == 404
        assert result.to_dict() == {
            "ok": False,
            "error": "App not found: 999",
            "error_type": "not_found",
            "details": {"error": "not_found", "message": "App not found: 999"},
        }

    @pytest.mark.asyncio
    async def test_unexpected_error_mapped(self, service, catalog):
        catalog.app_details.side_effect = RuntimeError("boom")

        result = await service.call("get_app_details", {"app_id": "1"})

        assert result.status_code == 500
        assert result.error_type == "internal_error"
        assert result.error == "boom"

    def test_success_dict(self):
        assert ToolResult(ok=True, data={"a": 1}).to_dict() == {
            "ok": True,
            "cached": False,
            "data": {"a": 1},
        }


class TestCatalogTools:
    """Test keyword research tools."""

    @pytest.mark.asyncio
    async def test_search_keywords_is_cached(self, service, catalog, scoring, cache):
        catalog.search.return_value = [make_app(app_id=1, title="FitOn")]
        arguments = {"keyword": "fitness", "country": "us", "num": 5}

        first = await service.call("search_keywords", arguments)
        second = await service.call("search_keywords", arguments)

        assert first.ok and not first.cached
        assert second.cached is True
        assert second.data == first.data
        assert first.data["scores"] == {"traffic": 6.0, "difficulty": 3.0}
        assert first.data["opportunity"] == 10.0
        assert first.data["top_apps"][0]["title"] == "FitOn"
        assert first.data["analysis"]["competition_level"] == "Low"
        scoring.scores.assert_awaited_once()
        catalog.search.assert_awaited_once_with("fitness", "us", 5)
        assert await cache.get("search:fitness:us:5") is not None

    @pytest.mark.asyncio
    async def test_failed_call_is_not_cached(self, service, catalog, cache):
        catalog.search.side_effect = UpstreamError("app-store", 500)

        result = await service.call("search_keywords", {"keyword": "fitness", "country": "us"})

        assert result.ok is False
        assert result.status_code == 502
        assert (await cache.stats()).total_entries == 0

    @pytest.mark.asyncio
    async def test_suggest_keywords_accepts_camel_case(self, service, scoring):
        scoring.suggest.return_value = ["yoga", "gym"]
        scoring.scores.side_effect = [
            {"traffic": 3.0, "difficulty": 2.0},
            {"traffic": 8.0, "difficulty": 5.0},
        ]

        result = await service.call(
            "suggest_keywords",
            {"appId": "com.example.fitlife", "strategy": "similar", "country": "us", "num": 5},
        )

        assert result.ok
        assert result.data["suggestions"] == {"similar": ["yoga", "gym"]}
        assert [k["keyword"] for k in result.data["scored_keywords"]] == ["gym", "yoga"]
        scoring.suggest.assert_awaited_once_with("com.example.fitlife", "similar", "us", 5)

    @pytest.mark.asyncio
    async def test_get_app_details(self, service, catalog):
        catalog.app_details.return_value = make_app(
            title="Spotify - Music and Podcasts"
        ).model_copy(update={"description": "Listen to music."})

        result = await service.call("get_app_details", {"app_id": "324684580", "country": "us"})

        analysis = result.data["metadata_analysis"]
        assert analysis["title_length"] == 28
        assert analysis["title_limit_remaining"] == 2
        assert analysis["title_optimal"] is True
        assert analysis["description_word_count"] == 3
        assert analysis["title_keywords"] == ["spotify", "music", "podcasts"]

    @pytest.mark.asyncio
    async def test_analyze_competitors(self, service, catalog):
        catalog.search.return_value = [
            make_app(app_id=1, title="Fitness Tracker", developer="A"),
            make_app(app_id=2, title="Fitness Coach", developer="B", free=False),
            make_app(app_id=3, title="Yoga", developer="A"),
        ]

        result = await service.call("analyze_competitors", {"keyword": "fitness", "country": "us"})

        assert result.data["common_keywords"] == ["fitness"]
        assert result.data["keyword_gap"] == ["tracker", "coach", "yoga"]
        # Same rating and reviews everywhere, so visibility follows rank
        assert [a["visibility_score"] for a in result.data["apps"]] == [7.3, 6.0, 4.7]
        assert all(0 <= a["aso_score"] <= 10 for a in result.data["apps"])
        metrics = result.data["metrics"]
        assert metrics["free_percentage"] == 67
        assert metrics["top_developers"][0] == "A"
        assert metrics["total_apps_analyzed"] == 3

    @pytest.mark.asyncio
    async def test_analyze_reviews_stops_at_empty_page(self, service, catalog):
        catalog.app_details.return_value = make_app(app_id=42, title="FitLife")
        catalog.reviews.side_effect = [
            [
                CatalogReview(rating=5, title="Great", text="great app love it"),
                CatalogReview(rating=1, title="Crash", text="crash after update, terrible"),
            ],
            [],
        ]

        result = await service.call("analyze_reviews", {"app_id": "42", "country": "us", "pages": 5})

        assert catalog.reviews.await_count == 2
        assert result.data["total_reviewed"] == 2
        assert result.data["sentiment"]["positive"] == 1
        assert result.data["sentiment"]["negative"] == 1
        assert result.data["rating_distribution"]["5"] == 1

    @pytest.mark.asyncio
    async def test_localized_keywords(self, service, catalog):
        result = await service.call(
            "localized_keywords",
            {"keywords": ["fitness"], "sourceCountry": "us", "targetCountries": ["tr", "us"]},
        )

        assert [loc["country"] for loc in result.data["localizations"]] == ["us", "tr"]
        assert result.data["localizations"][1]["country_name"] == "Turkey"
        assert len(result.data["cross_country_comparison"]["fitness"]) == 2
        assert result.data["best_market"] == "us"

    @pytest.mark.asyncio
    async def test_clear_cache_by_pattern(self, service, cache):
        await cache.set("search:a:us:10", "{}", ttl=60)
        await cache.set("search:b:us:10", "{}", ttl=60)
        await cache.set("app:1:us", "{}", ttl=60)

        result = await service.call("clear_cache", {"pattern": "search:*"})

        assert result.data["entries_removed"] == 2
        assert result.data["before"]["total_entries"] == 3
        assert result.data["after"]["total_entries"] == 1

    @pytest.mark.asyncio
    async def test_clear_everything(self, service, cache):
        await cache.set("app:1:us", "{}", ttl=60)

        result = await service.call("clear_cache")

        assert result.data["entries_removed"] == 1


class TestPlanningTools:
    """Test the ranking, gap, discovery, report and brief tools."""

    @pytest.mark.asyncio
    async def test_track_ranking(self, service, catalog, cache):
        results = {
            "fitness": [make_app(app_id=1, title="Other"), make_app(app_id=42, title="FitLife")],
            "workout": [make_app(app_id=7, title="Gym")],
        }

        async def search(term, country, limit):
            if term == "yoga":
                raise UpstreamError("app-store", 503)
            return results[term]

        catalog.search.side_effect = search
        arguments = {"appId": "42", "keywords": ["fitness", "workout", "yoga"], "country": "us"}

        result = await service.call("track_ranking", arguments)
        again = await service.call("track_ranking", arguments)

        positions = {r["keyword"]: r["position"] for r in result.data["rankings"]}
        assert positions == {"fitness": 2, "workout": None, "yoga": None}
        assert result.data["rankings"][2]["total_results"] == 0
        assert result.data["summary"] == {
            "ranked_keywords": 1,
            "not_ranked": 2,
            "top10_count": 1,
            "top50_count": 1,
            "best_position": 2,
            "best_keyword": "fitness",
        }
        catalog.search.assert_any_await("fitness", "us", 100)
        assert again.cached is True
        assert catalog.search.await_count == 3
        assert await cache.get("ranking:42:fitness,workout,yoga:us") is not None

    @pytest.mark.asyncio
    async def test_keyword_gap(self, service, catalog, scoring):
        apps = {
            "1": make_app(app_id=1, title="FitLife Workout"),
            "2": make_app(app_id=2, title="Yoga Workout Coach"),
        }
        catalog.app_details.side_effect = lambda app_id, country: apps[app_id]
        scores = {
            "yoga": {"traffic": 8.0, "difficulty": 2.0},
            "coach": {"traffic": 2.0, "difficulty": 6.0},
            "fitlife": {"traffic": 1.0, "difficulty": 1.0},
        }
        scoring.scores.side_effect = lambda keyword, country: scores[keyword]

        result = await service.call(
            "keyword_gap", {"appId1": "1", "appId2": "2", "country": "us"}
        )

        comparison = result.data["comparison"]
        assert comparison["only_app1"] == ["fitlife"]
        assert comparison["only_app2"] == ["yoga", "coach"]
        assert comparison["shared"] == ["workout"]
        assert comparison["overlap_percentage"] == 25
        assert [(o["keyword"], o["opportunity_score"]) for o in result.data["opportunities"]] == [
            ("yoga", 10.0),
            ("fitlife", 5.7),
            ("coach", 3.2),
        ]
        assert result.data["opportunities"][0]["unique_to"] == "Yoga Workout Coach"

    @pytest.mark.asyncio
    async def test_discover_keywords(self, service, catalog):
        catalog.search.return_value = [
            make_app(app_id=1, title="Calorie Counter", reviews=500),
            make_app(app_id=2, title="Diet Planner Calorie", reviews=9000),
        ]
        catalog.autocomplete.return_value = ["Calorie Tracker"]

        result = await service.call(
            "discover_keywords",
            {
                "category": "Health",
                "niche": "calorie tracking and diet planning",
                "features": ["barcode scanner"],
                "country": "us",
                "maxResults": 10,
            },
        )

        data = result.data
        assert data["search_terms_used"] == [
            "calorie tracking",
            "diet planning",
            "barcode scanner",
            "Health",
        ]
        assert data["total_apps_analyzed"] == 2
        assert data["total_keywords_found"] == 8
        by_keyword = {k["keyword"]: k for k in data["keywords"]}
        assert by_keyword["calorie"]["frequency"] == 2
        assert by_keyword["calorie tracker"]["sources"] == ["autocomplete"]
        assert by_keyword["barcode scanner"]["sources"] == ["app-feature"]
        assert by_keyword["calorie"]["tier"] == "A"
        assert data["summary"]["tier_a"] == 8
        assert data["top_competitors"][0]["title"] == "Diet Planner Calorie"
        assert catalog.search.await_count == 4

    @pytest.mark.asyncio
    async def test_get_aso_report(self, service, catalog):
        app = make_app(app_id=42, title="FitLife: Home Workout", rating=4.6, reviews=12000)
        catalog.app_details.return_value = app
        catalog.search.return_value = [
            app,
            make_app(app_id=2, title="Home Fitness Coach"),
            make_app(app_id=3, title="Workout Planner"),
        ]
        catalog.reviews.return_value = [
            CatalogReview(rating=5, title="Great", text="love it"),
            CatalogReview(rating=1, title="Bad", text="Crashes on launch"),
            CatalogReview(rating=3, title="Ok", text="fine"),
        ]

        result = await service.call(
            "get_aso_report", {"app_id": "42", "country": "us", "competitors": 2}
        )

        data = result.data
        catalog.search.assert_awaited_once_with("FitLife", "us", 3)
        assert [c["title"] for c in data["competitors"]] == ["Home Fitness Coach", "Workout Planner"]
        assert data["scores"] == {
            "overall": 7.3,
            "visibility": 7.7,
            "competitive": 7.0,
            "opportunity": 10.0,
        }
        assert data["metadata"]["title_keywords"] == ["fitlife", "home", "workout"]
        assert data["metadata"]["missing_competitor_keywords"] == ["fitness", "coach", "planner"]
        assert data["reviews"] == {
            "total": 3,
            "positive": 1,
            "negative": 1,
            "neutral": 1,
            "sample_complaints": ["Crashes on launch"],
        }
        catalog.reviews.assert_awaited_once_with(42, "us", 1)

    @pytest.mark.asyncio
    async def test_get_aso_report_survives_missing_extras(self, service, catalog):
        catalog.app_details.return_value = make_app(app_id=42, title="FitLife")
        catalog.search.side_effect = UpstreamError("app-store", 500)
        catalog.reviews.side_effect = UpstreamError("app-store", 500)

        result = await service.call("get_aso_report", {"app_id": "42", "country": "us"})

        assert result.ok
        assert result.data["competitors"] == []
        assert result.data["reviews"]["total"] == 0

    @pytest.mark.asyncio
    async def test_optimize_metadata(self, service, catalog, scoring):
        catalog.app_details.return_value = make_app(app_id=42, title="FitLife - Workouts")
        catalog.search.return_value = [make_app(app_id=9, title="Pilates Studio")]
        traffic = {"yoga": 5.0, "pilates": 8.0, "gym": 2.0, "meditation": 1.0}
        scoring.scores.side_effect = lambda keyword, country: {
            "traffic": traffic[keyword],
            "difficulty": 3.0,
        }

        result = await service.call(
            "optimize_metadata",
            {"appId": "42", "targetKeywords": ["yoga", "pilates", "gym", "meditation"], "country": "us"},
        )

        data = result.data
        assert data["suggested"] == {
            "title": "FitLife - pilates yoga gym",
            "subtitle": "meditation",
            "keyword_field": "",
        }
        assert data["character_limits"]["title"] == {"used": 26, "max": 30, "remaining": 4}
        assert data["current"]["title_keywords"] == ["fitlife", "workouts"]
        assert data["competitor_keywords"] == ["studio"]
        assert data["warnings"] == []
        catalog.search.assert_awaited_once_with("pilates", "us", 5)

    @pytest.mark.asyncio
    async def test_generate_aso_brief(self, service, catalog, scoring):
        catalog.search.return_value = [
            make_app(app_id=1, title="Calorie Counter Pro"),
            make_app(app_id=2, title="Calorie Diet"),
        ]
        catalog.autocomplete.return_value = ["calorie app"]
        catalog.app_details.return_value = make_app(app_id=99, title="MyDiet Calorie")

        result = await service.call(
            "generate_aso_brief",
            {
                "appName": "NutriLog",
                "category": "Health",
                "features": ["calorie counter", "water tracking"],
                "targetAudience": "people on a diet",
                "countries": ["us", "tr"],
                "competitorAppIds": ["99"],
            },
        )

        data = result.data
        assert data["primary_country"] == "us"
        assert [k["keyword"] for k in data["keyword_pool"]["all_keywords"]] == [
            "calorie",
            "counter",
            "pro",
            "diet",
            "calorie app",
            "calorie counter",
            "water tracking",
        ]
        analysis = data["competitive_analysis"]
        assert [c["title"] for c in analysis["competitors"]] == [
            "MyDiet Calorie",
            "Calorie Counter Pro",
            "Calorie Diet",
        ]
        assert analysis["common_competitor_keywords"] == ["calorie"]
        assert analysis["level"] == "Medium competition"
        guidelines = data["metadata_guidelines"]
        assert guidelines["title"]["candidate_keywords"] == ["calorie", "counter", "pro", "diet", "calorie app"]
        assert guidelines["subtitle"]["candidate_keywords"][0] == "diet"
        assert [m["country_name"] for m in data["market_analysis"]] == ["United States", "Turkey"]
        assert len(data["market_analysis"][1]["top_keywords"]) == 7
        assert scoring.scores.await_count == 14
        assert data["action_plan"][4] == "Localize for 2 markets"


class TestConnectTools:
    """Test the App Store Connect tools."""

    @pytest.mark.asyncio
    async def test_unconfigured(self, service, connect_client):
        result = await service.call("connect_get_app", {"bundle_id": "com.example.fitlife"})

        assert result.status_code == 400
        assert result.error_type == "configuration_error"
        assert "connect_setup" in result.error
        connect_client.get_app.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_setup_saves_credentials(self, service, connect_client, config_path, private_key_file):
        result = await service.call(
            "connect_setup",
            {"issuerId": "issuer-1", "apiKeyId": "ABC123", "privateKeyPath": str(private_key_file)},
        )

        assert result.ok
        assert result.data["config_path"] == str(config_path)
        assert config_path.exists()
        connect_client.validate_credentials.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_setup_with_missing_key(self, service, config_path, tmp_path):
        result = await service.call(
            "connect_setup",
            {"issuerId": "i", "apiKeyId": "k", "privateKeyPath": str(tmp_path / "none.p8")},
        )

        assert result.error_type == "configuration_error"
        assert not config_path.exists()

    @pytest.mark.asyncio
    async def test_get_app_cached(self, service, connect_client, configured):
        await service.call("connect_get_app", {"bundle_id": "com.example.fitlife"})
        result = await service.call("connect_get_app", {"bundle_id": "com.example.fitlife"})

        assert result.cached is True
        assert result.data["id"] == "123"
        connect_client.get_app.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_get_metadata_reports_limits(self, service, configured):
        result = await service.call("connect_get_metadata", {"app_id": "123", "locale": "en-US"})

        limits = result.data["character_limits"]
        assert limits["subtitle"] == {"used": 14, "max": 30, "remaining": 16}
        assert result.data["metadata"]["name"] == "FitLife"

    @pytest.mark.asyncio
    async def test_update_invalidates_cached_metadata(self, service, connect_client, cache, configured):
        await service.call("connect_get_metadata", {"app_id": "123", "locale": "en-US"})
        await service.call("connect_list_localizations", {"app_id": "123"})
        await cache.set("connect-metadata:999:en-US", "{}", ttl=60)

        update = await service.call(
            "connect_update_metadata", {"app_id": "123", "locale": "en-US", "name": "FitLife Pro"}
        )
        again = await service.call("connect_get_metadata", {"app_id": "123", "locale": "en-US"})

        assert update.data["diff"] == {"name": {"before": "FitLife", "after": "FitLife Pro"}}
        assert again.cached is False
        assert connect_client.get_metadata.await_count == 2
        assert await cache.get("connect-localizations:123") is None
        assert await cache.get("connect-metadata:999:en-US") == "{}"

    @pytest.mark.asyncio
    async def test_batch_update(self, service, connect_client, cache, configured):
        connect_client.batch_update_metadata.return_value = BatchUpdateResult(
            app_id="123",
            status="partial",
            results=[
                LocaleUpdateResult(locale="en-US", success=True, fields_updated=["subtitle"]),
                LocaleUpdateResult(locale="de-DE", success=False, error="boom"),
            ],
        )
        await cache.set("connect-metadata:123:en-US", "{}", ttl=60)

        result = await service.call(
            "connect_batch_update_metadata",
            {
                "appId": "123",
                "updates": [
                    {"locale": "en-US", "subtitle": "Home workouts"},
                    {"locale": "de-DE", "promotionalText": "Neu"},
                ],
            },
        )

        assert result.data["status"] == "partial"
        assert result.data["succeeded"] == 1
        (app_id, updates), _ = connect_client.batch_update_metadata.await_args
        assert app_id == "123"
        assert updates[1][0] == "de-DE"
        assert updates[1][1].promotional_text == "Neu"
        assert await cache.get("connect-metadata:123:en-US") is None

    @pytest.mark.asyncio
    async def test_failed_update_still_invalidates(self, service, connect_client, configured):
        await service.call("connect_get_metadata", {"app_id": "123", "locale": "en-US"})
        connect_client.update_metadata.side_effect = ResourceNotFoundError(
            "No editable version found."
        )

        update = await service.call(
            "connect_update_metadata",
            {"app_id": "123", "locale": "en-US", "name": "FitLife Pro", "keywords": "gym"},
        )
        again = await service.call("connect_get_metadata", {"app_id": "123", "locale": "en-US"})

        assert update.ok is False
        assert update.error_type == "not_found"
        assert again.cached is False
        assert connect_client.get_metadata.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_batch_invalidates_cache(self, service, connect_client, cache, configured):
        connect_client.batch_update_metadata.return_value = BatchUpdateResult(
            app_id="123",
            status="failed",
            results=[LocaleUpdateResult(locale="en-US", success=False, error="boom")],
        )
        await cache.set("connect-metadata:123:en-US", "{}", ttl=60)

        await service.call(
            "connect_batch_update_metadata",
            {"appId": "123", "updates": [{"locale": "en-US", "subtitle": "x"}]},
        )

        assert await cache.get("connect-metadata:123:en-US") is None
