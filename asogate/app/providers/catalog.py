"""Public App Store catalog client (iTunes Search API).

Raw catalog records are parsed into typed models here so nothing above this
layer deals with iTunes field names.
"""

import plistlib
from typing import Any, Dict, List, Optional, Union

import httpx
from pydantic import BaseModel, Field

from asogate.app.core.config import settings
from asogate.app.core.logging import get_log_context, get_logger
from asogate.app.exceptions import ResourceNotFoundError
from asogate.app.providers.base import BaseProvider
from asogate.app.providers.rate_limit import (
    SOURCE_APP_STORE,
    RateLimitConfig,
    RateLimiter,
)

logger = get_logger(__name__)


class CatalogApp(BaseModel):
    """An app as listed in the public storefront."""

    id: int
    bundle_id: str = ""
    title: str = ""
    url: str = ""
    description: str = ""
    developer: str = ""
    developer_id: Optional[int] = None
    rating: float = 0.0
    review_count: int = 0
    current_version_review_count: int = 0
    price: float = 0.0
    currency: str = "USD"
    is_free: bool = True
    genre: str = ""
    genre_id: Optional[str] = None
    icon: str = ""
    released: Optional[str] = None
    updated: Optional[str] = None
    version: str = ""
    size_bytes: Optional[int] = None
    content_rating: str = ""
    languages: List[str] = Field(default_factory=list)

    @classmethod
    def from_itunes(cls, raw: Dict[str, Any]) -> "CatalogApp":
        price = float(raw.get("price") or 0)
        size = raw.get("fileSizeBytes")
        return cls(
            id=int(raw["trackId"]),
            bundle_id=raw.get("bundleId") or "",
            title=raw.get("trackName") or "",
            url=raw.get("trackViewUrl") or "",
            description=raw.get("description") or "",
            developer=raw.get("artistName") or "",
            developer_id=raw.get("artistId"),
            rating=float(raw.get("averageUserRating") or 0),
            review_count=int(raw.get("userRatingCount") or 0),
            current_version_review_count=int(
                raw.get("userRatingCountForCurrentVersion") or 0
            ),
            price=price,
            currency=raw.get("currency") or "USD",
            is_free=price == 0,
            genre=raw.get("primaryGenreName") or "",
            genre_id=str(raw["primaryGenreId"]) if raw.get("primaryGenreId") else None,
            icon=raw.get("artworkUrl512") or raw.get("artworkUrl100") or "",
            released=raw.get("releaseDate"),
            updated=raw.get("currentVersionReleaseDate"),
            version=raw.get("version") or "",
            size_bytes=int(size) if size and str(size).isdigit() else None,
            content_rating=raw.get("contentAdvisoryRating") or "",
            languages=list(raw.get("languageCodesISO2A") or []),
        )


class CatalogReview(BaseModel):
    """A customer review from the storefront RSS feed."""

    id: str = ""
    rating: int
    title: str = ""
    text: str = ""
    version: str = ""
    author: str = ""

    @classmethod
    def from_rss(cls, entry: Dict[str, Any]) -> "CatalogReview":
        def label(key: str) -> str:
            value = entry.get(key) or {}
            return value.get("label", "") if isinstance(value, dict) else ""

        author = (entry.get("author") or {}).get("name") or {}
        return cls(
            id=label("id"),
            rating=int(label("im:rating") or 0),
            title=label("title"),
            text=label("content"),
            version=label("im:version"),
            author=author.get("label", "") if isinstance(author, dict) else "",
        )


class CatalogProvider(BaseProvider):
    """Client for storefront search, lookup, reviews and search hints.

    Example:
        >>> catalog = CatalogProvider(http_client=client)
        >>> apps = await catalog.search("fitness", country="us", limit=10)
    """

    source = SOURCE_APP_STORE

    def __init__(
        self,
        base_url: Optional[str] = None,
        hints_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[RateLimiter] = None,
        rate_limit: Optional[RateLimitConfig] = None,
    ):
        super().__init__(
            base_url or settings.catalog_base_url,
            http_client=http_client,
            limiter=limiter,
            rate_limit=rate_limit,
        )
        self.hints_url = hints_url or settings.catalog_hints_url

    async def search(self, term: str, country: str, limit: int = 10) -> List[CatalogApp]:
        """Search the storefront for software matching ``term``."""
        response = await self._request(
            "GET",
            self._get_endpoint_url("/search"),
            params={
                "term": term,
                "country": country,
                "entity": "software",
                "limit": limit,
            },
        )
        results = response.json().get("results") or []
        apps = [CatalogApp.from_itunes(r) for r in results if r.get("trackId")]
        logger.debug(
            f"Catalog search '{term}' returned {len(apps)} apps",
            extra=get_log_context(source=self.source, country=country),
        )
        return apps

    async def app_details(self, app_id: Union[int, str], country: str) -> CatalogApp:
        """Look up one app by numeric id or bundle id.

        Raises:
            ResourceNotFoundError: No app matches in this storefront.
        """
        key = str(app_id)
        params: Dict[str, Any] = {"country": country}
        if key.isdigit():
            params["id"] = key
        else:
            params["bundleId"] = key

        response = await self._request(
            "GET", self._get_endpoint_url("/lookup"), params=params
        )
        results = [r for r in response.json().get("results") or [] if r.get("trackId")]
        if not results:
            raise ResourceNotFoundError(
                f"App not found in the '{country}' storefront: {key}"
            )
        return CatalogApp.from_itunes(results[0])

    async def reviews(
        self, app_id: Union[int, str], country: str, page: int = 1
    ) -> List[CatalogReview]:
        """Fetch one page of most recent customer reviews."""
        url = self._get_endpoint_url(
            f"/{country}/rss/customerreviews/page={page}/id={app_id}/sortby=mostrecent/json"
        )
        response = await self._request("GET", url)
        entries = (response.json().get("feed") or {}).get("entry") or []
        if isinstance(entries, dict):
            entries = [entries]
        # The first entry of older feeds describes the app itself, not a review
        return [CatalogReview.from_rss(e) for e in entries if "im:rating" in e]

    async def autocomplete(self, term: str) -> List[str]:
        """Search hints (autocomplete) for ``term``."""
        response = await self._request(
            "GET",
            self.hints_url,
            params={"clientApplication": "Software", "term": term},
        )
        try:
            payload = plistlib.loads(response.content)
        except (plistlib.InvalidFileException, ValueError) as e:
            logger.warning(f"Unparseable search hints for '{term}': {e}")
            return []
        return [h["term"] for h in payload.get("hints", []) if h.get("term")]
