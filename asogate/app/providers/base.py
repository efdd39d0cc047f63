from abc import ABC
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx

from asogate.app.core.http_client import create_http_client
from asogate.app.exceptions import UpstreamError
from asogate.app.providers.rate_limit import (
    RateLimitConfig,
    RateLimiter,
    get_limit,
    get_rate_limiter,
)


class BaseProvider(ABC):
    """Base class for upstream data sources.

    Subclasses can accept an external httpx.AsyncClient for connection pooling,
    or create their own if not provided. Every request goes through the rate
    limiter under the provider's ``source`` name, so throttling and transient
    failures are handled in one place.
    """

    source: str = "base"

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[RateLimiter] = None,
        rate_limit: Optional[RateLimitConfig] = None,
        timeout: float = 30.0,
    ):
        """Initialize the provider.

        Args:
            base_url: The API base URL
            http_client: Optional shared HTTP client for connection pooling
            limiter: Rate limiter to use (defaults to the process-wide one)
            rate_limit: Budget for this source (defaults to settings)
            timeout: Request timeout in seconds for a private client
        """
        self._http_client = http_client
        self._limiter = limiter
        self._rate_limit = rate_limit
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    @property
    def http_client(self) -> Optional[httpx.AsyncClient]:
        """Get the HTTP client, if one was provided."""
        return self._http_client

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter or get_rate_limiter()

    @property
    def rate_limit(self) -> RateLimitConfig:
        return self._rate_limit or get_limit(self.source)

    def _build_headers(self) -> Dict[str, str]:
        """Headers sent with every request; evaluated once per attempt."""
        return {"Accept": "application/json"}

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client
        return create_http_client(timeout=self.timeout)

    @asynccontextmanager
    async def _client_context(self):
        """Context manager for HTTP client lifecycle.

        If using shared client, just yield it.
        If using per-request client, manage its lifecycle.
        """
        client = self._get_client()
        is_shared = self._http_client is not None
        try:
            yield client
        finally:
            if not is_shared:
                await client.aclose()

    def _get_endpoint_url(self, endpoint: str) -> str:
        return f"{self.base_url}{endpoint}"

    def _error_detail(self, response: httpx.Response) -> Optional[str]:
        """Extract a human-readable reason from an error response."""
        text = response.text.strip()
        return text[:200] or None

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a rate-limited request and raise UpstreamError on non-2xx."""

        async def call() -> httpx.Response:
            async with self._client_context() as client:
                response = await client.request(
                    method, url, params=params, json=json, headers=self._build_headers()
                )
            if response.status_code >= 400:
                raise UpstreamError(
                    self.source, response.status_code, self._error_detail(response)
                )
            return response

        return await self.limiter.run(self.source, self.rate_limit, call)
