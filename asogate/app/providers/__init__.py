"""Upstream data source package for the ASO gateway.

This package provides:
- Base provider with rate-limited requests (BaseProvider)
- Catalog, scoring and App Store Connect clients
- Outbound rate limiting (RateLimiter, with_rate_limit)
- Retry mechanism (RetryPolicy, ClassifiedError)
- Provider health tracking (ProviderHealthTracker)
"""

from asogate.app.providers.base import BaseProvider
from asogate.app.providers.catalog import CatalogApp, CatalogProvider, CatalogReview
from asogate.app.providers.connect import (
    ConnectClient,
    ConnectCredentials,
    TokenCache,
    load_credentials,
    save_credentials,
)
from asogate.app.providers.health import (
    ProviderHealth,
    ProviderHealthTracker,
    get_health_tracker,
    reset_health_tracker,
)
from asogate.app.providers.rate_limit import (
    RateLimitConfig,
    RateLimiter,
    TokenBucket,
    get_rate_limiter,
    reset_rate_limiter,
    with_rate_limit,
)
from asogate.app.providers.retry import ClassifiedError, RetryPolicy
from asogate.app.providers.scoring import ScoringProvider

__all__ = [
    # Base
    "BaseProvider",
    # Providers
    "CatalogApp",
    "CatalogProvider",
    "CatalogReview",
    "ConnectClient",
    "ConnectCredentials",
    "ScoringProvider",
    "TokenCache",
    "load_credentials",
    "save_credentials",
    # Health
    "ProviderHealth",
    "ProviderHealthTracker",
    "get_health_tracker",
    "reset_health_tracker",
    # Rate limiting
    "RateLimitConfig",
    "RateLimiter",
    "TokenBucket",
    "get_rate_limiter",
    "reset_rate_limiter",
    "with_rate_limit",
    # Retry
    "ClassifiedError",
    "RetryPolicy",
]
