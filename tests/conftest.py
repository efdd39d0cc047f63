"""Shared fixtures for the ASO gateway tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from asogate.app.core.cache import reset_cache
from asogate.app.providers.catalog import CatalogApp
from asogate.app.providers.connect import reset_token_cache
from asogate.app.providers.health import reset_health_tracker
from asogate.app.providers.rate_limit import RateLimiter, reset_rate_limiter
from asogate.app.providers.retry import RetryPolicy
from asogate.app.services.scoring import reset_scoring_resolver
from asogate.app.services.tools import reset_tool_service


class FakeClock:
    """Deterministic clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 1_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    """Rate limiter on the fake clock, so waits and retries are instant."""
    return RateLimiter(retry_policy=RetryPolicy(), clock=clock, sleep=clock.sleep)


@pytest.fixture(autouse=True)
def reset_singletons():
    yield
    reset_cache()
    reset_rate_limiter()
    reset_health_tracker()
    reset_token_cache()
    reset_scoring_resolver()
    reset_tool_service()


@pytest.fixture
def private_key_file(tmp_path):
    """A freshly generated P-256 key in the .p8 (PKCS#8 PEM) format."""
    key = ec.generate_private_key(ec.SECP256R1())
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    path = tmp_path / "AuthKey_ABC123.p8"
    path.write_bytes(pem)
    return path


def make_app(
    app_id: int = 1,
    title: str = "App",
    rating: float = 4.0,
    reviews: int = 100,
    free: bool = True,
    developer: str = "Dev",
) -> CatalogApp:
    return CatalogApp(
        id=app_id,
        title=title,
        rating=rating,
        review_count=reviews,
        is_free=free,
        price=0.0 if free else 2.99,
        developer=developer,
    )


@pytest.fixture
def catalog():
    """Catalog provider double."""
    mock = MagicMock()
    mock.search = AsyncMock(return_value=[])
    mock.app_details = AsyncMock()
    mock.reviews = AsyncMock(return_value=[])
    mock.autocomplete = AsyncMock(return_value=[])
    return mock


@pytest.fixture
def scoring():
    """Scoring provider double."""
    mock = MagicMock()
    mock.scores = AsyncMock(return_value={"traffic": 6.0, "difficulty": 3.0})
    mock.suggest = AsyncMock(return_value=[])
    return mock
