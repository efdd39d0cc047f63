"""Core utilities for the ASO gateway."""

from asogate.app.core.cache import (
    CacheBackend,
    CacheStats,
    InMemoryCache,
    SQLiteCache,
    get_cache,
    reset_cache,
)
from asogate.app.core.config import settings
from asogate.app.core.logging import get_logger, setup_logging

__all__ = [
    "CacheBackend",
    "CacheStats",
    "InMemoryCache",
    "SQLiteCache",
    "get_cache",
    "reset_cache",
    "settings",
    "get_logger",
    "setup_logging",
]
