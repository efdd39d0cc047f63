"""Cache abstraction layer for the ASO gateway.

Provides a durable SQLite-backed cache (the default, shared by every process
of the same user) and an in-memory implementation with identical semantics:

- entries expire ``ttl`` seconds after they were written;
- the live entry count is capped, oldest-written entries are evicted first;
- families of keys can be invalidated with a LIKE-style pattern.
"""

import asyncio
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from sqlalchemy import (
    Column,
    Float,
    Index,
    MetaData,
    Table,
    Text,
    delete,
    event,
    func,
    insert,
    literal_column,
    select,
)
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from asogate.app.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CAPACITY = 5000

_metadata = MetaData()

cache_table = Table(
    "cache",
    _metadata,
    Column("key", Text, primary_key=True),
    Column("value", Text, nullable=False),
    Column("expires_at", Float, nullable=False),
    Column("created_at", Float, nullable=False),
    Index("idx_cache_expires_at", "expires_at"),
    Index("idx_cache_created_at", "created_at"),
)

# SQLite keeps an implicit rowid; REPLACE assigns a fresh one, so it tracks
# write order and breaks created_at ties.
_rowid = literal_column("rowid")


@dataclass
class _CacheEntry:
    """Internal cache entry with TTL tracking."""

    value: str
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class CacheStats:
    """Snapshot of the cache occupancy."""

    total_entries: int
    expired_entries: int
    capacity: int
    db_path: str | None = None

    def to_dict(self) -> dict:
        return {
            "total_entries": self.total_entries,
            "expired_entries": self.expired_entries,
            "capacity": self.capacity,
            "db_path": self.db_path,
        }


def normalize_pattern(pattern: str) -> str:
    """Normalize a key pattern to SQL LIKE syntax (``*`` is accepted for ``%``)."""
    return pattern.replace("*", "%")


def _like_to_regex(pattern: str) -> re.Pattern[str]:
    parts = []
    for char in normalize_pattern(pattern):
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.DOTALL)


def _validate_ttl(ttl: float) -> None:
    if ttl <= 0:
        raise ValueError("ttl must be positive")


class CacheBackend(ABC):
    """Abstract base class for cache backends.

    Values are opaque serialized payloads (JSON text in practice).
    """

    capacity: int

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the value for ``key``, or None if never set or expired."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: float) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds (last write wins)."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a single key if present."""

    @abstractmethod
    async def delete_pattern(self, pattern: str) -> int:
        """Remove every key matching a LIKE-style pattern.

        Returns:
            Number of entries removed.
        """

    @abstractmethod
    async def clear(self) -> int:
        """Remove all entries. Returns the number removed."""

    @abstractmethod
    async def stats(self) -> CacheStats:
        """Return occupancy statistics."""

    @abstractmethod
    async def purge_expired(self) -> int:
        """Remove expired entries. Returns the number removed."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryCache(CacheBackend):
    """In-memory cache implementation with TTL and capacity support.

    Data is lost when the process exits; used in tests and when
    ``cache_backend=memory``.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.capacity = capacity
        self._clock = clock
        # dict preserves insertion order; re-set keys are moved to the end
        self._data: dict[str, _CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if entry.is_expired(self._clock()):
                del self._data[key]
                return None
            return entry.value

    async def set(self, key: str, value: str, ttl: float) -> None:
        _validate_ttl(ttl)
        async with self._lock:
            now = self._clock()
            self._data.pop(key, None)
            self._data[key] = _CacheEntry(
                value=value, created_at=now, expires_at=now + ttl
            )
            self._enforce_capacity(now)

    def _enforce_capacity(self, now: float) -> None:
        if len(self._data) <= self.capacity:
            return
        self._purge(now)
        overflow = len(self._data) - self.capacity
        if overflow > 0:
            for key in list(self._data)[:overflow]:
                del self._data[key]
            logger.debug(f"Evicted {overflow} oldest cache entries")

    def _purge(self, now: float) -> int:
        expired = [k for k, e in self._data.items() if e.is_expired(now)]
        for key in expired:
            del self._data[key]
        return len(expired)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def delete_pattern(self, pattern: str) -> int:
        regex = _like_to_regex(pattern)
        async with self._lock:
            matched = [k for k in self._data if regex.fullmatch(k)]
            for key in matched:
                del self._data[key]
            return len(matched)

    async def clear(self) -> int:
        async with self._lock:
            removed = len(self._data)
            self._data.clear()
            return removed

    async def stats(self) -> CacheStats:
        async with self._lock:
            now = self._clock()
            expired = sum(1 for e in self._data.values() if e.is_expired(now))
            return CacheStats(
                total_entries=len(self._data),
                expired_entries=expired,
                capacity=self.capacity,
            )

    async def purge_expired(self) -> int:
        async with self._lock:
            return self._purge(self._clock())


class SQLiteCache(CacheBackend):
    """Durable cache stored in a single SQLite file.

    Uses WAL journaling so several processes of the same user can read and
    write the store concurrently. All statements go through SQLAlchemy's
    async engine on top of aiosqlite.

    Example:
        >>> cache = SQLiteCache(Path("~/.aso-mcp/cache.db").expanduser())
        >>> await cache.set("search:fitness:us:10", payload, ttl=3600)
    """

    def __init__(
        self,
        db_path: Path,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = Path(db_path)
        self.capacity = capacity
        self._clock = clock
        self._engine: AsyncEngine | None = None
        self._init_lock = asyncio.Lock()
        # Serializes set + eviction within this process; SQLite's own locking
        # covers other processes.
        self._write_lock = asyncio.Lock()

    async def _get_engine(self) -> AsyncEngine:
        if self._engine is not None:
            return self._engine
        async with self._init_lock:
            if self._engine is None:
                self._engine = await self._create_engine()
        return self._engine

    async def _create_engine(self) -> AsyncEngine:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        engine = create_async_engine(f"sqlite+aiosqlite:///{self.db_path}", future=True)

        @event.listens_for(engine.sync_engine, "connect")
        def _configure_connection(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            # Pattern deletes match keys case-sensitively, like InMemoryCache
            cursor.execute("PRAGMA case_sensitive_like=ON")
            cursor.close()

        async with engine.begin() as conn:
            await conn.run_sync(_metadata.create_all)
            result = await conn.execute(
                delete(cache_table).where(cache_table.c.expires_at <= self._clock())
            )
        logger.info(
            f"Opened cache database at {self.db_path} "
            f"(capacity={self.capacity}, purged_expired={result.rowcount})"
        )
        return engine

    async def get(self, key: str) -> str | None:
        engine = await self._get_engine()
        async with engine.connect() as conn:
            result = await conn.execute(
                select(cache_table.c.value).where(
                    cache_table.c.key == key,
                    cache_table.c.expires_at > self._clock(),
                )
            )
            return result.scalar_one_or_none()

    async def set(self, key: str, value: str, ttl: float) -> None:
        _validate_ttl(ttl)
        engine = await self._get_engine()
        async with self._write_lock:
            now = self._clock()
            async with engine.begin() as conn:
                await conn.execute(
                    insert(cache_table)
                    .prefix_with("OR REPLACE")
                    .values(key=key, value=value, expires_at=now + ttl, created_at=now)
                )
                await self._enforce_capacity(conn, now)

    async def _enforce_capacity(self, conn, now: float) -> None:
        count = (await conn.execute(select(func.count()).select_from(cache_table))).scalar_one()
        if count <= self.capacity:
            return

        purged = await conn.execute(
            delete(cache_table).where(cache_table.c.expires_at <= now)
        )
        overflow = count - purged.rowcount - self.capacity
        if overflow <= 0:
            return

        oldest = (
            select(_rowid)
            .select_from(cache_table)
            .order_by(cache_table.c.created_at, _rowid)
            .limit(overflow)
        )
        await conn.execute(delete(cache_table).where(_rowid.in_(oldest)))
        logger.debug(f"Evicted {overflow} oldest cache entries")

    async def delete(self, key: str) -> None:
        engine = await self._get_engine()
        async with engine.begin() as conn:
            await conn.execute(delete(cache_table).where(cache_table.c.key == key))

    async def delete_pattern(self, pattern: str) -> int:
        engine = await self._get_engine()
        async with engine.begin() as conn:
            result = await conn.execute(
                delete(cache_table).where(cache_table.c.key.like(normalize_pattern(pattern)))
            )
        logger.debug(f"Invalidated {result.rowcount} cache entries matching {pattern!r}")
        return result.rowcount

    async def clear(self) -> int:
        engine = await self._get_engine()
        async with engine.begin() as conn:
            result = await conn.execute(delete(cache_table))
        return result.rowcount

    async def stats(self) -> CacheStats:
        engine = await self._get_engine()
        async with engine.connect() as conn:
            total = (
                await conn.execute(select(func.count()).select_from(cache_table))
            ).scalar_one()
            expired = (
                await conn.execute(
                    select(func.count())
                    .select_from(cache_table)
                    .where(cache_table.c.expires_at <= self._clock())
                )
            ).scalar_one()
        return CacheStats(
            total_entries=total,
            expired_entries=expired,
            capacity=self.capacity,
            db_path=str(self.db_path),
        )

    async def purge_expired(self) -> int:
        engine = await self._get_engine()
        async with engine.begin() as conn:
            result = await conn.execute(
                delete(cache_table).where(cache_table.c.expires_at <= self._clock())
            )
        return result.rowcount

    async def close(self) -> None:
        """Dispose the engine and its pooled connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None


# Global cache instance (singleton pattern)
_cache_instance: CacheBackend | None = None


def get_cache(
    backend: str | None = None,
    db_path: Path | None = None,
    force_new: bool = False,
) -> CacheBackend:
    """Get or create the global cache instance.

    Args:
        backend: 'sqlite' or 'memory'. Uses settings.cache_backend when None.
        db_path: SQLite file location. Uses settings.cache_db_path when None.
        force_new: If True, create a new instance even if one exists.
    """
    global _cache_instance

    if _cache_instance is not None and not force_new:
        return _cache_instance

    # Import settings here to avoid circular imports
    from asogate.app.core.config import settings

    chosen = (backend or settings.cache_backend).lower()
    if chosen == "memory":
        _cache_instance = InMemoryCache(capacity=settings.cache_max_entries)
    else:
        _cache_instance = SQLiteCache(
            db_path or settings.cache_db_path,
            capacity=settings.cache_max_entries,
        )
    return _cache_instance


def reset_cache() -> None:
    """Reset the global cache instance.

    This is primarily useful for testing.
    """
    global _cache_instance
    _cache_instance = None
