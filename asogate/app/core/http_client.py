"""Shared HTTP client management for connection pooling.

This module provides a singleton-like HTTP client that is initialized
on application startup and shared by the catalog, scoring and App Store
Connect providers. Request-level timeouts live here, at the transport
boundary, rather than inside the rate limiter or the resolvers.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx

from asogate.app.core.config import settings


# Shared HTTP client for connection pooling
_shared_http_client: httpx.AsyncClient | None = None


def get_http_client() -> httpx.AsyncClient:
    """Get the shared HTTP client instance.

    Raises:
        RuntimeError: If the HTTP client has not been initialized.
    """
    if _shared_http_client is None:
        raise RuntimeError(
            "HTTP client not initialized. Ensure lifespan context is active."
        )
    return _shared_http_client


def _build_timeout() -> httpx.Timeout:
    return httpx.Timeout(
        connect=settings.httpx_connect_timeout,
        read=settings.httpx_read_timeout,
        write=settings.httpx_write_timeout,
        pool=settings.httpx_pool_timeout,
    )


def _build_limits() -> httpx.Limits:
    return httpx.Limits(
        max_connections=settings.httpx_max_connections,
        max_keepalive_connections=settings.httpx_max_keepalive_connections,
        keepalive_expiry=settings.httpx_keepalive_expiry,
    )


@asynccontextmanager
async def init_http_client() -> AsyncGenerator[httpx.AsyncClient, None]:
    """Initialize and yield the shared HTTP client.

    This context manager should be used in the FastAPI lifespan:

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            async with init_http_client():
                yield
    """
    global _shared_http_client

    _shared_http_client = httpx.AsyncClient(
        timeout=_build_timeout(),
        limits=_build_limits(),
        follow_redirects=True,
    )

    try:
        yield _shared_http_client
    finally:
        if _shared_http_client is not None:
            await _shared_http_client.aclose()
            _shared_http_client = None


def create_http_client(**kwargs) -> httpx.AsyncClient:
    """Create a new HTTP client with default settings.

    Useful when the shared client is not available (scripts, tests).
    The returned client should be closed when done:

        async with create_http_client() as client:
            ...

    Args:
        **kwargs: ``timeout`` overrides all granular timeouts; any other
            keyword is passed straight to ``httpx.AsyncClient``.
    """
    timeout_override = kwargs.pop("timeout", None)
    timeout = (
        httpx.Timeout(timeout_override)
        if timeout_override is not None
        else _build_timeout()
    )
    kwargs.setdefault("limits", _build_limits())
    kwargs.setdefault("follow_redirects", True)
    return httpx.AsyncClient(timeout=timeout, **kwargs)


def get_or_create_http_client() -> httpx.AsyncClient:
    """Return the shared client, creating one outside the app lifespan.

    Tool handlers run both inside the FastAPI lifespan and from plain
    scripts; the latter get a lazily created client that lives until
    process exit.
    """
    global _shared_http_client
    if _shared_http_client is None:
        _shared_http_client = create_http_client()
    return _shared_http_client
