"""Tests for shared HTTP client management."""

import httpx
import pytest

from asogate.app.core import http_client
from asogate.app.core.http_client import (
    create_http_client,
    get_http_client,
    get_or_create_http_client,
    init_http_client,
)


@pytest.mark.asyncio
async def test_shared_client_lifecycle(monkeypatch):
    monkeypatch.setattr(http_client, "_shared_http_client", None)

    with pytest.raises(RuntimeError):
        get_http_client()

    async with init_http_client() as client:
        assert get_http_client() is client
        assert get_or_create_http_client() is client

    assert client.is_closed
    with pytest.raises(RuntimeError):
        get_http_client()


@pytest.mark.asyncio
async def test_create_http_client_timeout_override():
    async with create_http_client(timeout=5.0) as client:
        assert client.timeout == httpx.Timeout(5.0)
        assert client.follow_redirects is True


@pytest.mark.asyncio
async def test_get_or_create_outside_lifespan(monkeypatch):
    monkeypatch.setattr(http_client, "_shared_http_client", None)

    client = get_or_create_http_client()
    try:
        assert get_or_create_http_client() is client
    finally:
        await client.aclose()
        monkeypatch.setattr(http_client, "_shared_http_client", None)
