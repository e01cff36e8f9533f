"""Tests for relay.core.http_pool."""

import httpx
import pytest

import relay.core.http_pool as http_pool_mod
from relay.core.http_pool import POOL_LIMITS, close_all, get_client


@pytest.fixture(autouse=True)
async def _clean_pool():
    """Ensure pool is empty before and after each test."""
    http_pool_mod._clients.clear()
    yield
    await close_all()


# ---------------------------------------------------------------------------
# get_client
# ---------------------------------------------------------------------------


class TestGetClient:
    async def test_returns_async_client(self):
        client = await get_client("slack", base_url="https://slack.test/api")
        assert isinstance(client, httpx.AsyncClient)
        assert str(client.base_url).startswith("https://slack.test/api")

    async def test_same_service_reuses_client(self):
        a = await get_client("slack")
        b = await get_client("slack")
        assert a is b

    async def test_services_are_isolated(self):
        a = await get_client("slack")
        b = await get_client("other")
        assert a is not b

    async def test_custom_timeout(self):
        client = await get_client("slow", timeout=90.0)
        assert client.timeout.read == 90.0
        assert client.timeout.connect == 5.0

    def test_pool_limits(self):
        assert POOL_LIMITS.max_connections == 50
        assert POOL_LIMITS.max_keepalive_connections == 10


# ---------------------------------------------------------------------------
# close_all
# ---------------------------------------------------------------------------


class TestCloseAll:
    async def test_closes_and_counts(self):
        client = await get_client("slack")
        await get_client("other")
        assert await close_all() == 2
        assert client.is_closed
        assert http_pool_mod._clients == {}

    async def test_empty_pool(self):
        assert await close_all() == 0
