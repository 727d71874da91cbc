"""
Tests for the marketplace registry and index cache.

This test suite covers:
1. Registry upsert / remove / lookup
2. Index refresh over HTTP (mocked transport) and cache layout
3. Error handling for unreachable, failing and invalid indexes
4. Loading cached indexes
"""

import json

import httpx
import pytest

from relaykit.errors import ConfigError, IndexNotCachedError, NetworkError, ValidationError
from relaykit.marketplace.cache import MarketplaceCache

INDEX_URL = "https://market.test/index.json"
INDEX = {
    "schemaVersion": 1,
    "name": "Test Market",
    "plugins": [{"id": "weather", "versions": [{"version": "1.0.0"}]}],
}


def make_cache(settings, handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MarketplaceCache(settings, client=client)


def serve_index(request):
    if str(request.url) == INDEX_URL:
        return httpx.Response(200, json=INDEX)
    return httpx.Response(404)


class TestRegistry:
    """Test the marketplace registry."""

    def test_empty_registry(self, settings):
        assert MarketplaceCache(settings).read_marketplaces() == []

    def test_upsert_and_remove(self, settings):
        cache = MarketplaceCache(settings)

        cache.upsert_marketplace_index("Official Market", f" {INDEX_URL} ")
        cache.upsert_marketplace_index("beta", "https://beta.test/index.json", enabled=False)
        cache.upsert_marketplace_index("beta", "https://beta2.test/index.json", enabled=False)

        specs = cache.read_marketplaces()
        assert [(s.id, s.url, s.enabled) for s in specs] == [
            ("Official-Market", INDEX_URL, True),
            ("beta", "https://beta2.test/index.json", False),
        ]
        assert cache.get_marketplace("Official Market").url == INDEX_URL

        assert cache.remove_marketplace_index("beta") is True
        assert cache.remove_marketplace_index("beta") is False
        assert [s.id for s in cache.read_marketplaces()] == ["Official-Market"]

    def test_empty_url_rejected(self, settings):
        with pytest.raises(ConfigError):
            MarketplaceCache(settings).upsert_marketplace_index("x", "   ")

    def test_cache_path_layout(self, settings):
        path = MarketplaceCache(settings).cache_path("official")
        assert path == settings.cache_dir / "marketplace-official.json"


class TestRefresh:
    """Test fetching and caching index documents."""

    @pytest.mark.asyncio
    async def test_refresh_writes_cache(self, settings):
        cache = make_cache(settings, serve_index)

        result = await cache.refresh_marketplace_index("official", INDEX_URL)
        await cache.close()

        assert result.exists
        document = json.loads(result.cache_path.read_text(encoding="utf-8"))
        assert document["url"] == INDEX_URL
        assert document["data"] == INDEX
        assert "fetchedAt" in document
        assert cache.read_marketplace_cache("official").data == document

    @pytest.mark.asyncio
    async def test_refresh_uses_registered_url(self, settings):
        cache = make_cache(settings, serve_index)
        cache.upsert_marketplace_index("official", INDEX_URL)

        await cache.refresh_marketplace_index("official")

        assert cache.load_index("official").name == "Test Market"

    @pytest.mark.asyncio
    async def test_refresh_unregistered_without_url(self, settings):
        cache = make_cache(settings, serve_index)

        with pytest.raises(ConfigError, match="not registered"):
            await cache.refresh_marketplace_index("nowhere")

    @pytest.mark.asyncio
    async def test_non_ok_status_raises(self, settings):
        """A failing response raises and leaves no cache file behind."""
        cache = make_cache(settings, lambda request: httpx.Response(404))

        with pytest.raises(NetworkError, match="404"):
            await cache.refresh_marketplace_index("official", INDEX_URL)

        assert not cache.read_marketplace_cache("official").exists

    @pytest.mark.asyncio
    async def test_transport_error_raises(self, settings):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        cache = make_cache(settings, unreachable)

        with pytest.raises(NetworkError):
            await cache.refresh_marketplace_index("official", INDEX_URL)

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self, settings):
        cache = make_cache(settings, lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(NetworkError, match="not valid JSON"):
            await cache.refresh_marketplace_index("official", INDEX_URL)


class TestLoadIndex:
    """Test loading cached indexes."""

    def test_missing_cache(self, settings):
        with pytest.raises(IndexNotCachedError):
            MarketplaceCache(settings).load_index("official")

    @pytest.mark.asyncio
    async def test_bad_schema_in_cache(self, settings):
        cache = make_cache(
            settings, lambda request: httpx.Response(200, json={"schemaVersion": 9})
        )
        await cache.refresh_marketplace_index("official", INDEX_URL)

        with pytest.raises(ValidationError):
            cache.load_index("official")
