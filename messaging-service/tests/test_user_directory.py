"""
Tests for the HTTP user directory client
"""

import httpx
import pytest

from app.middleware.error_handler import ExternalServiceError
from app.services.user_directory import BoundedTTLCache, HttpUserDirectory


def _directory(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpUserDirectory("http://users.internal/", api_key="k-123", client=client, **kwargs)


class TestHttpUserDirectory:

    @pytest.mark.asyncio
    async def test_parses_user_and_sends_internal_key(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={
                "_id": "user_bob",
                "name": "Bob",
                "expoPushToken": "ExponentPushToken[bob]",
            })

        user = await _directory(handler).find_user("user_bob")

        assert user.id == "user_bob"
        assert user.name == "Bob"
        assert user.push_token == "ExponentPushToken[bob]"
        assert str(seen[0].url) == "http://users.internal/internal/users/user_bob"
        assert seen[0].headers["X-Internal-Api-Key"] == "k-123"

    @pytest.mark.asyncio
    async def test_missing_user_is_none(self):
        directory = _directory(lambda request: httpx.Response(404, json={"message": "User not found"}))
        assert await directory.find_user("user_ghost") is None

    @pytest.mark.asyncio
    async def test_results_are_cached(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(200, json={"id": "user_bob", "name": "Bob"})

        directory = _directory(handler, cache_ttl=60)
        await directory.find_user("user_bob")
        await directory.find_user("user_bob")

        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_server_error_raises_external_service_error(self):
        directory = _directory(lambda request: httpx.Response(503))

        with pytest.raises(ExternalServiceError) as exc_info:
            await directory.find_user("user_bob")

        assert exc_info.value.details["service"] == "user-service"
        assert exc_info.value.details["upstream_status"] == 503

    @pytest.mark.asyncio
    async def test_unreachable_service_raises_external_service_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(ExternalServiceError):
            await _directory(handler).find_user("user_bob")

    @pytest.mark.asyncio
    async def test_unknown_user_is_cached_too(self):
        calls = {"n": 0}

        def handler(request):
            calls["n"] += 1
            return httpx.Response(404)

        directory = _directory(handler)
        assert await directory.find_user("user_ghost") is None
        assert await directory.find_user("user_ghost") is None

        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_cache_is_bounded(self):
        def handler(request):
            user_id = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"id": user_id, "name": user_id})

        directory = _directory(handler, cache_size=2)
        for user_id in ("u1", "u2", "u3"):
            await directory.find_user(user_id)

        assert len(directory._cache) == 2
        assert "u1" not in directory._cache


class TestBoundedTTLCache:

    def test_evicts_least_recently_used(self):
        cache = BoundedTTLCache(maxsize=2, ttl_seconds=60)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert cache.stats["evictions"] == 1

    def test_expired_entries_are_misses(self):
        cache = BoundedTTLCache(maxsize=10, ttl_seconds=0)
        cache.set("a", 1)

        assert cache.get("a", "missing") == "missing"
        assert len(cache) == 0
        assert cache.stats["expired"] == 1

    def test_cached_none_is_a_hit(self):
        cache = BoundedTTLCache(maxsize=10, ttl_seconds=60)
        cache.set("ghost", None)

        assert cache.get("ghost", "missing") is None
        assert cache.stats["hits"] == 1
