"""
User directory client.

Identity, display names and push tokens live in the user service; this
module is the only place the messaging service asks for them.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx

from app.middleware.error_handler import ExternalServiceError

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass(frozen=True)
class DirectoryUser:
    id: str
    name: str
    push_token: Optional[str] = None


class BoundedTTLCache:
    """
    LRU cache whose entries also expire after `ttl_seconds`.

    get() returns `default` for both missing and expired keys, so a cached
    None (a user the directory does not know) is still a hit.
    """

    def __init__(self, maxsize: int = 5000, ttl_seconds: float = 60.0):
        self.maxsize = maxsize
        self.ttl_seconds = ttl_seconds
        self._cache: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0, "expired": 0}

    def get(self, key: str, default: Any = None) -> Any:
        entry = self._cache.get(key)
        if entry is None:
            self._stats["misses"] += 1
            return default

        stored_at, value = entry
        if time.monotonic() - stored_at >= self.ttl_seconds:
            del self._cache[key]
            self._stats["expired"] += 1
            self._stats["misses"] += 1
            return default

        self._cache.move_to_end(key)
        self._stats["hits"] += 1
        return value

    def set(self, key: str, value: Any) -> None:
        if key in self._cache:
            self._cache.move_to_end(key)
        else:
            while len(self._cache) >= self.maxsize:
                oldest_key, _ = self._cache.popitem(last=False)
                self._stats["evictions"] += 1
                logger.debug(f"User cache full, evicted {oldest_key}")
        self._cache[key] = (time.monotonic(), value)

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: str) -> bool:
        return key in self._cache

    @property
    def stats(self) -> Dict[str, int]:
        return {**self._stats, "size": len(self._cache), "maxsize": self.maxsize}


class UserDirectory(ABC):
    """Lookup interface for users owned by another service"""

    @abstractmethod
    async def find_user(self, user_id: str) -> Optional[DirectoryUser]:
        """Return the user, or None if no such user exists."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class HttpUserDirectory(UserDirectory):
    """
    Reads users from the user service's internal API.

    Results (including misses) are cached for `cache_ttl` seconds, at most
    `cache_size` users; chat screens resolve the same handful of peers over
    and over.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        cache_ttl: float = 60.0,
        cache_size: int = 5000,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {"X-Internal-Api-Key": api_key} if api_key else {}
        self._cache = BoundedTTLCache(maxsize=cache_size, ttl_seconds=cache_ttl)

    async def find_user(self, user_id: str) -> Optional[DirectoryUser]:
        cached = self._cache.get(user_id, _MISSING)
        if cached is not _MISSING:
            return cached

        try:
            response = await self._client.get(
                f"{self.base_url}/internal/users/{user_id}",
                headers=self._headers,
            )
        except httpx.HTTPError as e:
            logger.error(f"User directory unreachable looking up {user_id}: {e}")
            raise ExternalServiceError(
                "User directory unavailable", service="user-service"
            ) from e

        if response.status_code == 404:
            user = None
        elif response.status_code != 200:
            logger.error(f"User directory returned HTTP {response.status_code} for {user_id}")
            raise ExternalServiceError(
                "User directory error",
                service="user-service",
                details={"upstream_status": response.status_code},
            )
        else:
            data = response.json()
            user = DirectoryUser(
                id=str(data.get("id") or data.get("_id") or user_id),
                name=data.get("name") or "",
                push_token=data.get("expoPushToken") or data.get("pushToken"),
            )

        self._cache.set(user_id, user)
        return user

    async def close(self) -> None:
        await self._client.aclose()
