from __future__ import annotations

import copy
import fnmatch
import logging
import time
from typing import Any, Awaitable, Callable, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SESSION_TTL = 3600


def thread_key(thread_id: str) -> str:
    return f"thread:{thread_id}"


def messages_key(thread_id: str, limit: int | None = None) -> str:
    return f"messages:{thread_id}" if limit is None else f"messages:{thread_id}:{limit}"


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


class Cache(Protocol):
    async def get(self, key: str) -> Any | None: ...
    async def set(self, key: str, value: Any, ttl: int | None = None) -> None: ...
    async def delete(self, key: str) -> bool: ...
    async def keys(self, pattern: str) -> list[str]: ...
    async def delete_pattern(self, pattern: str) -> int: ...
    async def ping(self) -> bool: ...
    async def close(self) -> None: ...


class MemoryCache:
    """In-process TTL cache.

    Values are deep-copied on the way in and out so callers never share
    mutable state with the cache. `keys()` takes glob patterns.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        # key -> (expires_at or None, value)
        self._data: dict[str, tuple[float | None, Any]] = {}

    def _live(self, key: str) -> tuple[float | None, Any] | None:
        item = self._data.get(key)
        if item is None:
            return None
        expires_at, _ = item
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return item

    async def get(self, key: str) -> Any | None:
        item = self._live(key)
        return None if item is None else copy.deepcopy(item[1])

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._data[key] = (expires_at, copy.deepcopy(value))

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def keys(self, pattern: str = "*") -> list[str]:
        return [k for k in list(self._data) if fnmatch.fnmatchcase(k, pattern) and self._live(k) is not None]

    async def delete_pattern(self, pattern: str) -> int:
        matched = [k for k in list(self._data) if fnmatch.fnmatchcase(k, pattern)]
        for k in matched:
            self._data.pop(k, None)
        return len(matched)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


async def with_cache(
    cache: Cache,
    key: str,
    fetcher: Callable[[], Awaitable[T]],
    ttl: int | None = None,
) -> T:
    """Read-through helper: return the cached value or fetch, store and return it.

    Cache failures fall through to the fetcher.
    """
    try:
        cached = await cache.get(key)
        if cached is not None:
            return cached
    except Exception:
        logger.warning("Cache get failed for %s", key, exc_info=True)

    value = await fetcher()
    if value is not None:
        try:
            await cache.set(key, value, ttl)
        except Exception:
            logger.warning("Cache set failed for %s", key, exc_info=True)
    return value


async def set_session(cache: Cache, session_id: str, data: dict[str, Any], ttl: int = SESSION_TTL) -> None:
    await cache.set(session_key(session_id), data, ttl)


async def get_session(cache: Cache, session_id: str) -> dict[str, Any] | None:
    return await cache.get(session_key(session_id))


async def delete_session(cache: Cache, session_id: str) -> bool:
    return await cache.delete(session_key(session_id))
