"""Cache stores for parsed instructions.

The orchestrator only needs ``get`` / ``set`` / ``delete`` on JSON-able
values; any store failure is its problem to swallow, not ours.

    InMemoryCache   per-process TTL + LRU (default when REDIS_URL is empty)
    RedisCache      shared store through redis.asyncio, values as JSON
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections import OrderedDict
from typing import Any, Optional, Protocol

import redis.asyncio as aioredis

from app.core.config import CACHE_MAX_ENTRIES, REDIS_URL

logger = logging.getLogger(__name__)

SIG_PARSE_KEY_PREFIX = "sig:parse:"

_WHITESPACE_RE = re.compile(r"\s+")


def sig_parse_key(text: str) -> str:
    """``sig:parse:`` + lower-cased, trimmed, whitespace-collapsed text."""
    return SIG_PARSE_KEY_PREFIX + _WHITESPACE_RE.sub(" ", (text or "").strip().lower())


class CacheStore(Protocol):
    async def get(self, key: str) -> Optional[Any]: ...

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...


class InMemoryCache:
    """Bounded LRU with per-entry expiry; safe to share between tasks."""

    def __init__(self, max_entries: int = CACHE_MAX_ENTRIES, clock=time.monotonic):
        self._entries: OrderedDict[str, tuple[Any, Optional[float]]] = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at is not None and expires_at <= self._clock():
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        async with self._lock:
            self._entries[key] = (value, expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Cache full, evicted %s", evicted)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCache:
    """JSON values in Redis; TTL enforced by Redis itself."""

    def __init__(self, client: aioredis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str = REDIS_URL) -> "RedisCache":
        return cls(aioredis.from_url(url, decode_responses=True))

    async def get(self, key: str) -> Optional[Any]:
        raw = await self._client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding non-JSON cache entry %s", key)
            await self._client.delete(key)
            return None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        await self._client.set(key, json.dumps(value), ex=ttl_seconds or None)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)


def build_cache_store(redis_url: str = REDIS_URL) -> CacheStore:
    if redis_url:
        logger.info("Instruction cache backed by Redis")
        return RedisCache.from_url(redis_url)
    return InMemoryCache()
