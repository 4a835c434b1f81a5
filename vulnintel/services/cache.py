"""
TTL response cache for outbound HTTP payloads.

Entries are ``{"key", "stored_at", "payload"}`` JSON documents. The default
store is one file per key under ``CACHE_DIR``; setting ``CACHE_REDIS_URL``
switches to Redis. Expired or unreadable entries are treated as misses and
purged when they are next looked up.
"""

from __future__ import annotations

import hashlib
import json
import os
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlencode

import redis.asyncio as redis
import structlog

from vulnintel.services.metrics import MetricsFacade, metrics as default_metrics

logger = structlog.get_logger(__name__)


def cache_key(method: str, url: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """Deterministic key for (method, URL, sorted query params)."""
    query = urlencode(sorted((str(k), str(v)) for k, v in (params or {}).items()))
    raw = f"{method.upper()} {url}?{query}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class CacheEntry:
    key: str
    payload: Any
    stored_at: float

    def is_expired(self, ttl: float, now: float) -> bool:
        return now - self.stored_at >= ttl

    def dumps(self) -> str:
        return json.dumps(
            {"key": self.key, "stored_at": self.stored_at, "payload": self.payload},
            separators=(",", ":"),
        )

    @classmethod
    def loads(cls, raw: str) -> "CacheEntry":
        data = json.loads(raw)
        return cls(key=data["key"], payload=data["payload"], stored_at=float(data["stored_at"]))


# --------------------------------------------------------------------------- #
#                                  Stores                                     #
# --------------------------------------------------------------------------- #


class FileCacheStore:
    """One JSON file per key; writes go through a temp file + rename."""

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, f"{key}.json")

    async def read(self, key: str) -> Optional[str]:
        try:
            with open(self._path(key), "r", encoding="utf-8") as fh:
                return fh.read()
        except FileNotFoundError:
            return None

    async def write(self, key: str, raw: str, ttl: float) -> None:
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(raw)
            os.replace(tmp, self._path(key))
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    async def delete(self, key: str) -> None:
        try:
            os.unlink(self._path(key))
        except FileNotFoundError:
            pass

    async def keys(self) -> List[str]:
        try:
            names = os.listdir(self.directory)
        except FileNotFoundError:
            return []
        return [n[: -len(".json")] for n in names if n.endswith(".json") and not n.startswith(".tmp-")]

    async def close(self) -> None:
        return None


class RedisCacheStore:
    """Redis-backed store; keys are namespaced and carry a native expiry."""

    def __init__(self, redis_url: str, prefix: str = "vulnintel:http:", client: Any = None):
        self.redis_url = redis_url
        self.prefix = prefix
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    async def read(self, key: str) -> Optional[str]:
        return await self._get_client().get(self.prefix + key)

    async def write(self, key: str, raw: str, ttl: float) -> None:
        await self._get_client().set(self.prefix + key, raw, ex=max(1, int(ttl)))

    async def delete(self, key: str) -> None:
        await self._get_client().delete(self.prefix + key)

    async def keys(self) -> List[str]:
        out: List[str] = []
        async for k in self._get_client().scan_iter(match=f"{self.prefix}*"):
            out.append(k[len(self.prefix):])
        return out

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# --------------------------------------------------------------------------- #
#                                  Cache                                      #
# --------------------------------------------------------------------------- #


class ResponseCache:
    """TTL cache over a store, with hit/miss accounting."""

    def __init__(
        self,
        store: Any,
        ttl: float = 3600.0,
        *,
        metrics: Optional[MetricsFacade] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.ttl = ttl
        self.metrics = metrics or default_metrics
        self._clock = clock or time.time
        self.hit_count = 0
        self.miss_count = 0

    def _record_cache_event(self, namespace: str, hit: bool) -> None:
        if hit:
            self.hit_count += 1
        else:
            self.miss_count += 1
        self.metrics.increment("cache_hits" if hit else "cache_misses", namespace)

    async def get(self, key: str, namespace: str = "http") -> Optional[Any]:
        """Cached payload, or None on miss, expiry or unreadable entry."""
        raw = await self.store.read(key)
        if raw is None:
            self._record_cache_event(namespace, False)
            return None

        try:
            entry = CacheEntry.loads(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable cache entry", key=key, error=str(e))
            await self.store.delete(key)
            self._record_cache_event(namespace, False)
            return None

        if entry.is_expired(self.ttl, self._clock()):
            await self.store.delete(key)
            self._record_cache_event(namespace, False)
            return None

        self._record_cache_event(namespace, True)
        return entry.payload

    async def set(self, key: str, payload: Any) -> None:
        entry = CacheEntry(key=key, payload=payload, stored_at=self._clock())
        try:
            await self.store.write(key, entry.dumps(), self.ttl)
        except (OSError, TypeError, ValueError) as e:
            logger.warning("Cache write failed", key=key, error=str(e))

    async def clean_expired(self) -> int:
        """Remove expired and unreadable entries; returns how many were removed."""
        now = self._clock()
        removed = 0
        for key in await self.store.keys():
            raw = await self.store.read(key)
            if raw is None:
                continue
            try:
                expired = CacheEntry.loads(raw).is_expired(self.ttl, now)
            except (ValueError, KeyError, TypeError):
                expired = True
            if expired:
                await self.store.delete(key)
                removed += 1
        if removed:
            logger.info("Cleared expired cache entries", removed=removed)
        return removed

    async def clear(self) -> int:
        keys = await self.store.keys()
        for key in keys:
            await self.store.delete(key)
        return len(keys)

    def get_cache_stats(self) -> Dict[str, Any]:
        total = self.hit_count + self.miss_count
        return {
            "hits": self.hit_count,
            "misses": self.miss_count,
            "hit_rate_percent": round(100.0 * self.hit_count / total, 2) if total else 0.0,
            "ttl_seconds": self.ttl,
            "store": type(self.store).__name__,
        }

    async def close(self) -> None:
        await self.store.close()


def create_response_cache(settings: Any, metrics: Optional[MetricsFacade] = None) -> Optional[ResponseCache]:
    """Cache configured from settings, or None when caching is disabled."""
    if not settings.cache_enabled:
        return None
    if settings.cache_redis_url:
        store: Any = RedisCacheStore(settings.cache_redis_url)
    else:
        store = FileCacheStore(settings.cache_dir)
    return ResponseCache(store, ttl=settings.cache_ttl, metrics=metrics)
