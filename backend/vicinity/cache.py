"""
Two-tier cache for embeddings, parsed queries and ranked result sets.

Lookups go local (bounded in-process LRU) first, then shared (redis). A shared
hit repopulates the local tier for no longer than the entry has left to live.
Entries are immutable once written and never invalidated on writes; freshness
is bounded purely by TTL.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Protocol

from .metrics import cache_errors_total, cache_hits_total, cache_misses_total
from .settings import settings

logger = logging.getLogger(__name__)

NAMESPACE_EMBEDDING = "emb"
NAMESPACE_QUERY = "query"
NAMESPACE_RESULTS = "results"


def make_cache_key(namespace: str, *parts: Any) -> str:
    """Content-derived key: ``namespace:<sha256 prefix of the JSON-encoded parts>``."""
    encoded = json.dumps(parts, sort_keys=True, default=str, separators=(",", ":"))
    digest = hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:32]
    return f"{namespace}:{digest}"


@dataclass
class CacheEntry:
    value: Any
    expires_at: float
    tier: str = "local"
    inserted_at: float = field(default_factory=time.monotonic)
    hits: int = 0

    def is_expired(self, now: float | None = None) -> bool:
        current = time.monotonic() if now is None else now
        return current >= self.expires_at

    def increment_hits(self) -> None:
        self.hits += 1


class TTLCache:
    """Bounded, thread-safe LRU cache with per-entry TTL."""

    def __init__(
        self,
        name: str,
        max_size: int = 1024,
        default_ttl: float = 60.0,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.max_size = max(1, max_size)
        self.default_ttl = default_ttl
        self.enabled = enabled
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    def get(self, key: str) -> Any | None:
        if not self.enabled:
            return None
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(now):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            entry.increment_hits()
            self._hits += 1
            return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        if not self.enabled:
            return
        lifetime = self.default_ttl if ttl is None else ttl
        if lifetime <= 0:
            return
        now = self._clock()
        with self._lock:
            self._entries[key] = CacheEntry(
                value=value, expires_at=now + lifetime, tier="local", inserted_at=now
            )
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self._evictions += 1

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def cleanup_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._expirations += len(expired)
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "name": self.name,
                "size": len(self._entries),
                "max_size": self.max_size,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "expirations": self._expirations,
                "hit_rate": (self._hits / total) if total else 0.0,
            }


class SharedStore(Protocol):
    """Subset of the redis.asyncio API the shared tier relies on."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ex: int | None = None) -> Any: ...


class TieredCache:
    """Single access point for cached artifacts; tiering is an internal policy."""

    def __init__(
        self,
        local: TTLCache,
        shared: SharedStore | None = None,
        *,
        prefix: str = "vicinity",
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        self.local = local
        self.shared = shared
        self.prefix = prefix
        self._wall_clock = wall_clock

    def _shared_key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def get(self, key: str) -> Any | None:
        namespace = key.split(":", 1)[0]
        value = self.local.get(key)
        if value is not None:
            cache_hits_total.labels(namespace=namespace, tier="local").inc()
            return value

        if self.shared is not None:
            try:
                raw = await self.shared.get(self._shared_key(key))
            except Exception as exc:
                cache_errors_total.labels(operation="get").inc()
                logger.warning("Shared cache get failed for %s: %s", namespace, exc)
                raw = None
            if raw is not None:
                envelope = self._decode(raw)
                if envelope is not None:
                    remaining = envelope["exp"] - self._wall_clock()
                    if remaining > 0:
                        self.local.set(key, envelope["v"], ttl=min(self.local.default_ttl, remaining))
                        cache_hits_total.labels(namespace=namespace, tier="shared").inc()
                        return envelope["v"]

        cache_misses_total.labels(namespace=namespace).inc()
        return None

    async def set(self, key: str, value: Any, ttl: float) -> None:
        if value is None or ttl <= 0:
            return
        self.local.set(key, value, ttl=min(self.local.default_ttl, ttl))
        if self.shared is None:
            return
        envelope = {"v": value, "exp": self._wall_clock() + ttl}
        try:
            payload = json.dumps(envelope, separators=(",", ":"))
        except (TypeError, ValueError):
            logger.warning("Value for %s is not JSON-serialisable; local tier only", key)
            return
        try:
            await self.shared.set(self._shared_key(key), payload, ex=max(1, int(ttl)))
        except Exception as exc:
            cache_errors_total.labels(operation="set").inc()
            logger.warning("Shared cache set failed: %s", exc)

    @staticmethod
    def _decode(raw: str | bytes) -> dict[str, Any] | None:
        try:
            envelope = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(envelope, dict) or "v" not in envelope or "exp" not in envelope:
            return None
        return envelope

    def clear_local(self) -> None:
        self.local.clear()

    def get_stats(self) -> dict[str, Any]:
        return {"local": self.local.get_stats(), "shared_enabled": self.shared is not None}


_cache: TieredCache | None = None


def init_cache(shared: SharedStore | None = None, *, use_redis: bool = True) -> TieredCache:
    """Create the process-wide cache. Called once at startup."""
    global _cache
    if shared is None and use_redis:
        from .redis_client import get_async_redis

        shared = get_async_redis()
    local = TTLCache(
        "local",
        max_size=settings.LOCAL_CACHE_MAX_SIZE,
        default_ttl=settings.LOCAL_CACHE_TTL_SECONDS,
    )
    _cache = TieredCache(local, shared, prefix=settings.CACHE_KEY_PREFIX)
    logger.info("Cache initialised (shared tier %s)", "enabled" if shared else "disabled")
    return _cache


def get_cache() -> TieredCache:
    if _cache is None:
        return init_cache()
    return _cache


async def close_cache() -> None:
    global _cache
    if _cache is None:
        return
    _cache.clear_local()
    _cache = None
    from .redis_client import close_async_redis

    await close_async_redis()


__all__ = [
    "CacheEntry",
    "TTLCache",
    "TieredCache",
    "make_cache_key",
    "init_cache",
    "get_cache",
    "close_cache",
    "NAMESPACE_EMBEDDING",
    "NAMESPACE_QUERY",
    "NAMESPACE_RESULTS",
]
