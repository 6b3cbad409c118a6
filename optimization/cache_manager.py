"""
Result Cache
============

Content-addressed cache of completed analyses.

A cache key is the SHA-256 of the normalized text and the model id, so
requests differing only in surrounding/inner whitespace or quote style share
one entry. Entries are written once on a miss and never updated in place;
they leave the cache by TTL or by explicit deletion.

The Redis keyspace is shared with other namespaces (analytics, sessions, the
rate limiter). Bulk deletion filters those prefixes out before deleting.
"""

import hashlib
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Tuple

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import CacheError
from core.models import AnalysisResult
from infrastructure.monitoring import MetricsCollector
from infrastructure.redis_client import RedisClient

PROTECTED_PREFIXES: Tuple[str, ...] = ("analytics", "session", "fastapi-limiter")

_WHITESPACE = re.compile(r"\s+")
_QUOTES = str.maketrans({"\u2018": "'", "\u2019": "'", "\u201c": '"', "\u201d": '"'})


# =============================================================================
# CACHE KEY DERIVATION
# =============================================================================


def normalize_text(text: Optional[str]) -> str:
    """Trim, collapse whitespace runs to one space and straighten curly quotes."""
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text.strip()).translate(_QUOTES)


def derive_cache_key(text: str, model: str) -> str:
    """
    Fingerprint of (normalized text, model).

    Returns:
        64-char hex digest
    """
    content = f"{normalize_text(text)}|{model}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def is_protected(key: str) -> bool:
    return key.startswith(PROTECTED_PREFIXES)


# =============================================================================
# RESULT CACHE
# =============================================================================


@dataclass
class CacheStats:
    """In-process counters since startup."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    invalidations: int = 0
    errors: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0


class ResultCache:
    """
    Analysis result store on Redis.

    Reads degrade to a miss when Redis is unavailable; writes raise
    `CacheError` and leave the decision to the caller.
    """

    def __init__(
        self,
        redis_client: RedisClient,
        namespace: str = "analysis",
        default_ttl: int = 86400,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.redis_client = redis_client
        self.namespace = namespace
        self.default_ttl = default_ttl
        self.stats = CacheStats()
        self._metrics = metrics

        logger.info(f"ResultCache initialized | namespace={namespace} | default_ttl={default_ttl}s")

    def storage_key(self, key: str) -> str:
        """Redis key for a fingerprint (already-qualified keys pass through)."""
        prefix = f"{self.namespace}:"
        return key if key.startswith(prefix) else f"{prefix}{key}"

    async def get(self, key: str, model: str = "unknown") -> Optional[AnalysisResult]:
        try:
            payload = await self.redis_client.get(self.storage_key(key))
        except CacheError as e:
            self.stats.errors += 1
            logger.warning(f"Cache read failed, treating as miss | key={key[:16]} | {e.message}")
            payload = None

        result = self._decode(key, payload) if payload is not None else None

        if result is None:
            self.stats.misses += 1
            if self._metrics:
                self._metrics.record_cache_miss(model)
            logger.debug(f"Cache miss: {key[:16]}...")
            return None

        self.stats.hits += 1
        if self._metrics:
            self._metrics.record_cache_hit(model)
        logger.debug(f"Cache hit: {key[:16]}...")
        return result

    def _decode(self, key: str, payload: Any) -> Optional[AnalysisResult]:
        try:
            return AnalysisResult.model_validate(payload)
        except PydanticValidationError as e:
            self.stats.errors += 1
            logger.warning(f"Discarding malformed cache entry {key[:16]}: {e.error_count()} errors")
            return None

    async def set(self, key: str, value: AnalysisResult, ttl: Optional[int] = None) -> bool:
        """
        Store a completed analysis.

        Raises:
            CacheError: Redis write failed
        """
        ttl = ttl or self.default_ttl
        await self.redis_client.set(self.storage_key(key), value.to_payload(), ttl=ttl)
        self.stats.sets += 1
        logger.debug(f"Cached result {key[:16]}... for {ttl}s")
        return True

    async def delete(self, key: str) -> bool:
        """Delete one entry. Keys in protected namespaces are never deleted."""
        if is_protected(key):
            logger.warning(f"Refusing to delete protected key {key}")
            return False

        deleted = await self.redis_client.delete(key if ":" in key else self.storage_key(key))
        if deleted:
            self.stats.invalidations += 1
        return bool(deleted)

    async def delete_by_pattern(self, pattern: str) -> int:
        """
        Delete every non-protected key matching a glob pattern.

        Returns:
            Number of keys deleted
        """
        keys = self._deletable(await self.redis_client.scan_keys(pattern))
        if not keys:
            return 0

        deleted = await self.redis_client.delete_keys(keys)
        self.stats.invalidations += deleted
        logger.info(f"Deleted {deleted} cache entries matching pattern: {pattern}")
        return deleted

    async def clear(self) -> int:
        """Delete every key outside the protected namespaces."""
        return await self.delete_by_pattern("*")

    @staticmethod
    def _deletable(keys: Iterable[str]) -> list[str]:
        return [key for key in keys if not is_protected(key)]

    async def key_count(self) -> int:
        return len(self._deletable(await self.redis_client.scan_keys("*")))

    async def get_stats(self) -> Dict[str, Any]:
        """Key count, Redis memory figures and in-process hit/miss counters."""
        memory = await self.redis_client.get_memory_stats()

        return {
            "keyCount": await self.key_count(),
            "memoryUsage": memory["used_memory_human"],
            "memoryPeak": memory["used_memory_peak_human"],
            "fragmentation": memory["mem_fragmentation_ratio"],
            "hits": self.stats.hits,
            "misses": self.stats.misses,
            "hitRate": round(self.stats.hit_rate, 2),
            "errors": self.stats.errors,
        }


__all__ = [
    "PROTECTED_PREFIXES",
    "CacheStats",
    "ResultCache",
    "derive_cache_key",
    "is_protected",
    "normalize_text",
]
