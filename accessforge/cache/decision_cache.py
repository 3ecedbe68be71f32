# -*- coding: utf-8 -*-
"""Location: ./accessforge/cache/decision_cache.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0

Decision cache: TTL-aware LRU with an optional Redis back-end.

Architecture
------------
* ``MemoryDecisionCache`` is an ``OrderedDict`` capped at ``max_entries``.
  Entries past ``expires_at`` are lazily evicted on read.
* ``RedisDecisionCache`` stores entries with ``SETEX`` so expiry is enforced
  by Redis itself, giving multi-node deployments a shared store.
* ``build_cache_key`` produces ``{prefix}:{org}:{user}:{sha256}``.  The
  organization and user segments are URL-quoted so they never contain ``:``,
  which lets both back-ends invalidate by key prefix.  The digest covers the
  serialised request (resource, action, roles, groups, attributes, IP,
  location) but **not** the timestamp, so repeated requests within the TTL
  hit the cache.

Thread safety
-------------
All public methods of the memory back-end acquire an ``asyncio.Lock`` before
touching the dict.  Redis calls are atomic per command.

Examples:
    >>> from accessforge.models import EvaluationContext, SubjectContext, ResourceContext
    >>> ctx = EvaluationContext(
    ...     subject=SubjectContext(id="u1", roles=["user"]),
    ...     resource=ResourceContext(type="product"),
    ...     action="read",
    ...     organization_id="org-1",
    ... )
    >>> key = build_cache_key(ctx, prefix="abac:decision")
    >>> key.startswith("abac:decision:org-1:u1:")
    True
    >>> key == build_cache_key(ctx, prefix="abac:decision")
    True
"""

from __future__ import annotations

# Standard
from collections import OrderedDict
import asyncio
import hashlib
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import quote

# Third-Party
import orjson
import redis.asyncio as aioredis
from redis.exceptions import RedisError

# First-Party
from accessforge.config import Settings
from accessforge.models import CacheEntry, EvaluationContext, EvaluationResult
from accessforge.ports import CacheError, DecisionCacheBackend

logger = logging.getLogger(__name__)


def _segment(value: str) -> str:
    return quote(value, safe="")


def build_cache_key(context: EvaluationContext, prefix: str = "abac:decision") -> str:
    """Produce a stable, collision-resistant cache key for a context.

    The request timestamp is not part of the key, so a decision made under a
    time-window policy is reused until the entry expires.  Deployments that
    rely on time windows should keep ``DECISION_CACHE_TTL`` short or call
    ``clear_cache`` when a window opens or closes.

    Args:
        context: Evaluation context
        prefix: Namespace prefix

    Returns:
        str: ``{prefix}:{org}:{user}:{digest}``
    """
    payload = orjson.dumps(
        {
            "resource_type": context.resource.type,
            "resource_id": context.resource.id,
            "action": context.action,
            "roles": sorted(context.subject.roles),
            "groups": sorted(context.subject.groups),
            "subject_attributes": context.subject.attributes,
            "resource_attributes": context.resource.attributes,
            # Timestamp deliberately excluded; staleness is bounded by the TTL.
            "environment_attributes": context.environment.attributes,
            "ip_address": context.environment.ip_address,
            "location": context.environment.location,
        },
        option=orjson.OPT_SORT_KEYS | orjson.OPT_NON_STR_KEYS,
        default=str,
    )
    digest = hashlib.sha256(payload).hexdigest()
    return f"{prefix}:{_segment(context.organization_id)}:{_segment(context.subject.id)}:{digest}"


def _split_key(key: str, prefix: str) -> Optional[Tuple[str, str]]:
    """Return the quoted ``(org, user)`` segments of a key, or ``None`` if foreign."""
    head = f"{prefix}:"
    if not key.startswith(head):
        return None
    parts = key[len(head) :].split(":")
    if len(parts) != 3:
        return None
    return parts[0], parts[1]


class MemoryDecisionCache(DecisionCacheBackend):
    """In-process LRU decision cache with per-entry expiry.

    Args:
        max_entries: Capacity; the least recently used entry is evicted first
        prefix: Key namespace, used to parse keys during invalidation
        clock: Wall-clock source in epoch seconds (injectable for tests)

    Examples:
        >>> import asyncio
        >>> from accessforge.models import EvaluationResult
        >>> cache = MemoryDecisionCache(max_entries=2, clock=lambda: 1000.0)
        >>> _ = asyncio.run(cache.set("abac:decision:o:u:x", EvaluationResult(allowed=True), 60))
        >>> asyncio.run(cache.get("abac:decision:o:u:x")).expires_at
        1060.0
    """

    def __init__(self, max_entries: int = 10_000, prefix: str = "abac:decision", clock: Callable[[], float] = time.time):
        self._max_entries = max_entries
        self._prefix = prefix
        self._clock = clock
        self._store: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0

    async def get(self, key: str) -> Optional[CacheEntry]:
        async with self._lock:
            entry = self._store.get(key)
            if entry is not None:
                if entry.is_valid(self._clock()):
                    self._store.move_to_end(key)
                    self._hits += 1
                    logger.debug("Decision cache HIT key=%s", key[-16:])
                    return entry
                del self._store[key]
            self._misses += 1
            logger.debug("Decision cache MISS key=%s", key[-16:])
            return None

    async def set(self, key: str, value: EvaluationResult, ttl_seconds: int) -> None:
        now = self._clock()
        async with self._lock:
            self._store.pop(key, None)
            while len(self._store) >= self._max_entries:
                self._store.popitem(last=False)
            self._store[key] = CacheEntry(value=value, cached_at=now, expires_at=now + ttl_seconds)
        logger.debug("Decision cache PUT key=%s ttl=%ds", key[-16:], ttl_seconds)

    async def _remove_where(self, predicate: Callable[[str, str], bool]) -> int:
        async with self._lock:
            doomed = []
            for key in self._store:
                segments = _split_key(key, self._prefix)
                if segments is not None and predicate(*segments):
                    doomed.append(key)
            for key in doomed:
                del self._store[key]
        return len(doomed)

    async def invalidate_user(self, user_id: str, organization_id: Optional[str] = None) -> int:
        user, org = _segment(user_id), _segment(organization_id) if organization_id is not None else None
        removed = await self._remove_where(lambda o, u: u == user and (org is None or o == org))
        if removed:
            logger.info("Decision cache invalidated %d entries for user %s", removed, user_id)
        return removed

    async def invalidate_organization(self, organization_id: str) -> int:
        org = _segment(organization_id)
        removed = await self._remove_where(lambda o, _u: o == org)
        if removed:
            logger.info("Decision cache invalidated %d entries for organization %s", removed, organization_id)
        return removed

    async def clear(self) -> int:
        async with self._lock:
            removed = len(self._store)
            self._store.clear()
        if removed:
            logger.info("Decision cache cleared %d entries", removed)
        return removed

    def stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "backend": "memory",
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 3) if total else 0.0,
            "size": len(self._store),
            "max_entries": self._max_entries,
        }


class RedisDecisionCache(DecisionCacheBackend):
    """Shared decision cache stored in Redis.

    Redis failures are surfaced as ``CacheError`` so the evaluator can
    degrade to evaluating without cache.
    """

    def __init__(self, client: Any, prefix: str = "abac:decision", clock: Callable[[], float] = time.time):
        self._redis = client
        self._prefix = prefix
        self._clock = clock
        self._hits = 0
        self._misses = 0

    @classmethod
    def from_url(cls, redis_url: str, prefix: str = "abac:decision") -> "RedisDecisionCache":
        """Create a cache bound to a Redis URL."""
        logger.info("Decision cache: using Redis at %s", redis_url)
        return cls(aioredis.from_url(redis_url), prefix=prefix)

    async def get(self, key: str) -> Optional[CacheEntry]:
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            raise CacheError(f"Redis GET failed: {exc}") from exc
        if raw:
            entry = CacheEntry.model_validate_json(raw)
            if entry.is_valid(self._clock()):
                self._hits += 1
                logger.debug("Decision cache HIT key=%s", key[-16:])
                return entry
        self._misses += 1
        logger.debug("Decision cache MISS key=%s", key[-16:])
        return None

    async def set(self, key: str, value: EvaluationResult, ttl_seconds: int) -> None:
        now = self._clock()
        entry = CacheEntry(value=value, cached_at=now, expires_at=now + ttl_seconds)
        try:
            await self._redis.setex(key, ttl_seconds, entry.model_dump_json())
        except RedisError as exc:
            raise CacheError(f"Redis SETEX failed: {exc}") from exc

    async def _delete_matching(self, pattern: str) -> int:
        removed = 0
        try:
            batch = []
            async for key in self._redis.scan_iter(match=pattern, count=100):
                batch.append(key)
                if len(batch) >= 100:
                    removed += await self._redis.delete(*batch)
                    batch = []
            if batch:
                removed += await self._redis.delete(*batch)
        except RedisError as exc:
            raise CacheError(f"Redis invalidation failed for {pattern}: {exc}") from exc
        return removed

    async def invalidate_user(self, user_id: str, organization_id: Optional[str] = None) -> int:
        org = _segment(organization_id) if organization_id is not None else "*"
        removed = await self._delete_matching(f"{self._prefix}:{org}:{_segment(user_id)}:*")
        logger.info("Decision cache invalidated %d entries for user %s", removed, user_id)
        return removed

    async def invalidate_organization(self, organization_id: str) -> int:
        removed = await self._delete_matching(f"{self._prefix}:{_segment(organization_id)}:*")
        logger.info("Decision cache invalidated %d entries for organization %s", removed, organization_id)
        return removed

    async def clear(self) -> int:
        removed = await self._delete_matching(f"{self._prefix}:*")
        logger.info("Decision cache cleared %d entries", removed)
        return removed

    def stats(self) -> Dict[str, Any]:
        total = self._hits + self._misses
        return {
            "backend": "redis",
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total, 3) if total else 0.0,
            "size": None,
            "max_entries": None,
        }


def build_cache_backend(settings: Settings) -> Optional[DecisionCacheBackend]:
    """Choose a cache back-end from settings.

    Args:
        settings: Engine settings

    Returns:
        Optional[DecisionCacheBackend]: ``None`` when caching is disabled

    Examples:
        >>> from accessforge.config import Settings
        >>> build_cache_backend(Settings(decision_cache_enabled=False)) is None
        True
        >>> type(build_cache_backend(Settings())).__name__
        'MemoryDecisionCache'
    """
    if not settings.decision_cache_enabled:
        return None
    if settings.use_redis_cache:
        return RedisDecisionCache.from_url(settings.redis_url, prefix=settings.decision_cache_prefix)
    return MemoryDecisionCache(max_entries=settings.decision_cache_max_entries, prefix=settings.decision_cache_prefix)
