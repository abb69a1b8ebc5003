import json
import time
from typing import Any, Iterable

import structlog
from cachetools import TTLCache
from redis.asyncio import Redis, RedisError

from taskhub.core.config import Settings
from taskhub.core.exceptions import CacheUnavailable
from taskhub.models import TaskSnapshot

logger = structlog.get_logger(__name__)


class RedisMemoryGuard:
    """
    Monitors Redis memory usage and provides backpressure signals.

    Pressure levels:
    - 0-4: Normal operation
    - 5-6: Moderate pressure (reduce TTL by 20%)
    - 7-8: High pressure (cap TTL at 60s)
    - 9-10: Critical (skip Redis writes, L1 only)
    """

    def __init__(self, redis: Redis, refresh_interval: int = 5):
        self.redis = redis
        self.refresh_interval = refresh_interval
        self._last_check = 0.0
        self._cached: dict | None = None

    async def check(self) -> dict:
        """Check memory pressure with caching to avoid INFO spam."""
        now = time.monotonic()

        if self._cached and (now - self._last_check) < self.refresh_interval:
            return self._cached

        try:
            info = await self.redis.info("memory")
            used = info["used_memory"]
            maxm = info.get("maxmemory", 0)

            if maxm == 0:
                # No memory limit configured
                result = {
                    "level": 0,
                    "ratio": None,
                    "policy": info.get("maxmemory_policy", "noeviction"),
                    "used_mb": used / (1024 * 1024),
                }
            else:
                ratio = used / maxm
                result = {
                    "level": int(min(ratio * 10, 10)),
                    "ratio": ratio,
                    "policy": info.get("maxmemory_policy", "noeviction"),
                    "used_mb": used / (1024 * 1024),
                    "max_mb": maxm / (1024 * 1024),
                }

                if result["level"] >= 9:
                    logger.warning(
                        "redis_memory_critical",
                        level=result["level"],
                        ratio=f"{ratio:.1%}",
                        policy=result["policy"],
                    )
                elif result["level"] >= 7:
                    logger.info(
                        "redis_memory_high", level=result["level"], ratio=f"{ratio:.1%}"
                    )

            self._cached = result
            self._last_check = now
            return result

        except (RedisError, OSError) as e:
            logger.error("redis_memory_check_failed", error=str(e))
            return {"level": 0, "ratio": None, "policy": "unknown", "error": str(e)}


class CacheLayer:
    """
    Two-tier cache for task views.

    L1: Process-local TTLCache (fast, limited size)
    L2: Redis (shared, larger capacity)

    Three kinds of entries live here:
    - ``user:{owner}:tasks:{fingerprint}`` - one page of a filtered list
    - ``task:{id}:details`` - a task with its parent and subtasks loaded
    - ``user:{owner}:task_stats`` - aggregate counters

    Any Redis failure is logged and counted, then treated as a miss (reads)
    or a no-op (writes). Nothing raised by Redis reaches the caller.
    """

    def __init__(self, redis: Redis | None, settings: Settings):
        self._redis = redis
        self._settings = settings
        self._memory_guard = RedisMemoryGuard(redis) if redis is not None else None
        self.l1: TTLCache = TTLCache(
            maxsize=settings.l1_maxsize, ttl=settings.l1_ttl_seconds
        )
        self.metrics = {
            "l1_hits": 0,
            "l2_hits": 0,
            "misses": 0,
            "errors": 0,
            "pressure_skips": 0,
        }

    # -- keys ---------------------------------------------------------------

    @staticmethod
    def list_key(owner_id: int, fingerprint: str) -> str:
        return f"user:{owner_id}:tasks:{fingerprint}"

    @staticmethod
    def list_pattern(owner_id: int) -> str:
        return f"user:{owner_id}:tasks:*"

    @staticmethod
    def detail_key(task_id: int) -> str:
        return f"task:{task_id}:details"

    @staticmethod
    def stats_key(owner_id: int) -> str:
        return f"user:{owner_id}:task_stats"

    def _l1_key(self, key: str) -> str:
        """Build namespaced L1 cache key."""
        return f"{self._settings.cache_namespace}l1:{key}"

    def _l2_key(self, key: str) -> str:
        """Build namespaced L2 cache key."""
        return f"{self._settings.cache_namespace}l2:{key}"

    # -- L2 access ----------------------------------------------------------

    async def _l2(self, op: str, key: str, call):
        try:
            return await call
        except (RedisError, OSError) as e:
            raise CacheUnavailable(op, key) from e

    def _record_failure(self, exc: CacheUnavailable, cause: Exception | None = None):
        self.metrics["errors"] += 1
        logger.error(
            "cache_unavailable",
            op=exc.op,
            key=exc.key,
            error=repr(cause or exc.__cause__),
        )

    async def _adjust_ttl_for_pressure(self, base_ttl: int) -> int:
        """Adjust TTL based on current memory pressure."""
        if not self._memory_guard:
            return base_ttl

        level = (await self._memory_guard.check())["level"]

        if level >= 9:
            return 0
        elif level >= 7:
            return min(base_ttl, 60)
        elif level >= 5:
            return max(int(base_ttl * 0.8), 1)
        return base_ttl

    # -- generic get/set/delete ---------------------------------------------

    async def get(self, key: str) -> Any | None:
        """Retrieve value from cache hierarchy: L1 -> L2. None means miss."""
        l1_key = self._l1_key(key)

        if l1_key in self.l1:
            self.metrics["l1_hits"] += 1
            logger.debug("cache_l1_hit", key=key)
            return self.l1[l1_key]

        if self._redis is not None:
            try:
                raw = await self._l2("get", key, self._redis.get(self._l2_key(key)))
                if raw is not None:
                    value = json.loads(raw)
                    self.metrics["l2_hits"] += 1
                    logger.debug("cache_l2_hit", key=key)
                    self.l1[l1_key] = value
                    return value
            except CacheUnavailable as e:
                self._record_failure(e)
            except ValueError as e:
                self._record_failure(CacheUnavailable("decode", key), e)

        self.metrics["misses"] += 1
        return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Set a JSON-compatible value in both layers with an adaptive L2 TTL."""
        self.l1[self._l1_key(key)] = value

        if self._redis is None:
            return

        base_ttl = ttl or self._settings.l2_ttl_seconds
        ttl = await self._adjust_ttl_for_pressure(base_ttl)
        if ttl == 0:
            logger.debug("cache_l2_write_skipped", key=key, reason="memory_pressure")
            self.metrics["pressure_skips"] += 1
            return

        try:
            data = json.dumps(value, default=str)
            await self._l2("set", key, self._redis.set(self._l2_key(key), data, ex=ttl))
            logger.debug("cache_l2_stored", key=key, ttl=ttl)
        except (TypeError, ValueError) as e:
            self._record_failure(CacheUnavailable("encode", key), e)
        except CacheUnavailable as e:
            self._record_failure(e)

    async def delete(self, *keys: str) -> None:
        """
        Delete keys from both cache layers.

        Deleting from Redis is what keeps other workers from serving stale
        data, so it is attempted even when L1 had nothing.
        """
        for key in keys:
            self.l1.pop(self._l1_key(key), None)

        if self._redis is None or not keys:
            return
        try:
            await self._l2(
                "delete", ",".join(keys), self._redis.delete(*map(self._l2_key, keys))
            )
        except CacheUnavailable as e:
            self._record_failure(e)

    async def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern from both layers."""
        l1_prefix = self._l1_key(pattern.rstrip("*"))
        for l1_key in [k for k in list(self.l1.keys()) if k.startswith(l1_prefix)]:
            self.l1.pop(l1_key, None)

        if self._redis is None:
            return 0

        deleted_count = 0
        try:
            cursor = 0
            while True:
                cursor, keys = await self._l2(
                    "scan",
                    pattern,
                    self._redis.scan(cursor, match=self._l2_key(pattern), count=100),
                )
                if keys:
                    await self._l2("delete", pattern, self._redis.delete(*keys))
                    deleted_count += len(keys)
                if cursor == 0:
                    break
        except CacheUnavailable as e:
            self._record_failure(e)

        logger.debug("cache_pattern_deleted", pattern=pattern, deleted=deleted_count)
        return deleted_count

    # -- task views ---------------------------------------------------------

    async def get_list(self, owner_id: int, fingerprint: str) -> dict | None:
        return await self.get(self.list_key(owner_id, fingerprint))

    async def put_list(
        self, owner_id: int, fingerprint: str, page: dict, ttl: int | None = None
    ) -> None:
        await self.set(
            self.list_key(owner_id, fingerprint),
            page,
            ttl or self._settings.list_ttl_seconds,
        )

    async def get_detail(self, task_id: int) -> dict | None:
        return await self.get(self.detail_key(task_id))

    async def put_detail(self, task_id: int, detail: dict, ttl: int | None = None):
        await self.set(
            self.detail_key(task_id), detail, ttl or self._settings.detail_ttl_seconds
        )

    async def get_stats(self, owner_id: int) -> dict | None:
        return await self.get(self.stats_key(owner_id))

    async def put_stats(self, owner_id: int, stats: dict, ttl: int | None = None):
        await self.set(
            self.stats_key(owner_id), stats, ttl or self._settings.stats_ttl_seconds
        )

    async def invalidate_owner(self, owner_id: int) -> None:
        # List keys are not individually addressable: drop the whole owner scope.
        await self.delete_pattern(self.list_pattern(owner_id))
        await self.delete(self.stats_key(owner_id))

    async def invalidate_for_task(
        self,
        task: TaskSnapshot,
        *,
        parent: TaskSnapshot | None = None,
        child_ids: Iterable[int] = (),
    ) -> None:
        """
        Evict every cached view a change to ``task`` can make stale.

        That is the task's detail, the owner's lists and stats, the parent's
        detail (and its owner's lists and stats) and each child's detail.
        Idempotent.
        """
        detail_keys = [self.detail_key(task.id)]
        owners = {task.owner_id}

        parent_id = parent.id if parent is not None else task.parent_id
        if parent_id is not None:
            detail_keys.append(self.detail_key(parent_id))
            if parent is not None:
                owners.add(parent.owner_id)

        detail_keys.extend(self.detail_key(child_id) for child_id in child_ids)

        await self.delete(*detail_keys)
        for owner_id in sorted(owners):
            await self.invalidate_owner(owner_id)

        logger.debug(
            "cache_invalidated",
            task_id=task.id,
            owners=sorted(owners),
            details=len(detail_keys),
        )

    # -- ops ----------------------------------------------------------------

    async def health_check(self) -> bool:
        """Synthetic put/get/delete round-trip against Redis. Never raises."""
        if self._redis is None:
            return False

        key = self._l2_key(f"health:{time.time_ns()}")
        try:
            await self._l2("set", key, self._redis.set(key, "ok", ex=10))
            value = await self._l2("get", key, self._redis.get(key))
            await self._l2("delete", key, self._redis.delete(key))
            if value not in ("ok", b"ok"):
                raise CacheUnavailable("roundtrip", key)
            return True
        except CacheUnavailable as e:
            self._record_failure(e)
            return False

    async def close(self):
        """Graceful shutdown of cache connections."""
        if self._redis is not None:
            try:
                await self._redis.aclose()
                logger.info("redis_connection_closed")
            except RedisError as e:
                logger.error("redis_close_failed", error=str(e))

    def get_metrics(self) -> dict:
        """Hit/miss counters plus the last memory pressure reading."""
        total = (
            self.metrics["l1_hits"] + self.metrics["l2_hits"] + self.metrics["misses"]
        )
        metrics = {
            **self.metrics,
            "l1_size": len(self.l1),
            "l1_maxsize": self.l1.maxsize,
            "hit_rate": (
                (self.metrics["l1_hits"] + self.metrics["l2_hits"]) / total
                if total > 0
                else 0
            ),
        }
        if self._memory_guard and self._memory_guard._cached:
            metrics["redis_pressure"] = self._memory_guard._cached
        return metrics
