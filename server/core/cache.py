"""Cache service with Redis (production) or SQLite (development) backend.

SQLite is sufficient for single-process deployments; Redis is used when
several worker processes must observe the same shared state (reputation
scores, locks).
"""

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, TYPE_CHECKING

import redis.asyncio as redis

from core.config import Settings
from core.logging import get_logger, log_cache_operation

if TYPE_CHECKING:
    from core.database import Database

logger = get_logger(__name__)


class CacheService:
    """Async cache service with Redis or SQLite backend.

    Backend selection:
    - Redis: When REDIS_ENABLED=true and Redis is reachable (production)
    - SQLite: When Redis disabled or unavailable (development)
    - Memory: When neither is configured (tests)
    """

    def __init__(self, settings: Settings, database: Optional["Database"] = None):
        self.settings = settings
        self.database = database  # SQLite backend
        self.redis: Optional[redis.Redis] = None
        self.memory_cache: Dict[str, Any] = {}
        self.use_redis = settings.redis_enabled and bool(settings.redis_url)
        self.use_sqlite = not self.use_redis and database is not None
        self._local_locks: Dict[str, asyncio.Lock] = {}

    async def startup(self):
        """Initialize cache connection."""
        if self.use_redis:
            try:
                self.redis = redis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                    socket_timeout=5,
                    socket_connect_timeout=5,
                    retry_on_timeout=True
                )
                await self.redis.ping()
                logger.info("Redis cache initialized", url=self.settings.redis_url)
            except Exception as e:
                logger.warning("Redis connection failed, falling back", error=str(e))
                self.use_redis = False
                self.redis = None
                if self.database:
                    self.use_sqlite = True
                    logger.info("Using SQLite cache (Redis fallback)")
        elif self.use_sqlite:
            logger.info("Using SQLite cache")
        else:
            logger.info("Using in-memory cache", redis_enabled=self.settings.redis_enabled)

    async def shutdown(self):
        """Close cache connections."""
        if self.redis:
            await self.redis.close()
            logger.info("Redis cache connections closed")
        self.memory_cache.clear()

    async def get(self, key: str) -> Optional[Any]:
        """Get value from cache."""
        try:
            if self.use_redis and self.redis:
                value = await self.redis.get(key)
            elif self.use_sqlite and self.database:
                value = await self.database.get_cache_entry(key)
            else:
                value = self.memory_cache.get(key)
                log_cache_operation(logger, "get", key, hit=value is not None)
                return value

            log_cache_operation(logger, "get", key, hit=value is not None)
            return json.loads(value) if value else None

        except Exception as e:
            logger.error("Cache get failed", key=key, error=str(e))
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set value in cache with optional TTL."""
        try:
            ttl = ttl or self.settings.cache_ttl

            if self.use_redis and self.redis:
                await self.redis.setex(key, ttl, json.dumps(value, default=str))
            elif self.use_sqlite and self.database:
                await self.database.set_cache_entry(key, json.dumps(value, default=str), ttl)
            else:
                # Memory cache (no TTL)
                self.memory_cache[key] = value
            log_cache_operation(logger, "set", key, ttl=ttl)
            return True

        except Exception as e:
            logger.error("Cache set failed", key=key, error=str(e))
            return False

    async def delete(self, key: str) -> bool:
        """Delete value from cache."""
        try:
            if self.use_redis and self.redis:
                deleted = bool(await self.redis.delete(key))
            elif self.use_sqlite and self.database:
                deleted = await self.database.delete_cache_entry(key)
            else:
                deleted = self.memory_cache.pop(key, None) is not None
            log_cache_operation(logger, "delete", key, deleted=deleted)
            return deleted

        except Exception as e:
            logger.error("Cache delete failed", key=key, error=str(e))
            return False

    async def exists(self, key: str) -> bool:
        """Check if key exists in cache."""
        try:
            if self.use_redis and self.redis:
                return bool(await self.redis.exists(key))
            elif self.use_sqlite and self.database:
                return await self.database.cache_exists(key)
            return key in self.memory_cache

        except Exception as e:
            logger.error("Cache exists check failed", key=key, error=str(e))
            return False

    async def clear_pattern(self, pattern: str) -> int:
        """Clear keys matching a glob pattern."""
        try:
            if self.use_redis and self.redis:
                keys = await self.redis.keys(pattern)
                deleted = await self.redis.delete(*keys) if keys else 0
            elif self.use_sqlite and self.database:
                deleted = await self.database.delete_cache_pattern(pattern)
            else:
                needle = pattern.replace("*", "")
                doomed = [k for k in self.memory_cache if needle in k]
                for key in doomed:
                    del self.memory_cache[key]
                deleted = len(doomed)
            log_cache_operation(logger, "clear_pattern", pattern, deleted=deleted)
            return deleted

        except Exception as e:
            logger.error("Cache clear pattern failed", pattern=pattern, error=str(e))
            return 0

    @asynccontextmanager
    async def lock(self, name: str, timeout: int = 30):
        """Acquire a named lock for a read-modify-write sequence.

        Redis SET NX EX when Redis is connected (shared across processes),
        otherwise a per-process asyncio lock.

        Raises:
            TimeoutError: If lock cannot be acquired
        """
        lock_key = f"lock:{name}"
        lock_token = str(uuid.uuid4())
        acquired = False

        try:
            if self.is_redis_available():
                deadline = asyncio.get_running_loop().time() + timeout
                while not acquired:
                    acquired = bool(await self.redis.set(lock_key, lock_token, ex=timeout, nx=True))
                    if not acquired:
                        if asyncio.get_running_loop().time() >= deadline:
                            break
                        await asyncio.sleep(0.05)
            else:
                local = self._local_locks.setdefault(name, asyncio.Lock())
                await asyncio.wait_for(local.acquire(), timeout=timeout)
                acquired = True

            if not acquired:
                raise TimeoutError(f"Could not acquire lock: {name}")

            logger.debug("Lock acquired", lock_name=name, token=lock_token[:8])
            yield lock_token

        finally:
            if acquired:
                if self.is_redis_available():
                    # Only release if we still hold the lock
                    current = await self.redis.get(lock_key)
                    if current and current == lock_token:
                        await self.redis.delete(lock_key)
                else:
                    self._local_locks[name].release()

    def is_redis_available(self) -> bool:
        """Check if Redis is available and connected."""
        return self.use_redis and self.redis is not None
