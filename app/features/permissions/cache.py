"""
Redis cache for effective permission sets.

One key per user holding the serialized ``EffectivePermissionSet``. Cache
errors never fail a request; they are logged and the set is recomputed.

Every invalidation bumps a generation counter, per user or registry-wide.
A computed set is written back only if neither counter moved since the
computation started, so a set built from data that changed underneath it
is dropped instead of cached.
"""
from typing import Iterable, Optional
import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import RedisError

from app.core import config
from app.features.permissions.schemas import EffectivePermissionSet
from app.utils import get_logger

log = get_logger(__name__)

KEY_PREFIX = "permissions:user:"
GENERATION_PREFIX = "permissions:generation:"
REGISTRY_GENERATION_KEY = "permissions:registry-generation"

# KEYS: entry, user generation, registry generation
# ARGV: expected generation, ttl, payload
CONDITIONAL_SET_SCRIPT = """
local current = (redis.call("get", KEYS[2]) or "0") .. ":" .. (redis.call("get", KEYS[3]) or "0")
if current ~= ARGV[1] then
    return 0
end
redis.call("setex", KEYS[1], ARGV[2], ARGV[3])
return 1
"""


class PermissionCache:
    """Per-user effective permission cache over ``redis.asyncio``."""

    def __init__(self, redis_client: redis.Redis, ttl: int = config.PERMISSION_CACHE_TTL, key_prefix: str = KEY_PREFIX):
        self._redis = redis_client
        self._ttl = ttl
        self._key_prefix = key_prefix

    def _key(self, user_id: str) -> str:
        return f"{self._key_prefix}{user_id}"

    def _generation_key(self, user_id: str) -> str:
        return f"{GENERATION_PREFIX}{user_id}"

    async def get_user_permissions(self, user_id: str) -> Optional[EffectivePermissionSet]:
        try:
            raw = await self._redis.get(self._key(user_id))
        except RedisError as e:
            log.warning("Failed to read permission cache for user %s: %s", user_id, e)
            return None
        if raw is None:
            return None
        try:
            return EffectivePermissionSet.model_validate_json(raw)
        except ValidationError as e:
            log.warning("Discarding unreadable permission cache entry for user %s: %s", user_id, e)
            await self.invalidate_user_permissions(user_id)
            return None

    async def get_generation(self, user_id: str) -> Optional[str]:
        """
        Snapshot the user's invalidation counters.

        Read before loading anything from the database and hand the result
        to ``set_user_permissions``. Returns None when redis is unreachable.
        """
        try:
            user_generation, registry_generation = await self._redis.mget(
                self._generation_key(user_id), REGISTRY_GENERATION_KEY
            )
        except RedisError as e:
            log.warning("Failed to read permission cache generation for user %s: %s", user_id, e)
            return None
        return f"{user_generation or 0}:{registry_generation or 0}"

    async def set_user_permissions(self, permissions: EffectivePermissionSet, generation: str) -> bool:
        """Store the set unless it was invalidated after ``generation`` was read."""
        user_id = permissions.user_id
        try:
            stored = await self._redis.eval(
                CONDITIONAL_SET_SCRIPT, 3,
                self._key(user_id), self._generation_key(user_id), REGISTRY_GENERATION_KEY,
                generation, self._ttl, permissions.model_dump_json(),
            )
        except RedisError as e:
            log.warning("Failed to cache permissions for user %s: %s", user_id, e)
            return False
        if not stored:
            log.debug("Skipped caching permissions for user %s: invalidated during computation", user_id)
        return bool(stored)

    async def _bump_generation(self, user_id: str) -> None:
        key = self._generation_key(user_id)
        await self._redis.incr(key)
        # counters only need to outlive the computations racing them
        await self._redis.expire(key, self._ttl * 2)

    async def invalidate_user_permissions(self, user_id: str) -> None:
        try:
            await self._bump_generation(user_id)
            await self._redis.delete(self._key(user_id))
            log.debug("Invalidated permission cache for user %s", user_id)
        except RedisError as e:
            log.warning("Failed to invalidate permission cache for user %s: %s", user_id, e)

    async def invalidate_users(self, user_ids: Iterable[str]) -> None:
        user_ids = list(user_ids)
        if not user_ids:
            return
        try:
            for user_id in user_ids:
                await self._bump_generation(user_id)
            await self._redis.delete(*[self._key(user_id) for user_id in user_ids])
            log.debug("Invalidated permission cache for %d users", len(user_ids))
        except RedisError as e:
            log.warning("Failed to invalidate permission cache for %d users: %s", len(user_ids), e)

    async def invalidate_all(self) -> None:
        """Drop every cached set; used when the registry changes under all users."""
        try:
            await self._redis.incr(REGISTRY_GENERATION_KEY)
            keys = [key async for key in self._redis.scan_iter(match=f"{self._key_prefix}*")]
            if keys:
                await self._redis.delete(*keys)
            log.debug("Invalidated %d cached permission sets", len(keys))
        except RedisError as e:
            log.warning("Failed to flush permission cache: %s", e)

    async def close(self) -> None:
        await self._redis.aclose()


class PermissionCacheClient:
    """Process-wide cache instance built from ``PERMISSION_CACHE_URL``."""

    _instance: Optional[PermissionCache] = None

    @classmethod
    def get_cache(cls) -> Optional[PermissionCache]:
        """Return the shared cache, or None when caching is not configured."""
        if not config.PERMISSION_CACHE_URL:
            return None
        if cls._instance is None:
            client = redis.from_url(config.PERMISSION_CACHE_URL, decode_responses=True)
            cls._instance = PermissionCache(client)
            log.info("Permission cache enabled (ttl=%ss)", config.PERMISSION_CACHE_TTL)
        return cls._instance

    @classmethod
    async def close(cls) -> None:
        if cls._instance is not None:
            await cls._instance.close()
            cls._instance = None
