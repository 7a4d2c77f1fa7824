"""Redis key-value cache for per-application instance counts and deploy hints.

Keys:
- app:{id}:instances  string-encoded int, bounded TTL
- app:{id}:deployed   existence-only hint, 24h TTL

Every operation degrades instead of raising: a read failure behaves like a
miss and a write failure is logged and skipped. The durable store remains
the fallback for counts, and the deployed hint is never authoritative.
"""

import logging
import os
from typing import Optional

import redis

logger = logging.getLogger(__name__)

DEFAULT_INSTANCE_COUNT_TTL = 3600
DEFAULT_DEPLOYED_HINT_TTL = 86400


def instances_key(app_id: int) -> str:
    return f"app:{app_id}:instances"


def deployed_key(app_id: int) -> str:
    return f"app:{app_id}:deployed"


class RedisCache:
    """Thin wrapper over a redis client for the control-plane keys."""

    def __init__(
        self,
        client: redis.Redis,
        instance_count_ttl: int = DEFAULT_INSTANCE_COUNT_TTL,
        deployed_hint_ttl: int = DEFAULT_DEPLOYED_HINT_TTL,
    ) -> None:
        self._client = client
        self.instance_count_ttl = instance_count_ttl
        self.deployed_hint_ttl = deployed_hint_ttl

    def get_instance_count(self, app_id: int) -> Optional[int]:
        """Cached count, or None on miss, bad value or cache failure."""
        try:
            value = self._client.get(instances_key(app_id))
        except redis.RedisError as e:
            logger.warning(f"Cache read failed for app {app_id} instance count: {e}")
            return None
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Ignoring non-integer cached count {value!r} for app {app_id}")
            return None

    def set_instance_count(self, app_id: int, count: int) -> None:
        try:
            self._client.set(instances_key(app_id), str(count), ex=self.instance_count_ttl)
        except redis.RedisError as e:
            logger.warning(f"Cache write failed for app {app_id} instance count: {e}")

    def is_deployed(self, app_id: int) -> bool:
        try:
            return bool(self._client.exists(deployed_key(app_id)))
        except redis.RedisError as e:
            logger.warning(f"Cache read failed for app {app_id} deployed hint: {e}")
            return False

    def mark_deployed(self, app_id: int) -> None:
        try:
            self._client.set(deployed_key(app_id), "true", ex=self.deployed_hint_ttl)
        except redis.RedisError as e:
            logger.warning(f"Cache write failed for app {app_id} deployed hint: {e}")

    def clear_deployed(self, app_id: int) -> None:
        try:
            self._client.delete(deployed_key(app_id))
        except redis.RedisError as e:
            logger.warning(f"Cache delete failed for app {app_id} deployed hint: {e}")

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False

    def close(self) -> None:
        self._client.close()


def get_cache(url: Optional[str] = None) -> RedisCache:
    """Build the cache from REDIS_URL and the TTL settings in the environment."""
    url = url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
    client = redis.Redis.from_url(url)
    return RedisCache(
        client,
        instance_count_ttl=int(os.getenv("SLIPWAY_INSTANCE_COUNT_TTL", str(DEFAULT_INSTANCE_COUNT_TTL))),
        deployed_hint_ttl=int(os.getenv("SLIPWAY_DEPLOYED_HINT_TTL", str(DEFAULT_DEPLOYED_HINT_TTL))),
    )
