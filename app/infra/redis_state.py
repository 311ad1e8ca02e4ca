from __future__ import annotations

import json
import os
from functools import lru_cache

from redis import Redis, RedisError

from app.infra.logging import get_logger

REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
PERMISSION_CACHE_TTL_SEC = int(os.getenv("PERMISSION_CACHE_TTL_SEC", "300"))

logger = get_logger(__name__)


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


def check_redis_ready() -> bool:
    try:
        return bool(get_redis().ping())
    except Exception:
        return False


class RolePermissionCache:
    """Per-role grant map cached in Redis.

    The cache only serves request-path authorization. Cache failures are
    logged and treated as a miss so the database stays authoritative.
    """

    def __init__(self, client: Redis | None = None, ttl_sec: int | None = None) -> None:
        self._client = client
        self._ttl_sec = PERMISSION_CACHE_TTL_SEC if ttl_sec is None else ttl_sec

    @property
    def enabled(self) -> bool:
        return self._ttl_sec > 0

    def _redis(self) -> Redis:
        if self._client is None:
            self._client = get_redis()
        return self._client

    @staticmethod
    def _key(role_id: str) -> str:
        return f"permissions:role:{role_id}"

    def get(self, role_id: str) -> dict[str, bool] | None:
        if not self.enabled:
            return None
        try:
            raw = self._redis().get(self._key(role_id))
        except RedisError as exc:
            logger.warning("permission_cache_read_failed", role_id=role_id, error=str(exc))
            return None
        if raw is None:
            return None
        try:
            decoded = json.loads(raw)
        except ValueError:
            return None
        if not isinstance(decoded, dict):
            return None
        return {str(name): bool(granted) for name, granted in decoded.items()}

    def set(self, role_id: str, grants: dict[str, bool]) -> None:
        if not self.enabled:
            return
        try:
            self._redis().setex(self._key(role_id), self._ttl_sec, json.dumps(grants, sort_keys=True))
        except RedisError as exc:
            logger.warning("permission_cache_write_failed", role_id=role_id, error=str(exc))

    def invalidate(self, role_id: str) -> None:
        if not self.enabled:
            return
        try:
            self._redis().delete(self._key(role_id))
        except RedisError as exc:
            logger.warning("permission_cache_invalidate_failed", role_id=role_id, error=str(exc))
