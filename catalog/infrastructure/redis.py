"""Redis client and response cache.

Provides a lazily created, pooled Redis connection shared by the throttles
and the cache for expensive aggregate queries. Every caller falls back
gracefully when Redis is unreachable.
"""
import json
import redis
from typing import Any, Optional
from datetime import timedelta

from catalog.core.logging import get_logger
from catalog.core.config import settings

logger = get_logger(__name__)

_redis_pool: Optional[redis.ConnectionPool] = None
_redis_client: Optional[redis.Redis] = None


def get_redis_client(
    host: Optional[str] = None,
    port: Optional[int] = None,
    db: Optional[int] = None,
    password: Optional[str] = None,
) -> Optional[redis.Redis]:
    """Get or create Redis client with connection pooling.

    Uses settings if not explicitly provided. Returns None if Redis is not
    available.
    """
    global _redis_pool, _redis_client

    host = host or settings.redis_host
    port = port or settings.redis_port
    db = db if db is not None else settings.redis_db
    password = password or settings.redis_password

    if _redis_client is None:
        logger.info(f"Initializing Redis connection pool: {host}:{port}")

        try:
            _redis_pool = redis.ConnectionPool(
                host=host,
                port=port,
                db=db,
                password=password,
                decode_responses=True,
                max_connections=50,
                socket_connect_timeout=2,
                socket_timeout=2,
            )

            client = redis.Redis(connection_pool=_redis_pool)
            client.ping()
            _redis_client = client
            logger.info("Redis connection established successfully")

        except redis.RedisError as e:
            logger.warning(f"Failed to connect to Redis: {e}")
            _redis_client = None
            return None

    return _redis_client


class CacheManager:
    """Redis-backed cache for expensive read-only queries.

    Example:
        >>> cache = CacheManager(ttl_seconds=300)
        >>> cache.set("products:stats", {"count": 12})
        >>> cache.get("products:stats")
        {'count': 12}
    """

    def __init__(
        self,
        redis_client: Optional[redis.Redis] = None,
        ttl_seconds: int = 300,
        key_prefix: str = "cache:"
    ):
        self.redis = redis_client
        self.ttl = timedelta(seconds=ttl_seconds)
        self.key_prefix = key_prefix

    def _make_key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def get(self, key: str) -> Optional[Any]:
        """Return cached value, or None if missing, expired or Redis is down."""
        if self.redis is None:
            return None
        try:
            data = self.redis.get(self._make_key(key))

            if data:
                logger.debug(f"Cache hit: {key}")
                return json.loads(data)

            logger.debug(f"Cache miss: {key}")
            return None

        except Exception as e:
            logger.error(f"Error retrieving cache {key}: {e}", exc_info=True)
            return None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> bool:
        """Cache a JSON-serializable value; returns True if stored."""
        if self.redis is None:
            return False
        try:
            ttl = timedelta(seconds=ttl_seconds) if ttl_seconds else self.ttl
            self.redis.setex(self._make_key(key), ttl, json.dumps(value, default=str))
            logger.debug(f"Cache set: {key} (TTL: {ttl})")
            return True

        except Exception as e:
            logger.error(f"Error setting cache {key}: {e}", exc_info=True)
            return False

    def delete(self, key: str) -> bool:
        if self.redis is None:
            return False
        try:
            return bool(self.redis.delete(self._make_key(key)))
        except Exception as e:
            logger.error(f"Error deleting cache {key}: {e}", exc_info=True)
            return False


_cache: Optional[CacheManager] = None


def get_cache() -> CacheManager:
    """Shared cache; a disconnected cache (always missing) without Redis."""
    global _cache
    if _cache is None:
        client = get_redis_client() if settings.redis_enabled else None
        _cache = CacheManager(redis_client=client)
    return _cache


def reset_cache(cache: Optional[CacheManager] = None) -> None:
    global _cache
    _cache = cache
