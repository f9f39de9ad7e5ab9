"""Request rate throttling.

Sliding-window throttles keyed per user (authenticated) or per client IP
(anonymous). Request histories live in Redis when it is reachable and in
process memory otherwise.

Rates are written ``"<requests>/<period>"``, e.g. ``"100/day"`` or
``"10/m"``.
"""
import threading
import time
import uuid
from typing import Dict, List, Optional, Tuple

import redis
from fastapi import Depends, Request

from catalog.core.auth import get_optional_user
from catalog.core.config import settings
from catalog.core.exceptions import Throttled
from catalog.core.logging import get_logger
from catalog.domain.models import User
from catalog.infrastructure.redis import get_redis_client

logger = get_logger(__name__)

PERIODS = {
    "s": 1, "sec": 1, "second": 1,
    "m": 60, "min": 60, "minute": 60,
    "h": 3600, "hour": 3600,
    "d": 86400, "day": 86400,
}


def parse_rate(rate: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
    """Parse ``"<n>/<period>"`` into (num_requests, duration_seconds).

    ``None`` means unthrottled and yields ``(None, None)``.

    Raises:
        ValueError: If the rate is malformed
    """
    if rate is None:
        return None, None
    try:
        num, period = rate.split("/")
        num_requests = int(num)
        duration = PERIODS[period.strip().lower()]
    except (ValueError, KeyError):
        raise ValueError(f"Invalid throttle rate: {rate!r}") from None
    if num_requests < 0:
        raise ValueError(f"Invalid throttle rate: {rate!r}")
    return num_requests, duration


class MemoryHistoryStore:
    """In-process request history store.

    Histories are kept newest first. Keys expire one window after their
    latest request and are swept periodically, so one-off clients do not
    accumulate.
    """

    sweep_interval = 60.0

    def __init__(self):
        self._lock = threading.Lock()
        self._histories: Dict[str, List[float]] = {}
        self._expires: Dict[str, float] = {}
        self._next_sweep = 0.0

    def __len__(self) -> int:
        return len(self._histories)

    def _prune(self, key: str, now: float, duration: int) -> List[float]:
        history = self._histories.get(key, [])
        while history and history[-1] <= now - duration:
            history.pop()
        if not history:
            self._histories.pop(key, None)
            self._expires.pop(key, None)
        return history

    def _sweep(self, now: float) -> None:
        if now < self._next_sweep:
            return
        for key in [k for k, expires in self._expires.items() if expires <= now]:
            del self._histories[key]
            del self._expires[key]
        self._next_sweep = now + self.sweep_interval

    def history(self, key: str, now: float, duration: int) -> List[float]:
        with self._lock:
            return list(self._prune(key, now, duration))

    def hit(self, key: str, now: float, num_requests: int, duration: int) -> bool:
        with self._lock:
            self._sweep(now)
            history = self._prune(key, now, duration)
            if len(history) >= num_requests:
                return False
            history.insert(0, now)
            self._histories[key] = history
            self._expires[key] = now + duration
            return True


class RedisHistoryStore:
    """Request histories stored as sorted sets scored by request time.

    Each hit runs as one MULTI/EXEC transaction: expired entries are
    trimmed, the request is added and the window counted. A request that
    overshoots the limit removes its own entry again, so concurrent workers
    never admit more than ``num_requests`` per window. Redis errors let the
    request through.
    """

    def __init__(self, redis_client, key_prefix: str = "throttle:"):
        self.redis = redis_client
        self.key_prefix = key_prefix

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def history(self, key: str, now: float, duration: int) -> List[float]:
        try:
            entries = self.redis.zrangebyscore(self._key(key), f"({now - duration}", "+inf", withscores=True)
        except redis.RedisError as e:
            logger.error(f"Error reading throttle history {key}: {e}", exc_info=True)
            return []
        return sorted((score for _, score in entries), reverse=True)

    def hit(self, key: str, now: float, num_requests: int, duration: int) -> bool:
        redis_key = self._key(key)
        member = f"{now}:{uuid.uuid4().hex}"
        try:
            pipe = self.redis.pipeline(transaction=True)
            pipe.zremrangebyscore(redis_key, "-inf", now - duration)
            pipe.zadd(redis_key, {member: now})
            pipe.zcard(redis_key)
            pipe.expire(redis_key, duration)
            _, _, count, _ = pipe.execute()
            if count > num_requests:
                self.redis.zrem(redis_key, member)
                return False
        except redis.RedisError as e:
            logger.error(f"Error updating throttle history {key}: {e}", exc_info=True)
        return True


class SimpleRateThrottle:
    """Allow at most ``num_requests`` per ``duration`` seconds per key.

    Example:
        >>> throttle = SimpleRateThrottle("3/min", scope="anon", store=MemoryHistoryStore())
        >>> throttle.allow("throttle_anon_127.0.0.1")
        True
    """

    def __init__(self, rate: Optional[str], scope: str, store=None):
        self.rate = rate
        self.scope = scope
        self.num_requests, self.duration = parse_rate(rate)
        self.store = store if store is not None else MemoryHistoryStore()

    def cache_key(self, ident: str) -> str:
        return f"throttle_{self.scope}_{ident}"

    def allow(self, key: str, now: Optional[float] = None) -> bool:
        """Record the request and return True, or return False if throttled."""
        if self.num_requests is None:
            return True

        now = time.time() if now is None else now
        return self.store.hit(key, now, self.num_requests, self.duration)

    def wait(self, key: str, now: Optional[float] = None) -> Optional[float]:
        """Seconds until the next request would be allowed."""
        if self.num_requests is None:
            return None

        now = time.time() if now is None else now
        history = self.store.history(key, now, self.duration)

        if history:
            remaining_duration = self.duration - (now - history[-1])
        else:
            remaining_duration = self.duration

        available_requests = self.num_requests - len(history) + 1
        if available_requests <= 0:
            return None

        return remaining_duration / float(available_requests)


def get_client_ip(request: Request) -> str:
    """Client IP, honoring the first ``X-Forwarded-For`` entry."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


_store = None


def get_history_store():
    """Redis-backed store when Redis is reachable, otherwise in memory."""
    global _store
    if _store is None:
        client = get_redis_client() if settings.redis_enabled else None
        if client is not None:
            _store = RedisHistoryStore(client)
        else:
            logger.warning("Redis unavailable, throttling with in-memory history")
            _store = MemoryHistoryStore()
    return _store


def reset_history_store(store=None) -> None:
    global _store
    _store = store


async def throttle(
    request: Request,
    user: Optional[User] = Depends(get_optional_user),
) -> None:
    """FastAPI dependency applying the ``user`` or ``anon`` throttle scope."""
    if not settings.throttling_enabled:
        return

    if user is not None:
        limiter = SimpleRateThrottle(settings.user_throttle_rate, "user", get_history_store())
        ident = str(user.id)
    else:
        limiter = SimpleRateThrottle(settings.anon_throttle_rate, "anon", get_history_store())
        ident = get_client_ip(request)

    key = limiter.cache_key(ident)
    if not limiter.allow(key):
        wait = limiter.wait(key)
        logger.warning(
            f"Rate limit hit for {key}",
            extra={"scope": limiter.scope, "path": request.url.path}
        )
        raise Throttled(wait)
