# Redis client helper: opt-in, fail-open access to a shared Redis connection.
# Controlled by REDIS_ENABLED and REDIS_URL; the engine stays correct without Redis, only less coarse-locked.
import logging
import os
from typing import Optional

import redis

_logger = logging.getLogger("carhire.redis")

_TRUTHY = {"1", "true", "t", "yes", "y", "on"}

_client: Optional[redis.Redis] = None
_initialized = False


def is_redis_enabled() -> bool:
    return os.getenv("REDIS_ENABLED", "false").strip().lower() in _TRUTHY


def get_redis() -> Optional[redis.Redis]:
    """
    Return a Redis client if enabled and reachable; otherwise return None.

    The first call connects and pings. A failed attempt is remembered for the process
    lifetime so later calls return None immediately instead of paying the timeout again.
    """
    global _client, _initialized
    if not is_redis_enabled():
        return None
    if _client is not None or _initialized:
        return _client

    url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    _initialized = True
    try:
        client = redis.Redis.from_url(
            url,
            socket_timeout=0.25,
            socket_connect_timeout=0.25,
            retry_on_timeout=False,
            health_check_interval=0,
        )
        client.ping()
    except redis.RedisError as exc:
        _logger.warning("Redis unavailable at %s (fail-open): %s", url, exc)
        return None
    _client = client
    _logger.info("Connected to Redis at %s", url)
    return _client
