# Per-car Redis locks that gate reservation mutations across processes.
# A coarse pre-filter only: overlap safety comes from the Conflict Guard's conditional writes,
# so these locks fail open when Redis is disabled or down.
from __future__ import annotations

import logging
from contextlib import ExitStack, contextmanager
from typing import Iterator, Optional
from uuid import uuid4

import redis

from .errors import BusyError
from .redis_client import get_redis

logger = logging.getLogger("carhire.locks")

LOCK_TTL_MS = 5000

# Deletes the key only while it still holds our token
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


def car_lock_key(car_id: int) -> str:
    return f"lock:reservation:car:{car_id}"


@contextmanager
def redis_try_lock(key: str, ttl_ms: int = LOCK_TTL_MS) -> Iterator[bool]:
    """
    Best-effort distributed lock implemented with Redis SET NX PX.

    Yields True when the lock is acquired or Redis is unavailable (fail-open),
    False when another process holds it.
    """
    r = get_redis()
    if r is None:
        yield True
        return

    token = uuid4().hex
    try:
        acquired = bool(r.set(key, token, nx=True, px=ttl_ms))
    except redis.RedisError as exc:
        logger.warning("redis_try_lock error (key=%s): %s", key, exc)
        yield True
        return

    try:
        yield acquired
    finally:
        if acquired:
            try:
                r.eval(_RELEASE_SCRIPT, 1, key, token)
            except redis.RedisError as exc:
                # The lock expires by TTL
                logger.debug("redis_try_lock release error (key=%s): %s", key, exc)


@contextmanager
def car_locks(*car_ids: Optional[int]) -> Iterator[None]:
    """
    Hold the per-car lock of every given car for the enclosed block.

    Locks are taken in ascending id order so two requests moving bookings between the
    same pair of cars cannot deadlock. Raises BusyError if any lock is held elsewhere.
    """
    with ExitStack() as stack:
        for car_id in sorted({cid for cid in car_ids if cid}):
            locked = stack.enter_context(redis_try_lock(car_lock_key(car_id)))
            if not locked:
                raise BusyError(f"Car {car_id} is being booked by another request; retry shortly", retry_after=1)
        yield
