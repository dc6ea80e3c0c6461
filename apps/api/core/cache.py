"""
Shared Redis client for cross-worker sync locks.

Returns None whenever Redis is disabled or down; the lock manager then
falls back to in-process locking. After a failed connect the client is not
retried until REDIS_RETRY_INTERVAL_S has passed, so an outage does not add
a connect timeout to every sync.
"""
import logging
import threading
import time
from typing import Optional

import redis
from redis.exceptions import RedisError

from core.config import settings

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None
_last_failure: Optional[float] = None
_client_lock = threading.Lock()


def _connect() -> redis.Redis:
    client = redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
        health_check_interval=30,
    )
    client.ping()
    return client


def get_redis_client() -> Optional[redis.Redis]:
    global _client, _last_failure

    if not settings.REDIS_ENABLED:
        return None
    if _client is not None:
        return _client

    with _client_lock:
        if _client is not None:
            return _client
        if _last_failure is not None and time.monotonic() - _last_failure < settings.REDIS_RETRY_INTERVAL_S:
            return None
        try:
            _client = _connect()
        except RedisError as e:
            _last_failure = time.monotonic()
            logger.warning(f"Redis unavailable ({type(e).__name__}); using in-process sync locks")
            return None
        _last_failure = None
        logger.info("Connected to Redis for sync locks")
        return _client


def reset_redis_client() -> None:
    """Forget the client and any failure backoff (called after worker fork)."""
    global _client, _last_failure
    with _client_lock:
        _client = None
        _last_failure = None
