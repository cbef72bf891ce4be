"""
Redis Connection Pool
=====================
Shared async Redis pool used by the advisory locks. Connections are health
checked and transient errors retried with exponential backoff.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import (
    BusyLoadingError,
    ConnectionError,
    TimeoutError,
)

from clubbilling.core.config import settings

log = logging.getLogger(__name__)

_redis_pool: Optional[redis.ConnectionPool] = None

POOL_MAX_CONNECTIONS = 20
SOCKET_TIMEOUT = 5.0
SOCKET_CONNECT_TIMEOUT = 5.0
HEALTH_CHECK_INTERVAL = 30
RETRY_ATTEMPTS = 3


def _create_pool() -> redis.ConnectionPool:
    return redis.ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=POOL_MAX_CONNECTIONS,
        socket_timeout=SOCKET_TIMEOUT,
        socket_connect_timeout=SOCKET_CONNECT_TIMEOUT,
        health_check_interval=HEALTH_CHECK_INTERVAL,
        decode_responses=True,
    )


def _create_retry() -> Retry:
    return Retry(
        retries=RETRY_ATTEMPTS,
        backoff=ExponentialBackoff(cap=0.5, base=0.1),
        supported_errors=(ConnectionError, TimeoutError, BusyLoadingError),
    )


async def get_redis() -> redis.Redis:
    """Client backed by the shared pool; the pool is created on first use."""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = _create_pool()
        log.info("Redis connection pool initialized (max_connections=%d)", POOL_MAX_CONNECTIONS)

    return redis.Redis(
        connection_pool=_redis_pool,
        retry=_create_retry(),
        retry_on_error=[ConnectionError, TimeoutError, BusyLoadingError],
    )


async def close_redis():
    global _redis_pool
    if _redis_pool:
        await _redis_pool.disconnect()
        _redis_pool = None
        log.info("Redis connection pool closed")
