"""Redis connection management."""

from functools import lru_cache

import redis

from varmor.core.config import get_settings
from varmor.core.logging import get_logger

logger = get_logger(__name__)


@lru_cache(maxsize=1)
def get_redis_pool() -> redis.ConnectionPool:
    """Get or create Redis connection pool."""
    settings = get_settings()
    return redis.ConnectionPool(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password,
        db=settings.redis_db,
        decode_responses=True,
        max_connections=20,
        socket_connect_timeout=5,
        socket_keepalive=True,
    )


@lru_cache(maxsize=1)
def get_redis_client() -> redis.Redis:
    """Get Redis client with shared connection pool."""
    client = redis.Redis(connection_pool=get_redis_pool())

    try:
        client.ping()
        logger.info("Redis connection established")
    except redis.RedisError as e:
        logger.error(f"Redis connection failed: {e}")
        raise

    return client


def close_redis_connection():
    """Close Redis connection pool."""
    try:
        pool = get_redis_pool()
        pool.disconnect()
        get_redis_pool.cache_clear()
        get_redis_client.cache_clear()
        logger.info("Redis connection pool closed")
    except redis.RedisError as e:
        logger.error(f"Error closing Redis pool: {e}")
