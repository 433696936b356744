"""
Redis connections for chat fan-out and health checks
Supports both standard Redis and Upstash managed Redis
"""

import logging
import os
from typing import Optional

import redis
import redis.asyncio as aioredis

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None

CONNECTION_OPTIONS = {
    "decode_responses": True,
    "socket_connect_timeout": 15,
    "retry_on_timeout": True,
    "health_check_interval": 30,
}


def _masked(redis_url: str) -> str:
    """Mask password in URL for logging"""
    if "@" not in redis_url:
        return "****"
    url_parts = redis_url.split("@")
    protocol = url_parts[0].split(":")[0]
    return f"{protocol}:****@{url_parts[1]}"


def get_redis_url() -> str:
    redis_url = os.getenv("REDIS_URL")
    if redis_url:
        return redis_url

    host = os.getenv("REDIS_HOST", "localhost")
    port = int(os.getenv("REDIS_PORT", "6379"))
    password = os.getenv("REDIS_PASSWORD")
    db = int(os.getenv("REDIS_DB", "0"))
    scheme = "rediss" if os.getenv("REDIS_SSL", "false").lower() == "true" else "redis"
    auth = f":{password}@" if password else ""
    return f"{scheme}://{auth}{host}:{port}/{db}"


def get_redis_client() -> redis.Redis:
    """Get or create the synchronous Redis client used by health checks"""
    global redis_client

    if redis_client is None:
        redis_url = get_redis_url()
        logger.info(f"📡 Using Redis URL connection: {_masked(redis_url)}")
        redis_client = redis.from_url(redis_url, socket_timeout=30, **CONNECTION_OPTIONS)

    return redis_client


def create_async_redis_client() -> aioredis.Redis:
    """New asyncio client; pub/sub needs a connection without a read timeout"""
    redis_url = get_redis_url()
    logger.info(f"📡 Chat broadcast Redis: {_masked(redis_url)}")
    return aioredis.from_url(redis_url, **CONNECTION_OPTIONS)
