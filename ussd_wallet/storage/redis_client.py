"""
Redis client factory.

Sessions, OTP records, auth sessions, recent-auth markers and rate
counters all live in Redis and expire through key TTLs.
"""

import redis

from ussd_wallet.logging_config import get_logger

logger = get_logger(__name__)


def build_redis(redis_url: str) -> redis.Redis:
    """
    Create a Redis client that returns str values.

    Args:
        redis_url: e.g. redis://localhost:6379/0

    Returns:
        redis.Redis client (connections are opened lazily)
    """
    client = redis.Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=5,
        socket_connect_timeout=5,
    )
    logger.info("redis_client_created", url=redis_url.split("@")[-1])
    return client
