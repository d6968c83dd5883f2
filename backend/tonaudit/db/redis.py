"""Process-wide Redis client backing the job queues."""

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

from tonaudit.core.config import get_settings
from tonaudit.core.exceptions import BrokerUnavailable

logger = structlog.get_logger(__name__)

_client: redis.Redis | None = None


async def init_redis(url: str | None = None) -> redis.Redis:
    """Connect the queue broker once per process. Idempotent.

    Raises:
        BrokerUnavailable: the broker did not answer PING; nothing is kept
    """
    global _client

    if _client is not None:
        return _client

    settings = get_settings()
    client = redis.from_url(
        url or settings.redis_url,
        decode_responses=True,  # queue keys and job hashes are plain text
        socket_timeout=settings.redis_socket_timeout,
        socket_connect_timeout=settings.redis_socket_timeout,
        health_check_interval=30,
    )
    try:
        await client.ping()
    except RedisError as exc:
        await client.aclose()
        raise BrokerUnavailable(f"Queue broker did not answer PING: {exc}") from exc

    _client = client
    logger.info("queue_broker_connected")
    return _client


async def close_redis() -> None:
    global _client

    if _client is not None:
        client, _client = _client, None
        await client.aclose()


def get_redis() -> redis.Redis:
    """Raises RuntimeError before init_redis()."""
    if _client is None:
        raise RuntimeError("Queue broker not connected. Call init_redis() first.")
    return _client
