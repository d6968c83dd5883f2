"""Test the process-wide queue broker client."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fakeredis import aioredis
from redis.exceptions import ConnectionError as RedisConnectionError

from tonaudit.core.exceptions import BrokerUnavailable
from tonaudit.db import redis as broker

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
async def test_init_is_idempotent_and_close_resets():
    fake = aioredis.FakeRedis(decode_responses=True)
    with patch.object(broker.redis, "from_url", return_value=fake) as from_url:
        client = await broker.init_redis("redis://queue:6379")
        again = await broker.init_redis()

    try:
        assert client is fake and again is fake
        assert broker.get_redis() is fake
        from_url.assert_called_once()
        assert from_url.call_args.kwargs["decode_responses"] is True
    finally:
        await broker.close_redis()

    with pytest.raises(RuntimeError):
        broker.get_redis()


@pytest.mark.asyncio
async def test_unreachable_broker_raises_and_keeps_nothing():
    client = MagicMock()
    client.ping = AsyncMock(side_effect=RedisConnectionError("connection refused"))
    client.aclose = AsyncMock()

    with patch.object(broker.redis, "from_url", return_value=client):
        with pytest.raises(BrokerUnavailable):
            await broker.init_redis("redis://nowhere:6379")

    client.aclose.assert_awaited_once()
    with pytest.raises(RuntimeError):
        broker.get_redis()
