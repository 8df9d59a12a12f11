"""
Unit tests for the Redis storage bridge.

Redis is mocked; no server is needed.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.asyncio import Redis
from redis.exceptions import RedisError

from scorekeeper.core.config import get_settings
from scorekeeper.infrastructure.exceptions import StorageException
from scorekeeper.infrastructure.storage.redis_bridge import RedisStorageBridge

pytestmark = pytest.mark.redis


async def _quiet_get_message(**kwargs):
    await asyncio.sleep(0.01)
    return None


@pytest.fixture
def mock_redis():
    """Redis client double with the commands the bridge uses."""
    redis = MagicMock(spec=Redis)
    redis.set = AsyncMock(return_value=True)
    redis.get = AsyncMock(return_value=None)
    redis.delete = AsyncMock(return_value=1)
    redis.publish = AsyncMock(return_value=1)

    pubsub = MagicMock()
    pubsub.subscribe = AsyncMock()
    pubsub.unsubscribe = AsyncMock()
    pubsub.close = AsyncMock()
    pubsub.get_message = AsyncMock(side_effect=_quiet_get_message)
    redis.pubsub = MagicMock(return_value=pubsub)
    return redis


@pytest.fixture
def bridge(mock_redis, tab_a):
    return RedisStorageBridge(
        mock_redis, tab_a.session, channel="test:storage", key_prefix="test:store:"
    )


def _message(payload):
    return {"type": "message", "data": json.dumps(payload).encode("utf-8")}


class TestRedisStorageBridge:
    """Test mirroring storage writes through Redis."""

    def test_requires_redis_instance(self, tab_a):
        with pytest.raises(TypeError):
            RedisStorageBridge(object(), tab_a.session)

    def test_from_settings_connects_to_configured_url(self, mock_redis, tab_a):
        with patch.object(Redis, "from_url", return_value=mock_redis) as from_url:
            bridge = RedisStorageBridge.from_settings(tab_a.session)

        settings = get_settings()
        from_url.assert_called_once_with(settings.REDIS_URL)
        assert bridge.channel == settings.STORAGE_CHANNEL

    @pytest.mark.asyncio
    async def test_owned_client_is_closed_on_stop(self, mock_redis, tab_a):
        mock_redis.aclose = AsyncMock()
        with patch.object(Redis, "from_url", return_value=mock_redis) as from_url:
            bridge = RedisStorageBridge.from_settings(
                tab_a.session, redis_url="redis://cache:6380/2"
            )

        from_url.assert_called_once_with("redis://cache:6380/2")
        await bridge.start()
        await bridge.stop()
        await bridge.stop()
        mock_redis.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_borrowed_client_is_left_open(self, bridge, mock_redis):
        mock_redis.aclose = AsyncMock()
        await bridge.start()
        await bridge.stop()
        mock_redis.aclose.assert_not_awaited()

    def test_redis_key_includes_tier(self, bridge):
        assert bridge.redis_key("judge-storage") == "test:store:session:judge-storage"

    @pytest.mark.asyncio
    async def test_own_writes_are_mirrored_in_order(self, bridge, mock_redis, tab_a):
        await bridge.start()
        try:
            tab_a.session.set_item("k", "v1")
            tab_a.session.remove_item("k")
            await bridge.flush()
        finally:
            await bridge.stop()

        mock_redis.set.assert_awaited_once_with("test:store:session:k", "v1")
        mock_redis.delete.assert_awaited_once_with("test:store:session:k")
        published = [json.loads(call.args[1]) for call in mock_redis.publish.await_args_list]
        assert [message["value"] for message in published] == ["v1", None]
        assert all(message["origin"] == "tab-a" for message in published)
        assert all(call.args[0] == "test:storage" for call in mock_redis.publish.await_args_list)

    @pytest.mark.asyncio
    async def test_foreign_writes_are_not_mirrored(self, bridge, mock_redis, tab_a, tab_b):
        await bridge.start()
        try:
            tab_b.session.set_item("k", "v")
            await bridge.flush()
        finally:
            await bridge.stop()

        mock_redis.set.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_redis_error_is_logged_and_flush_continues(self, bridge, mock_redis, tab_a):
        mock_redis.set.side_effect = [RedisError("down"), True]
        await bridge.start()
        try:
            tab_a.session.set_item("k", "v1")
            tab_a.session.set_item("k", "v2")
            await bridge.flush()
        finally:
            await bridge.stop()

        assert mock_redis.set.await_count == 2

    @pytest.mark.asyncio
    async def test_flush_requires_running_bridge(self, bridge):
        with pytest.raises(StorageException):
            await bridge.flush()

    def test_handle_message_applies_foreign_write(self, bridge, tab_a, tab_b):
        seen = []
        tab_b.session.subscribe(seen.append)

        applied = bridge.handle_message(
            _message({"origin": "tab-z", "tier": "session", "key": "k", "value": "v"})
        )

        assert applied is True
        assert tab_a.session.get_item("k") == "v"
        assert seen[0].origin == "tab-z"

    def test_handle_message_ignores_own_origin(self, bridge, tab_a):
        applied = bridge.handle_message(
            _message({"origin": "tab-a", "tier": "session", "key": "k", "value": "v"})
        )
        assert applied is False
        assert tab_a.session.get_item("k") is None

    def test_handle_message_ignores_other_tier(self, bridge):
        assert not bridge.handle_message(
            _message({"origin": "tab-z", "tier": "durable", "key": "k", "value": "v"})
        )

    def test_handle_message_ignores_garbage(self, bridge):
        assert not bridge.handle_message({"type": "message", "data": b"not json"})
        assert not bridge.handle_message({"type": "subscribe", "data": 1})

    @pytest.mark.asyncio
    async def test_pull_loads_persisted_records(self, bridge, mock_redis, tab_a):
        async def scan_iter(match):
            assert match == "test:store:session:*"
            for key in (b"test:store:session:a", b"test:store:session:b"):
                yield key

        mock_redis.scan_iter = scan_iter
        mock_redis.get = AsyncMock(side_effect=[b"1", None])

        applied = await bridge.pull()

        assert applied == 1
        assert tab_a.session.get_item("a") == "1"
        assert tab_a.session.get_item("b") is None
