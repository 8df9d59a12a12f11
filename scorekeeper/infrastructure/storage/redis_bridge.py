"""
Redis Storage Bridge

Carries storage changes between processes. A tab's own writes are stored
in Redis and announced on a pub/sub channel; writes announced by other
origins are applied to the local storage area as foreign changes, which
is what tabs in separate processes need to converge.
"""

import asyncio
import json
from typing import Any, Callable, Dict, Optional, Tuple

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from ...core.config import get_settings
from ...domain.cache.repository_interfaces import StorageArea, StorageChange
from ..exceptions import StorageException

logger = structlog.get_logger(__name__)

PULL_ORIGIN = "redis"


class RedisStorageBridge:
    """
    Mirror one storage area through Redis.

    Writes are queued and flushed in order by a background task, so the
    synchronous storage API never blocks on the network.
    """

    def __init__(
        self,
        redis: Redis,
        area: StorageArea,
        channel: Optional[str] = None,
        key_prefix: Optional[str] = None,
    ):
        """
        Initialize the bridge.

        Args:
            redis: Redis client (REQUIRED)
            area: Local storage area to mirror
            channel: Pub/sub channel; defaults to ``STORAGE_CHANNEL``
            key_prefix: Redis key prefix; defaults to ``STORAGE_KEY_PREFIX``

        Raises:
            TypeError: If redis is not a Redis instance
        """
        if not isinstance(redis, Redis):
            raise TypeError(f"redis must be Redis instance, got {type(redis).__name__}")

        settings = get_settings()
        self._redis = redis
        self.area = area
        self.channel = channel or settings.STORAGE_CHANNEL
        self.key_prefix = key_prefix or settings.STORAGE_KEY_PREFIX

        self._queue: "asyncio.Queue[Tuple[str, Optional[str]]]" = asyncio.Queue()
        self._pubsub = None
        self._tasks: list = []
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._owns_client = False

    @classmethod
    def from_settings(
        cls,
        area: StorageArea,
        redis_url: Optional[str] = None,
        channel: Optional[str] = None,
        key_prefix: Optional[str] = None,
    ) -> "RedisStorageBridge":
        """
        Build a bridge over its own client connected to ``REDIS_URL``.

        The client is closed when the bridge stops.
        """
        url = redis_url or get_settings().REDIS_URL
        bridge = cls(Redis.from_url(url), area, channel=channel, key_prefix=key_prefix)
        bridge._owns_client = True
        logger.info("Storage bridge client created", origin=area.origin)
        return bridge

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    def redis_key(self, key: str) -> str:
        """Redis key holding the record stored under ``key`` in this tier."""
        return f"{self.key_prefix}{self.area.tier.value}:{key}"

    async def start(self) -> None:
        """Subscribe to the channel and start the flush and listen loops."""
        if self.is_running:
            return

        self._unsubscribe = self.area.subscribe(self._on_local_change, include_own=True)
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._tasks = [
            asyncio.create_task(self._flush_loop()),
            asyncio.create_task(self._listen_loop()),
        ]
        logger.info(
            "Storage bridge started",
            origin=self.area.origin,
            tier=self.area.tier.value,
            channel=self.channel,
        )

    async def stop(self) -> None:
        """Cancel background loops and release the subscription."""
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self.channel)
                await self._pubsub.close()
            except RedisError as e:
                logger.warning(
                    "Storage bridge: error during cleanup",
                    origin=self.area.origin,
                    error=str(e),
                )
            self._pubsub = None

        if self._owns_client:
            await self._redis.aclose()
            self._owns_client = False

        logger.info("Storage bridge stopped", origin=self.area.origin)

    async def flush(self) -> None:
        """Wait until every queued write has been sent."""
        if not self.is_running:
            raise StorageException("Storage bridge is not running")
        await self._queue.join()

    async def pull(self) -> int:
        """Load every record persisted in Redis for this tier into the area.

        Returns:
            Number of records applied
        """
        prefix = self.redis_key("")
        applied = 0
        try:
            async for raw_key in self._redis.scan_iter(match=f"{prefix}*"):
                redis_key = _as_text(raw_key)
                value = await self._redis.get(redis_key)
                if value is None:
                    continue
                self.area.apply_foreign(redis_key[len(prefix):], _as_text(value), PULL_ORIGIN)
                applied += 1
        except RedisError as e:
            raise StorageException(
                "Failed to pull persisted records", storage_key=prefix, original_error=e
            )

        logger.info("Storage bridge pulled records", origin=self.area.origin, count=applied)
        return applied

    def _on_local_change(self, change: StorageChange) -> None:
        if change.origin != self.area.origin:
            return
        self._queue.put_nowait((change.key, change.new_value))

    async def _flush_loop(self) -> None:
        while True:
            key, value = await self._queue.get()
            try:
                await self._send(key, value)
            except RedisError as e:
                logger.warning(
                    "Storage bridge: failed to mirror write",
                    origin=self.area.origin,
                    key=key,
                    error=str(e),
                )
            finally:
                self._queue.task_done()

    async def _send(self, key: str, value: Optional[str]) -> None:
        redis_key = self.redis_key(key)
        if value is None:
            await self._redis.delete(redis_key)
        else:
            await self._redis.set(redis_key, value)

        message = {
            "origin": self.area.origin,
            "tier": self.area.tier.value,
            "key": key,
            "value": value,
        }
        await self._redis.publish(self.channel, json.dumps(message))
        logger.debug("Storage bridge: write mirrored", origin=self.area.origin, key=key)

    async def _listen_loop(self) -> None:
        while True:
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=1.0
                )
            except RedisError as e:
                logger.warning(
                    "Storage bridge: receive failed", origin=self.area.origin, error=str(e)
                )
                await asyncio.sleep(1.0)
                continue

            if message is None:
                await asyncio.sleep(0.01)
                continue
            self.handle_message(message)

    def handle_message(self, message: Dict[str, Any]) -> bool:
        """Apply one pub/sub message; returns True when it changed the area."""
        if message.get("type") != "message":
            return False

        try:
            payload = json.loads(_as_text(message["data"]))
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError):
            logger.warning("Storage bridge: undecodable message", origin=self.area.origin)
            return False
        if not isinstance(payload, dict):
            return False

        origin = payload.get("origin")
        if not origin or origin == self.area.origin:
            return False
        if payload.get("tier") != self.area.tier.value:
            return False

        key = payload.get("key")
        if not isinstance(key, str):
            return False

        self.area.apply_foreign(key, payload.get("value"), origin)
        logger.debug(
            "Storage bridge: foreign write applied",
            origin=self.area.origin,
            source=origin,
            key=key,
        )
        return True


def _as_text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value
