"""Fan-out of vehicle updates: in-process callbacks, WebSocket queues and Redis pub/sub."""

import asyncio
import logging
from collections.abc import Callable

import orjson
import redis.asyncio as aioredis

from transit_tracker.config import settings
from transit_tracker.schemas.vehicle import VehicleUpdate

logger = logging.getLogger(__name__)

CHANNEL = "transit:vehicles"
STATE_KEY = "transit:state"


class Broadcaster:
    """Delivers each processed batch to subscribers.

    Callbacks run synchronously and in isolation: one raising does not stop
    delivery to the rest. Streaming consumers get a bounded queue each; a
    consumer that falls behind is dropped.
    """

    def __init__(self, redis_url: str | None = None) -> None:
        self.redis_url = settings.redis_url if redis_url is None else redis_url
        self._redis: aioredis.Redis | None = None
        self._callbacks: list[Callable] = []
        self._subscribers: set[asyncio.Queue] = set()

    async def connect(self) -> None:
        if not self.redis_url:
            return
        self._redis = aioredis.from_url(self.redis_url, decode_responses=False)
        logger.info("Publishing vehicle state to Redis at %s", self.redis_url)

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    def on_update(self, callback: Callable) -> Callable[[], None]:
        """Register ``callback(vehicles)``; returns a function that unregisters it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def notify(self, vehicles) -> None:
        for callback in list(self._callbacks):
            try:
                callback(vehicles)
            except Exception:
                logger.exception("Update subscriber failed")

    async def publish(self, update: VehicleUpdate) -> None:
        """Publish the serialized update to Redis and the WebSocket queues."""
        payload = orjson.dumps(update.model_dump(by_alias=True))

        if self._redis:
            try:
                # Latest state for handlers in other processes
                await self._redis.set(STATE_KEY, payload)
                await self._redis.publish(CHANNEL, payload)
            except Exception:
                logger.exception("Failed to publish to Redis")

        dead = set()
        for q in self._subscribers:
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                dead.add(q)
        if dead:
            logger.warning("Dropping %d slow WebSocket subscriber(s)", len(dead))
        self._subscribers -= dead

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=10)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
