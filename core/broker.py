"""Publish/subscribe transport for realtime events.

Two implementations share the ``Broker`` interface:

* ``InMemoryBroker`` for a single process (development, tests).
* ``RedisBroker`` on Redis pub/sub, so every worker process sees every event.

Both deliver events to a subscriber in publish order per channel.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, Set

import redis.asyncio as redis

from core.events import Envelope

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription(ABC):
    """Async iterator of envelopes published on one channel."""

    def __init__(self, channel: str):
        self.channel = channel
        self.closed = False

    def __aiter__(self):
        return self

    @abstractmethod
    async def __anext__(self) -> Envelope:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class Broker(ABC):
    @abstractmethod
    async def publish(self, channel: str, envelope: Envelope) -> None:
        ...

    @abstractmethod
    async def subscribe(self, channel: str) -> Subscription:
        """Register a subscription; events published after this returns are delivered."""

    async def close(self) -> None:
        return None


class _QueueSubscription(Subscription):
    def __init__(self, broker: "InMemoryBroker", channel: str):
        super().__init__(channel)
        self._broker = broker
        self.queue: asyncio.Queue = asyncio.Queue()

    async def __anext__(self) -> Envelope:
        if self.closed:
            raise StopAsyncIteration
        item = await self.queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._broker._detach(self)
        self.queue.put_nowait(_CLOSED)


class InMemoryBroker(Broker):
    def __init__(self):
        self._lock = Lock()
        self._subscribers: Dict[str, Set[_QueueSubscription]] = {}

    async def publish(self, channel: str, envelope: Envelope) -> None:
        with self._lock:
            targets = list(self._subscribers.get(channel, ()))
        for subscription in targets:
            subscription.queue.put_nowait(envelope)
        logger.debug("Published %s to %s (%d local subscribers)", envelope.type, channel, len(targets))

    async def subscribe(self, channel: str) -> Subscription:
        subscription = _QueueSubscription(self, channel)
        with self._lock:
            self._subscribers.setdefault(channel, set()).add(subscription)
        return subscription

    def _detach(self, subscription: _QueueSubscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.channel)
            if subscribers is None:
                return
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.channel]

    def subscriber_count(self, channel: str) -> int:
        with self._lock:
            return len(self._subscribers.get(channel, ()))


class _RedisSubscription(Subscription):
    def __init__(self, channel: str, pubsub):
        super().__init__(channel)
        self._pubsub = pubsub
        self._listener = pubsub.listen()

    async def __anext__(self) -> Envelope:
        while not self.closed:
            msg = await self._listener.__anext__()
            if msg is None or msg.get("type") != "message":
                continue
            try:
                return Envelope.from_dict(json.loads(msg["data"]))
            except (ValueError, KeyError) as exc:
                logger.error("Dropping malformed event on %s: %s", self.channel, exc)
        raise StopAsyncIteration

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._pubsub.unsubscribe(self.channel)
            await self._pubsub.aclose()
        except redis.RedisError as exc:
            logger.debug("Error closing Redis subscription %s: %s", self.channel, exc)


class RedisBroker(Broker):
    def __init__(self, redis_url: str):
        self._redis = redis.from_url(redis_url, decode_responses=True)
        logger.info("Redis broker initialized: %s", redis_url)

    async def publish(self, channel: str, envelope: Envelope) -> None:
        await self._redis.publish(channel, json.dumps(envelope.to_dict()))
        logger.debug("Published %s to %s", envelope.type, channel)

    async def subscribe(self, channel: str) -> Subscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        logger.debug("Subscribed to Redis channel: %s", channel)
        return _RedisSubscription(channel, pubsub)

    async def close(self) -> None:
        await self._redis.aclose()


def build_broker(kind: str, redis_url: str = "") -> Broker:
    if kind == "redis":
        if not redis_url:
            raise ValueError("REALTIME_BROKER=redis requires REDIS_URL")
        return RedisBroker(redis_url)
    if kind != "memory":
        raise ValueError(f"Unknown REALTIME_BROKER '{kind}'")
    return InMemoryBroker()
