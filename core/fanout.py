"""Fan-out router: the only publisher of realtime events.

Publishing goes through the broker so every process sees every event. Each
process runs one pump per channel that has local subscribers; a pump delivers
what it receives to the sessions the registry currently lists for that
channel.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from core.broker import Broker, Subscription
from core.events import (
    MESSAGE_CREATED,
    PRESENCE_CHANGED,
    SESSION_CLOSED,
    TYPING,
    Envelope,
    conversation_channel,
    presence_channel,
    typing_channel,
)
from core.presence import PresenceTransition
from core.sessions import Disconnected, Session, SessionRegistry

logger = logging.getLogger(__name__)


class FanoutRouter:
    def __init__(self, broker: Broker, registry: SessionRegistry, *, retry_seconds: float = 1.0):
        self.broker = broker
        self.registry = registry
        self._retry_seconds = retry_seconds
        # Dropped once no holder or waiter references the lock.
        self._conversation_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._pumps: Dict[str, Tuple[asyncio.Task, Subscription]] = {}

    def ordered(self, conversation_id: str) -> asyncio.Lock:
        """Lock held from sequence allocation until publish, one per conversation.

        Events for a conversation reach the broker in the order the pipeline
        produced them.
        """
        lock = self._conversation_locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._conversation_locks[conversation_id] = lock
        return lock

    # --- publishing ---

    async def publish(self, envelope: Envelope) -> bool:
        if envelope.conversation_id is None:
            raise ValueError("Conversation events need a conversation_id")
        if envelope.type == MESSAGE_CREATED and envelope.payload.get("deleted_at"):
            logger.debug("Not publishing deleted message %s", envelope.payload.get("id"))
            return False
        return await self._publish(conversation_channel(envelope.conversation_id), envelope)

    async def publish_typing(self, conversation_id: str, user_id: str, is_typing: bool) -> bool:
        envelope = Envelope(
            type=TYPING,
            payload={"user_id": user_id, "is_typing": is_typing},
            conversation_id=conversation_id,
            origin_user_id=user_id,
        )
        return await self._publish(typing_channel(conversation_id), envelope)

    async def publish_presence(self, transition: PresenceTransition) -> bool:
        payload = transition.state.to_dict()
        payload["previous_status"] = transition.previous
        envelope = Envelope(
            type=PRESENCE_CHANGED,
            payload=payload,
            origin_user_id=transition.user_id,
        )
        return await self._publish(presence_channel(transition.user_id), envelope)

    async def _publish(self, channel: str, envelope: Envelope) -> bool:
        try:
            await self.broker.publish(channel, envelope)
            return True
        except Exception as exc:
            # The write is already durable; clients catch up from the store.
            logger.warning("Fan-out publish failed on %s (%s dropped): %s", channel, envelope.type, exc)
            return False

    # --- session orchestration ---

    async def subscribe(self, session_id: str, conversation_id: str) -> None:
        if self.registry.subscribe(session_id, conversation_id):
            await self._start_pump(conversation_channel(conversation_id))
            await self._start_pump(typing_channel(conversation_id))

    async def unsubscribe(self, session_id: str, conversation_id: str) -> None:
        if self.registry.unsubscribe(session_id, conversation_id):
            await self._stop_pumps([conversation_channel(conversation_id), typing_channel(conversation_id)])

    async def watch_presence(self, session_id: str, user_ids: Iterable[str]) -> None:
        for user_id in sorted(self.registry.watch_presence(session_id, user_ids)):
            await self._start_pump(presence_channel(user_id))

    async def disconnect(self, session_id: str) -> Optional[Disconnected]:
        result = self.registry.disconnect(session_id)
        if result is None:
            return None
        channels = []
        for conversation_id in result.emptied_conversation_ids:
            channels.extend([conversation_channel(conversation_id), typing_channel(conversation_id)])
        channels.extend(presence_channel(user_id) for user_id in result.unwatched_user_ids)
        await self._stop_pumps(channels)
        try:
            result.session.outbox.put_nowait(Envelope(type=SESSION_CLOSED, payload={}))
        except asyncio.QueueFull:
            pass  # the stream also checks session.closed on every heartbeat
        return result

    async def expire_idle(self, *, now: float, timeout_seconds: float) -> List[Disconnected]:
        expired = []
        for session in self.registry.idle_sessions(now=now, timeout_seconds=timeout_seconds):
            result = await self.disconnect(session.session_id)
            if result is not None:
                logger.info("Expired idle session %s (user %s)", session.session_id, session.user_id)
                expired.append(result)
        return expired

    async def close(self) -> None:
        await self._stop_pumps(list(self._pumps))

    def active_channels(self) -> List[str]:
        return sorted(self._pumps)

    # --- pumps ---

    def _targets(self, envelope: Envelope) -> FrozenSet[Session]:
        if envelope.type == PRESENCE_CHANGED:
            return self.registry.sessions_watching(envelope.origin_user_id)
        return self.registry.sessions_for(envelope.conversation_id)

    def _dispatch(self, envelope: Envelope) -> int:
        if envelope.type == MESSAGE_CREATED and envelope.payload.get("deleted_at"):
            return 0
        delivered = 0
        for session in self._targets(envelope):
            if envelope.type == TYPING and session.user_id == envelope.origin_user_id:
                continue
            if session.deliver(envelope):
                delivered += 1
        return delivered

    async def _start_pump(self, channel: str) -> None:
        if channel in self._pumps:
            return
        subscription = await self.broker.subscribe(channel)
        if channel in self._pumps:
            await subscription.close()
            return
        self._pumps[channel] = (asyncio.create_task(self._pump(channel, subscription)), subscription)
        logger.debug("Fan-out pump started for %s", channel)

    async def _stop_pumps(self, channels: List[str]) -> None:
        pumps = [self._pumps.pop(channel) for channel in channels if channel in self._pumps]
        for task, _ in pumps:
            task.cancel()
        if pumps:
            await asyncio.gather(*(task for task, _ in pumps), return_exceptions=True)
            # A pump cancelled before its first step never reaches its finally block.
            for _, subscription in pumps:
                await subscription.close()
            logger.debug("Fan-out pumps stopped for %s", ", ".join(channels))

    async def _pump(self, channel: str, subscription: Optional[Subscription]) -> None:
        try:
            while True:
                try:
                    if subscription is None:
                        subscription = await self.broker.subscribe(channel)
                    async for envelope in subscription:
                        self._dispatch(envelope)
                    return
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    logger.error("Fan-out pump for %s failed, resubscribing: %s", channel, exc)
                    if subscription is not None:
                        await subscription.close()
                        subscription = None
                    await asyncio.sleep(self._retry_seconds)
        finally:
            if subscription is not None:
                await subscription.close()
