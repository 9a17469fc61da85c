"""Process-wide realtime components, built once at startup.

Handlers receive the context through the ``get_realtime`` dependency; nothing
here is a module-level singleton.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional

from fastapi import Request

from config import (
    PRESENCE_AWAY_TIMEOUT_SECONDS,
    PRESENCE_ENABLED,
    PRESENCE_HEARTBEAT_SECONDS,
    PRESENCE_MISS_THRESHOLD,
    PRESENCE_SWEEP_SECONDS,
    REALTIME_BROKER,
    REDIS_URL,
    SESSION_IDLE_TIMEOUT_SECONDS,
    SESSION_OUTBOX_SIZE,
)
from core.broker import Broker, build_broker
from core.fanout import FanoutRouter
from core.presence import PresenceTracker, PresenceTransition
from core.rate_limit import RateLimiter
from core.sessions import SessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class RealtimeContext:
    broker: Broker
    registry: SessionRegistry
    presence: PresenceTracker
    fanout: FanoutRouter
    rate_limiter: RateLimiter
    session_factory: Optional[Callable[[], Any]] = None
    storage: Any = None
    presence_enabled: bool = True
    _sweeper: Optional[asyncio.Task] = field(default=None, repr=False)

    async def start(self, *, interval_seconds: float = PRESENCE_SWEEP_SECONDS) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(self._sweep_forever(interval_seconds))
            logger.info("Presence sweeper started (every %ss)", interval_seconds)

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        await self.fanout.close()
        await self.broker.close()
        logger.info("Realtime context stopped")

    async def broadcast_presence(self, transitions: List[PresenceTransition]) -> None:
        for transition in transitions:
            await self.fanout.publish_presence(transition)

    async def sweep_once(
        self, *, now: Optional[datetime] = None, monotonic_now: Optional[float] = None
    ) -> List[PresenceTransition]:
        """Expire idle sessions, then resolve every tracked user's presence."""
        now = now or datetime.utcnow()
        expired = await self.fanout.expire_idle(
            now=monotonic_now if monotonic_now is not None else time.monotonic(),
            timeout_seconds=SESSION_IDLE_TIMEOUT_SECONDS,
        )
        transitions: List[PresenceTransition] = []
        if self.presence_enabled:
            for result in expired:
                if not result.user_has_other_sessions:
                    transition = self.presence.disconnect(result.session.user_id, now)
                    if transition is not None:
                        transitions.append(transition)
            transitions.extend(self.presence.sweep(now))
        if transitions:
            await self._persist_and_broadcast(transitions)
        forgotten = self.presence.forget_offline()
        if forgotten:
            logger.debug("Forgot %d offline users", forgotten)
        return transitions

    async def _persist_and_broadcast(self, transitions: List[PresenceTransition]) -> None:
        if self.session_factory is not None:
            from routers.messaging import repository as messaging_repository

            db = self.session_factory()
            try:
                messaging_repository.save_presence_states(db, states=[t.state for t in transitions])
                db.commit()
            except Exception as exc:
                db.rollback()
                logger.error("Failed to persist %d presence transitions: %s", len(transitions), exc)
            finally:
                db.close()
        await self.broadcast_presence(transitions)

    async def _sweep_forever(self, interval_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Presence sweep failed: %s", exc, exc_info=True)


def build_realtime(
    *,
    broker: Optional[Broker] = None,
    broker_kind: str = REALTIME_BROKER,
    redis_url: str = REDIS_URL,
    session_factory: Optional[Callable[[], Any]] = None,
    storage: Any = None,
    presence_enabled: bool = PRESENCE_ENABLED,
) -> RealtimeContext:
    broker = broker or build_broker(broker_kind, redis_url)
    registry = SessionRegistry(outbox_size=SESSION_OUTBOX_SIZE)
    presence = PresenceTracker(
        away_timeout_seconds=PRESENCE_AWAY_TIMEOUT_SECONDS,
        heartbeat_interval_seconds=PRESENCE_HEARTBEAT_SECONDS,
        miss_threshold=PRESENCE_MISS_THRESHOLD,
    )
    return RealtimeContext(
        broker=broker,
        registry=registry,
        presence=presence,
        fanout=FanoutRouter(broker, registry),
        rate_limiter=RateLimiter(redis_url=redis_url if broker_kind == "redis" else None),
        session_factory=session_factory,
        storage=storage,
        presence_enabled=presence_enabled,
    )


def get_realtime(request: Request) -> RealtimeContext:
    return request.app.state.realtime
