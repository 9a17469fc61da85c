"""Per-user presence state machine.

    ONLINE --(idle > away_timeout)--> AWAY --(activity)--> ONLINE
    any    --(disconnect | no heartbeat for interval * miss_threshold)--> OFFLINE

Every operation returns a ``PresenceTransition`` only when the resolved status
actually changes, so callers broadcast at most once per change. Timestamps are
naive UTC datetimes supplied by the caller.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

ONLINE = "online"
AWAY = "away"
OFFLINE = "offline"
STATUSES = (ONLINE, AWAY, OFFLINE)


@dataclass
class PresenceState:
    user_id: str
    status: str = OFFLINE
    last_seen: Optional[datetime] = None
    last_activity_at: Optional[datetime] = None
    last_heartbeat_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "status": self.status,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "last_activity_at": self.last_activity_at.isoformat() if self.last_activity_at else None,
        }


@dataclass
class PresenceTransition:
    user_id: str
    previous: str
    current: str
    state: PresenceState


class PresenceTracker:
    def __init__(
        self,
        *,
        away_timeout_seconds: int = 300,
        heartbeat_interval_seconds: int = 30,
        miss_threshold: int = 3,
    ):
        self.away_timeout = timedelta(seconds=away_timeout_seconds)
        self.offline_timeout = timedelta(seconds=heartbeat_interval_seconds * miss_threshold)
        self._lock = Lock()
        self._states: Dict[str, PresenceState] = {}

    def get(self, user_id: str) -> Optional[PresenceState]:
        with self._lock:
            state = self._states.get(user_id)
            return PresenceState(**vars(state)) if state else None

    def record_activity(self, user_id: str, now: datetime) -> Optional[PresenceTransition]:
        with self._lock:
            state = self._state(user_id)
            state.last_activity_at = now
            state.last_heartbeat_at = now
            return self._move(state, ONLINE, now)

    def heartbeat(self, user_id: str, now: datetime) -> Optional[PresenceTransition]:
        """Liveness signal only. It can move ONLINE to AWAY, but never AWAY back to ONLINE."""
        with self._lock:
            state = self._state(user_id)
            state.last_heartbeat_at = now
            if state.status == OFFLINE or state.last_activity_at is None:
                # A heartbeat from an offline user means the client came back.
                state.last_activity_at = now
            if state.status == AWAY:
                return None
            return self._move(state, self._resolve_idle(state, now), now)

    def disconnect(self, user_id: str, now: datetime) -> Optional[PresenceTransition]:
        with self._lock:
            state = self._state(user_id)
            return self._move(state, OFFLINE, now)

    def set_status(self, user_id: str, status: str, now: datetime) -> Optional[PresenceTransition]:
        if status not in STATUSES:
            raise ValueError(f"Unknown presence status '{status}'")
        if status == ONLINE:
            return self.record_activity(user_id, now)
        if status == OFFLINE:
            return self.disconnect(user_id, now)
        with self._lock:
            state = self._state(user_id)
            state.last_heartbeat_at = now
            return self._move(state, AWAY, now)

    def sweep(self, now: datetime) -> List[PresenceTransition]:
        transitions = []
        with self._lock:
            for state in self._states.values():
                transition = self._move(state, self._resolve(state, now), now)
                if transition is not None:
                    transitions.append(transition)
        return transitions

    def forget_offline(self) -> int:
        """Drop offline users from memory; the persisted row keeps their last_seen."""
        with self._lock:
            offline = [uid for uid, s in self._states.items() if s.status == OFFLINE]
            for uid in offline:
                del self._states[uid]
        return len(offline)

    # --- internals (caller holds the lock) ---

    def _state(self, user_id: str) -> PresenceState:
        state = self._states.get(user_id)
        if state is None:
            state = PresenceState(user_id=user_id)
            self._states[user_id] = state
        return state

    def _resolve_idle(self, state: PresenceState, now: datetime) -> str:
        if state.last_activity_at is not None and now - state.last_activity_at > self.away_timeout:
            return AWAY
        return ONLINE

    def _resolve(self, state: PresenceState, now: datetime) -> str:
        if state.status == OFFLINE:
            return OFFLINE
        if state.last_heartbeat_at is None or now - state.last_heartbeat_at > self.offline_timeout:
            return OFFLINE
        if state.status == AWAY:
            # Only activity brings an away user back.
            return AWAY
        return self._resolve_idle(state, now)

    def _move(self, state: PresenceState, status: str, now: datetime) -> Optional[PresenceTransition]:
        if state.status == status:
            return None
        previous = state.status
        state.status = status
        if status in (AWAY, OFFLINE):
            state.last_seen = now
        logger.debug("Presence %s: %s -> %s", state.user_id, previous, status)
        return PresenceTransition(
            user_id=state.user_id,
            previous=previous,
            current=status,
            state=PresenceState(**vars(state)),
        )
