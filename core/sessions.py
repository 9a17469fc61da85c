"""Session registry: which live client sessions are subscribed to what.

A session is one realtime connection (one SSE stream, typically one browser
tab). It is subscribed to zero or more conversations and watches the presence
of zero or more users. All maps are guarded by one lock, so fan-out readers
always see a complete before- or after-mutation subscriber set.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from core.events import Envelope

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Session:
    session_id: str
    user_id: str
    outbox: asyncio.Queue
    conversation_ids: Set[str] = field(default_factory=set)
    watched_user_ids: Set[str] = field(default_factory=set)
    last_seen_at: float = field(default_factory=time.monotonic)
    _last_sequence: Dict[str, int] = field(default_factory=dict)
    dropped: int = 0
    closed: bool = False

    def deliver(self, envelope: Envelope) -> bool:
        """Queue an envelope for the client, keeping per-conversation order.

        A sequenced event at or below the last one delivered for its
        conversation is stale and discarded; the client re-fetches history
        from the store instead. A full outbox drops the event.
        """
        if self.closed:
            return False
        if envelope.sequence is not None and envelope.conversation_id is not None:
            last = self._last_sequence.get(envelope.conversation_id)
            if last is not None and envelope.sequence <= last:
                logger.debug(
                    "Discarding stale event | session=%s | conversation=%s | seq=%s <= %s",
                    self.session_id,
                    envelope.conversation_id,
                    envelope.sequence,
                    last,
                )
                return False
        try:
            self.outbox.put_nowait(envelope)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(
                "Session outbox full, dropping %s | session=%s", envelope.type, self.session_id
            )
            return False
        if envelope.sequence is not None and envelope.conversation_id is not None:
            self._last_sequence[envelope.conversation_id] = envelope.sequence
        return True

    def last_sequence(self, conversation_id: str) -> Optional[int]:
        return self._last_sequence.get(conversation_id)


@dataclass
class Disconnected:
    session: Session
    emptied_conversation_ids: Set[str] = field(default_factory=set)
    unwatched_user_ids: Set[str] = field(default_factory=set)
    user_has_other_sessions: bool = False


class SessionRegistry:
    def __init__(self, *, outbox_size: int = 500):
        self._outbox_size = outbox_size
        self._lock = Lock()
        self._sessions: Dict[str, Session] = {}
        self._by_conversation: Dict[str, Set[str]] = {}
        self._by_watched_user: Dict[str, Set[str]] = {}
        self._by_user: Dict[str, Set[str]] = {}

    # --- lifecycle ---

    def open_session(self, user_id: str, *, session_id: Optional[str] = None) -> Session:
        session = Session(
            session_id=session_id or uuid.uuid4().hex,
            user_id=user_id,
            outbox=asyncio.Queue(maxsize=self._outbox_size),
        )
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session {session.session_id} already exists")
            self._sessions[session.session_id] = session
            self._by_user.setdefault(user_id, set()).add(session.session_id)
        logger.info("Session opened | session=%s | user=%s", session.session_id, user_id)
        return session

    def disconnect(self, session_id: str) -> Optional[Disconnected]:
        """Remove a session and all its subscriptions in one step."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
            if session is None:
                return None
            result = Disconnected(session=session)
            for conversation_id in session.conversation_ids:
                if self._discard(self._by_conversation, conversation_id, session_id):
                    result.emptied_conversation_ids.add(conversation_id)
            for user_id in session.watched_user_ids:
                if self._discard(self._by_watched_user, user_id, session_id):
                    result.unwatched_user_ids.add(user_id)
            self._discard(self._by_user, session.user_id, session_id)
            result.user_has_other_sessions = session.user_id in self._by_user
            session.conversation_ids = set()
            session.watched_user_ids = set()
            session.closed = True
        logger.info("Session closed | session=%s | user=%s", session_id, session.user_id)
        return result

    def idle_sessions(self, *, now: float, timeout_seconds: float) -> List[Session]:
        with self._lock:
            return [
                s for s in self._sessions.values() if now - s.last_seen_at > timeout_seconds
            ]

    def touch(self, session_id: str, *, now: Optional[float] = None) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.last_seen_at = now if now is not None else time.monotonic()

    # --- subscriptions ---

    def subscribe(self, session_id: str, conversation_id: str) -> bool:
        """Subscribe a session; returns True when it is the conversation's first subscriber."""
        with self._lock:
            session = self._require(session_id)
            if conversation_id in session.conversation_ids:
                return False
            first = conversation_id not in self._by_conversation
            session.conversation_ids = session.conversation_ids | {conversation_id}
            self._by_conversation.setdefault(conversation_id, set()).add(session_id)
            return first

    def unsubscribe(self, session_id: str, conversation_id: str) -> bool:
        """Unsubscribe a session; returns True when no subscriber is left."""
        with self._lock:
            session = self._require(session_id)
            if conversation_id not in session.conversation_ids:
                return False
            session.conversation_ids = session.conversation_ids - {conversation_id}
            return self._discard(self._by_conversation, conversation_id, session_id)

    def watch_presence(self, session_id: str, user_ids: Iterable[str]) -> Set[str]:
        """Watch users' presence; returns the users that had no watcher before."""
        newly_watched = set()
        with self._lock:
            session = self._require(session_id)
            for user_id in user_ids:
                if user_id in session.watched_user_ids:
                    continue
                if user_id not in self._by_watched_user:
                    newly_watched.add(user_id)
                session.watched_user_ids = session.watched_user_ids | {user_id}
                self._by_watched_user.setdefault(user_id, set()).add(session_id)
        return newly_watched

    # --- lookups ---

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(session_id)

    def sessions_for(self, conversation_id: str) -> FrozenSet[Session]:
        with self._lock:
            return frozenset(
                self._sessions[sid] for sid in self._by_conversation.get(conversation_id, ())
            )

    def sessions_watching(self, user_id: str) -> FrozenSet[Session]:
        with self._lock:
            return frozenset(
                self._sessions[sid] for sid in self._by_watched_user.get(user_id, ())
            )

    def sessions_of_user(self, user_id: str) -> FrozenSet[Session]:
        with self._lock:
            return frozenset(self._sessions[sid] for sid in self._by_user.get(user_id, ()))

    def watched_user_ids(self) -> Set[str]:
        with self._lock:
            return set(self._by_watched_user)

    def subscribed_conversation_ids(self) -> Set[str]:
        with self._lock:
            return set(self._by_conversation)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # --- internals (caller holds the lock) ---

    def _require(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(session_id)
        return session

    @staticmethod
    def _discard(index: Dict[str, Set[str]], key: str, session_id: str) -> bool:
        members = index.get(key)
        if members is None:
            return False
        members.discard(session_id)
        if not members:
            del index[key]
            return True
        return False
