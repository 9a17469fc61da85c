"""Realtime event envelopes and channel names."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

MESSAGE_CREATED = "message_created"
MESSAGE_EDITED = "message_edited"
MESSAGE_DELETED = "message_deleted"
REACTION_UPDATED = "reaction_updated"
MESSAGES_READ = "messages_read"
MEMBERS_CHANGED = "members_changed"
TYPING = "typing"
PRESENCE_CHANGED = "presence_changed"
SESSION_CLOSED = "session_closed"


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def typing_channel(conversation_id: str) -> str:
    return f"typing:{conversation_id}"


def presence_channel(user_id: str) -> str:
    return f"presence:{user_id}"


@dataclass
class Envelope:
    """What the Fan-out Router publishes and sessions receive.

    ``sequence`` is set only for pipeline events (message created/edited/deleted)
    and is strictly increasing per conversation. ``conversation_id`` is None for
    presence events, which are keyed by ``origin_user_id`` instead.
    """

    type: str
    payload: Dict[str, Any]
    conversation_id: Optional[str] = None
    sequence: Optional[int] = None
    origin_user_id: Optional[str] = None
    sent_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Envelope":
        return cls(
            type=data["type"],
            payload=data.get("payload") or {},
            conversation_id=data.get("conversation_id"),
            sequence=data.get("sequence"),
            origin_user_id=data.get("origin_user_id"),
            sent_at=data.get("sent_at") or datetime.utcnow().isoformat(),
        )
