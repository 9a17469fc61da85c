import asyncio

import pytest

from core.events import Envelope, MESSAGE_CREATED
from core.sessions import SessionRegistry


@pytest.fixture
def registry():
    return SessionRegistry(outbox_size=2)


def test_subscribe_reports_first_and_unsubscribe_reports_emptied(registry):
    s1 = registry.open_session("user-a")
    s2 = registry.open_session("user-b")

    assert registry.subscribe(s1.session_id, "c1") is True
    assert registry.subscribe(s2.session_id, "c1") is False
    # Re-subscribing is a no-op.
    assert registry.subscribe(s1.session_id, "c1") is False
    assert registry.sessions_for("c1") == frozenset({s1, s2})

    assert registry.unsubscribe(s1.session_id, "c1") is False
    assert registry.unsubscribe(s2.session_id, "c1") is True
    assert registry.sessions_for("c1") == frozenset()
    assert "c1" not in registry.subscribed_conversation_ids()


def test_unknown_session_raises_key_error(registry):
    with pytest.raises(KeyError):
        registry.subscribe("missing", "c1")
    with pytest.raises(KeyError):
        registry.unsubscribe("missing", "c1")


def test_duplicate_session_id_rejected(registry):
    registry.open_session("user-a", session_id="fixed")
    with pytest.raises(ValueError):
        registry.open_session("user-b", session_id="fixed")


def test_disconnect_removes_every_subscription_at_once(registry):
    s1 = registry.open_session("user-a")
    s2 = registry.open_session("user-b")
    registry.subscribe(s1.session_id, "c1")
    registry.subscribe(s1.session_id, "c2")
    registry.subscribe(s2.session_id, "c2")
    registry.watch_presence(s1.session_id, ["user-b", "user-c"])
    registry.watch_presence(s2.session_id, ["user-c"])

    result = registry.disconnect(s1.session_id)

    assert result.session is s1
    assert result.emptied_conversation_ids == {"c1"}
    assert result.unwatched_user_ids == {"user-b"}
    assert result.user_has_other_sessions is False
    assert s1.closed is True
    assert registry.get(s1.session_id) is None
    assert registry.sessions_for("c1") == frozenset()
    assert registry.sessions_for("c2") == frozenset({s2})
    assert registry.sessions_watching("user-c") == frozenset({s2})
    assert len(registry) == 1

    assert registry.disconnect(s1.session_id) is None


def test_disconnect_reports_other_sessions_of_same_user(registry):
    s1 = registry.open_session("user-a")
    s2 = registry.open_session("user-a")

    assert registry.disconnect(s1.session_id).user_has_other_sessions is True
    assert registry.disconnect(s2.session_id).user_has_other_sessions is False
    assert registry.sessions_of_user("user-a") == frozenset()


def test_watch_presence_returns_newly_watched_users(registry):
    s1 = registry.open_session("user-a")
    s2 = registry.open_session("user-b")

    assert registry.watch_presence(s1.session_id, ["user-c", "user-d"]) == {"user-c", "user-d"}
    assert registry.watch_presence(s2.session_id, ["user-c", "user-e"]) == {"user-e"}
    assert registry.watched_user_ids() == {"user-c", "user-d", "user-e"}


def test_idle_sessions_uses_last_touch(registry):
    s1 = registry.open_session("user-a")
    s2 = registry.open_session("user-b")
    registry.touch(s1.session_id, now=1000.0)
    registry.touch(s2.session_id, now=1100.0)

    idle = registry.idle_sessions(now=1125.0, timeout_seconds=120)

    assert idle == [s1]


def _created(sequence, conversation_id="c1"):
    return Envelope(
        type=MESSAGE_CREATED,
        payload={"sequence": sequence},
        conversation_id=conversation_id,
        sequence=sequence,
    )


def test_deliver_discards_stale_sequences_per_conversation(registry):
    session = registry.open_session("user-a")

    assert session.deliver(_created(2)) is True
    assert session.deliver(_created(1)) is False
    assert session.deliver(_created(2)) is False
    # Other conversations keep their own counter.
    assert session.deliver(_created(1, "c2")) is True
    assert session.outbox.qsize() == 2
    assert session.last_sequence("c1") == 2
    assert session.last_sequence("c2") == 1


def test_deliver_drops_when_outbox_full_and_after_close(registry):
    session = registry.open_session("user-a")
    session.deliver(_created(1))
    session.deliver(_created(2))

    assert session.deliver(_created(3)) is False
    assert session.dropped == 1
    # A dropped event does not advance the counter.
    assert session.last_sequence("c1") == 2

    session.outbox.get_nowait()
    registry.disconnect(session.session_id)
    assert session.deliver(_created(4)) is False


def test_unsequenced_events_always_delivered(registry):
    session = registry.open_session("user-a")
    typing = Envelope(type="typing", payload={}, conversation_id="c1")

    assert session.deliver(typing) is True
    assert session.deliver(typing) is True
    assert isinstance(session.outbox, asyncio.Queue)
