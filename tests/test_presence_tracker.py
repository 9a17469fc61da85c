from datetime import datetime, timedelta

import pytest

from core.presence import AWAY, OFFLINE, ONLINE, PresenceState, PresenceTracker

T0 = datetime(2024, 1, 1, 12, 0, 0)


@pytest.fixture
def tracker():
    return PresenceTracker(away_timeout_seconds=300, heartbeat_interval_seconds=30, miss_threshold=3)


def at(seconds):
    return T0 + timedelta(seconds=seconds)


def test_activity_brings_user_online_once(tracker):
    transition = tracker.record_activity("u1", T0)
    assert transition.previous == OFFLINE
    assert transition.current == ONLINE
    assert transition.state.last_activity_at == T0

    # Already online: no second broadcast.
    assert tracker.record_activity("u1", at(5)) is None


def test_away_only_after_idle_exceeds_timeout(tracker):
    tracker.record_activity("u1", T0)
    # Heartbeats keep the connection alive while the user is idle.
    for seconds in range(30, 300, 30):
        assert tracker.heartbeat("u1", at(seconds)) is None
    assert tracker.heartbeat("u1", at(299)) is None
    assert tracker.heartbeat("u1", at(300)) is None

    transition = tracker.heartbeat("u1", at(301))
    assert transition.current == AWAY
    assert transition.state.last_seen == at(301)


def test_sweep_moves_idle_user_to_away(tracker):
    tracker.record_activity("u1", T0)
    tracker.heartbeat("u1", at(280))

    assert tracker.sweep(at(299)) == []
    transitions = tracker.sweep(at(301))
    assert [(t.user_id, t.current) for t in transitions] == [("u1", AWAY)]
    assert tracker.sweep(at(302)) == []


def test_activity_returns_away_user_to_online(tracker):
    tracker.record_activity("u1", T0)
    tracker.heartbeat("u1", at(301))

    transition = tracker.record_activity("u1", at(302))
    assert (transition.previous, transition.current) == (AWAY, ONLINE)


def test_missed_heartbeats_mark_offline(tracker):
    tracker.record_activity("u1", T0)

    assert tracker.sweep(at(90)) == []
    transitions = tracker.sweep(at(91))
    assert len(transitions) == 1
    assert transitions[0].current == OFFLINE
    assert transitions[0].state.last_seen == at(91)


def test_heartbeat_after_offline_comes_back_online(tracker):
    tracker.record_activity("u1", T0)
    tracker.sweep(at(200))

    transition = tracker.heartbeat("u1", at(210))
    assert (transition.previous, transition.current) == (OFFLINE, ONLINE)


def test_disconnect_sets_offline_and_last_seen(tracker):
    tracker.record_activity("u1", T0)

    transition = tracker.disconnect("u1", at(10))
    assert transition.current == OFFLINE
    assert tracker.get("u1").last_seen == at(10)
    assert tracker.disconnect("u1", at(11)) is None


def test_explicit_away_survives_heartbeats(tracker):
    tracker.record_activity("u1", T0)
    tracker.set_status("u1", AWAY, at(5))

    assert tracker.heartbeat("u1", at(30)) is None
    assert tracker.heartbeat("u1", at(60)) is None
    assert tracker.get("u1").status == AWAY
    assert tracker.sweep(at(61)) == []

    transition = tracker.record_activity("u1", at(70))
    assert (transition.previous, transition.current) == (AWAY, ONLINE)


def test_set_status_validates_and_applies(tracker):
    with pytest.raises(ValueError):
        tracker.set_status("u1", "busy", T0)

    assert tracker.set_status("u1", AWAY, T0).current == AWAY
    assert tracker.set_status("u1", ONLINE, at(1)).current == ONLINE
    assert tracker.set_status("u1", OFFLINE, at(2)).current == OFFLINE


def test_get_returns_a_copy(tracker):
    tracker.record_activity("u1", T0)
    state = tracker.get("u1")
    state.status = AWAY

    assert tracker.get("u1").status == ONLINE
    assert tracker.get("unknown") is None


def test_forget_offline_drops_only_offline_users(tracker):
    tracker.record_activity("u1", T0)
    tracker.record_activity("u2", T0)
    tracker.disconnect("u1", at(10))

    assert tracker.forget_offline() == 1
    assert tracker.get("u1") is None
    assert tracker.get("u2").status == ONLINE
    assert tracker.forget_offline() == 0


def test_state_to_dict():
    state = PresenceState(user_id="u1", status=AWAY, last_seen=T0)
    assert state.to_dict() == {
        "user_id": "u1",
        "status": AWAY,
        "last_seen": T0.isoformat(),
        "last_activity_at": None,
    }
