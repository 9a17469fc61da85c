import uuid

import pytest
from sqlalchemy.exc import SQLAlchemyError

from models import Conversation, ConversationMember
from routers.messaging import repository as messaging_repository
from routers.messaging import service as messaging_service
from core.errors import Conflict, Unavailable, ValidationFailed


def _create_group(client, current_user, *, title="Team", members=("user-b", "user-c")):
    current_user.user_id = "user-a"
    response = client.post("/conversations/groups", json={"title": title, "member_ids": list(members)})
    assert response.status_code == 200, response.text
    return response.json()


def test_create_dm_is_idempotent_in_both_directions(client, current_user, test_db):
    response = client.post("/conversations/dm", json={"peer_user_id": "user-b"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["kind"] == "dm"
    assert payload["created"] is True
    assert sorted(m["user_id"] for m in payload["members"]) == ["user-a", "user-b"]

    again = client.post("/conversations/dm", json={"peer_user_id": "user-b"})
    assert again.json()["id"] == payload["id"]
    assert again.json()["created"] is False

    current_user.user_id = "user-b"
    reverse = client.post("/conversations/dm", json={"peer_user_id": "user-a"})
    assert reverse.json()["id"] == payload["id"]
    assert test_db.query(Conversation).filter(Conversation.kind == "dm").count() == 1


def test_create_dm_with_self_rejected(client):
    response = client.post("/conversations/dm", json={"peer_user_id": "user-a"})
    assert response.status_code == 400
    assert response.headers["X-Error-Code"] == "VALIDATION"


def test_dm_creation_race_returns_the_winner(test_db, monkeypatch):
    winner = messaging_service.create_or_get_dm(test_db, current_user_id="user-a", peer_user_id="user-b")

    real_lookup = messaging_repository.get_dm_by_pair_key
    calls = {"n": 0}

    def stale_lookup(db, *, pair_key):
        # The first lookup runs before the other request commits.
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real_lookup(db, pair_key=pair_key)

    monkeypatch.setattr(messaging_repository, "get_dm_by_pair_key", stale_lookup)
    monkeypatch.setattr(messaging_repository, "find_dm_between_users", lambda db, *, user_ids: None)

    loser = messaging_service.create_or_get_dm(test_db, current_user_id="user-b", peer_user_id="user-a")

    assert loser["id"] == winner["id"]
    assert loser["created"] is False
    assert test_db.query(Conversation).count() == 1


def test_dm_creation_race_without_visible_winner_conflicts(test_db, monkeypatch):
    messaging_service.create_or_get_dm(test_db, current_user_id="user-a", peer_user_id="user-b")
    monkeypatch.setattr(messaging_repository, "get_dm_by_pair_key", lambda db, *, pair_key: None)
    monkeypatch.setattr(messaging_repository, "find_dm_between_users", lambda db, *, user_ids: None)

    with pytest.raises(Conflict):
        messaging_service.create_or_get_dm(test_db, current_user_id="user-a", peer_user_id="user-b")


def test_create_group_makes_creator_admin(client, current_user):
    payload = _create_group(client, current_user, members=("user-b", "user-c", "user-b", "user-a"))

    assert payload["kind"] == "group"
    assert payload["title"] == "Team"
    assert payload["last_sequence"] == 0
    roles = {m["user_id"]: m["role"] for m in payload["members"]}
    assert roles == {"user-a": "admin", "user-b": "member", "user-c": "member"}


def test_create_group_validation(client):
    assert client.post("/conversations/groups", json={"title": "   ", "member_ids": ["user-b"]}).status_code == 400
    assert client.post("/conversations/groups", json={"title": "Solo", "member_ids": ["user-a"]}).status_code == 400


def test_create_group_rolls_back_on_member_failure(test_db, monkeypatch):
    real_add = messaging_repository.add_member
    calls = {"n": 0}

    def flaky_add(db, **kwargs):
        calls["n"] += 1
        if calls["n"] == 2:
            raise SQLAlchemyError("insert failed")
        return real_add(db, **kwargs)

    monkeypatch.setattr(messaging_repository, "add_member", flaky_add)

    with pytest.raises(Unavailable):
        messaging_service.create_group(
            test_db, current_user_id="user-a", title="Team", member_ids=["user-b", "user-c"]
        )
    assert test_db.query(Conversation).count() == 0
    assert test_db.query(ConversationMember).count() == 0


def test_list_conversations_most_recent_first(client, current_user):
    first = _create_group(client, current_user, title="First")
    second = _create_group(client, current_user, title="Second")

    client.post(f"/conversations/{first['id']}/messages", json={"content": "bump"})

    response = client.get("/conversations")
    assert response.status_code == 200
    conversations = response.json()["conversations"]
    assert [c["id"] for c in conversations] == [first["id"], second["id"]]
    assert conversations[0]["last_message"]["content"] == "bump"
    assert conversations[1]["last_message"] is None

    current_user.user_id = "user-z"
    assert client.get("/conversations").json() == {"conversations": []}


def test_get_conversation_requires_membership(client, current_user):
    group = _create_group(client, current_user)

    assert client.get(f"/conversations/{group['id']}").status_code == 200

    current_user.user_id = "user-z"
    response = client.get(f"/conversations/{group['id']}")
    assert response.status_code == 403
    assert response.headers["X-Error-Code"] == "FORBIDDEN"

    assert client.get(f"/conversations/{uuid.uuid4()}").status_code == 404
    assert client.get("/conversations/not-a-uuid").status_code == 400


def test_add_members_admin_only_and_skips_existing(client, current_user):
    group = _create_group(client, current_user)

    response = client.post(f"/conversations/{group['id']}/members", json={"user_ids": ["user-b", "user-d"]})
    assert response.status_code == 200
    assert response.json()["added"] == ["user-d"]
    assert len(response.json()["members"]) == 4

    current_user.user_id = "user-b"
    response = client.post(f"/conversations/{group['id']}/members", json={"user_ids": ["user-e"]})
    assert response.status_code == 403


def test_add_members_to_dm_rejected(client):
    dm = client.post("/conversations/dm", json={"peer_user_id": "user-b"}).json()
    response = client.post(f"/conversations/{dm['id']}/members", json={"user_ids": ["user-c"]})
    assert response.status_code == 400


def test_remove_member_is_admin_only(client, current_user):
    group = _create_group(client, current_user)

    response = client.delete(f"/conversations/{group['id']}/members/user-b")
    assert response.status_code == 200
    assert [m["user_id"] for m in response.json()["members"]] == ["user-a", "user-c"]

    assert client.delete(f"/conversations/{group['id']}/members/user-b").status_code == 404

    current_user.user_id = "user-c"
    assert client.delete(f"/conversations/{group['id']}/members/user-a").status_code == 403


def test_last_admin_leaving_promotes_longest_standing_member(client, current_user, test_db):
    group = _create_group(client, current_user)

    response = client.post(f"/conversations/{group['id']}/leave")
    assert response.status_code == 200
    payload = response.json()
    assert payload["promoted"] == "user-b"
    assert {m["user_id"]: m["role"] for m in payload["members"]} == {"user-b": "admin", "user-c": "member"}

    current_user.user_id = "user-a"
    assert client.get(f"/conversations/{group['id']}").status_code == 403


def test_last_member_can_leave_group(client, current_user):
    group = _create_group(client, current_user, members=("user-b",))

    assert client.post(f"/conversations/{group['id']}/leave").json()["promoted"] == "user-b"

    current_user.user_id = "user-b"
    response = client.post(f"/conversations/{group['id']}/leave")
    assert response.status_code == 200
    assert response.json()["members"] == []
    assert response.json()["promoted"] is None
    assert client.get("/conversations").json()["conversations"] == []


def test_leaving_a_dm_rejected(client):
    dm = client.post("/conversations/dm", json={"peer_user_id": "user-b"}).json()
    response = client.post(f"/conversations/{dm['id']}/leave")
    assert response.status_code == 400


def test_dm_pair_key_is_order_independent():
    assert messaging_service.dm_pair_key("b", "a") == messaging_service.dm_pair_key("a", "b") == "a:b"


def test_create_dm_requires_peer(test_db):
    with pytest.raises(ValidationFailed):
        messaging_service.create_or_get_dm(test_db, current_user_id="user-a", peer_user_id="  ")
