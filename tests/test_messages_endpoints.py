import uuid
from datetime import datetime

import pytest

from models import Conversation, Message, ThreadSubscription


@pytest.fixture
def group(client, current_user):
    current_user.user_id = "user-a"
    response = client.post("/conversations/groups", json={"title": "Team", "member_ids": ["user-b", "user-c"]})
    assert response.status_code == 200
    return response.json()


def _send(client, conversation_id, content="hello", **extra):
    return client.post(f"/conversations/{conversation_id}/messages", json={"content": content, **extra})


def test_send_assigns_increasing_sequences_and_bumps_updated_at(client, group, test_db):
    before = test_db.query(Conversation).filter(Conversation.id == uuid.UUID(group["id"])).one().updated_at

    first = _send(client, group["id"], "one")
    second = _send(client, group["id"], "two")

    assert first.status_code == 200
    assert first.json()["sequence"] == 1
    assert second.json()["sequence"] == 2
    assert first.json()["sender_id"] == "user-a"
    assert first.json()["deleted_at"] is None

    test_db.expire_all()
    conversation = test_db.query(Conversation).filter(Conversation.id == uuid.UUID(group["id"])).one()
    assert conversation.last_sequence == 2
    assert conversation.updated_at > before


def test_send_trims_content_and_rejects_empty(client, group):
    assert _send(client, group["id"], "  padded  ").json()["content"] == "padded"

    response = _send(client, group["id"], "   ")
    assert response.status_code == 400
    assert response.headers["X-Error-Code"] == "VALIDATION"


def test_send_with_file_only(client, group):
    response = client.post(
        f"/conversations/{group['id']}/messages",
        json={"content": None, "file_url": "https://files.example.com/messages/u/x.png"},
    )
    assert response.status_code == 200
    assert response.json()["content"] is None
    assert response.json()["file_url"].endswith("x.png")


def test_non_member_cannot_send(client, group, current_user):
    current_user.user_id = "user-z"
    assert _send(client, group["id"]).status_code == 403
    assert _send(client, str(uuid.uuid4())).status_code == 404


def test_send_rate_limited(client, group, monkeypatch):
    from routers.messaging import service as messaging_service

    monkeypatch.setattr(messaging_service, "MESSAGE_MAX_PER_MINUTE", 2)
    assert _send(client, group["id"], "1").status_code == 200
    assert _send(client, group["id"], "2").status_code == 200

    response = _send(client, group["id"], "3")
    assert response.status_code == 429
    assert int(response.headers["Retry-After"]) >= 1


def test_list_messages_oldest_first_with_paging(client, group):
    for i in range(5):
        _send(client, group["id"], f"m{i}")

    response = client.get(f"/conversations/{group['id']}/messages", params={"limit": 2})
    payload = response.json()
    assert [m["content"] for m in payload["messages"]] == ["m3", "m4"]
    assert payload["has_more"] is True

    older = client.get(
        f"/conversations/{group['id']}/messages",
        params={"limit": 10, "before_sequence": payload["messages"][0]["sequence"]},
    ).json()
    assert [m["content"] for m in older["messages"]] == ["m0", "m1", "m2"]
    assert older["has_more"] is False


def test_edit_keeps_sequence_and_sets_edited_at(client, group):
    message = _send(client, group["id"], "draft").json()

    response = client.patch(f"/messages/{message['id']}", json={"content": "final"})
    assert response.status_code == 200
    edited = response.json()
    assert edited["content"] == "final"
    assert edited["sequence"] == message["sequence"]
    assert edited["edited_at"] is not None


def test_only_sender_can_edit_or_delete(client, group, current_user):
    message = _send(client, group["id"], "mine").json()

    current_user.user_id = "user-b"
    response = client.patch(f"/messages/{message['id']}", json={"content": "hijack"})
    assert response.status_code == 401
    assert response.headers["X-Error-Code"] == "UNAUTHORIZED"
    assert client.delete(f"/messages/{message['id']}").status_code == 401


def test_delete_tombstones_message(client, group, current_user):
    keep = _send(client, group["id"], "keep").json()
    gone = _send(client, group["id"], "gone").json()

    response = client.delete(f"/messages/{gone['id']}")
    assert response.status_code == 200
    assert response.json()["deleted_at"] is not None
    # Deleting twice is harmless.
    assert client.delete(f"/messages/{gone['id']}").status_code == 200

    listing = client.get(f"/conversations/{group['id']}/messages").json()
    assert [m["id"] for m in listing["messages"]] == [keep["id"]]

    direct = client.get(f"/messages/{gone['id']}")
    assert direct.status_code == 200
    assert direct.json()["deleted_at"] is not None

    assert client.patch(f"/messages/{gone['id']}", json={"content": "again"}).status_code == 404

    current_user.user_id = "user-z"
    assert client.get(f"/messages/{keep['id']}").status_code == 403


def test_sequences_stay_unique_after_edits_and_deletes(client, group, test_db):
    first = _send(client, group["id"], "a").json()
    client.patch(f"/messages/{first['id']}", json={"content": "a2"})
    client.delete(f"/messages/{first['id']}")
    second = _send(client, group["id"], "b").json()

    assert second["sequence"] > first["sequence"]
    sequences = [m.sequence for m in test_db.query(Message).all()]
    assert len(sequences) == len(set(sequences))


def test_thread_reply_flow(client, group, current_user, test_db):
    parent = _send(client, group["id"], "root").json()

    current_user.user_id = "user-b"
    reply = client.post(f"/messages/{parent['id']}/thread", json={"content": "reply"})
    assert reply.status_code == 200
    assert reply.json()["parent_message_id"] == parent["id"]

    thread = client.get(f"/messages/{parent['id']}/thread").json()
    assert thread["parent"]["thread_count"] == 1
    assert [m["content"] for m in thread["messages"]] == ["reply"]
    assert client.get(f"/messages/{parent['id']}/thread/count").json()["thread_count"] == 1

    # Replies stay out of the main timeline unless asked for.
    main = client.get(f"/conversations/{group['id']}/messages").json()["messages"]
    assert [m["content"] for m in main] == ["root"]
    everything = client.get(
        f"/conversations/{group['id']}/messages", params={"include_thread_replies": "true"}
    ).json()["messages"]
    assert [m["content"] for m in everything] == ["root", "reply"]

    # Replying subscribes the replier.
    subscription = test_db.query(ThreadSubscription).filter(ThreadSubscription.user_id == "user-b").one()
    assert subscription.subscribed is True

    # One level deep only.
    nested = client.post(f"/messages/{reply.json()['id']}/thread", json={"content": "deeper"})
    assert nested.status_code == 400

    client.delete(f"/messages/{reply.json()['id']}")
    assert client.get(f"/messages/{parent['id']}/thread/count").json()["thread_count"] == 0
    test_db.expire_all()
    assert test_db.query(Message).filter(Message.id == uuid.UUID(parent["id"])).one().thread_count == 0


def test_thread_subscription_toggle(client, group):
    parent = _send(client, group["id"], "root").json()

    response = client.delete(f"/messages/{parent['id']}/thread/subscription")
    assert response.json() == {"message_id": parent["id"], "subscribed": False}
    response = client.post(f"/messages/{parent['id']}/thread/subscription")
    assert response.json() == {"message_id": parent["id"], "subscribed": True}


def test_reply_to_deleted_parent_not_found(client, group):
    parent = _send(client, group["id"], "root").json()
    client.delete(f"/messages/{parent['id']}")

    assert client.post(f"/messages/{parent['id']}/thread", json={"content": "late"}).status_code == 404


def test_thread_readable_after_root_deleted(client, group):
    parent = _send(client, group["id"], "root").json()
    client.post(f"/messages/{parent['id']}/thread", json={"content": "kept"})
    assert client.delete(f"/messages/{parent['id']}").status_code == 200

    thread = client.get(f"/messages/{parent['id']}/thread")
    assert thread.status_code == 200
    assert thread.json()["parent"]["deleted_at"] is not None
    assert [m["content"] for m in thread.json()["messages"]] == ["kept"]
    assert client.get(f"/messages/{parent['id']}/thread/count").json()["thread_count"] == 1


def test_typing_relay_returns_ack(client, group, current_user):
    response = client.post(f"/conversations/{group['id']}/typing", json={"is_typing": True})
    assert response.status_code == 200
    assert response.json() == {"conversation_id": group["id"], "is_typing": True}

    current_user.user_id = "user-z"
    assert client.post(f"/conversations/{group['id']}/typing", json={"is_typing": True}).status_code == 403


def test_message_created_at_is_utc_iso(client, group):
    created_at = _send(client, group["id"]).json()["created_at"]
    assert datetime.fromisoformat(created_at) <= datetime.utcnow()
