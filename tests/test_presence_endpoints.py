from datetime import datetime

import pytest

from core.errors import Forbidden
from models import UserStatus
from routers.messaging import service as messaging_service


def test_unknown_user_defaults_to_offline(client):
    response = client.get("/presence/user-x")
    assert response.status_code == 200
    assert response.json() == {
        "user_id": "user-x",
        "status": "offline",
        "last_seen": None,
        "last_activity_at": None,
    }


def test_update_status_persists_and_reports(client, current_user, test_db):
    response = client.put("/presence/status", json={"status": "away"})
    assert response.status_code == 200
    assert response.json()["status"] == "away"
    assert response.json()["last_seen"] is not None

    row = test_db.query(UserStatus).filter(UserStatus.user_id == "user-a").one()
    assert row.status == "away"

    response = client.put("/presence/status", json={"status": "online"})
    assert response.json()["status"] == "online"


def test_away_status_kept_until_activity(client):
    client.post("/presence/heartbeat", json={"active": True})
    assert client.put("/presence/status", json={"status": "away"}).json()["status"] == "away"

    assert client.post("/presence/heartbeat", json={"active": False}).json()["status"] == "away"
    assert client.post("/presence/heartbeat", json={"active": True}).json()["status"] == "online"


def test_update_status_rejects_unknown_value(client):
    assert client.put("/presence/status", json={"status": "busy"}).status_code in (400, 422)


def test_heartbeat_brings_user_online(client, current_user):
    response = client.post("/presence/heartbeat", json={"active": False})
    assert response.status_code == 200
    assert response.json()["status"] == "online"

    current_user.user_id = "user-b"
    batch = client.get("/presence", params={"user_ids": "user-a,user-c,user-a"})
    statuses = [(p["user_id"], p["status"]) for p in batch.json()["presence"]]
    assert statuses == [("user-a", "online"), ("user-c", "offline")]


def test_presence_falls_back_to_persisted_row(client, test_db):
    test_db.add(UserStatus(user_id="user-q", status="away", last_seen=datetime(2024, 1, 1)))
    test_db.commit()

    payload = client.get("/presence/user-q").json()
    assert payload["status"] == "away"
    assert payload["last_seen"] == "2024-01-01T00:00:00"


@pytest.mark.asyncio
async def test_presence_disabled_rejects_status_updates(test_db, realtime):
    realtime.presence_enabled = False
    with pytest.raises(Forbidden):
        await messaging_service.update_status(test_db, realtime, current_user_id="user-a", status="online")
    with pytest.raises(Forbidden):
        await messaging_service.heartbeat(test_db, realtime, current_user_id="user-a")

    # Activity is ignored rather than rejected.
    await messaging_service.record_activity(test_db, realtime, user_id="user-a")
    assert realtime.presence.get("user-a") is None
