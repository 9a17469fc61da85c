from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from core.errors import Unavailable
from routers.messaging import files as files_router
from routers.messaging import service as messaging_service
from utils.storage import InMemoryStorage, S3Storage, StorageError, build_storage


def test_upload_image_returns_url(client, realtime):
    response = client.post("/files", files={"file": ("cat.PNG", b"\x89PNG-bytes", "image/png")})

    assert response.status_code == 200
    payload = response.json()
    assert payload["file_type"] == "image/png"
    assert payload["file_size"] == len(b"\x89PNG-bytes")
    assert payload["url"].startswith("memory://message-files/messages/user-a/")
    assert payload["url"].endswith(".png")
    key = payload["url"][len("memory://message-files/"):]
    assert realtime.storage.objects[key]["data"] == b"\x89PNG-bytes"


def test_upload_then_send_as_message(client):
    url = client.post("/files", files={"file": ("doc.pdf", b"%PDF", "application/pdf")}).json()["url"]
    group = client.post("/conversations/groups", json={"title": "Docs", "member_ids": ["user-b"]}).json()

    sent = client.post(f"/conversations/{group['id']}/messages", json={"file_url": url})
    assert sent.status_code == 200
    assert sent.json()["file_url"] == url


def test_upload_rejects_disallowed_type(client):
    response = client.post("/files", files={"file": ("run.sh", b"echo", "application/x-sh")})
    assert response.status_code == 400
    assert response.headers["X-Error-Code"] == "VALIDATION"


def test_upload_rejects_empty_file(client):
    assert client.post("/files", files={"file": ("empty.png", b"", "image/png")}).status_code == 400


def test_upload_rejects_oversized_file(client, monkeypatch):
    monkeypatch.setattr(files_router, "FILE_MAX_BYTES", 8)
    response = client.post("/files", files={"file": ("big.png", b"x" * 9, "image/png")})
    assert response.status_code == 400


def test_upload_without_storage_is_unavailable(client, realtime):
    realtime.storage = None
    response = client.post("/files", files={"file": ("cat.png", b"data", "image/png")})
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_storage_failure_maps_to_unavailable(realtime):
    class BrokenStorage(InMemoryStorage):
        def upload(self, data, *, key, content_type):
            raise StorageError("bucket unreachable")

    realtime.storage = BrokenStorage()
    with pytest.raises(Unavailable):
        await messaging_service.upload_file(
            realtime, current_user_id="user-a", file_name="a.png", content_type="image/png", data=b"1"
        )


def test_s3_storage_put_object_and_url():
    client = MagicMock()
    storage = S3Storage(bucket="files", region="us-east-2", public_base_url="https://cdn.example.com/", client=client)

    key = storage.build_key(user_id="U1", file_name="report.PDF")
    assert key.startswith("messages/U1/") and key.endswith(".pdf")

    url = storage.upload(b"data", key=key, content_type="application/pdf")
    assert url == f"https://cdn.example.com/{key}"
    client.put_object.assert_called_once_with(
        Bucket="files", Key=key, Body=b"data", ContentType="application/pdf"
    )

    bare = S3Storage(bucket="files", region="us-east-2", public_base_url="", client=client)
    assert bare.public_url("k") == "https://files.s3.us-east-2.amazonaws.com/k"


def test_s3_storage_wraps_client_errors():
    client = MagicMock()
    client.put_object.side_effect = ClientError({"Error": {"Code": "AccessDenied", "Message": "no"}}, "PutObject")
    storage = S3Storage(bucket="files", region="us-east-2", public_base_url="", client=client)

    with pytest.raises(StorageError):
        storage.upload(b"data", key="k", content_type="image/png")


def test_build_storage_kinds():
    assert isinstance(build_storage("memory"), InMemoryStorage)
    assert isinstance(build_storage("s3"), S3Storage)
