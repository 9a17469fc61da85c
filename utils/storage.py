"""S3 object storage for message attachments.

Only the returned URL is stored on the message; the bytes live in the bucket.
"""

import logging
import os
import uuid
from typing import Any, Dict

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import AWS_REGION, S3_MESSAGE_FILES_BUCKET, S3_PUBLIC_BASE_URL, STORAGE_BACKEND

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


class S3Storage:
    def __init__(
        self,
        *,
        bucket: str = S3_MESSAGE_FILES_BUCKET,
        region: str = AWS_REGION,
        public_base_url: str = S3_PUBLIC_BASE_URL,
        client: Any = None,
    ):
        self.bucket = bucket
        self.region = region
        self.public_base_url = public_base_url.rstrip("/")
        self._client = client

    @property
    def client(self):
        if self._client is None:
            session = boto3.session.Session()
            # Force signature version 4 (AWS4-HMAC-SHA256) - required by modern S3
            self._client = session.client(
                "s3",
                region_name=self.region,
                aws_access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
                aws_secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
                config=Config(signature_version="s3v4", s3={"addressing_style": "virtual"}),
            )
            logger.debug("Created S3 client for region: %s", self.region)
        return self._client

    def build_key(self, *, user_id: str, file_name: str) -> str:
        extension = os.path.splitext(file_name or "")[1].lower()
        return f"messages/{user_id}/{uuid.uuid4().hex}{extension}"

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def upload(self, data: bytes, *, key: str, content_type: str) -> str:
        """Upload bytes and return the object's public URL. Blocking; run in a threadpool."""
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error("S3 upload failed for bucket=%s, key=%s: %s", self.bucket, key, e)
            raise StorageError(str(e)) from e
        logger.info("Uploaded %d bytes to s3://%s/%s", len(data), self.bucket, key)
        return self.public_url(key)


class InMemoryStorage:
    """Object storage kept in a dict, for local development without AWS."""

    def __init__(self, *, base_url: str = "memory://message-files"):
        self.base_url = base_url
        self.objects: Dict[str, Dict[str, Any]] = {}

    def build_key(self, *, user_id: str, file_name: str) -> str:
        extension = os.path.splitext(file_name or "")[1].lower()
        return f"messages/{user_id}/{uuid.uuid4().hex}{extension}"

    def upload(self, data: bytes, *, key: str, content_type: str) -> str:
        self.objects[key] = {"data": data, "content_type": content_type}
        return f"{self.base_url}/{key}"


def build_storage(kind: str = STORAGE_BACKEND):
    if kind == "memory":
        return InMemoryStorage()
    return S3Storage()
