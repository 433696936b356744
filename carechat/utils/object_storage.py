"""
Object storage capability for chat media.
Wraps the private R2 bucket: presigned GET/PUT URLs and prefix deletion.
"""

import logging
from typing import Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..config import (
    R2_ACCESS_KEY_ID,
    R2_ACCOUNT_ID,
    R2_BUCKET_NAME,
    R2_SECRET_ACCESS_KEY,
)
from ..domain.chat.exceptions import ChatStorageFailure

logger = logging.getLogger(__name__)

# S3 DeleteObjects accepts at most 1000 keys per call
DELETE_BATCH_SIZE = 1000


def get_r2_client():
    """Get configured boto3 client for Cloudflare R2"""
    return boto3.client(
        "s3",
        endpoint_url=f"https://{R2_ACCOUNT_ID}.r2.cloudflarestorage.com",
        aws_access_key_id=R2_ACCESS_KEY_ID,
        aws_secret_access_key=R2_SECRET_ACCESS_KEY,
        config=Config(signature_version="s3v4"),
        region_name="auto",
    )


class R2ObjectStorage:
    """S3-compatible storage capability; objects stay private, access is by signed URL only"""

    def __init__(self, client=None, bucket: str = R2_BUCKET_NAME):
        self._client = client
        self.bucket = bucket

    @property
    def client(self):
        """Lazy load the boto3 client"""
        if self._client is None:
            self._client = get_r2_client()
        return self._client

    def presign_get(self, key: str, ttl_seconds: int) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={
                    "Bucket": self.bucket,
                    "Key": key,
                    "ResponseContentDisposition": "inline",
                },
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"❌ Failed to generate presigned GET URL for key {key}: {e}")
            raise ChatStorageFailure("Could not sign media URL") from e

    def presign_put(self, key: str, content_type: str, ttl_seconds: int) -> tuple[str, dict]:
        """Return an upload URL plus the headers the uploader must send verbatim"""
        try:
            url = self.client.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket, "Key": key, "ContentType": content_type},
                ExpiresIn=ttl_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"❌ Failed to generate presigned PUT URL for key {key}: {e}")
            raise ChatStorageFailure("Could not sign upload URL") from e
        return url, {"Content-Type": content_type}

    def delete_prefix(self, prefix: str) -> int:
        """Delete every object under prefix; returns how many were removed"""
        deleted = 0
        try:
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                keys = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
                for start in range(0, len(keys), DELETE_BATCH_SIZE):
                    batch = keys[start : start + DELETE_BATCH_SIZE]
                    response = self.client.delete_objects(
                        Bucket=self.bucket, Delete={"Objects": batch, "Quiet": True}
                    )
                    errors = response.get("Errors") or []
                    if errors:
                        first: Optional[dict] = errors[0]
                        raise ChatStorageFailure(
                            f"Failed to delete {len(errors)} object(s), first: {first.get('Key')}"
                        )
                    deleted += len(batch)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"❌ Failed to delete objects under {prefix}: {e}")
            raise ChatStorageFailure(f"Could not delete objects under {prefix}") from e
        return deleted
