"""
Object storage access for media files and GPX tracks.

Talks to MinIO (or any S3-compatible service) through boto3 and issues
presigned URLs so clients upload and download file content directly.
"""

import asyncio
import logging
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from .config import get_settings

logger = logging.getLogger(__name__)


class ObjectStorage:
    """Presigned URL issuance and object reads against one bucket."""

    def __init__(
        self,
        bucket_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
    ):
        settings = get_settings()
        self._bucket = bucket_name or settings.s3_bucket
        self._endpoint_url = endpoint_url or settings.s3_endpoint_url
        self._region = settings.s3_region
        self._access_key = settings.s3_access_key
        self._secret_key = settings.s3_secret_key
        self._default_expiry = settings.presigned_url_expiry_seconds
        self._client = None

    @property
    def bucket(self) -> str:
        return self._bucket

    @property
    def client(self):
        """Lazy-initialize the boto3 S3 client."""
        if self._client is None:
            kwargs = {
                "service_name": "s3",
                "region_name": self._region,
                "aws_access_key_id": self._access_key,
                "aws_secret_access_key": self._secret_key,
                # Path-style addressing is required by MinIO
                "config": Config(signature_version="s3v4", s3={"addressing_style": "path"}),
            }
            if self._endpoint_url:
                kwargs["endpoint_url"] = self._endpoint_url
            self._client = boto3.client(**kwargs)
        return self._client

    async def ensure_bucket_exists(self) -> None:
        """Create the bucket on startup if it is missing."""
        try:
            await asyncio.to_thread(self.client.head_bucket, Bucket=self._bucket)
            logger.info(f"Bucket '{self._bucket}' already exists")
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code not in ("404", "NoSuchBucket", "NotFound"):
                logger.error(f"Error checking for bucket '{self._bucket}': {e}")
                raise
            await asyncio.to_thread(self.client.create_bucket, Bucket=self._bucket)
            logger.info(f"Bucket '{self._bucket}' created")

    async def generate_presigned_put_url(
        self,
        object_name: str,
        content_type: str,
        expires_in: Optional[int] = None,
    ) -> str:
        """Presigned PUT URL for uploading ``object_name``."""
        return self.client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self._bucket, "Key": object_name, "ContentType": content_type},
            ExpiresIn=expires_in or self._default_expiry,
        )

    async def generate_presigned_get_url(
        self,
        object_name: str,
        expires_in: Optional[int] = None,
    ) -> str:
        """Presigned GET URL for downloading ``object_name``."""
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self._bucket, "Key": object_name},
            ExpiresIn=expires_in or self._default_expiry,
        )

    async def get_object_content(self, object_name: str) -> bytes:
        """Read an object's raw bytes."""
        response = await asyncio.to_thread(
            self.client.get_object, Bucket=self._bucket, Key=object_name
        )
        body = response["Body"]
        try:
            return await asyncio.to_thread(body.read)
        finally:
            body.close()


# Global storage instance
_storage: Optional[ObjectStorage] = None


def get_object_storage() -> ObjectStorage:
    """Get the global object storage instance."""
    global _storage
    if _storage is None:
        _storage = ObjectStorage()
    return _storage
