"""
archive_store.py
----------------
RecordVerify - Patient-Verified Health Records - Document archival (S3)
------------------------------------------------------------------------
Archives the original uploaded file in an S3 bucket and returns the public
URL stored as the record's file_url.

Object keys are "<epoch-millis>-<original name with whitespace as dashes>".
A URL is "remote" when it points at amazonaws.com or at the configured
public base URL; anything else (e.g. "/uploads/<name>") is a local file the
HTTP layer serves itself.

Errors from boto3 are wrapped in StorageError; upload_file reports a rejected
PUT as S3UploadFailedError, not ClientError. The pipeline treats a failed
put() as a degradation and falls back to the local copy.

Project: RecordVerify - Patient-Verified Health Records
"""

import logging
import os
import re
import time
from typing import Any, Optional
from urllib.parse import quote, unquote, urlparse

import boto3
from boto3.exceptions import Boto3Error
from botocore.exceptions import BotoCoreError, ClientError

from config import StorageConfig
from errors import StorageError

logger = logging.getLogger(__name__)


def object_key_for(original_name: str, now_ms: Optional[int] = None) -> str:
    """Build the S3 object key for an uploaded file."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    safe = re.sub(r"\s+", "-", os.path.basename(original_name or "document").strip())
    return f"{stamp}-{safe}"


class S3ArchiveStore:
    """
    S3 archival store.

    Args:
        config: StorageConfig (bucket, region, optional public base URL).
        client: Optional pre-built boto3 S3 client (tests pass a MagicMock).
    """

    def __init__(self, config: StorageConfig, client: Optional[Any] = None) -> None:
        self.config = config
        self._client = client

    @property
    def client(self) -> Any:
        # Created once and reused for connection pooling.
        if self._client is None:
            self._client = boto3.client("s3", region_name=self.config.region)
        return self._client

    def public_url(self, key: str) -> str:
        if self.config.public_base_url:
            return f"{self.config.public_base_url}/{quote(key)}"
        return f"https://{self.config.bucket_name}.s3.{self.config.region}.amazonaws.com/{quote(key)}"

    def is_remote_url(self, url: Optional[str]) -> bool:
        """True when *url* points at the archive rather than the local uploads dir."""
        if not url:
            return False
        if "amazonaws.com" in url:
            return True
        base = self.config.public_base_url
        return bool(base) and url.startswith(base)

    def put(self, local_path: str, original_name: str, mime_type: str) -> str:
        """
        Upload a local file to the bucket.

        Args:
            local_path:    File to upload; it is NOT deleted here.
            original_name: Client-supplied file name, used in the object key.
            mime_type:     Stored as the object's ContentType.

        Returns:
            str: Public URL of the archived object.

        Raises:
            StorageError: if archival is not configured, the file is missing
                          or the upload fails.
        """
        if not self.config.enabled:
            raise StorageError("Archival store is not configured (AWS_BUCKET_NAME).")
        if not os.path.isfile(local_path):
            raise StorageError(f"File does not exist at path: {local_path}")

        key = object_key_for(original_name)
        try:
            self.client.upload_file(
                local_path,
                self.config.bucket_name,
                key,
                ExtraArgs={"ContentType": mime_type},
            )
        except (Boto3Error, BotoCoreError, ClientError, OSError) as exc:
            logger.error("S3 upload of '%s' failed: %s", original_name, exc)
            raise StorageError(f"S3 upload failed: {exc}") from exc

        url = self.public_url(key)
        logger.info("Archived s3://%s/%s", self.config.bucket_name, key)
        return url

    def delete(self, url: str) -> None:
        """
        Delete the archived object a public URL points at.

        Raises:
            StorageError: if the URL has no key or the delete fails.
        """
        key = unquote(urlparse(url).path.rsplit("/", 1)[-1])
        if not key:
            raise StorageError(f"Cannot derive an object key from '{url}'.")
        try:
            self.client.delete_object(Bucket=self.config.bucket_name, Key=key)
        except (BotoCoreError, ClientError) as exc:
            logger.error("S3 delete of '%s' failed: %s", key, exc)
            raise StorageError(f"S3 delete failed: {exc}") from exc
        logger.info("Deleted s3://%s/%s", self.config.bucket_name, key)
