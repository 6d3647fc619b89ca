"""
Optional S3 publishing of finished PDFs.

When ``s3.bucket`` is configured, the API can hand out presigned download URLs
instead of streaming PDF bytes. Artifacts are content addressed, so every
object is uploaded at most once per process under ``<prefix>/<ref>.pdf``.

When running locally without a bucket or AWS credentials, publishing is
skipped and ``publish`` returns None.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Optional, Set

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .configuration import S3Settings
from .models import Artifact

logger = logging.getLogger(__name__)


class S3Publisher:
    """
    Uploads artifacts to S3 and signs download URLs.

    Attributes:
        bucket: Target bucket; empty disables publishing
        prefix: Key prefix for every object
        expiration: Lifetime of presigned URLs in seconds
    """

    def __init__(self, settings: S3Settings, client: Any = None) -> None:
        self.bucket = settings.bucket
        self.prefix = settings.prefix.strip("/")
        self.expiration = settings.presign_expiration
        self._client = client
        self._published: Set[str] = set()
        self._lock = Lock()

    def _get_client(self):
        """
        Get or create the S3 client.

        Credential errors surface during the first upload rather than here.
        """
        if self._client is None:
            if not self.bucket:
                logger.warning("S3 bucket not configured")
                return None
            try:
                self._client = boto3.client("s3")
            except BotoCoreError as e:
                logger.warning(f"Failed to create S3 client: {e}")
                return None
        return self._client

    def is_configured(self) -> bool:
        return bool(self.bucket)

    def object_key(self, artifact: Artifact) -> str:
        return f"{self.prefix}/{artifact.ref}.pdf" if self.prefix else f"{artifact.ref}.pdf"

    def publish(self, artifact: Artifact, data: bytes, filename: str) -> Optional[str]:
        """
        Upload an artifact unless it was already published.

        Args:
            artifact: Descriptor of the PDF
            data: The PDF bytes
            filename: Suggested download name

        Returns:
            The S3 key, or None if S3 is unavailable or the upload failed
        """
        if not self.bucket:
            logger.warning("S3 bucket not configured, skipping upload")
            return None

        key = self.object_key(artifact)
        with self._lock:
            if key in self._published:
                return key

        client = self._get_client()
        if client is None:
            logger.warning("S3 client not available, skipping upload")
            return None

        try:
            logger.info(f"Uploading {artifact.ref} to s3://{self.bucket}/{key}")
            client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType="application/pdf",
                ContentDisposition=f'attachment; filename="{filename}"',
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 upload failed: {e}")
            return None

        with self._lock:
            self._published.add(key)
        return key

    def generate_presigned_url(self, key: str) -> Optional[str]:
        """
        Generate a presigned URL for downloading an object.

        Returns:
            Presigned URL string, or None if generation fails
        """
        client = self._get_client()
        if client is None:
            return None

        try:
            url = client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.expiration,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to generate presigned URL: {e}")
            return None
        logger.info(f"Generated presigned URL for {key} (expires in {self.expiration}s)")
        return url
