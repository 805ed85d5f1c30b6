"""
Document store access for report card PDFs.

Issues time-limited download URLs for objects in the report card bucket.
URLs are created just before a send and never persisted on the queue entry.

Dependencies: boto3
"""
from __future__ import annotations

from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from report_dispatch.core.errors import DocumentAccessError
from report_dispatch.core.settings import Settings


class DocumentStore(Protocol):
    def get_time_limited_access(self, document_key: str, ttl_seconds: int) -> str: ...


class S3DocumentStore:
    """S3 client for report card downloads (presigned GET URLs only)."""

    def __init__(self, bucket: str, region: str = "af-south-1", client=None) -> None:
        """
        Initialize S3 client for the report card bucket.

        Args:
            bucket: S3 bucket name holding generated report cards
            region: AWS region for the bucket
            client: Pre-built boto3 S3 client (optional)
        """
        self._bucket = bucket
        self._region = region
        self._s3_client = client or boto3.client("s3", region_name=region)

    @classmethod
    def from_settings(cls, settings: Settings) -> S3DocumentStore:
        return cls(bucket=settings.s3_bucket, region=settings.s3_region)

    def get_time_limited_access(self, document_key: str, ttl_seconds: int = 3600) -> str:
        """
        Generate a presigned URL for downloading a report card.

        Args:
            document_key: S3 object key
            ttl_seconds: URL expiry in seconds

        Returns:
            str: presigned GET URL

        Raises:
            DocumentAccessError: If the URL cannot be generated
        """
        if ttl_seconds <= 0:
            raise DocumentAccessError(f"ttl_seconds must be positive, got {ttl_seconds}")
        try:
            return self._s3_client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": self._bucket, "Key": document_key},
                ExpiresIn=ttl_seconds,
            )
        except (ClientError, BotoCoreError) as exc:
            raise DocumentAccessError(
                f"Could not presign s3://{self._bucket}/{document_key}: {exc}"
            ) from exc
