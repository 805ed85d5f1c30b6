"""Tests for report_dispatch/storage/documents.py (boto3 client mocked)."""
from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from report_dispatch.core.errors import DocumentAccessError
from report_dispatch.storage.documents import S3DocumentStore


def test_presigned_get_url():
    client = MagicMock()
    client.generate_presigned_url.return_value = "https://bucket.s3.test/key?sig"
    store = S3DocumentStore(bucket="report-cards", client=client)

    url = store.get_time_limited_access("2025/alice.pdf", 900)

    assert url == "https://bucket.s3.test/key?sig"
    client.generate_presigned_url.assert_called_once_with(
        ClientMethod="get_object",
        Params={"Bucket": "report-cards", "Key": "2025/alice.pdf"},
        ExpiresIn=900,
    )


def test_client_error_wrapped():
    client = MagicMock()
    client.generate_presigned_url.side_effect = ClientError(
        {"Error": {"Code": "AccessDenied", "Message": "denied"}}, "GetObject"
    )
    store = S3DocumentStore(bucket="report-cards", client=client)

    with pytest.raises(DocumentAccessError, match="2025/alice.pdf"):
        store.get_time_limited_access("2025/alice.pdf")


def test_non_positive_ttl_rejected():
    store = S3DocumentStore(bucket="report-cards", client=MagicMock())
    with pytest.raises(DocumentAccessError):
        store.get_time_limited_access("2025/alice.pdf", 0)


def test_from_settings_builds_regional_client(settings):
    with patch("report_dispatch.storage.documents.boto3.client") as mock_client:
        S3DocumentStore.from_settings(settings)
    mock_client.assert_called_once_with("s3", region_name=settings.s3_region)
