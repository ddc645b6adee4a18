import time
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import pytest

from recording_ingest.backends import build_storage
from recording_ingest.config import StorageConfig
from recording_ingest.presign import LocalUrlIssuer, S3UrlIssuer
from recording_ingest.storage import LocalBlobStore, S3BlobStore


class TestS3UrlIssuer:
    """Presigning is computed locally by botocore, so no network is needed."""

    @pytest.fixture
    def issuer(self, s3_storage_config):
        return S3UrlIssuer(s3_storage_config)

    def test_upload_url_is_signed_for_put(self, issuer):
        before = int(time.time())
        presigned = issuer.issue_upload_url("recordings/abc.aac", "audio/aac")
        parsed = urlparse(presigned.url)
        query = parse_qs(parsed.query)

        assert parsed.netloc == "minio.test:9000"
        assert parsed.path == "/call-recordings/recordings/abc.aac"
        assert query["X-Amz-Expires"] == ["900"]
        assert "X-Amz-Signature" in query
        assert presigned.object_key == "recordings/abc.aac"
        assert before + 900 <= presigned.expires_at <= int(time.time()) + 900

    def test_download_url(self, issuer):
        presigned = issuer.issue_download_url("recordings/abc.aac")
        assert urlparse(presigned.url).path == "/call-recordings/recordings/abc.aac"
        assert presigned.expires_at is not None


class TestLocalUrlIssuer:
    def test_points_at_local_upload_endpoint_and_never_expires(self, storage_config):
        presigned = LocalUrlIssuer(storage_config).issue_upload_url("recordings/abc.aac", "audio/aac")
        assert presigned.url == "http://testserver/api/uploads/recordings/abc.aac"
        assert presigned.expires_at is None


class TestBuildStorage:
    def test_local_backend(self, storage_config):
        backend = build_storage(storage_config)
        assert isinstance(backend.blob_store, LocalBlobStore)
        assert isinstance(backend.url_issuer, LocalUrlIssuer)

    def test_s3_backend_shares_one_client(self, s3_storage_config):
        backend = build_storage(s3_storage_config)
        assert isinstance(backend.blob_store, S3BlobStore)
        assert isinstance(backend.url_issuer, S3UrlIssuer)
        assert backend.blob_store.client is backend.url_issuer.client

    def test_unknown_backend_is_rejected(self):
        with pytest.raises(ValueError, match="Unsupported STORAGE_BACKEND"):
            StorageConfig.from_settings(SimpleNamespace(STORAGE_BACKEND="ftp"))
