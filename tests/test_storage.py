"""
Tests for the content store backends.
"""

import io

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import ANY, Stubber

from pdfutility_backend.errors import ContentNotFoundError, StorageError
from pdfutility_backend.storage import LocalContentStore, S3ContentStore, build_content_store


@pytest.fixture
def s3_client():
    return boto3.client(
        "s3",
        region_name="us-east-1",
        aws_access_key_id="testing",
        aws_secret_access_key="testing",
    )


class TestLocalContentStore:
    def test_upload_download_delete(self, content_store):
        ref = content_store.upload(b"%PDF-data", "Quarterly Report.PDF", "application/pdf")

        assert ref.endswith("/quarterly-report.pdf")
        assert content_store.exists(ref)
        assert content_store.download(ref) == b"%PDF-data"

        content_store.delete(ref)
        assert not content_store.exists(ref)
        # Deleting twice is fine
        content_store.delete(ref)

    def test_refs_are_unique(self, content_store):
        first = content_store.upload(b"a", "same.pdf", "application/pdf")
        second = content_store.upload(b"b", "same.pdf", "application/pdf")
        assert first != second
        assert content_store.download(first) == b"a"

    def test_missing_ref(self, content_store):
        with pytest.raises(ContentNotFoundError):
            content_store.download("deadbeef/missing.pdf")

    def test_refs_cannot_escape_root(self, tmp_path):
        store = LocalContentStore(tmp_path / "root")
        (tmp_path / "secret.pdf").write_bytes(b"secret")

        with pytest.raises(ContentNotFoundError):
            store.download("../secret.pdf")
        assert not store.exists("../secret.pdf")

    def test_missing_ref_is_not_retryable(self, content_store):
        with pytest.raises(StorageError) as exc_info:
            content_store.download("nope/missing.pdf")
        assert exc_info.value.retryable is False


class TestS3ContentStore:
    def test_upload_puts_object_under_prefix(self, s3_client):
        store = S3ContentStore("bucket", prefix="pdf-jobs/", client=s3_client)
        with Stubber(s3_client) as stubber:
            stubber.add_response(
                "put_object",
                {},
                {"Bucket": "bucket", "Key": ANY, "Body": b"%PDF", "ContentType": "application/pdf"},
            )
            ref = store.upload(b"%PDF", "out.pdf", "application/pdf")
            stubber.assert_no_pending_responses()

        assert ref.endswith("/out.pdf")

    def test_download(self, s3_client):
        store = S3ContentStore("bucket", prefix="pdf-jobs/", client=s3_client)
        with Stubber(s3_client) as stubber:
            stubber.add_response(
                "get_object",
                {"Body": StreamingBody(io.BytesIO(b"%PDF-1.7"), len(b"%PDF-1.7"))},
                {"Bucket": "bucket", "Key": "pdf-jobs/abc/doc.pdf"},
            )
            assert store.download("abc/doc.pdf") == b"%PDF-1.7"

    def test_missing_key(self, s3_client):
        store = S3ContentStore("bucket", client=s3_client)
        with Stubber(s3_client) as stubber:
            stubber.add_client_error("get_object", service_error_code="NoSuchKey", http_status_code=404)
            with pytest.raises(ContentNotFoundError):
                store.download("abc/doc.pdf")

    def test_service_error_is_retryable(self, s3_client):
        store = S3ContentStore("bucket", client=s3_client)
        with Stubber(s3_client) as stubber:
            stubber.add_client_error("get_object", service_error_code="SlowDown", http_status_code=503)
            with pytest.raises(StorageError) as exc_info:
                store.download("abc/doc.pdf")
        assert not isinstance(exc_info.value, ContentNotFoundError)
        assert exc_info.value.retryable is True

    def test_exists(self, s3_client):
        store = S3ContentStore("bucket", client=s3_client)
        with Stubber(s3_client) as stubber:
            stubber.add_response("head_object", {}, {"Bucket": "bucket", "Key": "abc/doc.pdf"})
            stubber.add_client_error("head_object", service_error_code="404", http_status_code=404)
            assert store.exists("abc/doc.pdf") is True
            assert store.exists("abc/gone.pdf") is False

    def test_delete(self, s3_client):
        store = S3ContentStore("bucket", prefix="p/", client=s3_client)
        with Stubber(s3_client) as stubber:
            stubber.add_response("delete_object", {}, {"Bucket": "bucket", "Key": "p/abc/doc.pdf"})
            store.delete("abc/doc.pdf")
            stubber.assert_no_pending_responses()

    def test_requires_bucket(self, s3_client):
        with pytest.raises(StorageError):
            S3ContentStore("", client=s3_client)


class TestBuildContentStore:
    def test_local(self, tmp_path):
        store = build_content_store("local", local_root=tmp_path / "blobs")
        assert isinstance(store, LocalContentStore)

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            build_content_store("ftp")
