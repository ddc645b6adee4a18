import io
import os
from dataclasses import replace
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from recording_ingest import errors
from recording_ingest.locations import LocalLocation, RemoteLocation
from recording_ingest.storage import (
    LocalBlobStore,
    S3BlobStore,
    build_object_key,
    content_type_for,
    ensure_bucket,
    ensure_bucket_cors,
    recording_name,
)


def client_error(code: str, operation: str = "HeadObject") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class TestNaming:
    def test_recording_names_are_unique_per_attempt(self):
        first = recording_name("rec123", "call.m4a")
        second = recording_name("rec123", "call.m4a")
        assert first != second
        assert first.startswith("rec123_") and first.endswith(".m4a")

    def test_recording_name_defaults_to_aac(self):
        assert recording_name("rec123", None).endswith(".aac")

    def test_recording_name_strips_unsafe_characters(self):
        name = recording_name("../rec/1", "x.mp3")
        assert "/" not in name and ".." not in name

    def test_object_key_uses_prefix_and_extension(self):
        key = build_object_key("dir/call.WAV", prefix="recordings")
        assert key.startswith("recordings/") and key.endswith(".wav")
        assert build_object_key(None).endswith(".aac")

    @pytest.mark.parametrize(
        "name,expected",
        [("a.mp3", "audio/mpeg"), ("a.m4a", "audio/mp4"), ("a.wav", "audio/wav"), ("a.bin", "audio/aac"), ("a", "audio/aac")],
    )
    def test_content_type_by_extension(self, name, expected):
        assert content_type_for(name) == expected


class TestLocalBlobStore:
    @pytest.fixture
    def store(self, storage):
        return storage.blob_store

    def test_put_and_read_back(self, store, storage_config):
        location = store.put(b"0123456789", "rec_1.aac")
        assert isinstance(location, LocalLocation)
        assert location.path.startswith(storage_config.recordings_dir)
        assert store.size(location) == 10
        assert store.read_range(location, 0, 4) == b"0123"
        assert store.read_range(location, 8, 100) == b"89"

    def test_read_past_end_is_empty(self, store):
        location = store.put(b"abc", "rec_2.aac")
        assert store.read_range(location, 3, 10) == b""
        assert store.read_range(location, 0, 0) == b""

    def test_put_accepts_file_objects(self, store):
        location = store.put(io.BytesIO(b"streamed"), "rec_3.aac")
        assert store.read_range(location, 0, 100) == b"streamed"

    def test_put_leaves_no_partial_files(self, store, storage_config):
        store.put(b"data", "rec_4.aac")
        assert os.listdir(storage_config.recordings_dir) == ["rec_4.aac"]

    @pytest.mark.parametrize("hint", ["", "..", "a/b.aac", "a\\b.aac", "..evil.aac"])
    def test_put_rejects_path_like_names(self, store, hint):
        with pytest.raises(errors.ValidationError):
            store.put(b"x", hint)

    def test_put_rejects_paths_over_column_length(self, storage_config):
        store = LocalBlobStore(replace(storage_config, max_path_length=20))
        with pytest.raises(errors.ValidationError):
            store.put(b"x", "a_rather_long_recording_name.aac")

    def test_delete_then_missing(self, store):
        location = store.put(b"abc", "rec_5.aac")
        store.delete(location)
        with pytest.raises(errors.BlobNotFoundError):
            store.size(location)
        with pytest.raises(errors.BlobNotFoundError):
            store.delete(location)

    def test_discard_tolerates_missing_blobs(self, store):
        store.discard(LocalLocation("/nonexistent/rec.aac"))

    def test_remote_locations_are_not_found_locally(self, store):
        with pytest.raises(errors.BlobNotFoundError):
            store.read_range(RemoteLocation("recordings/x.aac"), 0, 10)

    def test_direct_upload_then_adopt(self, store, storage_config):
        written = store.receive_direct_upload("uploads/abc.aac", b"payload")
        adopted = store.adopt("uploads/abc.aac", "rec_abc.aac")

        assert adopted == LocalLocation(os.path.join(storage_config.recordings_dir, "rec_abc.aac"))
        assert store.read_range(adopted, 0, 100) == b"payload"
        assert not os.path.exists(written.path)

    def test_upload_after_adopt_leaves_recording_alone(self, store):
        store.receive_direct_upload("uploads/abc.aac", b"original")
        adopted = store.adopt("uploads/abc.aac", "rec_abc.aac")

        store.receive_direct_upload("uploads/abc.aac", b"replaced")

        assert store.read_range(adopted, 0, 100) == b"original"

    def test_adopt_missing_upload(self, store):
        with pytest.raises(errors.BlobNotFoundError):
            store.adopt("uploads/missing.aac", "rec.aac")

    @pytest.mark.parametrize("key", ["../../etc/passwd", "uploads/../secret.aac", "recordings/abc.aac", "abc.aac"])
    def test_adopt_rejects_keys_outside_upload_area(self, store, key):
        with pytest.raises(errors.ValidationError):
            store.adopt(key, "rec.aac")

    def test_direct_upload_outside_upload_area(self, store):
        with pytest.raises(errors.ValidationError):
            store.receive_direct_upload("recordings/abc.aac", b"payload")


class TestS3BlobStore:
    @pytest.fixture
    def client(self):
        return MagicMock()

    @pytest.fixture
    def store(self, s3_storage_config, client):
        return S3BlobStore(s3_storage_config, client=client)

    def test_put_uploads_under_prefix(self, store, client):
        location = store.put(b"audio", "rec_1.m4a")
        assert location == RemoteLocation("recordings/rec_1.m4a")
        args, kwargs = client.upload_fileobj.call_args
        assert args[1:] == ("call-recordings", "recordings/rec_1.m4a")
        assert kwargs["ExtraArgs"] == {"ContentType": "audio/mp4"}

    def test_put_failure_is_transient(self, store, client):
        client.upload_fileobj.side_effect = client_error("InternalError", "PutObject")
        with pytest.raises(errors.TransientStorageError):
            store.put(b"audio", "rec_1.aac")

    def test_read_range_requests_only_the_span(self, store, client):
        client.get_object.return_value = {"Body": io.BytesIO(b"x" * 10)}
        data = store.read_range(RemoteLocation("recordings/a.aac"), 10, 10)
        assert data == b"x" * 10
        client.get_object.assert_called_once_with(
            Bucket="call-recordings",
            Key="recordings/a.aac",
            Range="bytes=10-19",
        )

    def test_read_past_end_is_empty(self, store, client):
        client.get_object.side_effect = client_error("InvalidRange", "GetObject")
        assert store.read_range(RemoteLocation("recordings/a.aac"), 500, 10) == b""

    def test_size_from_head(self, store, client):
        client.head_object.return_value = {"ContentLength": 1234}
        assert store.size(RemoteLocation("recordings/a.aac")) == 1234

    def test_delete_missing_object(self, store, client):
        client.head_object.side_effect = client_error("404")
        with pytest.raises(errors.BlobNotFoundError):
            store.delete(RemoteLocation("recordings/a.aac"))
        client.delete_object.assert_not_called()

    def test_adopt_existing_object(self, store, client):
        client.head_object.return_value = {"ContentLength": 42}
        assert store.adopt("uploads/a.aac", "rec.aac") == RemoteLocation("uploads/a.aac")

    def test_adopt_empty_object(self, store, client):
        client.head_object.return_value = {"ContentLength": 0}
        with pytest.raises(errors.ValidationError):
            store.adopt("uploads/a.aac", "rec.aac")

    def test_adopt_rejects_stored_recording_keys(self, store, client):
        client.head_object.return_value = {"ContentLength": 42}
        with pytest.raises(errors.ValidationError):
            store.adopt("recordings/rec_1.m4a", "rec.aac")
        client.head_object.assert_not_called()

    def test_local_locations_are_not_found_remotely(self, store):
        with pytest.raises(errors.BlobNotFoundError):
            store.size(LocalLocation("/data/a.aac"))


class TestBucketSetup:
    def test_creates_missing_bucket(self):
        client = MagicMock()
        client.head_bucket.side_effect = client_error("404", "HeadBucket")
        ensure_bucket(client, "call-recordings")
        client.create_bucket.assert_called_once_with(Bucket="call-recordings")

    def test_existing_bucket_is_left_alone(self):
        client = MagicMock()
        ensure_bucket(client, "call-recordings")
        client.create_bucket.assert_not_called()

    def test_cors_skipped_without_origins(self):
        client = MagicMock()
        ensure_bucket_cors(client, "call-recordings", [])
        client.put_bucket_cors.assert_not_called()

    def test_cors_rules_applied(self):
        client = MagicMock()
        ensure_bucket_cors(client, "call-recordings", ["http://localhost:8081"])
        rules = client.put_bucket_cors.call_args.kwargs["CORSConfiguration"]["CORSRules"]
        assert rules[0]["AllowedOrigins"] == ["http://localhost:8081"]
        assert "PUT" in rules[0]["AllowedMethods"]
