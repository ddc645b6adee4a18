import io
import logging
import os
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Optional, Union
from uuid import uuid4

import boto3
from boto3.exceptions import S3UploadFailedError
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from recording_ingest import errors
from recording_ingest.config import StorageConfig
from recording_ingest.locations import LocalLocation, RecordingLocation, RemoteLocation

logger = logging.getLogger(__name__)
SANITIZE_ALLOWED = set("abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_.")
COPY_BUFFER_SIZE = 1024 * 1024

DEFAULT_CORS_ALLOWED_METHODS = ["GET", "PUT", "HEAD"]
DEFAULT_CORS_ALLOWED_HEADERS = ["*"]
DEFAULT_CORS_EXPOSE_HEADERS = ["ETag", "Content-Range", "Accept-Ranges", "Content-Length"]
DEFAULT_CORS_MAX_AGE = 3000

CONTENT_TYPES = {
    ".aac": "audio/aac",
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".wav": "audio/wav",
    ".ogg": "audio/ogg",
    ".webm": "audio/webm",
    ".amr": "audio/amr",
    ".3gp": "audio/3gpp",
}
DEFAULT_CONTENT_TYPE = "audio/aac"
NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")

BlobSource = Union[bytes, BinaryIO]


def build_s3_client(config: StorageConfig):
    return boto3.client(
        "s3",
        endpoint_url=config.s3_endpoint,
        aws_access_key_id=config.s3_access_key,
        aws_secret_access_key=config.s3_secret_key,
        region_name=config.s3_region,
        config=Config(
            signature_version="s3v4",
            s3={"addressing_style": "path"},
        ),
    )


def sanitize_token(value: str) -> str:
    """
    Keep a small set of characters to avoid unsafe file names and object keys derived from user input.
    """
    return "".join(ch for ch in value if ch in SANITIZE_ALLOWED)


def _extension(file_name: Optional[str]) -> str:
    if not file_name:
        return ""
    base = file_name.rsplit("/", 1)[-1].rsplit("\\", 1)[-1]
    _, ext = os.path.splitext(base)
    return sanitize_token(ext.lower())


def build_object_key(file_name: Optional[str], prefix: str = "uploads") -> str:
    return f"{prefix}/{uuid4().hex}{_extension(file_name) or '.aac'}"


def recording_name(call_record_id: str, file_name: Optional[str]) -> str:
    # Unique per attempt: duplicate jobs for one record must never write the same blob.
    safe_id = sanitize_token(call_record_id).replace(".", "") or "recording"
    return f"{safe_id}_{uuid4().hex[:12]}{_extension(file_name) or '.aac'}"


def content_type_for(name: str) -> str:
    return CONTENT_TYPES.get(_extension(name), DEFAULT_CONTENT_TYPE)


def validate_hint(hint: str) -> str:
    if not hint or hint in (".", ".."):
        raise errors.ValidationError("Recording name is empty")
    if "/" in hint or "\\" in hint or "\x00" in hint or ".." in hint:
        raise errors.ValidationError("Recording name contains path characters")
    return hint


def _as_stream(source: BlobSource) -> BinaryIO:
    if isinstance(source, (bytes, bytearray, memoryview)):
        return io.BytesIO(bytes(source))
    return source


class BlobStore(ABC):
    """
    Durable recording storage. Implementations are selected once from StorageConfig.backend.
    """

    def __init__(self, config: StorageConfig) -> None:
        self.config = config

    @abstractmethod
    def put(self, source: BlobSource, hint: str) -> RecordingLocation:
        """Store ``source`` durably under a name derived from ``hint``."""

    @abstractmethod
    def read_range(self, location: RecordingLocation, offset: int, length: int) -> bytes:
        """Return up to ``length`` bytes from ``offset``; empty once past end of file."""

    @abstractmethod
    def size(self, location: RecordingLocation) -> int:
        ...

    @abstractmethod
    def delete(self, location: RecordingLocation) -> None:
        """Remove the blob, raising BlobNotFoundError when it does not exist."""

    @abstractmethod
    def adopt(self, object_key: str, hint: str) -> RecordingLocation:
        """
        Take over an object the client uploaded directly through a presigned URL. Backends that can
        rewrite the upload area move it to a name derived from ``hint``.
        """

    def check_upload_key(self, object_key: str) -> list[str]:
        """Split a direct-upload key, rejecting anything outside the upload prefix."""
        parts = object_key.split("/")
        if len(parts) < 2 or parts[0] != self.config.upload_key_prefix:
            raise errors.ValidationError(f"Object key must start with {self.config.upload_key_prefix}/")
        for part in parts[1:]:
            validate_hint(part)
        return parts

    def prepare(self) -> None:
        pass

    def discard(self, location: RecordingLocation) -> None:
        """Delete a blob during cleanup, tolerating it being gone already."""
        try:
            self.delete(location)
        except errors.BlobNotFoundError:
            logger.debug("Blob %s already removed", location.encode())


class LocalBlobStore(BlobStore):
    def __init__(self, config: StorageConfig) -> None:
        super().__init__(config)
        self.root = Path(config.recordings_dir)
        self.uploads_root = Path(config.uploads_dir)

    def prepare(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.uploads_root.mkdir(parents=True, exist_ok=True)

    def _path_for(self, hint: str) -> Path:
        path = self.root / validate_hint(hint)
        if len(str(path)) > self.config.max_path_length:
            raise errors.ValidationError("Recording path exceeds maximum length")
        return path

    def _upload_path_for(self, object_key: str) -> Path:
        parts = self.check_upload_key(object_key)
        path = self.uploads_root.joinpath(*parts)
        if len(str(path)) > self.config.max_path_length:
            raise errors.ValidationError("Recording path exceeds maximum length")
        return path

    def _local_path(self, location: RecordingLocation) -> str:
        if not isinstance(location, LocalLocation):
            raise errors.BlobNotFoundError(location.encode())
        return location.path

    def _write_durably(self, source: BlobSource, path: Path) -> None:
        partial = path.with_name(f"{path.name}.{uuid4().hex[:8]}.part")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(partial, "wb") as file_obj:
                shutil.copyfileobj(_as_stream(source), file_obj, COPY_BUFFER_SIZE)
                file_obj.flush()
                os.fsync(file_obj.fileno())
            os.replace(partial, path)
        except OSError as exc:
            try:
                os.remove(partial)
            except OSError:
                pass
            raise errors.TransientStorageError(f"Could not write {path}: {exc}") from exc

    def put(self, source: BlobSource, hint: str) -> RecordingLocation:
        path = self._path_for(hint)
        self._write_durably(source, path)
        logger.info("Stored recording at %s", path)
        return LocalLocation(str(path))

    def receive_direct_upload(self, object_key: str, source: BlobSource) -> RecordingLocation:
        path = self._upload_path_for(object_key)
        self._write_durably(source, path)
        logger.info("Received direct upload %s", object_key)
        return LocalLocation(str(path))

    def read_range(self, location: RecordingLocation, offset: int, length: int) -> bytes:
        path = self._local_path(location)
        if length <= 0 or offset < 0:
            return b""
        try:
            with open(path, "rb") as file_obj:
                file_obj.seek(offset)
                return file_obj.read(length)
        except FileNotFoundError as exc:
            raise errors.BlobNotFoundError(path) from exc
        except OSError as exc:
            raise errors.TransientStorageError(f"Could not read {path}: {exc}") from exc

    def size(self, location: RecordingLocation) -> int:
        path = self._local_path(location)
        try:
            return os.path.getsize(path)
        except FileNotFoundError as exc:
            raise errors.BlobNotFoundError(path) from exc
        except OSError as exc:
            raise errors.TransientStorageError(f"Could not stat {path}: {exc}") from exc

    def delete(self, location: RecordingLocation) -> None:
        path = self._local_path(location)
        try:
            os.remove(path)
        except FileNotFoundError as exc:
            raise errors.BlobNotFoundError(path) from exc
        except OSError as exc:
            raise errors.TransientStorageError(f"Could not delete {path}: {exc}") from exc

    def adopt(self, object_key: str, hint: str) -> RecordingLocation:
        # Moved out of the uploads area so a later PUT to the same key cannot touch the recording.
        source = self._upload_path_for(object_key)
        target = self._path_for(hint)
        if not source.is_file():
            raise errors.BlobNotFoundError(object_key)
        try:
            if source.stat().st_size == 0:
                raise errors.ValidationError("Uploaded recording is empty.")
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(source), str(target))
        except FileNotFoundError as exc:
            raise errors.BlobNotFoundError(object_key) from exc
        except OSError as exc:
            raise errors.TransientStorageError(f"Could not move {object_key}: {exc}") from exc
        logger.info("Adopted direct upload %s as %s", object_key, target)
        return LocalLocation(str(target))


class S3BlobStore(BlobStore):
    def __init__(self, config: StorageConfig, client=None) -> None:
        super().__init__(config)
        self.client = client or build_s3_client(config)
        self.bucket = config.s3_bucket

    def _key(self, location: RecordingLocation) -> str:
        if not isinstance(location, RemoteLocation):
            raise errors.BlobNotFoundError(location.encode())
        return location.object_key

    def _head(self, key: str) -> dict:
        try:
            return self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in NOT_FOUND_CODES:
                raise errors.BlobNotFoundError(key) from exc
            raise errors.TransientStorageError(f"Could not stat {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise errors.TransientStorageError(f"Could not stat {key}: {exc}") from exc

    def prepare(self) -> None:
        ensure_bucket(self.client, self.bucket)
        try:
            ensure_bucket_cors(self.client, self.bucket, list(self.config.cors_allowed_origins))
        except Exception:
            logger.exception("Failed to apply CORS configuration to bucket %s.", self.bucket)

    def put(self, source: BlobSource, hint: str) -> RecordingLocation:
        key = f"{self.config.s3_key_prefix}/{validate_hint(hint)}"
        try:
            self.client.upload_fileobj(
                _as_stream(source),
                self.bucket,
                key,
                ExtraArgs={"ContentType": content_type_for(hint)},
            )
        except (ClientError, BotoCoreError, S3UploadFailedError) as exc:
            raise errors.TransientStorageError(f"Could not upload {key}: {exc}") from exc
        logger.info("Stored recording at s3://%s/%s", self.bucket, key)
        return RemoteLocation(key)

    def read_range(self, location: RecordingLocation, offset: int, length: int) -> bytes:
        key = self._key(location)
        if length <= 0 or offset < 0:
            return b""
        try:
            response = self.client.get_object(
                Bucket=self.bucket,
                Key=key,
                Range=f"bytes={offset}-{offset + length - 1}",
            )
        except ClientError as exc:
            code = _error_code(exc)
            if code == "InvalidRange":
                return b""
            if code in NOT_FOUND_CODES:
                raise errors.BlobNotFoundError(key) from exc
            raise errors.TransientStorageError(f"Could not read {key}: {exc}") from exc
        except BotoCoreError as exc:
            raise errors.TransientStorageError(f"Could not read {key}: {exc}") from exc
        return response["Body"].read()

    def size(self, location: RecordingLocation) -> int:
        return int(self._head(self._key(location)).get("ContentLength") or 0)

    def delete(self, location: RecordingLocation) -> None:
        key = self._key(location)
        # delete_object succeeds for missing keys, so check first to report NotFound.
        self._head(key)
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise errors.TransientStorageError(f"Could not delete {key}: {exc}") from exc

    def adopt(self, object_key: str, hint: str) -> RecordingLocation:
        self.check_upload_key(object_key)
        head = self._head(object_key)
        if not head.get("ContentLength"):
            raise errors.ValidationError("Uploaded recording is empty.")
        return RemoteLocation(object_key)


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def ensure_bucket(client, bucket: str) -> None:
    """
    Ensure the bucket exists. No-op if already present.
    """
    try:
        client.head_bucket(Bucket=bucket)
    except ClientError as exc:
        if _error_code(exc) in ("404", "400", "301", "NoSuchBucket", "NotFound"):
            client.create_bucket(Bucket=bucket)
        else:
            raise


def ensure_bucket_cors(client, bucket: str, origins: Optional[list[str]] = None) -> None:
    allowed_origins = [origin for origin in (origins or []) if origin]
    if not allowed_origins:
        logger.warning("Skipping CORS setup for %s: no allowed origins configured.", bucket)
        return
    client.put_bucket_cors(
        Bucket=bucket,
        CORSConfiguration={
            "CORSRules": [
                {
                    "AllowedOrigins": allowed_origins,
                    "AllowedMethods": DEFAULT_CORS_ALLOWED_METHODS,
                    "AllowedHeaders": DEFAULT_CORS_ALLOWED_HEADERS,
                    "ExposeHeaders": DEFAULT_CORS_EXPOSE_HEADERS,
                    "MaxAgeSeconds": DEFAULT_CORS_MAX_AGE,
                }
            ]
        },
    )
