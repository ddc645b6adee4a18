import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote

from recording_ingest.config import StorageConfig
from recording_ingest.storage import build_s3_client


@dataclass(frozen=True)
class PresignedUrl:
    url: str
    object_key: str
    # None means the URL is not time limited (local fallback).
    expires_at: Optional[int]


class UrlIssuer(ABC):
    def __init__(self, config: StorageConfig) -> None:
        self.config = config

    @abstractmethod
    def issue_upload_url(self, object_key: str, content_type: Optional[str]) -> PresignedUrl:
        ...

    @abstractmethod
    def issue_download_url(self, object_key: str) -> PresignedUrl:
        ...


class S3UrlIssuer(UrlIssuer):
    def __init__(self, config: StorageConfig, client=None) -> None:
        super().__init__(config)
        self.client = client or build_s3_client(config)

    def _expires_at(self) -> int:
        return int(time.time()) + self.config.presign_expiry_sec

    def issue_upload_url(self, object_key: str, content_type: Optional[str]) -> PresignedUrl:
        params = {
            "Bucket": self.config.s3_bucket,
            "Key": object_key,
        }
        if content_type:
            params["ContentType"] = content_type

        url = self.client.generate_presigned_url(
            "put_object",
            Params=params,
            ExpiresIn=self.config.presign_expiry_sec,
        )
        return PresignedUrl(url=url, object_key=object_key, expires_at=self._expires_at())

    def issue_download_url(self, object_key: str) -> PresignedUrl:
        url = self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.config.s3_bucket, "Key": object_key},
            ExpiresIn=self.config.presign_expiry_sec,
        )
        return PresignedUrl(url=url, object_key=object_key, expires_at=self._expires_at())


class LocalUrlIssuer(UrlIssuer):
    """
    Trusted development fallback: the client PUTs straight to this service's /uploads endpoint.
    Nothing here expires, so callers must not treat these URLs as time limited.
    """

    def _uploads_url(self, object_key: str) -> str:
        base = self.config.public_base_url.rstrip("/")
        prefix = self.config.api_prefix.rstrip("/")
        return f"{base}{prefix}/uploads/{quote(object_key)}"

    def issue_upload_url(self, object_key: str, content_type: Optional[str]) -> PresignedUrl:
        return PresignedUrl(url=self._uploads_url(object_key), object_key=object_key, expires_at=None)

    def issue_download_url(self, object_key: str) -> PresignedUrl:
        return PresignedUrl(url=self._uploads_url(object_key), object_key=object_key, expires_at=None)
