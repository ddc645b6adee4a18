from dataclasses import dataclass

from recording_ingest.config import StorageConfig
from recording_ingest.presign import LocalUrlIssuer, S3UrlIssuer, UrlIssuer
from recording_ingest.storage import BlobStore, LocalBlobStore, S3BlobStore, build_s3_client


@dataclass(frozen=True)
class StorageBackend:
    config: StorageConfig
    blob_store: BlobStore
    url_issuer: UrlIssuer


def build_storage(config: StorageConfig, s3_client=None) -> StorageBackend:
    """
    Pick the blob store and URL issuer pair for the configured backend. Both share one S3 client.
    """
    if config.is_remote:
        client = s3_client or build_s3_client(config)
        return StorageBackend(
            config=config,
            blob_store=S3BlobStore(config, client=client),
            url_issuer=S3UrlIssuer(config, client=client),
        )
    return StorageBackend(
        config=config,
        blob_store=LocalBlobStore(config),
        url_issuer=LocalUrlIssuer(config),
    )
