import os
from dataclasses import dataclass
from typing import Optional


class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./recordings.db")
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # "local" keeps recordings on disk; "s3" uses an S3-compatible bucket.
    STORAGE_BACKEND: str = os.getenv("STORAGE_BACKEND", "local").strip().lower()
    RECORDINGS_DIR: str = os.getenv("RECORDINGS_DIR", "data/recordings")
    UPLOADS_DIR: str = os.getenv("UPLOADS_DIR", "data/uploads")
    UPLOAD_TMP_DIR: str = os.getenv("UPLOAD_TMP_DIR", "data/tmp")
    RECORDING_MAX_PATH_LENGTH: int = int(os.getenv("RECORDING_MAX_PATH_LENGTH", "500"))

    S3_ENDPOINT: Optional[str] = os.getenv("S3_ENDPOINT")
    S3_ACCESS_KEY: Optional[str] = os.getenv("S3_ACCESS_KEY")
    S3_SECRET_KEY: Optional[str] = os.getenv("S3_SECRET_KEY")
    S3_REGION: str = os.getenv("S3_REGION", "us-east-1")
    S3_BUCKET_RECORDINGS: str = os.getenv("S3_BUCKET_RECORDINGS", "call-recordings")
    # Presigned direct uploads land under this key prefix; only keys inside it can be confirmed.
    UPLOAD_KEY_PREFIX: str = os.getenv("UPLOAD_KEY_PREFIX", "uploads").strip("/")
    RECORDING_PRESIGN_EXPIRY_SEC: int = int(os.getenv("RECORDING_PRESIGN_EXPIRY_SEC", "3600"))

    PUBLIC_BASE_URL: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000")
    MEDIA_CORS_ALLOWED_ORIGINS: list[str] = [
        origin.strip()
        for origin in os.getenv("MEDIA_CORS_ALLOWED_ORIGINS", "http://localhost:8081,http://localhost").split(",")
        if origin.strip()
    ]

    MAX_CHUNK_BYTES: int = int(os.getenv("MAX_CHUNK_BYTES", str(10 * 1024 * 1024)))
    MAX_EXPECTED_CHUNKS: int = int(os.getenv("MAX_EXPECTED_CHUNKS", "10000"))
    STREAM_BLOCK_SIZE: int = int(os.getenv("STREAM_BLOCK_SIZE", str(64 * 1024)))

    FINALIZE_MAX_ATTEMPTS: int = int(os.getenv("FINALIZE_MAX_ATTEMPTS", "3"))
    FINALIZE_RETRY_BACKOFF_SEC: int = int(os.getenv("FINALIZE_RETRY_BACKOFF_SEC", "30"))
    FINALIZE_WORKER_CONCURRENCY: int = int(os.getenv("FINALIZE_WORKER_CONCURRENCY", "3"))
    SESSION_IDLE_TIMEOUT_SEC: int = int(os.getenv("SESSION_IDLE_TIMEOUT_SEC", str(24 * 3600)))
    SESSION_REAP_INTERVAL_SEC: int = int(os.getenv("SESSION_REAP_INTERVAL_SEC", "900"))

    API_ROOT_PATH: str = os.getenv("API_ROOT_PATH", "")
    API_PREFIX: str = os.getenv("API_PREFIX", "/api")


settings = Settings()


@dataclass(frozen=True)
class StorageConfig:
    """
    Storage wiring resolved once at startup and handed to every storage component.
    """

    backend: str = "local"
    recordings_dir: str = "data/recordings"
    uploads_dir: str = "data/uploads"
    temp_dir: str = "data/tmp"
    max_path_length: int = 500
    max_chunk_bytes: int = 10 * 1024 * 1024
    s3_endpoint: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_region: str = "us-east-1"
    s3_bucket: str = "call-recordings"
    s3_key_prefix: str = "recordings"
    upload_key_prefix: str = "uploads"
    presign_expiry_sec: int = 3600
    public_base_url: str = "http://localhost:8000"
    api_prefix: str = "/api"
    cors_allowed_origins: tuple[str, ...] = ()

    @property
    def is_remote(self) -> bool:
        return self.backend == "s3"

    @classmethod
    def from_settings(cls, source: Settings = settings) -> "StorageConfig":
        backend = source.STORAGE_BACKEND
        if backend not in ("local", "s3"):
            raise ValueError(f"Unsupported STORAGE_BACKEND: {backend!r}")
        return cls(
            backend=backend,
            recordings_dir=source.RECORDINGS_DIR,
            uploads_dir=source.UPLOADS_DIR,
            temp_dir=source.UPLOAD_TMP_DIR,
            max_path_length=source.RECORDING_MAX_PATH_LENGTH,
            max_chunk_bytes=source.MAX_CHUNK_BYTES,
            s3_endpoint=source.S3_ENDPOINT,
            s3_access_key=source.S3_ACCESS_KEY,
            s3_secret_key=source.S3_SECRET_KEY,
            s3_region=source.S3_REGION,
            s3_bucket=source.S3_BUCKET_RECORDINGS,
            upload_key_prefix=source.UPLOAD_KEY_PREFIX or "uploads",
            presign_expiry_sec=source.RECORDING_PRESIGN_EXPIRY_SEC,
            public_base_url=source.PUBLIC_BASE_URL,
            api_prefix=source.API_PREFIX,
            cors_allowed_origins=tuple(source.MEDIA_CORS_ALLOWED_ORIGINS),
        )
