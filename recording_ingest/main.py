import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import sessionmaker

from recording_ingest.backends import build_storage
from recording_ingest.config import StorageConfig, settings
from recording_ingest.database import SessionLocal
from recording_ingest.routes import recordings
from recording_ingest.sessions import UploadSessionStore


def create_app(
    storage_config: Optional[StorageConfig] = None,
    session_factory: Optional[sessionmaker] = None,
) -> FastAPI:
    logging.basicConfig(level=settings.LOG_LEVEL)
    app = FastAPI(
        title="Recording Ingest API",
        version="0.1.0",
        root_path=settings.API_ROOT_PATH or None,
    )

    storage = build_storage(storage_config or StorageConfig.from_settings(settings))
    app.state.storage = storage
    app.state.upload_sessions = UploadSessionStore(
        session_factory or SessionLocal,
        storage.blob_store,
        storage.config,
        max_expected_chunks=settings.MAX_EXPECTED_CHUNKS,
    )

    allowed_origins = list(storage.config.cors_allowed_origins) or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Range", "Content-Length", "Accept-Ranges"],
        allow_credentials=False,
    )

    @app.get("/health", tags=["system"])
    async def health() -> dict:
        return {"status": "ok", "storage": storage.config.backend}

    @app.on_event("startup")
    async def startup_event() -> None:
        # Make sure the recordings bucket or directories exist.
        storage.blob_store.prepare()
        logging.info("Recording API started with %s storage", storage.config.backend)

    app.include_router(recordings.router, prefix=settings.API_PREFIX)
    return app


app = create_app()
