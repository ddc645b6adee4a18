import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from recording_ingest import auth, models
from recording_ingest.backends import build_storage
from recording_ingest.config import StorageConfig
from recording_ingest.database import get_session
from recording_ingest.finalization import FinalizationWorker
from recording_ingest.main import create_app
from recording_ingest.sessions import UploadSessionStore


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so worker threads and request threads see the same data."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'recordings.db'}",
        future=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    models.Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


@pytest.fixture
def storage_config(tmp_path):
    return StorageConfig(
        backend="local",
        recordings_dir=str(tmp_path / "recordings"),
        uploads_dir=str(tmp_path / "uploads"),
        temp_dir=str(tmp_path / "tmp"),
        max_chunk_bytes=64 * 1024,
        public_base_url="http://testserver",
        api_prefix="/api",
    )


@pytest.fixture
def storage(storage_config):
    backend = build_storage(storage_config)
    backend.blob_store.prepare()
    return backend


@pytest.fixture
def upload_sessions(session_factory, storage):
    return UploadSessionStore(session_factory, storage.blob_store, storage.config, max_expected_chunks=100)


@pytest.fixture
def worker(upload_sessions, storage, session_factory):
    return FinalizationWorker(upload_sessions, storage.blob_store, session_factory)


def _add(session_factory, obj):
    with session_factory() as db:
        db.add(obj)
        db.commit()
    return obj


@pytest.fixture
def telecaller(session_factory):
    return _add(session_factory, models.User(email="agent@example.com", full_name="Agent One"))


@pytest.fixture
def other_telecaller(session_factory):
    return _add(session_factory, models.User(email="other@example.com", full_name="Agent Two"))


@pytest.fixture
def lead(session_factory, telecaller):
    return _add(session_factory, models.Lead(telecaller_id=telecaller.id, name="Asha Rao", phone="+911234567890"))


@pytest.fixture
def make_call_record(session_factory, lead, telecaller):
    def factory(recording_path=None):
        return _add(
            session_factory,
            models.CallRecord(
                lead_id=lead.id,
                telecaller_id=telecaller.id,
                outcome=models.CallOutcome.connected,
                duration_seconds=95,
                recording_path=recording_path,
            ),
        )

    return factory


@pytest.fixture
def call_record(make_call_record):
    return make_call_record()


@pytest.fixture
def token(session_factory, telecaller):
    with session_factory() as db:
        return auth.issue_session(db, telecaller)


@pytest.fixture
def other_token(session_factory, other_telecaller):
    with session_factory() as db:
        return auth.issue_session(db, other_telecaller)


@pytest.fixture
def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


def _override_session(session_factory):
    def override():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    return override


@pytest.fixture
def app(storage_config, session_factory):
    application = create_app(storage_config=storage_config, session_factory=session_factory)
    application.dependency_overrides[get_session] = _override_session(session_factory)
    return application


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def s3_storage_config(tmp_path):
    return StorageConfig(
        backend="s3",
        temp_dir=str(tmp_path / "tmp"),
        s3_endpoint="http://minio.test:9000",
        s3_access_key="test-access",
        s3_secret_key="test-secret",
        s3_bucket="call-recordings",
        presign_expiry_sec=900,
    )


@pytest.fixture
def s3_client(s3_storage_config, session_factory):
    """
    App wired to object storage. Startup is skipped so no bucket calls leave the process.
    """
    application = create_app(storage_config=s3_storage_config, session_factory=session_factory)
    application.dependency_overrides[get_session] = _override_session(session_factory)
    return TestClient(application)
