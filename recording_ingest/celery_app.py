import logging
from functools import lru_cache
from typing import Optional

from celery import Celery

from recording_ingest.backends import build_storage
from recording_ingest.config import StorageConfig, settings
from recording_ingest.database import SessionLocal
from recording_ingest.finalization import ChunkedJob, FinalizationWorker, RetryableJobError, SimpleJob
from recording_ingest.locations import parse_location
from recording_ingest.sessions import UploadSessionStore

logger = logging.getLogger(__name__)

RECORDINGS_QUEUE = "recordings"
MAX_RETRIES = max(settings.FINALIZE_MAX_ATTEMPTS - 1, 0)

celery_app = Celery(
    "recordings",
    broker=settings.REDIS_URL,
)

celery_app.conf.task_default_queue = RECORDINGS_QUEUE
# Jobs are acknowledged only after they finish, so a crashed worker's job is redelivered.
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.worker_concurrency = settings.FINALIZE_WORKER_CONCURRENCY
celery_app.conf.beat_schedule = {
    "reap-idle-upload-sessions": {
        "task": "recordings.reap_idle_sessions",
        "schedule": float(settings.SESSION_REAP_INTERVAL_SEC),
    },
}


@lru_cache(maxsize=1)
def get_worker() -> FinalizationWorker:
    """
    Build the worker's storage wiring once per process.
    """
    storage = build_storage(StorageConfig.from_settings(settings))
    upload_sessions = UploadSessionStore(
        SessionLocal,
        storage.blob_store,
        storage.config,
        max_expected_chunks=settings.MAX_EXPECTED_CHUNKS,
    )
    return FinalizationWorker(upload_sessions, storage.blob_store, SessionLocal)


def _backoff(retries: int) -> int:
    return settings.FINALIZE_RETRY_BACKOFF_SEC * (2**retries)


def _retry(task, exc: RetryableJobError, kwargs: dict, label: str):
    if task.request.retries >= task.max_retries:
        logger.error(
            "Finalization of %s failed permanently after %s attempts; leaving artifacts for inspection",
            label,
            task.request.retries + 1,
        )
        raise exc
    if exc.location is not None:
        kwargs = {**kwargs, "location": exc.location.encode()}
    return task.retry(exc=exc, kwargs=kwargs, countdown=_backoff(task.request.retries))


@celery_app.task(name="recordings.finalize_chunked", bind=True, max_retries=MAX_RETRIES)
def finalize_chunked(
    self,
    session_id: str,
    expected_chunks: int,
    call_record_id: str,
    location: Optional[str] = None,
):
    """
    Combine a chunked upload session into one recording and attach it to its call record.
    """
    job = ChunkedJob(session_id=session_id, expected_chunks=expected_chunks, call_record_id=call_record_id)
    try:
        outcome = get_worker().run_chunked(job, parse_location(location) if location else None)
    except RetryableJobError as exc:
        logger.exception("Finalizing upload session %s failed", session_id)
        raise _retry(self, exc, job.to_kwargs(), f"session {session_id}")

    logger.info(
        "Upload session %s for call record %s: %s (%s)",
        session_id,
        call_record_id,
        outcome.status.value,
        outcome.reason or outcome.location,
    )
    return outcome.to_dict()


@celery_app.task(name="recordings.finalize_simple", bind=True, max_retries=MAX_RETRIES)
def finalize_simple(
    self,
    temp_path: str,
    call_record_id: str,
    filename: str,
    location: Optional[str] = None,
):
    """
    Move a single-request upload into durable storage and attach it to its call record.
    """
    job = SimpleJob(temp_path=temp_path, call_record_id=call_record_id, filename=filename)
    try:
        outcome = get_worker().run_simple(job, parse_location(location) if location else None)
    except RetryableJobError as exc:
        logger.exception("Storing simple upload %s failed", temp_path)
        raise _retry(self, exc, job.to_kwargs(), f"upload {temp_path}")

    logger.info(
        "Simple upload for call record %s: %s (%s)",
        call_record_id,
        outcome.status.value,
        outcome.reason or outcome.location,
    )
    return outcome.to_dict()


@celery_app.task(name="recordings.reap_idle_sessions")
def reap_idle_sessions(idle_seconds: Optional[int] = None) -> dict:
    reaped = get_worker().upload_sessions.reap_idle(
        settings.SESSION_IDLE_TIMEOUT_SEC if idle_seconds is None else idle_seconds
    )
    return {"status": "ok", "reaped": reaped}


def enqueue_chunked(job: ChunkedJob) -> str:
    result = finalize_chunked.apply_async(kwargs=job.to_kwargs(), queue=RECORDINGS_QUEUE)
    logger.info("Queued finalize for session %s (task %s)", job.session_id, result.id)
    return result.id


def enqueue_simple(job: SimpleJob) -> str:
    result = finalize_simple.apply_async(kwargs=job.to_kwargs(), queue=RECORDINGS_QUEUE)
    logger.info("Queued simple upload for call record %s (task %s)", job.call_record_id, result.id)
    return result.id
