"""
Finalization of uploaded recordings, run from the Celery tasks in ``celery_app``.

Each job ends either Completed or Cancelled(reason). Cancelled outcomes are terminal and returned,
never raised. Failures worth retrying raise RetryableJobError; when the blob was already stored
the error carries its location so the retry only repeats the attach.
"""

import logging
import os
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from recording_ingest import errors
from recording_ingest.locations import RecordingLocation
from recording_ingest.records import attach_recording
from recording_ingest.sessions import UploadSessionStore
from recording_ingest.storage import BlobStore, recording_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChunkedJob:
    session_id: str
    expected_chunks: int
    call_record_id: str

    def to_kwargs(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SimpleJob:
    temp_path: str
    call_record_id: str
    filename: str

    def to_kwargs(self) -> dict:
        return asdict(self)


class JobStatus(str, Enum):
    completed = "completed"
    cancelled = "cancelled"


@dataclass(frozen=True)
class JobOutcome:
    status: JobStatus
    reason: Optional[str] = None
    location: Optional[str] = None

    @classmethod
    def completed(cls, location: RecordingLocation) -> "JobOutcome":
        return cls(JobStatus.completed, location=location.encode())

    @classmethod
    def cancelled(cls, reason: str) -> "JobOutcome":
        return cls(JobStatus.cancelled, reason=reason)

    def to_dict(self) -> dict:
        return {"status": self.status.value, "reason": self.reason, "location": self.location}


class RetryableJobError(Exception):
    def __init__(self, message: str, location: Optional[RecordingLocation] = None) -> None:
        super().__init__(message)
        self.location = location


def _remove_file(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


class FinalizationWorker:
    def __init__(
        self,
        upload_sessions: UploadSessionStore,
        blob_store: BlobStore,
        session_factory: sessionmaker,
    ) -> None:
        self.upload_sessions = upload_sessions
        self.blob_store = blob_store
        self.session_factory = session_factory

    def run_chunked(self, job: ChunkedJob, location: Optional[RecordingLocation] = None) -> JobOutcome:
        if location is None:
            try:
                location = self.upload_sessions.finalize(job.session_id, job.expected_chunks)
            except errors.IncompleteUploadError as exc:
                # The client asked to finalize, so the missing chunks are never coming.
                logger.warning(
                    "Upload session %s incomplete (missing %s); cancelling",
                    job.session_id,
                    exc.missing,
                )
                self._release_session(job.session_id)
                return JobOutcome.cancelled("incomplete_upload")
            except errors.SessionNotFoundError:
                logger.warning("Upload session %s not found; nothing to finalize", job.session_id)
                return JobOutcome.cancelled("upload_not_found")
            except (errors.TransientStorageError, SQLAlchemyError, OSError) as exc:
                raise RetryableJobError(str(exc)) from exc
        outcome = self._attach(job.call_record_id, location)
        # Session state goes only once the attach has a final answer; a redelivered job reuses it.
        self._release_session(job.session_id, location)
        return outcome

    def _release_session(self, session_id: str, location: Optional[RecordingLocation] = None) -> None:
        try:
            self.upload_sessions.cancel(session_id)
        except (SQLAlchemyError, OSError) as exc:
            raise RetryableJobError(f"Could not release upload session {session_id}: {exc}", location) from exc

    def run_simple(self, job: SimpleJob, location: Optional[RecordingLocation] = None) -> JobOutcome:
        if location is None:
            try:
                with open(job.temp_path, "rb") as file_obj:
                    location = self.blob_store.put(file_obj, recording_name(job.call_record_id, job.filename))
            except FileNotFoundError:
                logger.warning("Temp upload %s is gone; nothing to store", job.temp_path)
                return JobOutcome.cancelled("upload_not_found")
            except (errors.TransientStorageError, OSError) as exc:
                # put() never leaves a partial blob behind; the temp file stays as the retry's source.
                raise RetryableJobError(str(exc)) from exc
            _remove_file(job.temp_path)
        return self._attach(job.call_record_id, location, temp_path=job.temp_path)

    def _attach(
        self,
        call_record_id: str,
        location: RecordingLocation,
        temp_path: Optional[str] = None,
    ) -> JobOutcome:
        try:
            with self.session_factory() as db:
                attach_recording(db, call_record_id, location)
        except errors.CallRecordNotFoundError:
            logger.warning("Call record %s not found; discarding %s", call_record_id, location.encode())
            self.blob_store.discard(location)
            if temp_path:
                _remove_file(temp_path)
            return JobOutcome.cancelled("call_record_not_found")
        except errors.ConflictError as exc:
            # Redelivered or duplicate job: the record already has its recording.
            if exc.existing != location.encode():
                self.blob_store.discard(location)
            logger.info("Call record %s already has a recording; treating as done", call_record_id)
            return JobOutcome(JobStatus.completed, location=exc.existing)
        except SQLAlchemyError as exc:
            raise RetryableJobError(f"Could not attach recording to {call_record_id}: {exc}", location) from exc
        return JobOutcome.completed(location)
