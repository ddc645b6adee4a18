"""
Chunked upload sessions.

Session metadata, including the location a finalize produced, lives in the database so a worker
that crashes mid-finalize can retry from it; chunk bytes live in a per-session temp directory as
``chunk_<index>`` files. Received chunks are rows with a unique (session, index) constraint, so
duplicate or retried appends never double count.
"""

import logging
import os
import secrets
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional
from uuid import uuid4

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from recording_ingest import errors, models
from recording_ingest.config import StorageConfig
from recording_ingest.locations import RecordingLocation, parse_location
from recording_ingest.storage import BlobStore, recording_name, sanitize_token

logger = logging.getLogger(__name__)
COPY_BUFFER_SIZE = 1024 * 1024


@dataclass(frozen=True)
class ChunkReceipt:
    session_id: str
    chunks_received: int
    total_size: int


def chunk_file_name(index: int) -> str:
    return f"chunk_{index}"


class UploadSessionStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        blob_store: BlobStore,
        config: StorageConfig,
        max_expected_chunks: int = 10000,
    ) -> None:
        self.session_factory = session_factory
        self.blob_store = blob_store
        self.temp_root = Path(config.temp_dir) / "sessions"
        self.max_chunk_bytes = config.max_chunk_bytes
        self.max_expected_chunks = max_expected_chunks

    def init(self, expected_chunks: int, call_record_id: str, filename: Optional[str] = None) -> str:
        if expected_chunks < 1 or expected_chunks > self.max_expected_chunks:
            raise errors.ValidationError(f"expected_chunks must be between 1 and {self.max_expected_chunks}")
        session_id = secrets.token_urlsafe(16)
        temp_dir = self.temp_root / session_id
        try:
            temp_dir.mkdir(parents=True, exist_ok=False)
        except OSError as exc:
            raise errors.TransientStorageError(f"Could not create upload directory: {exc}") from exc

        with self.session_factory() as db:
            db.add(
                models.UploadSession(
                    id=session_id,
                    call_record_id=call_record_id,
                    filename=os.path.basename(filename or "") or "recording.aac",
                    expected_chunks=expected_chunks,
                    temp_dir=str(temp_dir),
                )
            )
            db.commit()
        logger.info(
            "Initialized upload session %s for call record %s (%s chunks)",
            session_id,
            call_record_id,
            expected_chunks,
        )
        return session_id

    def _receipt(self, db: Session, session_id: str) -> ChunkReceipt:
        count, total = db.execute(
            select(func.count(models.UploadChunk.id), func.coalesce(func.sum(models.UploadChunk.size), 0)).where(
                models.UploadChunk.session_id == session_id
            )
        ).one()
        return ChunkReceipt(session_id=session_id, chunks_received=int(count), total_size=int(total))

    def status(self, session_id: str, call_record_id: Optional[str] = None) -> ChunkReceipt:
        with self.session_factory() as db:
            upload = db.get(models.UploadSession, session_id)
            if upload is None or (call_record_id and upload.call_record_id != call_record_id):
                raise errors.SessionNotFoundError(session_id)
            return self._receipt(db, session_id)

    def append(
        self,
        session_id: str,
        index: int,
        data: bytes,
        call_record_id: Optional[str] = None,
    ) -> ChunkReceipt:
        if index < 0:
            raise errors.ValidationError("index must be zero or greater")
        if not data:
            raise errors.ValidationError("Chunk is empty")
        if len(data) > self.max_chunk_bytes:
            raise errors.ValidationError(f"Chunk exceeds {self.max_chunk_bytes} bytes")

        with self.session_factory() as db:
            upload = db.get(models.UploadSession, session_id)
            if upload is None or (call_record_id and upload.call_record_id != call_record_id):
                raise errors.SessionNotFoundError(session_id)
            if index >= upload.expected_chunks:
                raise errors.ValidationError(f"index must be below expected_chunks ({upload.expected_chunks})")

            # Touch the session first: a concurrent cancel that already removed it makes this match nothing.
            touched = db.execute(
                update(models.UploadSession)
                .where(models.UploadSession.id == session_id)
                .values(updated_at=datetime.utcnow())
            ).rowcount
            if not touched:
                db.rollback()
                raise errors.SessionNotFoundError(session_id)

            self._write_chunk(Path(upload.temp_dir), session_id, index, data)

            existing = db.scalar(
                select(models.UploadChunk).where(
                    models.UploadChunk.session_id == session_id,
                    models.UploadChunk.chunk_index == index,
                )
            )
            if existing is None:
                db.add(models.UploadChunk(session_id=session_id, chunk_index=index, size=len(data)))
            else:
                existing.size = len(data)
                existing.received_at = datetime.utcnow()
            try:
                db.commit()
            except IntegrityError:
                # A duplicate request recorded this index first; the chunk file was replaced either way.
                db.rollback()
            receipt = self._receipt(db, session_id)

        logger.debug("Session %s received chunk %s (%s bytes)", session_id, index, len(data))
        return receipt

    def _write_chunk(self, temp_dir: Path, session_id: str, index: int, data: bytes) -> None:
        final_path = temp_dir / chunk_file_name(index)
        partial = temp_dir / f"{chunk_file_name(index)}.{uuid4().hex[:8]}.part"
        try:
            with open(partial, "wb") as file_obj:
                file_obj.write(data)
                file_obj.flush()
                os.fsync(file_obj.fileno())
            os.replace(partial, final_path)
        except FileNotFoundError as exc:
            raise errors.SessionNotFoundError(session_id) from exc
        except OSError as exc:
            try:
                os.remove(partial)
            except OSError:
                pass
            raise errors.TransientStorageError(f"Could not store chunk {index}: {exc}") from exc

    def finalize(self, session_id: str, expected_chunks: int) -> RecordingLocation:
        """
        Concatenate chunks 0..expected_chunks-1 in index order into one blob and record its location
        on the session. The session stays until the caller cancels it after the attach; a repeated
        finalize returns the stored location without writing a second blob.
        """
        with self.session_factory() as db:
            upload = db.get(models.UploadSession, session_id)
            if upload is None:
                raise errors.SessionNotFoundError(session_id)
            if upload.finalized_location:
                logger.info("Upload session %s already finalized into %s", session_id, upload.finalized_location)
                return parse_location(upload.finalized_location)
            received = set(
                db.scalars(
                    select(models.UploadChunk.chunk_index).where(models.UploadChunk.session_id == session_id)
                ).all()
            )
            temp_dir = Path(upload.temp_dir)
            hint = recording_name(upload.call_record_id, upload.filename)

        wanted = set(range(max(expected_chunks, 0)))
        if not wanted or received != wanted:
            raise errors.IncompleteUploadError(session_id, expected_chunks, sorted(wanted - received))

        assembled = temp_dir / f"assembled-{uuid4().hex}"
        try:
            self._assemble(temp_dir, session_id, expected_chunks, assembled)
            with open(assembled, "rb") as file_obj:
                location = self.blob_store.put(file_obj, hint)
        except FileNotFoundError as exc:
            raise errors.SessionNotFoundError(session_id) from exc
        except OSError as exc:
            raise errors.TransientStorageError(f"Could not read assembled session {session_id}: {exc}") from exc
        finally:
            try:
                os.remove(assembled)
            except OSError:
                pass

        try:
            stored = self._store_location(session_id, location)
        except SQLAlchemyError:
            self.blob_store.discard(location)
            raise
        if stored != location:
            # Cancelled or finalized by someone else while assembling.
            self.blob_store.discard(location)
            if stored is None:
                raise errors.SessionNotFoundError(session_id)
        logger.info("Finalized upload session %s into %s", session_id, stored.encode())
        return stored

    def _store_location(self, session_id: str, location: RecordingLocation) -> Optional[RecordingLocation]:
        with self.session_factory() as db:
            written = db.execute(
                update(models.UploadSession)
                .where(
                    models.UploadSession.id == session_id,
                    models.UploadSession.finalized_location.is_(None),
                )
                .values(finalized_location=location.encode(), updated_at=datetime.utcnow())
            ).rowcount
            db.commit()
            if written:
                return location
            current = db.scalar(
                select(models.UploadSession.finalized_location).where(models.UploadSession.id == session_id)
            )
        return parse_location(current) if current else None

    def _assemble(self, temp_dir: Path, session_id: str, expected_chunks: int, target: Path) -> None:
        try:
            with open(target, "wb") as out:
                for index in range(expected_chunks):
                    with open(temp_dir / chunk_file_name(index), "rb") as chunk:
                        shutil.copyfileobj(chunk, out, COPY_BUFFER_SIZE)
        except FileNotFoundError as exc:
            # The directory or a chunk disappeared under us: the session was cancelled concurrently.
            raise errors.SessionNotFoundError(session_id) from exc
        except OSError as exc:
            raise errors.TransientStorageError(f"Could not assemble session {session_id}: {exc}") from exc

    def cancel(self, session_id: str) -> None:
        """
        Remove session state and temp chunks whatever their state. No-op when already gone.
        """
        safe_id = sanitize_token(session_id).replace(".", "")
        temp_dir = self.temp_root / safe_id if safe_id else None
        with self.session_factory() as db:
            upload = db.get(models.UploadSession, session_id)
            if upload is not None:
                temp_dir = Path(upload.temp_dir)
            db.execute(delete(models.UploadChunk).where(models.UploadChunk.session_id == session_id))
            db.execute(delete(models.UploadSession).where(models.UploadSession.id == session_id))
            db.commit()
        if temp_dir is not None:
            shutil.rmtree(temp_dir, ignore_errors=True)
        if upload is not None:
            logger.info("Cancelled upload session %s", session_id)

    def idle_sessions(self, cutoff: datetime) -> list[str]:
        with self.session_factory() as db:
            return list(
                db.scalars(select(models.UploadSession.id).where(models.UploadSession.updated_at < cutoff)).all()
            )

    def reap_idle(self, idle_seconds: int) -> list[str]:
        cutoff = datetime.utcnow() - timedelta(seconds=idle_seconds)
        reaped = self.idle_sessions(cutoff)
        for session_id in reaped:
            self.cancel(session_id)
        if reaped:
            logger.info("Reaped %s idle upload sessions", len(reaped))
        return reaped
