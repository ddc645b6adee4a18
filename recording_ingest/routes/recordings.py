import logging
import os
import shutil
from pathlib import Path
from typing import Iterator, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Request, Response, UploadFile
from fastapi.responses import RedirectResponse, StreamingResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from recording_ingest import auth, errors, models
from recording_ingest.backends import StorageBackend
from recording_ingest.celery_app import enqueue_chunked, enqueue_simple
from recording_ingest.config import settings
from recording_ingest.database import get_session
from recording_ingest.finalization import ChunkedJob, SimpleJob
from recording_ingest.locations import LocalLocation, RecordingLocation, RemoteLocation, parse_location
from recording_ingest.ranges import RangeNotSatisfiable, parse_range
from recording_ingest.records import attach_recording, get_authorized_call_record
from recording_ingest.schemas import (
    AcceptedResponse,
    AppendRequest,
    AttachedResponse,
    ChunkReceiptResponse,
    DirectUploadResponse,
    FinalizeRequest,
    InitRequest,
    InitResponse,
    PresignRequest,
    PresignResponse,
    S3ConfirmRequest,
    SimpleRequest,
    UploadMode,
)
from recording_ingest.sessions import UploadSessionStore
from recording_ingest.storage import BlobStore, build_object_key, content_type_for, recording_name, sanitize_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="", tags=["recordings"])


def get_storage(request: Request) -> StorageBackend:
    return request.app.state.storage


def get_upload_sessions(request: Request) -> UploadSessionStore:
    return request.app.state.upload_sessions


def get_current_user(
    session: Session = Depends(get_session),
    authorization: Optional[str] = Header(None),
) -> models.User:
    """
    Bearer-token auth against stored auth sessions. Issuing tokens (login) lives elsewhere.
    """
    token = auth.parse_bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Authorization header is required")
    user = auth.resolve_user(session, token)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return user


def _http_error(exc: errors.RecordingError) -> HTTPException:
    if exc.status_code >= 500:
        return HTTPException(status_code=500, detail="Could not process recording")
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def _validate(model, **fields):
    try:
        return model(**{key: value for key, value in fields.items() if value is not None})
    except PydanticValidationError as exc:
        detail = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        raise HTTPException(status_code=400, detail=detail) from exc


@router.post("/recordings/presign", response_model=PresignResponse)
def create_presigned_upload(
    payload: PresignRequest,
    storage: StorageBackend = Depends(get_storage),
    current_user: models.User = Depends(get_current_user),
) -> PresignResponse:
    object_key = build_object_key(payload.file_name, storage.config.upload_key_prefix)
    try:
        presigned = storage.url_issuer.issue_upload_url(object_key, payload.content_type)
    except Exception as exc:  # noqa: BLE001
        logger.exception("Could not presign upload for user %s", current_user.id)
        raise HTTPException(status_code=500, detail="Could not create upload URL") from exc
    return PresignResponse(
        upload_url=presigned.url,
        object_key=presigned.object_key,
        expires_at=presigned.expires_at,
    )


@router.post("/recordings")
def upload_recording(
    response: Response,
    mode: UploadMode = Form(..., description="simple | s3_confirm | init | append | finalize"),
    call_record_id: Optional[str] = Form(None),
    session_id: Optional[str] = Form(None),
    index: Optional[int] = Form(None),
    expected_chunks: Optional[int] = Form(None),
    object_key: Optional[str] = Form(None),
    filename: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
    session: Session = Depends(get_session),
    storage: StorageBackend = Depends(get_storage),
    upload_sessions: UploadSessionStore = Depends(get_upload_sessions),
    current_user: models.User = Depends(get_current_user),
):
    """
    One endpoint, five upload modes picked by ``mode``. Every mode names the call record the
    recording belongs to; access is checked before anything is written.
    """
    if mode == UploadMode.simple:
        payload = _validate(SimpleRequest, call_record_id=call_record_id)
    elif mode == UploadMode.s3_confirm:
        payload = _validate(S3ConfirmRequest, call_record_id=call_record_id, object_key=object_key)
    elif mode == UploadMode.init:
        payload = _validate(
            InitRequest,
            call_record_id=call_record_id,
            expected_chunks=expected_chunks,
            filename=filename,
        )
    elif mode == UploadMode.append:
        payload = _validate(AppendRequest, call_record_id=call_record_id, session_id=session_id, index=index)
    else:
        payload = _validate(
            FinalizeRequest,
            call_record_id=call_record_id,
            session_id=session_id,
            expected_chunks=expected_chunks,
        )
    if mode in (UploadMode.simple, UploadMode.append) and file is None:
        raise HTTPException(status_code=400, detail="file is required")

    try:
        record = get_authorized_call_record(session, payload.call_record_id, current_user)

        if mode == UploadMode.simple:
            response.status_code = 202
            return _accept_simple_upload(record, file, storage)

        if mode == UploadMode.s3_confirm:
            if record.recording_path:
                raise errors.ConflictError(record.id, existing=record.recording_path)
            location = storage.blob_store.adopt(payload.object_key, recording_name(record.id, payload.object_key))
            try:
                attach_recording(session, record.id, location)
            except (errors.ConflictError, errors.LocationInUseError):
                # A moved local file belongs to nobody else; a remote key stays with its uploader.
                if isinstance(location, LocalLocation):
                    storage.blob_store.discard(location)
                raise
            return AttachedResponse(call_record_id=record.id, recording_path=location.encode())

        if mode == UploadMode.init:
            new_session_id = upload_sessions.init(payload.expected_chunks, record.id, payload.filename)
            response.status_code = 201
            return InitResponse(session_id=new_session_id)

        if mode == UploadMode.append:
            receipt = upload_sessions.append(
                payload.session_id,
                payload.index,
                file.file.read(storage.config.max_chunk_bytes + 1),
                call_record_id=record.id,
            )
            return ChunkReceiptResponse(
                session_id=receipt.session_id,
                chunks_received=receipt.chunks_received,
                total_size=receipt.total_size,
            )

        upload_sessions.status(payload.session_id, call_record_id=record.id)
        enqueue_chunked(
            ChunkedJob(
                session_id=payload.session_id,
                expected_chunks=payload.expected_chunks,
                call_record_id=record.id,
            )
        )
        response.status_code = 202
        return AcceptedResponse(call_record_id=record.id, session_id=payload.session_id)
    except errors.RecordingError as exc:
        if exc.status_code >= 500:
            logger.exception("Recording upload (%s) failed for call record %s", mode.value, call_record_id)
        raise _http_error(exc) from exc


def _accept_simple_upload(record: models.CallRecord, file: UploadFile, storage: StorageBackend) -> AcceptedResponse:
    original_name = os.path.basename(file.filename or "") or "recording.aac"
    _, ext = os.path.splitext(original_name)
    temp_dir = Path(storage.config.temp_dir) / "simple"
    temp_path = temp_dir / f"{uuid4().hex}{sanitize_token(ext.lower())}"
    try:
        temp_dir.mkdir(parents=True, exist_ok=True)
        with open(temp_path, "wb") as file_obj:
            shutil.copyfileobj(file.file, file_obj)
    except OSError as exc:
        raise errors.TransientStorageError(f"Could not stage upload: {exc}") from exc

    try:
        enqueue_simple(SimpleJob(temp_path=str(temp_path), call_record_id=record.id, filename=original_name))
    except Exception as exc:
        os.remove(temp_path)
        raise errors.TransientStorageError(f"Could not queue upload: {exc}") from exc
    return AcceptedResponse(call_record_id=record.id)


def _iter_blob(blob_store: BlobStore, location: RecordingLocation, start: int, length: int) -> Iterator[bytes]:
    offset = start
    remaining = length
    while remaining > 0:
        data = blob_store.read_range(location, offset, min(settings.STREAM_BLOCK_SIZE, remaining))
        if not data:
            break
        yield data
        offset += len(data)
        remaining -= len(data)


@router.get(
    "/recordings/{call_record_id}",
    responses={
        206: {"description": "Partial content for a single byte range. Only the first range of a multi-range request is served."},
        302: {"description": "Redirect to a presigned download URL for object-storage recordings."},
        404: {"description": "Call record or recording not found"},
        416: {"description": "Range not satisfiable"},
    },
)
def stream_recording(
    call_record_id: str,
    range_header: Optional[str] = Header(None, alias="Range"),
    session: Session = Depends(get_session),
    storage: StorageBackend = Depends(get_storage),
    current_user: models.User = Depends(get_current_user),
):
    """
    Play back a call's recording. Object-storage recordings redirect to a fresh presigned URL;
    local recordings stream from here with single-range support (``bytes=a-b``, ``a-``, ``-n``).
    """
    try:
        record = get_authorized_call_record(session, call_record_id, current_user)
        if not record.recording_path:
            raise errors.NotFoundError("Recording not found")
        location = parse_location(record.recording_path)

        if isinstance(location, RemoteLocation):
            presigned = storage.url_issuer.issue_download_url(location.object_key)
            return RedirectResponse(presigned.url, status_code=302)

        size = storage.blob_store.size(location)
    except errors.RecordingError as exc:
        raise _http_error(exc) from exc

    try:
        byte_range = parse_range(range_header, size)
    except RangeNotSatisfiable as exc:
        raise HTTPException(
            status_code=416,
            detail="Invalid range request",
            headers={"Content-Range": f"bytes */{exc.size}"},
        ) from exc

    media_type = content_type_for(location.path)
    headers = {"Accept-Ranges": "bytes"}
    if byte_range is None:
        headers["Content-Length"] = str(size)
        return StreamingResponse(_iter_blob(storage.blob_store, location, 0, size), media_type=media_type, headers=headers)

    headers["Content-Length"] = str(byte_range.length)
    headers["Content-Range"] = byte_range.content_range(size)
    return StreamingResponse(
        _iter_blob(storage.blob_store, location, byte_range.start, byte_range.length),
        status_code=206,
        media_type=media_type,
        headers=headers,
    )


@router.put("/uploads/{object_key:path}", response_model=DirectUploadResponse)
async def receive_direct_upload(
    object_key: str,
    request: Request,
    storage: StorageBackend = Depends(get_storage),
) -> DirectUploadResponse:
    """
    Same-origin PUT target handed out by the local URL issuer (trusted development mode only).
    """
    if storage.config.is_remote:
        raise HTTPException(status_code=403, detail="Local upload not allowed when object storage is configured")
    body = await request.body()
    if not body:
        raise HTTPException(status_code=400, detail="Upload body is empty")
    try:
        await run_in_threadpool(storage.blob_store.receive_direct_upload, object_key, body)
    except errors.RecordingError as exc:
        raise _http_error(exc) from exc
    return DirectUploadResponse(object_key=object_key)
