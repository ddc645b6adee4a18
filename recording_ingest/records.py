import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from recording_ingest import errors, models
from recording_ingest.locations import RecordingLocation

logger = logging.getLogger(__name__)


def get_authorized_call_record(session: Session, call_record_id: str, user: models.User) -> models.CallRecord:
    """
    Resolve a call record the telecaller may act on: they must own the record's lead.
    """
    if not call_record_id:
        raise errors.ValidationError("call_record_id is required")
    record = session.get(models.CallRecord, call_record_id)
    if record is None:
        raise errors.CallRecordNotFoundError(call_record_id)
    if record.lead is None or record.lead.telecaller_id != user.id:
        raise errors.AuthorizationError("You are not authorized to access this call record")
    return record


def attach_recording(session: Session, call_record_id: str, location: RecordingLocation) -> models.CallRecord:
    """
    Single-assignment write of a recording location onto its call record.

    The update only matches rows without a recording, so of two concurrent attaches exactly one
    succeeds. The loser gets ConflictError carrying the location that won. A location already held
    by another record violates the unique index and raises LocationInUseError.
    """
    encoded = location.encode()
    try:
        result = session.execute(
            update(models.CallRecord)
            .where(
                models.CallRecord.id == call_record_id,
                models.CallRecord.recording_path.is_(None),
            )
            .values(recording_path=encoded)
        )
        if result.rowcount == 1:
            session.commit()
    except IntegrityError as exc:
        session.rollback()
        raise errors.LocationInUseError(encoded) from exc
    if result.rowcount == 1:
        logger.info("Attached recording %s to call record %s", encoded, call_record_id)
        return session.get(models.CallRecord, call_record_id, populate_existing=True)

    session.rollback()
    record = session.get(models.CallRecord, call_record_id, populate_existing=True)
    if record is None:
        raise errors.CallRecordNotFoundError(call_record_id)
    raise errors.ConflictError(call_record_id, existing=record.recording_path)
