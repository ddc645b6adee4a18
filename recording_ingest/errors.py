from typing import Optional


class RecordingError(Exception):
    """Base class for ingestion and retrieval failures."""

    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message


class ValidationError(RecordingError):
    status_code = 400


class AuthorizationError(RecordingError):
    status_code = 403


class NotFoundError(RecordingError):
    status_code = 404


class SessionNotFoundError(NotFoundError):
    def __init__(self, session_id: str) -> None:
        super().__init__("Upload session not found")
        self.session_id = session_id


class CallRecordNotFoundError(NotFoundError):
    def __init__(self, call_record_id: str) -> None:
        super().__init__("Call record not found")
        self.call_record_id = call_record_id


class BlobNotFoundError(NotFoundError):
    def __init__(self, location: str) -> None:
        super().__init__("Recording file not found")
        self.location = location


class IncompleteUploadError(RecordingError):
    """Finalize was requested before every declared chunk arrived. Never retried."""

    status_code = 400

    def __init__(self, session_id: str, expected: int, missing: list[int]) -> None:
        super().__init__("Incomplete upload - not all chunks received")
        self.session_id = session_id
        self.expected = expected
        self.missing = missing


class TransientStorageError(RecordingError):
    """I/O failure against disk or object storage; safe to retry."""


class ConflictError(RecordingError):
    """The call record already has a recording attached."""

    status_code = 409

    def __init__(self, call_record_id: str, existing: Optional[str] = None) -> None:
        super().__init__("Recording already attached to this call record")
        self.call_record_id = call_record_id
        self.existing = existing


class LocationInUseError(RecordingError):
    """The stored recording already belongs to another call record."""

    status_code = 409

    def __init__(self, location: str) -> None:
        super().__init__("Recording is already attached to another call record")
        self.location = location
