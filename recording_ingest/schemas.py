from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class UploadMode(str, Enum):
    simple = "simple"
    s3_confirm = "s3_confirm"
    init = "init"
    append = "append"
    finalize = "finalize"


class PresignRequest(BaseModel):
    content_type: Optional[str] = Field("audio/aac", description="MIME type the client will upload with.")
    file_name: Optional[str] = Field(None, description="Original file name, used for the key's extension.")


class PresignResponse(BaseModel):
    upload_url: str
    object_key: str
    expires_at: Optional[int] = Field(
        None,
        description="Unix time the URL stops working. Null for the local upload endpoint, which never expires.",
    )


class S3ConfirmRequest(BaseModel):
    call_record_id: str = Field(..., min_length=1)
    object_key: str = Field(..., min_length=1, description="Key the client PUT to through the presigned URL.")


class InitRequest(BaseModel):
    call_record_id: str = Field(..., min_length=1)
    expected_chunks: int = Field(..., ge=1, description="Number of chunks the client will send.")
    filename: Optional[str] = Field(None, description="Original file name, used for the stored extension.")


class AppendRequest(BaseModel):
    call_record_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    index: int = Field(..., ge=0, description="Zero-based chunk index; order of arrival does not matter.")


class FinalizeRequest(BaseModel):
    call_record_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    expected_chunks: int = Field(..., ge=1)


class SimpleRequest(BaseModel):
    call_record_id: str = Field(..., min_length=1)


class AcceptedResponse(BaseModel):
    status: str = "accepted"
    call_record_id: str
    session_id: Optional[str] = None


class AttachedResponse(BaseModel):
    status: str = "attached"
    call_record_id: str
    recording_path: str


class InitResponse(BaseModel):
    session_id: str


class ChunkReceiptResponse(BaseModel):
    session_id: str
    chunks_received: int
    total_size: int


class DirectUploadResponse(BaseModel):
    object_key: str
    message: str = "Upload successful"
