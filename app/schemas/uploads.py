# app/schemas/uploads.py
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_TOTAL_CHUNKS = 100


def _image_mime(v: str) -> str:
    v = (v or "").strip().lower()
    if not v.startswith("image/"):
        raise ValueError("file_type must be an image/* MIME type")
    return v


class ChunkUploadIn(BaseModel):
    session_id: str | None = Field(None, max_length=128)
    chunk_index: int = Field(..., ge=0)
    total_chunks: int = Field(..., ge=1, le=MAX_TOTAL_CHUNKS)
    data: str = Field(..., min_length=1)  # base64, optioneel met data:...;base64, prefix
    file_name: str = Field(..., min_length=1, max_length=255)
    file_type: str
    original_chunk_size: int | None = Field(None, gt=0)
    is_retry: bool = False
    retry_attempt: int = Field(0, ge=0)

    @field_validator("file_type")
    @classmethod
    def validate_file_type(cls, v):
        return _image_mime(v)


class ProcessingMetadataOut(BaseModel):
    width: int
    height: int
    original_size: int
    processed_size: int
    compression_ratio: float
    strategy: str
    content_type: str
    processing_time_ms: int
    total_time_ms: int
    detected_format: str
    format_confidence: str


class UploadResultOut(BaseModel):
    file_path: str
    image_id: str
    metadata: ProcessingMetadataOut
    warnings: list[str] = []


class ChunkUploadOut(BaseModel):
    success: bool
    complete: bool
    session_id: str
    received_chunks: int
    total_chunks: int
    progress: float
    adaptive_chunk_size: int | None = None
    suggested_action: str | None = None
    memory_pressure: str
    message: str
    error: dict | None = None
    result: UploadResultOut | None = None


class SingleUploadIn(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=255)
    file_content: str = Field(..., min_length=1)  # base64
    file_type: str
    title: str | None = Field(None, max_length=255)
    description: str | None = None
    alt_text: str | None = Field(None, max_length=512)

    @field_validator("file_type")
    @classmethod
    def validate_file_type(cls, v):
        return _image_mime(v)


class SingleUploadOut(BaseModel):
    success: bool = True
    file_path: str
    image_id: str
    metadata: ProcessingMetadataOut
    warnings: list[str] = []


class BulkUploadIn(BaseModel):
    images: list[SingleUploadIn] = Field(..., min_length=1, max_length=5)


class BulkErrorOut(BaseModel):
    index: int
    file_name: str
    error: dict


class BulkSummaryOut(BaseModel):
    total: int
    succeeded: int
    failed: int


class BulkUploadOut(BaseModel):
    success: bool
    results: list[SingleUploadOut]
    errors: list[BulkErrorOut]
    summary: BulkSummaryOut


class RecoveryOut(BaseModel):
    session_id: str
    state: str
    missing_chunks: list[int]
    received_chunks: int
    total_chunks: int
    recovery_attempts: int
    max_recovery_attempts: int
    adaptive_chunk_size: int


class ImageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    file_name: str
    file_path: str
    file_size: int
    mime_type: str
    width: int | None = None
    height: int | None = None
    original_size: int | None = None
    title: str | None = None
    description: str | None = None
    alt_text: str | None = None
    uploaded_by: str | None = None
    processing_info: dict | None = None
    created_at: datetime | None = None


class ImageDataOut(BaseModel):
    image: ImageOut
    content_type: str
    size: int
    data_url: str


class ImageListOut(BaseModel):
    items: list[ImageOut]
    total: int
    page: int
    page_size: int
    pages: int
