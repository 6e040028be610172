# app/schemas/upload_sessions.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.schemas.extraction import ExtractedFilamentData


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PendingUploadOut(CamelModel):
    id: int
    image_url: str
    status: str
    extracted_data: Optional[ExtractedFilamentData] = None
    error: Optional[str] = None

    @classmethod
    def from_record(cls, upload) -> "PendingUploadOut":
        return cls(
            id=upload.id,
            image_url=upload.image_url,
            status=upload.status,
            extracted_data=ExtractedFilamentData.from_stored(upload.extracted_data),
            error=upload.error_message,
        )


class SessionCreatedOut(CamelModel):
    token: str
    upload_url: str
    expires_at: datetime


class SessionUploadOut(CamelModel):
    uploaded_count: int
    failed_count: int = 0
    total_count: int


class SessionStatusOut(CamelModel):
    status: str
    image_count: int
    images: List[PendingUploadOut]
    processed_count: int
    pending_count: int
    processing: bool
    expires_at: datetime


class ProcessingSnapshotOut(CamelModel):
    results: List[PendingUploadOut]
    processing: bool
    processed_count: int
    total_count: int


class BulkUploadOut(ProcessingSnapshotOut):
    token: str
    expires_at: datetime
    uploaded_count: int
    failed_count: int = 0


class CancelOut(CamelModel):
    cancelled_count: int
    status: str


class PendingListOut(CamelModel):
    items: List[PendingUploadOut]
    pending_count: int
    processed_count: int
    total_count: int


class PendingUploadEditIn(CamelModel):
    extracted_data: ExtractedFilamentData


class MarkImportedIn(CamelModel):
    ids: List[int] = Field(default_factory=list)


class CountOut(CamelModel):
    success: bool = True
    count: int


class SingleExtractOut(CamelModel):
    image_url: str
    extracted_data: ExtractedFilamentData


class VisionModelOut(CamelModel):
    id: str
    name: str
    description: str


class ModelSettingsOut(CamelModel):
    ai_enabled: bool
    selected_model: str
    available_models: List[VisionModelOut]


class ModelSelectIn(CamelModel):
    model: str


class ApiKeyStatusOut(ModelSettingsOut):
    has_user_key: bool
    has_env_key: bool
    masked_key: Optional[str] = None


class ApiKeyIn(CamelModel):
    api_key: str = ""


class ApiKeySavedOut(CamelModel):
    success: bool = True
    masked_key: str


class ExtractPreviewIn(CamelModel):
    image_base64: Optional[str] = None


class ExtractPreviewOut(CamelModel):
    success: bool = True
    extracted_data: ExtractedFilamentData
