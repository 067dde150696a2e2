"""Pydantic request/response schemas for the FastAPI endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field

from ekyc_ocr.extraction.rule_extractor import ExtractedFieldSet
from ekyc_ocr.records.models import (
    DocumentRole,
    ExtractionStatus,
    VerificationStatus,
)


class FieldSet(BaseModel):
    """Structured ID card fields; any field may be missing."""

    id_number: str | None = None
    name: str | None = None
    date_of_birth: str | None = None
    gender: str | None = None
    address: str | None = None

    @classmethod
    def from_fields(cls, fields: ExtractedFieldSet | None) -> "FieldSet | None":
        if fields is None:
            return None
        return cls(**fields.to_dict())

    def to_fields(self) -> ExtractedFieldSet:
        return ExtractedFieldSet(**self.model_dump())


class SubjectRequest(BaseModel):
    """Request body for starting or resuming a verification."""

    subject_id: str | None = None
    subject_email: str | None = None


class DocumentUploadRequest(BaseModel):
    """Result of an upload to document storage."""

    document_url: str = Field(min_length=1)
    role: DocumentRole
    document_id: str | None = None


class EditRequest(BaseModel):
    """Reviewer correction of the extracted fields."""

    fields: FieldSet
    expected_version: int | None = None


class RejectRequest(BaseModel):
    """Officer rejection with the reason shown to the subject."""

    reason: str = Field(min_length=1)


class DocumentResponse(BaseModel):
    """Response schema for an uploaded document."""

    document_id: str
    verification_id: str
    role: DocumentRole
    document_url: str
    extraction_status: ExtractionStatus | None
    extracted_fields: FieldSet | None
    error: str | None
    attempts: int


class VerificationResponse(BaseModel):
    """Response schema for a verification record."""

    verification_id: str
    subject_id: str | None
    subject_email: str | None
    status: VerificationStatus
    document_urls: dict[DocumentRole, str]
    extraction_status: ExtractionStatus | None
    extracted_fields: FieldSet | None
    edited_fields: FieldSet | None
    is_edited: bool
    rejection_reason: str | None
    extraction_version: int
    created_at: datetime
    updated_at: datetime


class ExtractionStateResponse(BaseModel):
    """Polling view of a verification's extraction."""

    verification_id: str
    extraction_status: ExtractionStatus | None
    fields: FieldSet | None
    is_edited: bool
    extraction_version: int
    manual_entry_required: bool
    error: str | None
    poll_interval_s: float


class HealthResponse(BaseModel):
    """Response schema for the health check endpoint."""

    status: str
    version: str
    tesseract_available: bool
    engine: str
