"""Verification record and uploaded document models."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum

from ekyc_ocr.extraction.rule_extractor import ExtractedFieldSet


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class VerificationStatus(StrEnum):
    """Officer-facing status of a verification."""

    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not VerificationStatus.PENDING


class ExtractionStatus(StrEnum):
    """Status of the most recent extraction run."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class DocumentRole(StrEnum):
    """Which image of the submission a document is."""

    ID_FRONT = "id_front"
    ID_BACK = "id_back"
    SELFIE = "selfie"

    @property
    def triggers_extraction(self) -> bool:
        return self is not DocumentRole.SELFIE


@dataclass(frozen=True)
class SubjectIdentity:
    """Identifies the user a verification belongs to."""

    subject_id: str | None = None
    subject_email: str | None = None

    def __post_init__(self) -> None:
        if self.subject_email:
            object.__setattr__(self, "subject_email", self.subject_email.strip().lower())
        if not self.subject_id and not self.subject_email:
            raise ValueError("subject_id or subject_email is required")

    def matches(self, record: "VerificationRecord") -> bool:
        if self.subject_id and record.subject_id == self.subject_id:
            return True
        return bool(self.subject_email) and record.subject_email == self.subject_email


@dataclass
class VerificationRecord:
    """Mutable state of one user's identity verification attempt."""

    subject_id: str | None
    subject_email: str | None
    verification_id: str = field(default_factory=new_id)
    document_urls: dict[DocumentRole, str] = field(default_factory=dict)
    status: VerificationStatus = VerificationStatus.PENDING
    extraction_status: ExtractionStatus | None = None
    extracted_fields: ExtractedFieldSet | None = None
    edited_fields: ExtractedFieldSet | None = None
    is_edited: bool = False
    rejection_reason: str | None = None
    extraction_version: int = 0
    extraction_error: str | None = None
    extraction_started_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def authoritative_fields(self) -> ExtractedFieldSet | None:
        """Edited fields when a reviewer corrected them, else extracted ones."""
        if self.is_edited:
            return self.edited_fields
        return self.extracted_fields


@dataclass
class DocumentRecord:
    """One uploaded document and the outcome of its latest extraction run."""

    verification_id: str
    role: DocumentRole
    document_url: str
    document_id: str = field(default_factory=new_id)
    extraction_status: ExtractionStatus | None = None
    extracted_fields: ExtractedFieldSet | None = None
    error: str | None = None
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
