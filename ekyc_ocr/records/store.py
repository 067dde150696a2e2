"""Verification record store: the collaborator interface and an in-memory backend.

Every write is field-scoped: it changes only the attributes it names, so
concurrent writers touching different fields (front and back uploads, an
extraction completion and a reviewer edit) never lose each other's updates.
``extracted_fields`` is the one attribute replaced wholesale.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from typing import Any

from ekyc_ocr.exceptions import (
    ConcurrentEditConflict,
    RecordNotFound,
    TerminalRecordError,
)
from ekyc_ocr.extraction.rule_extractor import ExtractedFieldSet
from ekyc_ocr.utils.logger import get_logger

from .models import (
    DocumentRecord,
    DocumentRole,
    ExtractionStatus,
    SubjectIdentity,
    VerificationRecord,
    VerificationStatus,
    utcnow,
)

logger = get_logger(__name__)

# Attributes writable through update_fields; extracted/edited fields have
# dedicated methods with their own rules.
_RECORD_FIELDS = frozenset(
    {
        "status",
        "rejection_reason",
        "extraction_status",
        "extraction_error",
        "extraction_started_at",
    }
)
_DOCUMENT_FIELDS = frozenset(
    {"extraction_status", "extracted_fields", "error", "attempts"}
)


class RecordStore(ABC):
    """Persistence interface for verification records and their documents."""

    @abstractmethod
    async def get_or_create(
        self, subject: SubjectIdentity
    ) -> tuple[VerificationRecord, bool]:
        """Return the subject's live record, creating one if none exists.

        Approved or Rejected records are never reused.
        """
        ...

    @abstractmethod
    async def get(self, verification_id: str) -> VerificationRecord:
        ...

    @abstractmethod
    async def find_by_subject(
        self, subject: SubjectIdentity
    ) -> VerificationRecord | None:
        ...

    @abstractmethod
    async def list_records(
        self, status: VerificationStatus | None = None
    ) -> list[VerificationRecord]:
        ...

    @abstractmethod
    async def set_document_url(
        self, verification_id: str, role: DocumentRole, url: str
    ) -> VerificationRecord:
        ...

    @abstractmethod
    async def update_fields(
        self, verification_id: str, **changes: Any
    ) -> VerificationRecord:
        ...

    @abstractmethod
    async def replace_extracted_fields(
        self, verification_id: str, fields: ExtractedFieldSet
    ) -> VerificationRecord:
        ...

    @abstractmethod
    async def mark_extraction_failed(
        self, verification_id: str, error: str
    ) -> VerificationRecord:
        ...

    @abstractmethod
    async def set_edited_fields(
        self,
        verification_id: str,
        fields: ExtractedFieldSet,
        expected_version: int | None = None,
    ) -> VerificationRecord:
        ...

    @abstractmethod
    async def clear_edited_fields(self, verification_id: str) -> VerificationRecord:
        ...

    @abstractmethod
    async def add_document(self, document: DocumentRecord) -> DocumentRecord:
        ...

    @abstractmethod
    async def get_document(self, document_id: str) -> DocumentRecord:
        ...

    @abstractmethod
    async def update_document(
        self, document_id: str, **changes: Any
    ) -> DocumentRecord:
        ...

    @abstractmethod
    async def list_documents(self, verification_id: str) -> list[DocumentRecord]:
        ...


class InMemoryRecordStore(RecordStore):
    """Process-local store guarded by one asyncio lock.

    Critical sections contain no awaits, so the lock is only ever held for
    the duration of a dictionary update. Reads return copies.
    """

    def __init__(self) -> None:
        self._records: dict[str, VerificationRecord] = {}
        self._documents: dict[str, DocumentRecord] = {}
        self._lock = asyncio.Lock()

    def _record(self, verification_id: str) -> VerificationRecord:
        try:
            return self._records[verification_id]
        except KeyError:
            raise RecordNotFound("Verification", verification_id) from None

    def _document(self, document_id: str) -> DocumentRecord:
        try:
            return self._documents[document_id]
        except KeyError:
            raise RecordNotFound("Document", document_id) from None

    @staticmethod
    def _ensure_live(record: VerificationRecord) -> None:
        if record.is_terminal:
            raise TerminalRecordError(record.verification_id, record.status.value)

    async def get_or_create(
        self, subject: SubjectIdentity
    ) -> tuple[VerificationRecord, bool]:
        async with self._lock:
            live = [
                r
                for r in self._records.values()
                if not r.is_terminal and subject.matches(r)
            ]
            if live:
                record = max(live, key=lambda r: r.created_at)
                return copy.deepcopy(record), False

            record = VerificationRecord(
                subject_id=subject.subject_id,
                subject_email=subject.subject_email,
            )
            self._records[record.verification_id] = record
            logger.info(
                "Created verification %s for %s",
                record.verification_id,
                subject.subject_email or subject.subject_id,
            )
            return copy.deepcopy(record), True

    async def get(self, verification_id: str) -> VerificationRecord:
        async with self._lock:
            return copy.deepcopy(self._record(verification_id))

    async def find_by_subject(
        self, subject: SubjectIdentity
    ) -> VerificationRecord | None:
        async with self._lock:
            matches = [r for r in self._records.values() if subject.matches(r)]
            if not matches:
                return None
            return copy.deepcopy(max(matches, key=lambda r: r.created_at))

    async def list_records(
        self, status: VerificationStatus | None = None
    ) -> list[VerificationRecord]:
        async with self._lock:
            records = [
                r for r in self._records.values() if status is None or r.status == status
            ]
            records.sort(key=lambda r: r.created_at, reverse=True)
            return copy.deepcopy(records)

    async def set_document_url(
        self, verification_id: str, role: DocumentRole, url: str
    ) -> VerificationRecord:
        async with self._lock:
            record = self._record(verification_id)
            self._ensure_live(record)
            record.document_urls[role] = url
            record.updated_at = utcnow()
            return copy.deepcopy(record)

    async def update_fields(
        self, verification_id: str, **changes: Any
    ) -> VerificationRecord:
        unknown = set(changes) - _RECORD_FIELDS
        if unknown:
            raise ValueError(f"Fields not writable: {', '.join(sorted(unknown))}")

        async with self._lock:
            record = self._record(verification_id)
            for name, value in changes.items():
                setattr(record, name, value)
            record.updated_at = utcnow()
            return copy.deepcopy(record)

    async def replace_extracted_fields(
        self, verification_id: str, fields: ExtractedFieldSet
    ) -> VerificationRecord:
        async with self._lock:
            record = self._record(verification_id)
            self._ensure_live(record)
            record.extracted_fields = copy.deepcopy(fields)
            record.extraction_version += 1
            record.extraction_status = ExtractionStatus.COMPLETED
            record.extraction_error = None
            record.updated_at = utcnow()
            return copy.deepcopy(record)

    async def mark_extraction_failed(
        self, verification_id: str, error: str
    ) -> VerificationRecord:
        async with self._lock:
            record = self._record(verification_id)
            self._ensure_live(record)
            record.extraction_status = ExtractionStatus.FAILED
            record.extraction_error = error
            record.updated_at = utcnow()
            return copy.deepcopy(record)

    async def set_edited_fields(
        self,
        verification_id: str,
        fields: ExtractedFieldSet,
        expected_version: int | None = None,
    ) -> VerificationRecord:
        async with self._lock:
            record = self._record(verification_id)
            self._ensure_live(record)
            if (
                expected_version is not None
                and expected_version != record.extraction_version
            ):
                raise ConcurrentEditConflict(
                    verification_id, expected_version, record.extraction_version
                )
            record.edited_fields = copy.deepcopy(fields)
            record.is_edited = True
            record.updated_at = utcnow()
            return copy.deepcopy(record)

    async def clear_edited_fields(self, verification_id: str) -> VerificationRecord:
        async with self._lock:
            record = self._record(verification_id)
            self._ensure_live(record)
            record.edited_fields = None
            record.is_edited = False
            record.updated_at = utcnow()
            return copy.deepcopy(record)

    async def add_document(self, document: DocumentRecord) -> DocumentRecord:
        async with self._lock:
            self._record(document.verification_id)
            self._documents[document.document_id] = copy.deepcopy(document)
            return copy.deepcopy(document)

    async def get_document(self, document_id: str) -> DocumentRecord:
        async with self._lock:
            return copy.deepcopy(self._document(document_id))

    async def update_document(
        self, document_id: str, **changes: Any
    ) -> DocumentRecord:
        unknown = set(changes) - _DOCUMENT_FIELDS
        if unknown:
            raise ValueError(f"Fields not writable: {', '.join(sorted(unknown))}")

        async with self._lock:
            document = self._document(document_id)
            for name, value in changes.items():
                setattr(document, name, value)
            document.updated_at = utcnow()
            return copy.deepcopy(document)

    async def list_documents(self, verification_id: str) -> list[DocumentRecord]:
        async with self._lock:
            documents = [
                d
                for d in self._documents.values()
                if d.verification_id == verification_id
            ]
            documents.sort(key=lambda d: d.created_at)
            return copy.deepcopy(documents)
