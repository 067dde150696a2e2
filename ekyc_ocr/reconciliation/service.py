"""Extraction run state machine and reconciliation into verification records.

One run per uploaded ID image: fetch, preprocess, recognize, extract, then
write the result back. Per record, ``extraction_status`` moves

    pending -> completed | failed,   failed/completed -> pending (retry or new upload)

Reviewer edits are stored separately from extracted fields and are never
touched by a run, so a late extraction cannot overwrite a human correction.
No lock is held while awaiting recognition; every store write is a short
field-scoped update issued before or after it.
"""

import asyncio
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from ekyc_ocr.exceptions import (
    EKYCError,
    RecognitionFailed,
    RecordNotFound,
    TerminalRecordError,
)
from ekyc_ocr.extraction.rule_extractor import ExtractedFieldSet, FieldExtractor
from ekyc_ocr.ocr.fetcher import DocumentFetcher
from ekyc_ocr.ocr.recognizer import RecognitionEngine
from ekyc_ocr.preprocessing.pipeline import PreprocessingPipeline
from ekyc_ocr.records.models import (
    DocumentRecord,
    DocumentRole,
    ExtractionStatus,
    SubjectIdentity,
    VerificationRecord,
    VerificationStatus,
    utcnow,
)
from ekyc_ocr.records.store import RecordStore
from ekyc_ocr.utils.config import AppConfig, RetryPolicy
from ekyc_ocr.utils.logger import get_logger

from .notifier import EventType, LoggingNotifier, Notifier, PipelineEvent, deliver

logger = get_logger(__name__)


@dataclass
class ExtractionState:
    """What a review screen needs to render one verification."""

    verification_id: str
    extraction_status: ExtractionStatus | None
    fields: ExtractedFieldSet | None
    is_edited: bool
    extraction_version: int
    error: str | None = None

    @property
    def manual_entry_required(self) -> bool:
        if self.extraction_status is ExtractionStatus.FAILED:
            return True
        return self.extraction_status is ExtractionStatus.COMPLETED and (
            self.fields is None or self.fields.is_empty
        )

    @classmethod
    def from_record(cls, record: VerificationRecord) -> "ExtractionState":
        return cls(
            verification_id=record.verification_id,
            extraction_status=record.extraction_status,
            fields=record.authoritative_fields,
            is_edited=record.is_edited,
            extraction_version=record.extraction_version,
            error=record.extraction_error,
        )


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class ReconciliationService:
    """Runs extraction pipelines and reconciles their output into records.

    Args:
        store: Verification record store.
        recognizer: Async recognition engine, shared across runs.
        fetcher: Downloads stored documents by URL.
        notifier: Receives completion/failure and review events.
        config: Application configuration.
        extractor: Field extractor; defaults to :class:`FieldExtractor`.
    """

    def __init__(
        self,
        store: RecordStore,
        recognizer: RecognitionEngine,
        fetcher: DocumentFetcher,
        notifier: Notifier | None = None,
        config: AppConfig | None = None,
        extractor: FieldExtractor | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.store = store
        self.recognizer = recognizer
        self.fetcher = fetcher
        self.notifier = notifier or LoggingNotifier()
        self.preprocessor = PreprocessingPipeline(self.config.preprocessing)
        self.extractor = extractor or FieldExtractor()
        self._tasks: set[asyncio.Task] = set()
        self._inflight: set[str] = set()

    # -- record lifecycle -------------------------------------------------

    async def start_verification(
        self, subject: SubjectIdentity
    ) -> VerificationRecord:
        """Return the subject's live verification, creating one if needed."""
        record, created = await self.store.get_or_create(subject)
        if not created:
            logger.info("Reusing verification %s", record.verification_id)
        return record

    async def find_verification(self, subject: SubjectIdentity) -> VerificationRecord:
        """Return the subject's most recent verification, live or closed.

        Raises:
            RecordNotFound: If the subject never started a verification.
        """
        record = await self.store.find_by_subject(subject)
        if record is None:
            raise RecordNotFound(
                "Verification", subject.subject_email or subject.subject_id
            )
        return record

    async def list_verifications(
        self, status: VerificationStatus | None = None, limit: int | None = None
    ) -> list[VerificationRecord]:
        """List verifications newest first, optionally filtered by status."""
        if limit is not None and limit < 1:
            raise ValueError("limit must be at least 1")
        records = await self.store.list_records(status)
        return records if limit is None else records[:limit]

    async def register_upload(
        self,
        verification_id: str,
        role: DocumentRole,
        document_url: str,
        document_id: str | None = None,
    ) -> DocumentRecord:
        """Record an uploaded document and, for ID sides, open a run.

        The run itself is started by :meth:`run_extraction`.

        Raises:
            TerminalRecordError: If the verification is Approved or Rejected.
            RecordNotFound: If the verification does not exist.
        """
        await self.store.set_document_url(verification_id, role, document_url)

        document = DocumentRecord(
            verification_id=verification_id, role=role, document_url=document_url
        )
        if document_id:
            document.document_id = document_id
        if role.triggers_extraction:
            document.extraction_status = ExtractionStatus.PENDING
        document = await self.store.add_document(document)

        if role.triggers_extraction:
            await self.store.update_fields(
                verification_id,
                extraction_status=ExtractionStatus.PENDING,
                extraction_error=None,
                extraction_started_at=utcnow(),
            )

        logger.info(
            "Registered %s document %s for verification %s",
            role.value,
            document.document_id,
            verification_id,
        )
        return document

    async def submit_upload(
        self,
        verification_id: str,
        role: DocumentRole,
        document_url: str,
        document_id: str | None = None,
    ) -> DocumentRecord:
        """Register an upload and start its extraction in the background."""
        document = await self.register_upload(
            verification_id, role, document_url, document_id
        )
        if role.triggers_extraction:
            self._spawn(self.run_extraction(document.document_id))
        return document

    # -- extraction runs --------------------------------------------------

    async def run_extraction(self, document_id: str) -> DocumentRecord:
        """Execute one extraction run for a stored document.

        Pipeline failures are recorded on the document and its verification
        and never raised to the caller.

        Returns:
            The document as it stands after the run.
        """
        if document_id in self._inflight:
            logger.info("Extraction for %s already running", document_id)
            return await self.store.get_document(document_id)

        self._inflight.add(document_id)
        try:
            document = await self.store.get_document(document_id)
            if not document.role.triggers_extraction:
                return document

            record = await self.store.get(document.verification_id)
            if record.is_terminal:
                logger.info(
                    "Skipping extraction for %s: verification %s is %s",
                    document_id,
                    record.verification_id,
                    record.status.value,
                )
                return document

            document = await self._begin_run(document)
            try:
                fields = await self._execute(document)
            except asyncio.CancelledError:
                await self._fail(document, RecognitionFailed("Extraction cancelled"))
                raise
            except EKYCError as exc:
                await self._fail(document, exc)
            except Exception as exc:
                logger.exception("Unexpected failure extracting %s", document_id)
                await self._fail(document, exc)
            else:
                await self._complete(document, fields)
            return await self.store.get_document(document_id)
        finally:
            self._inflight.discard(document_id)

    async def _begin_run(self, document: DocumentRecord) -> DocumentRecord:
        document = await self.store.update_document(
            document.document_id,
            extraction_status=ExtractionStatus.PENDING,
            error=None,
            attempts=document.attempts + 1,
        )
        await self.store.update_fields(
            document.verification_id,
            extraction_status=ExtractionStatus.PENDING,
            extraction_error=None,
            extraction_started_at=utcnow(),
        )
        logger.info(
            "Extraction run %d started for %s document %s",
            document.attempts,
            document.role.value,
            document.document_id,
        )
        return document

    async def _execute(self, document: DocumentRecord) -> ExtractedFieldSet:
        data = await self.fetcher.fetch(document.document_url)
        image = self.preprocessor.process(data, name=document.role.value)
        ocr = await self.recognizer.recognize(image)
        return self.extractor.extract(ocr.text)

    async def _complete(
        self, document: DocumentRecord, fields: ExtractedFieldSet
    ) -> None:
        await self.store.update_document(
            document.document_id,
            extraction_status=ExtractionStatus.COMPLETED,
            extracted_fields=fields,
            error=None,
        )
        try:
            record = await self.store.replace_extracted_fields(
                document.verification_id, fields
            )
        except TerminalRecordError:
            logger.info(
                "Verification %s closed during extraction, result kept on document %s",
                document.verification_id,
                document.document_id,
            )
            return

        if record.is_edited:
            logger.info(
                "Verification %s has reviewer edits; new extraction stored "
                "without replacing them",
                record.verification_id,
            )
        logger.info(
            "Extraction completed for %s document %s: %s",
            document.role.value,
            document.document_id,
            ", ".join(fields.found()) or "no fields found",
        )
        await deliver(
            self.notifier,
            PipelineEvent(
                event_type=EventType.EXTRACTION_COMPLETED,
                verification_id=record.verification_id,
                subject_id=record.subject_id,
                message=f"Extraction completed for {document.role.value}",
                payload={
                    "document_id": document.document_id,
                    "fields_found": fields.found(),
                    "manual_entry_required": fields.is_empty,
                },
            ),
        )

    async def _fail(self, document: DocumentRecord, exc: BaseException) -> None:
        detail = _describe(exc)
        await self.store.update_document(
            document.document_id,
            extraction_status=ExtractionStatus.FAILED,
            error=detail,
        )
        try:
            record = await self.store.mark_extraction_failed(
                document.verification_id, detail
            )
        except TerminalRecordError:
            logger.info(
                "Verification %s closed during extraction, failure kept on document %s",
                document.verification_id,
                document.document_id,
            )
            return

        logger.warning(
            "Extraction failed for %s document %s: %s",
            document.role.value,
            document.document_id,
            detail,
        )
        await deliver(
            self.notifier,
            PipelineEvent(
                event_type=EventType.EXTRACTION_FAILED,
                verification_id=record.verification_id,
                subject_id=record.subject_id,
                message=f"Extraction failed for {document.role.value}",
                payload={"document_id": document.document_id, "error": detail},
            ),
        )

        recoverable = isinstance(exc, EKYCError) and exc.recoverable
        if self._should_auto_retry(document, recoverable):
            self._spawn(self._retry_later(document.document_id))

    def _should_auto_retry(self, document: DocumentRecord, recoverable: bool) -> bool:
        settings = self.config.reconciliation
        return (
            settings.retry_policy is RetryPolicy.AUTOMATIC
            and recoverable
            and document.attempts <= settings.max_auto_retries
        )

    async def _retry_later(self, document_id: str) -> None:
        await asyncio.sleep(self.config.reconciliation.retry_delay_s)
        document = await self.store.get_document(document_id)
        if document.extraction_status is not ExtractionStatus.FAILED:
            return
        try:
            await self.prepare_retry(document_id)
        except TerminalRecordError:
            return
        logger.info("Automatic retry of document %s", document_id)
        await self.run_extraction(document_id)

    async def prepare_retry(self, document_id: str) -> DocumentRecord:
        """Move a finished document back to ``pending`` ahead of a new run.

        Raises:
            TerminalRecordError: If the verification is Approved or Rejected.
            ValueError: If the document is a selfie.
        """
        document = await self.store.get_document(document_id)
        if not document.role.triggers_extraction:
            raise ValueError(f"{document.role.value} documents are not extracted")

        record = await self.store.get(document.verification_id)
        if record.is_terminal:
            raise TerminalRecordError(record.verification_id, record.status.value)

        if document_id in self._inflight:
            logger.info("Retry of %s ignored: run in progress", document_id)
            return document

        document = await self.store.update_document(
            document_id, extraction_status=ExtractionStatus.PENDING, error=None
        )
        await self.store.update_fields(
            document.verification_id,
            extraction_status=ExtractionStatus.PENDING,
            extraction_error=None,
            extraction_started_at=utcnow(),
        )
        logger.info("Retry requested for document %s", document_id)
        return document

    async def retry(self, document_id: str) -> DocumentRecord:
        """Re-enter the pipeline for a stored document in the background."""
        document = await self.prepare_retry(document_id)
        self._spawn(self.run_extraction(document_id))
        return document

    # -- review -----------------------------------------------------------

    async def submit_edit(
        self,
        verification_id: str,
        fields: ExtractedFieldSet,
        expected_version: int | None = None,
    ) -> ExtractionState:
        """Store a reviewer's correction as the authoritative field set.

        Args:
            verification_id: Verification being reviewed.
            fields: Full corrected field set.
            expected_version: ``extraction_version`` the reviewer was shown;
                if extraction has replaced the fields since, the edit is refused.

        Raises:
            ConcurrentEditConflict: If ``expected_version`` is stale.
            TerminalRecordError: If the verification is Approved or Rejected.
        """
        record = await self.store.set_edited_fields(
            verification_id, fields, expected_version=expected_version
        )
        logger.info("Reviewer edit saved for verification %s", verification_id)
        return ExtractionState.from_record(record)

    async def discard_edits(self, verification_id: str) -> ExtractionState:
        """Drop reviewer edits so extracted fields become authoritative again."""
        record = await self.store.clear_edited_fields(verification_id)
        logger.info("Reviewer edits discarded for verification %s", verification_id)
        return ExtractionState.from_record(record)

    async def get_extraction_state(self, verification_id: str) -> ExtractionState:
        """Read the extraction status and authoritative fields for polling."""
        record = await self.store.get(verification_id)
        if self._is_stale(record):
            record = await self._expire(record) or record
        return ExtractionState.from_record(record)

    async def list_documents(self, verification_id: str) -> list[DocumentRecord]:
        await self.store.get(verification_id)
        return await self.store.list_documents(verification_id)

    def _is_stale(self, record: VerificationRecord) -> bool:
        if record.is_terminal:
            return False
        if record.extraction_status is not ExtractionStatus.PENDING:
            return False
        if record.extraction_started_at is None:
            return False
        limit = timedelta(seconds=self.config.reconciliation.stale_pending_after_s)
        return utcnow() - record.extraction_started_at > limit

    async def _expire(self, record: VerificationRecord) -> VerificationRecord | None:
        """Fail a stale record and its pending documents.

        Returns ``None`` without writing anything while one of the record's
        runs is still executing; that run reports its own outcome.
        """
        documents = await self.store.list_documents(record.verification_id)
        if any(d.document_id in self._inflight for d in documents):
            logger.info(
                "Verification %s pending past its deadline but a run is active",
                record.verification_id,
            )
            return None

        detail = "RecognitionFailed: extraction did not finish in time"
        for document in documents:
            if document.extraction_status is ExtractionStatus.PENDING:
                await self.store.update_document(
                    document.document_id,
                    extraction_status=ExtractionStatus.FAILED,
                    error=detail,
                )
        logger.warning(
            "Verification %s stuck in pending, marking failed", record.verification_id
        )
        try:
            return await self.store.mark_extraction_failed(
                record.verification_id, detail
            )
        except TerminalRecordError:
            return None

    async def expire_stale_runs(self) -> int:
        """Fail every verification whose run has been pending too long.

        Returns:
            Number of verifications moved to ``failed``.
        """
        expired = 0
        for record in await self.store.list_records(VerificationStatus.PENDING):
            if self._is_stale(record) and await self._expire(record) is not None:
                expired += 1
        return expired

    # -- officer actions --------------------------------------------------

    async def approve(self, verification_id: str) -> VerificationRecord:
        """Mark a verification Approved and notify the subject."""
        return await self._close(verification_id, VerificationStatus.APPROVED, None)

    async def reject(self, verification_id: str, reason: str) -> VerificationRecord:
        """Mark a verification Rejected with a reason and notify the subject."""
        if not reason or not reason.strip():
            raise ValueError("A rejection reason is required")
        return await self._close(
            verification_id, VerificationStatus.REJECTED, reason.strip()
        )

    async def _close(
        self,
        verification_id: str,
        status: VerificationStatus,
        reason: str | None,
    ) -> VerificationRecord:
        record = await self.store.get(verification_id)
        if record.is_terminal:
            raise TerminalRecordError(verification_id, record.status.value)

        record = await self.store.update_fields(
            verification_id, status=status, rejection_reason=reason
        )
        logger.info("Verification %s %s", verification_id, status.value.lower())

        event_type = (
            EventType.VERIFICATION_APPROVED
            if status is VerificationStatus.APPROVED
            else EventType.VERIFICATION_REJECTED
        )
        await deliver(
            self.notifier,
            PipelineEvent(
                event_type=event_type,
                verification_id=verification_id,
                subject_id=record.subject_id,
                message=f"Your identity verification has been {status.value.lower()}",
                payload={"rejection_reason": reason} if reason else {},
            ),
        )
        return record

    # -- task management --------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait until all background runs and scheduled retries finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel background work."""
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
