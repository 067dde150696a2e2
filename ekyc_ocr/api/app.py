"""FastAPI application for the eKYC document extraction API.

Provides endpoints to start a verification, register uploaded ID images,
poll extraction results, submit reviewer corrections, retry failed runs,
and record officer decisions.
"""

import shutil
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ekyc_ocr.exceptions import (
    ConcurrentEditConflict,
    RecordNotFound,
    TerminalRecordError,
)
from ekyc_ocr.ocr.fetcher import DocumentFetcher
from ekyc_ocr.ocr.recognizer import get_recognizer, shutdown_recognizer
from ekyc_ocr.reconciliation.service import ExtractionState, ReconciliationService
from ekyc_ocr.records.models import (
    DocumentRecord,
    SubjectIdentity,
    VerificationRecord,
    VerificationStatus,
)
from ekyc_ocr.records.store import InMemoryRecordStore
from ekyc_ocr.utils.config import load_config
from ekyc_ocr.utils.logger import get_logger

from .schemas import (
    DocumentResponse,
    DocumentUploadRequest,
    EditRequest,
    ExtractionStateResponse,
    FieldSet,
    HealthResponse,
    RejectRequest,
    SubjectRequest,
    VerificationResponse,
)

logger = get_logger(__name__)

VERSION = "1.0.0"

_service: ReconciliationService | None = None


def _get_service() -> ReconciliationService:
    """Return the shared reconciliation service, building it on first use."""
    global _service
    if _service is None:
        config = load_config()
        _service = ReconciliationService(
            store=InMemoryRecordStore(),
            recognizer=get_recognizer(config.ocr),
            fetcher=DocumentFetcher(timeout_s=config.fetch.timeout_s),
            config=config,
        )
    return _service


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    yield
    if _service is not None:
        await _service.close()
    await shutdown_recognizer()


app = FastAPI(
    title="eKYC Document Extraction API",
    description="Extract and reconcile identity fields from uploaded ID cards",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RecordNotFound)
async def _not_found(request: Request, exc: RecordNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(TerminalRecordError)
async def _terminal(request: Request, exc: TerminalRecordError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": exc.message})


@app.exception_handler(ConcurrentEditConflict)
async def _edit_conflict(
    request: Request, exc: ConcurrentEditConflict
) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "detail": exc.message,
            "expected_version": exc.expected_version,
            "actual_version": exc.actual_version,
        },
    )


def _verification_response(record: VerificationRecord) -> VerificationResponse:
    return VerificationResponse(
        verification_id=record.verification_id,
        subject_id=record.subject_id,
        subject_email=record.subject_email,
        status=record.status,
        document_urls=record.document_urls,
        extraction_status=record.extraction_status,
        extracted_fields=FieldSet.from_fields(record.extracted_fields),
        edited_fields=FieldSet.from_fields(record.edited_fields),
        is_edited=record.is_edited,
        rejection_reason=record.rejection_reason,
        extraction_version=record.extraction_version,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _document_response(document: DocumentRecord) -> DocumentResponse:
    return DocumentResponse(
        document_id=document.document_id,
        verification_id=document.verification_id,
        role=document.role,
        document_url=document.document_url,
        extraction_status=document.extraction_status,
        extracted_fields=FieldSet.from_fields(document.extracted_fields),
        error=document.error,
        attempts=document.attempts,
    )


def _state_response(
    state: ExtractionState, service: ReconciliationService
) -> ExtractionStateResponse:
    return ExtractionStateResponse(
        verification_id=state.verification_id,
        extraction_status=state.extraction_status,
        fields=FieldSet.from_fields(state.fields),
        is_edited=state.is_edited,
        extraction_version=state.extraction_version,
        manual_entry_required=state.manual_entry_required,
        error=state.error,
        poll_interval_s=service.config.reconciliation.poll_interval_s,
    )


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Return system health status."""
    service = _get_service()
    return HealthResponse(
        status="healthy",
        version=VERSION,
        tesseract_available=shutil.which("tesseract") is not None,
        engine=service.recognizer.engine_name,
    )


@app.post("/verifications", response_model=VerificationResponse)
async def start_verification(body: SubjectRequest) -> VerificationResponse:
    """Create a verification for the subject, or return the live one."""
    try:
        subject = SubjectIdentity(body.subject_id, body.subject_email)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    record = await _get_service().start_verification(subject)
    return _verification_response(record)


@app.get("/verifications", response_model=VerificationResponse)
async def find_verification(
    subject_id: Annotated[str | None, Query()] = None,
    subject_email: Annotated[str | None, Query()] = None,
) -> VerificationResponse:
    """Return the subject's most recent verification and its status."""
    try:
        subject = SubjectIdentity(subject_id, subject_email)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    record = await _get_service().find_verification(subject)
    return _verification_response(record)


@app.get("/officer/verifications", response_model=list[VerificationResponse])
async def list_verifications(
    status: Annotated[VerificationStatus | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 50,
) -> list[VerificationResponse]:
    """List verifications for officer review, newest first."""
    records = await _get_service().list_verifications(status, limit)
    return [_verification_response(r) for r in records]


@app.get("/verifications/{verification_id}", response_model=VerificationResponse)
async def get_verification(verification_id: str) -> VerificationResponse:
    """Return a verification record."""
    record = await _get_service().store.get(verification_id)
    return _verification_response(record)


@app.get(
    "/verifications/{verification_id}/documents",
    response_model=list[DocumentResponse],
)
async def list_documents(verification_id: str) -> list[DocumentResponse]:
    """List every document uploaded for a verification."""
    documents = await _get_service().list_documents(verification_id)
    return [_document_response(d) for d in documents]


@app.post(
    "/verifications/{verification_id}/documents",
    response_model=DocumentResponse,
    status_code=202,
)
async def register_document(
    verification_id: str,
    body: DocumentUploadRequest,
    background_tasks: BackgroundTasks,
) -> DocumentResponse:
    """Register an uploaded document; ID sides are extracted in the background."""
    service = _get_service()
    document = await service.register_upload(
        verification_id, body.role, body.document_url, body.document_id
    )
    if body.role.triggers_extraction:
        background_tasks.add_task(service.run_extraction, document.document_id)
    return _document_response(document)


@app.post(
    "/documents/{document_id}/retry",
    response_model=DocumentResponse,
    status_code=202,
)
async def retry_document(
    document_id: str, background_tasks: BackgroundTasks
) -> DocumentResponse:
    """Re-run extraction for a previously uploaded document."""
    service = _get_service()
    try:
        document = await service.prepare_retry(document_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    background_tasks.add_task(service.run_extraction, document_id)
    return _document_response(document)


@app.get(
    "/verifications/{verification_id}/extraction",
    response_model=ExtractionStateResponse,
)
async def get_extraction(verification_id: str) -> ExtractionStateResponse:
    """Return extraction status and the authoritative fields."""
    service = _get_service()
    state = await service.get_extraction_state(verification_id)
    return _state_response(state, service)


@app.put(
    "/verifications/{verification_id}/fields",
    response_model=ExtractionStateResponse,
)
async def edit_fields(
    verification_id: str, body: EditRequest
) -> ExtractionStateResponse:
    """Save a reviewer correction; it takes precedence over extraction."""
    service = _get_service()
    state = await service.submit_edit(
        verification_id, body.fields.to_fields(), body.expected_version
    )
    return _state_response(state, service)


@app.delete(
    "/verifications/{verification_id}/fields",
    response_model=ExtractionStateResponse,
)
async def discard_edits(verification_id: str) -> ExtractionStateResponse:
    """Discard reviewer corrections."""
    service = _get_service()
    state = await service.discard_edits(verification_id)
    return _state_response(state, service)


@app.post(
    "/verifications/{verification_id}/approve",
    response_model=VerificationResponse,
)
async def approve_verification(verification_id: str) -> VerificationResponse:
    """Approve a verification."""
    record = await _get_service().approve(verification_id)
    return _verification_response(record)


@app.post(
    "/verifications/{verification_id}/reject",
    response_model=VerificationResponse,
)
async def reject_verification(
    verification_id: str, body: RejectRequest
) -> VerificationResponse:
    """Reject a verification with a reason."""
    try:
        record = await _get_service().reject(verification_id, body.reason)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _verification_response(record)
