"""Exception hierarchy for the eKYC extraction pipeline.

Pipeline-stage errors (decode, engine, recognition, fetch) are caught at the
run boundary and recorded on the verification record. Record-level errors
(conflicts, terminal records, unknown ids) propagate to the caller.
"""

from typing import Any


class EKYCError(Exception):
    """Base exception for all pipeline and record errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error details for logs and retry decisions.
        recoverable: Whether retrying without new input can succeed.
    """

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(EKYCError):
    """Invalid configuration value."""

    def __init__(self, message: str, config_key: str | None = None) -> None:
        details = {"config_key": config_key} if config_key else None
        super().__init__(message, details=details, recoverable=False)


class ImageDecodeError(EKYCError):
    """The uploaded image could not be decoded.

    A retry cannot succeed without a new image.
    """

    def __init__(self, message: str, source: str | None = None) -> None:
        details = {"source": source} if source else None
        super().__init__(message, details=details, recoverable=False)


class EngineUnavailable(EKYCError):
    """The recognition engine could not be initialized."""

    def __init__(self, message: str, engine: str = "tesseract") -> None:
        super().__init__(message, details={"engine": engine}, recoverable=False)


class RecognitionFailed(EKYCError):
    """Recognition failed or exceeded its time limit; eligible for retry."""

    def __init__(
        self, message: str, timed_out: bool = False, timeout_s: float | None = None
    ) -> None:
        details: dict[str, Any] = {"timed_out": timed_out}
        if timeout_s is not None:
            details["timeout_s"] = timeout_s
        super().__init__(message, details=details, recoverable=True)
        self.timed_out = timed_out


class DocumentFetchError(EKYCError):
    """The stored document could not be downloaded."""

    def __init__(self, message: str, url: str) -> None:
        super().__init__(message, details={"url": url}, recoverable=True)


class RecordNotFound(EKYCError):
    """No verification record or document exists for the given id."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(
            f"{kind} not found: {identifier}",
            details={"kind": kind, "id": identifier},
        )


class TerminalRecordError(EKYCError):
    """The verification record is Approved or Rejected and cannot change."""

    def __init__(self, verification_id: str, status: str) -> None:
        super().__init__(
            f"Verification {verification_id} is {status}",
            details={"verification_id": verification_id, "status": status},
        )


class ConcurrentEditConflict(EKYCError):
    """Extracted fields changed underneath a reviewer's edit.

    The caller should re-read the record and present it again.
    """

    def __init__(
        self, verification_id: str, expected_version: int, actual_version: int
    ) -> None:
        super().__init__(
            "Extracted fields changed since they were read",
            details={
                "verification_id": verification_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
            recoverable=True,
        )
        self.expected_version = expected_version
        self.actual_version = actual_version
