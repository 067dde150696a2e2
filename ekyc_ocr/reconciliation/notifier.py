"""Fire-and-forget notifications about extraction and review outcomes."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ekyc_ocr.utils.logger import get_logger

logger = get_logger(__name__)


class EventType(StrEnum):
    EXTRACTION_COMPLETED = "extraction_completed"
    EXTRACTION_FAILED = "extraction_failed"
    VERIFICATION_APPROVED = "verification_approved"
    VERIFICATION_REJECTED = "verification_rejected"


@dataclass
class PipelineEvent:
    """Notification payload sent to officers or the subject."""

    event_type: EventType
    verification_id: str
    message: str
    subject_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class Notifier(ABC):
    """Delivery channel for pipeline events."""

    @abstractmethod
    async def notify(self, event: PipelineEvent) -> None:
        ...


class LoggingNotifier(Notifier):
    """Writes events to the log; the default when no backend is wired."""

    async def notify(self, event: PipelineEvent) -> None:
        logger.info(
            "Event %s for verification %s: %s",
            event.event_type.value,
            event.verification_id,
            event.message,
        )


async def deliver(notifier: Notifier, event: PipelineEvent) -> bool:
    """Send an event, logging instead of raising on delivery failure.

    Returns:
        ``True`` if the notifier accepted the event.
    """
    try:
        await notifier.notify(event)
        return True
    except Exception:
        logger.warning(
            "Notification %s for %s could not be delivered",
            event.event_type.value,
            event.verification_id,
            exc_info=True,
        )
        return False
