"""Shared test fixtures and fakes for the eKYC extraction test suite."""

import asyncio
import io
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from ekyc_ocr.exceptions import DocumentFetchError
from ekyc_ocr.ocr.recognizer import RecognitionEngine
from ekyc_ocr.ocr.tesseract_engine import OCRResult
from ekyc_ocr.reconciliation.notifier import Notifier, PipelineEvent
from ekyc_ocr.reconciliation.service import ReconciliationService
from ekyc_ocr.records.store import InMemoryRecordStore
from ekyc_ocr.utils.config import AppConfig

SAMPLE_FRONT_TEXT = "Name: Asha Rao\nDOB: 01/02/1990\n1234 5678 9012"


def make_png(width: int = 120, height: int = 80) -> bytes:
    """Encode a small synthetic ID-card-like image as PNG bytes."""
    image = np.full((height, width, 3), 200, dtype=np.uint8)
    image[10:30, 10 : width - 10] = (20, 20, 20)
    buf = io.BytesIO()
    Image.fromarray(image).save(buf, format="PNG")
    return buf.getvalue()


class FakeRecognizer(RecognitionEngine):
    """Recognizer returning scripted text or raising scripted errors.

    Each call consumes the next script entry; once exhausted, ``default``
    is returned. When ``gate`` is set, calls block until it is released.
    """

    def __init__(
        self,
        script: list[str | Exception] | None = None,
        default: str = SAMPLE_FRONT_TEXT,
    ) -> None:
        self.script = list(script or [])
        self.default = default
        self.calls = 0
        self.gate: asyncio.Event | None = None
        self.entered: asyncio.Event | None = None

    @property
    def engine_name(self) -> str:
        return "fake"

    async def start(self) -> None:
        return None

    async def recognize(self, image: np.ndarray, lang: str | None = None) -> OCRResult:
        self.calls += 1
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.script.pop(0) if self.script else self.default
        if isinstance(outcome, Exception):
            raise outcome
        return OCRResult(text=outcome, language="eng", confidence=0.9, word_count=5)

    async def close(self) -> None:
        return None


class FakeFetcher:
    """Serves document bytes from an in-memory mapping of URL to bytes."""

    def __init__(self, documents: dict[str, bytes] | None = None) -> None:
        self.documents = documents or {}

    async def fetch(self, url: str) -> bytes:
        if url not in self.documents:
            raise DocumentFetchError("Not found", url)
        return self.documents[url]


class RecordingNotifier(Notifier):
    """Collects delivered events."""

    def __init__(self) -> None:
        self.events: list[PipelineEvent] = []

    async def notify(self, event: PipelineEvent) -> None:
        self.events.append(event)


class FailingNotifier(Notifier):
    async def notify(self, event: PipelineEvent) -> None:
        raise ConnectionError("notification backend down")


@pytest.fixture
def sample_image() -> np.ndarray:
    """Grayscale gradient covering the whole 0-255 range."""
    return np.tile(np.arange(256, dtype=np.uint8), (10, 1))


@pytest.fixture
def sample_color_image() -> np.ndarray:
    """Simple synthetic RGB image with a dark band on a light card."""
    image = np.full((80, 120, 3), 200, dtype=np.uint8)
    image[10:30, 10:110] = (20, 20, 20)
    return image


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def fetcher(png_bytes: bytes) -> FakeFetcher:
    return FakeFetcher(
        {
            "mem://front.png": png_bytes,
            "mem://back.png": png_bytes,
            "mem://selfie.png": png_bytes,
            "mem://corrupt.png": b"definitely not an image",
        }
    )


@pytest.fixture
def recognizer() -> FakeRecognizer:
    return FakeRecognizer()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(
    recognizer: FakeRecognizer, fetcher: FakeFetcher, notifier: RecordingNotifier
) -> ReconciliationService:
    return ReconciliationService(
        store=InMemoryRecordStore(),
        recognizer=recognizer,
        fetcher=fetcher,
        notifier=notifier,
        config=AppConfig(),
    )


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent
