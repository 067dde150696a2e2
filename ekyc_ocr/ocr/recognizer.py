"""Asynchronous recognition interface shared by every extraction run.

Where recognition executes is a deployment detail; the pipeline only sees
``await engine.recognize(image)``. The Tesseract-backed implementation runs
the blocking engine in worker threads behind a bounded pool, and a single
instance is shared per process.
"""

import asyncio
from abc import ABC, abstractmethod

import numpy as np

from ekyc_ocr.exceptions import EngineUnavailable, RecognitionFailed
from ekyc_ocr.utils.config import OCRConfig
from ekyc_ocr.utils.logger import get_logger

from .tesseract_engine import OCRResult, TesseractEngine

logger = get_logger(__name__)


class RecognitionEngine(ABC):
    """Async text recognition contract.

    Implementations must raise ``EngineUnavailable`` when they cannot be
    initialized and ``RecognitionFailed`` for per-call failures, including
    timeouts.
    """

    @property
    @abstractmethod
    def engine_name(self) -> str:
        """Identifier used in logs and health checks."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Initialize the engine once; later calls are no-ops."""
        ...

    @abstractmethod
    async def recognize(self, image: np.ndarray, lang: str | None = None) -> OCRResult:
        """Recognize text in a normalized image."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release engine resources."""
        ...


class PooledRecognizer(RecognitionEngine):
    """Runs a blocking :class:`TesseractEngine` on a bounded worker pool.

    At most ``pool_size`` recognitions run at once; further callers wait
    their turn. Each call is bounded by ``timeout_s``.

    Args:
        engine: Blocking Tesseract wrapper.
        pool_size: Maximum concurrent recognitions.
        timeout_s: Upper bound for a single recognition, in seconds.
    """

    def __init__(
        self, engine: TesseractEngine, pool_size: int = 2, timeout_s: float = 30.0
    ) -> None:
        self.engine = engine
        self.pool_size = pool_size
        self.timeout_s = timeout_s
        self._slots = asyncio.Semaphore(pool_size)
        self._init_lock = asyncio.Lock()
        self._started = False
        self._closed = False

    @property
    def engine_name(self) -> str:
        return "tesseract"

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._closed:
            raise EngineUnavailable("Recognition engine has been shut down")
        async with self._init_lock:
            if self._started:
                return
            await asyncio.to_thread(self.engine.check_available)
            self._started = True
            logger.info(
                "Recognition pool started (size=%d, timeout=%.1fs)",
                self.pool_size,
                self.timeout_s,
            )

    async def recognize(self, image: np.ndarray, lang: str | None = None) -> OCRResult:
        """Recognize text, waiting for a free pool slot first.

        ``timeout_s`` covers the wait for a slot as well as the recognition,
        so no call stays outstanding longer than that.

        Args:
            image: Normalized document image.
            lang: Language hint; defaults to the engine language.

        Returns:
            Recognized text and confidence.

        Raises:
            EngineUnavailable: If the engine cannot be initialized.
            RecognitionFailed: On engine error or when ``timeout_s`` elapses.
        """
        await self.start()

        try:
            return await asyncio.wait_for(
                self._recognize_in_slot(image, lang), timeout=self.timeout_s
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Recognition timed out after %.1fs", self.timeout_s)
            raise RecognitionFailed(
                "Recognition timed out", timed_out=True, timeout_s=self.timeout_s
            ) from exc
        except (RecognitionFailed, EngineUnavailable):
            raise
        except Exception as exc:
            raise RecognitionFailed(f"Recognition error: {exc}") from exc

    async def _recognize_in_slot(
        self, image: np.ndarray, lang: str | None
    ) -> OCRResult:
        async with self._slots:
            return await asyncio.to_thread(
                self.engine.extract_text, image, lang, self.timeout_s
            )

    async def close(self) -> None:
        self._closed = True
        self._started = False
        logger.info("Recognition pool closed")


_recognizer: PooledRecognizer | None = None


def get_recognizer(config: OCRConfig) -> PooledRecognizer:
    """Return the process-wide recognizer, creating it on first use.

    Args:
        config: OCR configuration used only when the instance is created.

    Returns:
        Shared recognizer instance.
    """
    global _recognizer
    if _recognizer is None:
        engine = TesseractEngine(
            tesseract_cmd=config.tesseract_cmd,
            default_lang=config.default_lang,
            psm=config.psm,
            char_whitelist=config.char_whitelist,
        )
        _recognizer = PooledRecognizer(
            engine, pool_size=config.pool_size, timeout_s=config.timeout_s
        )
    return _recognizer


async def shutdown_recognizer() -> None:
    """Close and forget the process-wide recognizer."""
    global _recognizer
    if _recognizer is not None:
        await _recognizer.close()
        _recognizer = None
