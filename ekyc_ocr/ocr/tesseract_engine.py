"""Tesseract OCR engine wrapper for ID card recognition.

Blocking wrapper around pytesseract. The async, pooled interface used by
the pipeline lives in :mod:`ekyc_ocr.ocr.recognizer`.
"""

from dataclasses import dataclass

import numpy as np
import pytesseract
from PIL import Image

from ekyc_ocr.exceptions import EngineUnavailable, RecognitionFailed
from ekyc_ocr.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class OCRResult:
    """Recognized text for one document image."""

    text: str
    language: str
    confidence: float
    word_count: int = 0


class TesseractEngine:
    """Wrapper around Tesseract OCR for ID card text extraction.

    Args:
        tesseract_cmd: Path to the Tesseract executable.
            If ``None``, uses the system default.
        default_lang: Default OCR language code, e.g. ``"eng+hin"``.
        psm: Tesseract page segmentation mode.
        char_whitelist: Optional ``tessedit_char_whitelist`` value.
    """

    def __init__(
        self,
        tesseract_cmd: str | None = None,
        default_lang: str = "eng",
        psm: int = 3,
        char_whitelist: str | None = None,
    ) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.default_lang = default_lang
        self.psm = psm
        self.char_whitelist = char_whitelist

    def check_available(self) -> str:
        """Verify the Tesseract binary and language data are installed.

        Returns:
            Tesseract version string.

        Raises:
            EngineUnavailable: If the binary or a requested language is missing.
        """
        try:
            version = str(pytesseract.get_tesseract_version())
            installed = set(pytesseract.get_languages(config=""))
        except (pytesseract.TesseractNotFoundError, OSError) as exc:
            raise EngineUnavailable(f"Tesseract not available: {exc}") from exc

        missing = [
            lang for lang in self.default_lang.split("+") if lang not in installed
        ]
        if missing:
            raise EngineUnavailable(
                f"Tesseract language data missing: {', '.join(missing)}"
            )

        logger.info("Tesseract %s ready (lang=%s)", version, self.default_lang)
        return version

    def _config(self) -> str:
        config = f"--psm {self.psm} -c preserve_interword_spaces=1"
        if self.char_whitelist:
            config += f" -c tessedit_char_whitelist={self.char_whitelist}"
        return config

    def extract_text(
        self,
        image: np.ndarray,
        lang: str | None = None,
        timeout: float = 0,
    ) -> OCRResult:
        """Extract text from an image.

        Args:
            image: Input image as a numpy array.
            lang: OCR language code. Defaults to the engine default.
            timeout: Seconds before the Tesseract process is killed (0 = none).

        Returns:
            OCRResult containing the full text and mean word confidence.

        Raises:
            RecognitionFailed: If Tesseract errors out or is killed on timeout.
        """
        lang = lang or self.default_lang
        config = self._config()
        pil_image = Image.fromarray(image)

        try:
            text = pytesseract.image_to_string(
                pil_image, lang=lang, config=config, timeout=timeout
            )
            data = pytesseract.image_to_data(
                pil_image,
                lang=lang,
                config=config,
                timeout=timeout,
                output_type=pytesseract.Output.DICT,
            )
        except pytesseract.TesseractError as exc:
            raise RecognitionFailed(f"Tesseract failed: {exc}") from exc
        except RuntimeError as exc:
            # pytesseract raises a bare RuntimeError when it kills the process
            raise RecognitionFailed(
                f"Tesseract timed out: {exc}", timed_out=True, timeout_s=timeout
            ) from exc

        total_conf = 0.0
        word_count = 0
        for word, conf in zip(data["text"], data["conf"]):
            conf = float(conf)
            if conf > 0 and word.strip():
                total_conf += conf
                word_count += 1

        avg_conf = (total_conf / word_count / 100.0) if word_count > 0 else 0.0

        logger.info(
            "OCR extracted %d words with average confidence %.2f",
            word_count,
            avg_conf,
        )
        return OCRResult(
            text=text,
            language=lang,
            confidence=avg_conf,
            word_count=word_count,
        )
