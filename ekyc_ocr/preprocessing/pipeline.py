"""Preprocessing pipeline turning an uploaded document into an OCR-ready bitmap."""

import numpy as np

from ekyc_ocr.utils.config import PreprocessingConfig
from ekyc_ocr.utils.logger import get_logger

from .binarize import binarize_fixed, decode_image

logger = get_logger(__name__)


class PreprocessingPipeline:
    """Decodes and normalizes a document image.

    Pure and synchronous: no I/O beyond decoding the bytes it is given.

    Args:
        config: Preprocessing configuration controlling binarization.
    """

    def __init__(self, config: PreprocessingConfig) -> None:
        self.config = config

    def process(self, source: bytes | np.ndarray, name: str | None = None) -> np.ndarray:
        """Run decoding and binarization on a document image.

        Args:
            source: Encoded image bytes, or an already decoded array.
            name: Display name of the document for logs and errors.

        Returns:
            Normalized image with the dimensions of the input.

        Raises:
            ImageDecodeError: If ``source`` is bytes that cannot be decoded.
        """
        image = source if isinstance(source, np.ndarray) else decode_image(source, name)

        if not self.config.binarize_enabled:
            return image

        result = binarize_fixed(image, threshold=self.config.threshold)
        logger.info(
            "Preprocessed %s: %dx%d binarized at %d",
            name or "document",
            result.shape[1],
            result.shape[0],
            self.config.threshold,
        )
        return result
