"""Image decoding and fixed-threshold binarization for ID card photos.

Photographed ID cards often have uneven lighting; reducing them to pure
black and white before OCR improves recognition of printed labels.
"""

import io

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from ekyc_ocr.exceptions import ImageDecodeError
from ekyc_ocr.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_THRESHOLD = 127


def decode_image(data: bytes, source: str | None = None) -> np.ndarray:
    """Decode raw image bytes into an RGB or grayscale array.

    Args:
        data: Encoded image bytes (PNG, JPEG, TIFF, WebP...).
        source: Optional name of the source, used in error details.

    Returns:
        Decoded image as a numpy array.

    Raises:
        ImageDecodeError: If the bytes are empty or not a readable image.
    """
    if not data:
        raise ImageDecodeError("Image data is empty", source=source)

    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            if img.mode not in ("L", "RGB"):
                img = img.convert("RGB")
            array = np.array(img)
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise ImageDecodeError(f"Unreadable image: {exc}", source=source) from exc

    if array.ndim not in (2, 3) or array.size == 0:
        raise ImageDecodeError("Decoded image has no pixels", source=source)

    logger.debug("Decoded image %s with shape %s", source or "<bytes>", array.shape)
    return array


def _to_gray(image: np.ndarray) -> np.ndarray:
    """Convert an image to single-channel luminance if it has color channels.

    Args:
        image: Input image (RGB or grayscale).

    Returns:
        Grayscale image.
    """
    if image.ndim == 3:
        return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    return image


def binarize_fixed(
    image: np.ndarray, threshold: int = DEFAULT_THRESHOLD
) -> np.ndarray:
    """Binarize an image with a fixed global threshold.

    Pixels brighter than ``threshold`` become 255, all others 0.

    Args:
        image: Input image (RGB or grayscale).
        threshold: Luminance cut-off in the 0-255 range.

    Returns:
        Binary image with the same height and width as the input.
    """
    gray = _to_gray(image)
    if gray.dtype != np.uint8:
        gray = np.clip(gray, 0, 255).astype(np.uint8)
    _, binary = cv2.threshold(gray, threshold, 255, cv2.THRESH_BINARY)
    logger.debug("Applied fixed binarization (threshold=%d)", threshold)
    return binary
