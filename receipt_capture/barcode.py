"""
Barcode decoding for shipping receipts
Code 128 only. The barcode is expected in the top-right ninth of the
rectified page, so that region is tried first and the full image second.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np
import zxingcpp

from .utils import Timer

logger = logging.getLogger(__name__)

STRATEGY_CROPPED = "cropped"
STRATEGY_FULL = "full"


def is_valid_code(text, min_length=6):
    """A receipt number is non-empty, at least `min_length` long and alphanumeric."""
    if not text or not text.strip():
        return False
    if len(text) < min_length:
        return False
    return text.isalnum()


def crop_top_right(image):
    """
    Top-right ninth of the image: x from 2/3 width, y from 0 to 1/3 height

    Returns the whole image if the region would be empty.
    """
    height, width = image.shape[:2]
    x = width * 2 // 3
    w = min(width // 3, width - x)
    h = min(height // 3, height)
    if w <= 0 or h <= 0:
        return image
    return image[0:h, x:x + w]


@dataclass(frozen=True)
class DecodeOutcome:
    code: str
    strategy: str
    elapsed_ms: float


class BarcodeDecoder:
    """Two-strategy Code 128 reader returning the first valid code."""

    def __init__(self, min_code_length: int = 6):
        self.min_code_length = min_code_length
        self.formats = zxingcpp.BarcodeFormat.Code128

    def _read(self, image: np.ndarray) -> str:
        """First non-blank text zxing finds in `image`, or ''."""
        if image.ndim == 3:
            code = cv2.COLOR_BGRA2GRAY if image.shape[2] == 4 else cv2.COLOR_BGR2GRAY
            image = cv2.cvtColor(image, code)
        results = zxingcpp.read_barcodes(np.ascontiguousarray(image), formats=self.formats)
        for result in results:
            if result.text and result.text.strip():
                return result.text
        return ""

    def _read_valid(self, image):
        text = self._read(image)
        if is_valid_code(text, self.min_code_length):
            return text
        if text:
            logger.debug("Discarded invalid barcode text %r", text)
        return ""

    def decode_cropped(self, image: np.ndarray) -> str:
        """Decode only the top-right region."""
        return self._read_valid(crop_top_right(image))

    def decode_full(self, image: np.ndarray) -> str:
        """Decode the whole image."""
        return self._read_valid(image)

    def decode_with_details(self, image: np.ndarray) -> Optional[DecodeOutcome]:
        """
        Try the cropped strategy, then the full image

        Args:
            image: BGR, BGRA or grayscale uint8 image

        Returns:
            DecodeOutcome for the first valid code, or None
        """
        if image is None or image.size == 0:
            return None

        timer = Timer().start()
        for strategy, reader in ((STRATEGY_CROPPED, self.decode_cropped),
                                 (STRATEGY_FULL, self.decode_full)):
            code = reader(image)
            if code:
                elapsed = timer.elapsed_ms()
                logger.info("Barcode decoded (%s): %s, %.0fms", strategy, code, elapsed)
                return DecodeOutcome(code=code, strategy=strategy, elapsed_ms=elapsed)

        logger.info("Barcode not found, %.0fms", timer.elapsed_ms())
        return None

    def decode(self, image: np.ndarray) -> str:
        """Decoded code, or '' if neither strategy found a valid one."""
        outcome = self.decode_with_details(image)
        return outcome.code if outcome else ""
