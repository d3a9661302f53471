"""
Single-frame capture pipeline
rectify -> decode -> dedup -> persist, run synchronously for one frame.

The pipeline copies any frame handed to it and never keeps the caller's
buffer. Every working buffer it creates is released before returning,
in reverse order of creation, on every path.
"""

import logging
import os
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Dict, Optional

import cv2
import numpy as np

from .barcode import BarcodeDecoder
from .config import CaptureConfig
from .deduplicator import BarcodeDeduplicator
from .document import DocumentRectifier
from .errors import (
    CaptureError,
    DecodeEmptyError,
    DetectionUnavailableError,
    PersistenceFailedError,
)
from .utils import Timer, ensure_directory, make_safe_filename

logger = logging.getLogger(__name__)

SUCCESS = "success"
DUPLICATE = "duplicate"
FAILURE = "failure"


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of one triggered capture attempt."""
    kind: str
    code: Optional[str] = None
    file_path: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def success(cls, code, file_path):
        return cls(kind=SUCCESS, code=code, file_path=file_path)

    @classmethod
    def duplicate(cls, code):
        return cls(kind=DUPLICATE, code=code)

    @classmethod
    def failure(cls, reason):
        return cls(kind=FAILURE, reason=reason)

    @property
    def is_success(self) -> bool:
        return self.kind == SUCCESS

    @property
    def is_duplicate(self) -> bool:
        return self.kind == DUPLICATE

    @property
    def is_failure(self) -> bool:
        return self.kind == FAILURE

    def to_dict(self) -> Dict:
        """Convert to dictionary for UI or upload sinks."""
        result = {'kind': self.kind}
        if self.code is not None:
            result['code'] = self.code
        if self.file_path is not None:
            result['file_path'] = self.file_path
        if self.reason is not None:
            result['reason'] = self.reason
        return result


def downscale(image, max_dimension):
    """
    Shrink `image` so its longer side is at most `max_dimension`

    Returns a copy; aspect ratio is preserved.
    """
    h, w = image.shape[:2]
    longest = max(w, h)
    if longest <= max_dimension:
        return image.copy()

    scale = max_dimension / longest
    size = (max(1, int(w * scale)), max(1, int(h * scale)))
    return cv2.resize(image, size, interpolation=cv2.INTER_AREA)


class _Buffers:
    """Tracks the working buffers of one run and drops them in reverse order."""

    def __init__(self, stack: ExitStack):
        self._buffers = []
        stack.callback(self.release)

    def own(self, image: np.ndarray) -> np.ndarray:
        self._buffers.append(image)
        return image

    def release(self):
        while self._buffers:
            self._buffers.pop()


class CapturePipeline:
    """Processes one accepted frame into a CaptureResult."""

    def __init__(self, config: Optional[CaptureConfig] = None,
                 rectifier: Optional[DocumentRectifier] = None,
                 decoder: Optional[BarcodeDecoder] = None,
                 deduplicator: Optional[BarcodeDeduplicator] = None):
        self.config = (config or CaptureConfig()).validate()
        self.rectifier = rectifier or DocumentRectifier(self.config)
        self.decoder = decoder or BarcodeDecoder(self.config.min_code_length)
        self.deduplicator = deduplicator or BarcodeDeduplicator(self.config.dedup_ttl_s)
        self.output_dir = self.config.output_dir

        ensure_directory(self.output_dir)

    def process_frame(self, frame: np.ndarray) -> CaptureResult:
        """
        Run the full capture for one frame

        Args:
            frame: BGR or BGRA uint8 image owned by the caller

        Returns:
            CaptureResult: exactly one Success, Duplicate or Failure
        """
        if frame is None:
            return CaptureResult.failure("Input frame is empty")

        total = Timer().start()
        with ExitStack() as stack:
            buffers = _Buffers(stack)
            try:
                logger.info("[Pipeline] Processing frame")

                # 1. Private copy for rectification
                owned = buffers.own(np.array(frame, copy=True))

                # 2. Rectify; no barcode attempt on an unrectified frame
                timer = Timer().start()
                rectified = self.rectifier.rectify(owned)
                logger.info("[Pipeline] Rectification: %.0fms", timer.elapsed_ms())
                if rectified is None or rectified.size == 0:
                    raise DetectionUnavailableError("rectifier returned no image")
                rectified = buffers.own(rectified)

                # 3. Decode
                code = self.decoder.decode(rectified)
                if not code:
                    raise DecodeEmptyError()

                # 4. Deduplicate
                if self.deduplicator.is_duplicate(code):
                    logger.info("[Pipeline] Duplicate barcode: %s", code)
                    return CaptureResult.duplicate(code)

                # 5. Persist
                file_path = self._file_path_for(code)
                try:
                    self._save(buffers.own(rectified.copy()), file_path)
                except PersistenceFailedError as e:
                    logger.warning("[Pipeline] %s (%s)", e.message, e.details.get("reason"))

                logger.info("[Pipeline] Success: %s -> %s, total %.0fms",
                            code, file_path, total.elapsed_ms())
                return CaptureResult.success(code, file_path)

            except CaptureError as e:
                logger.info("[Pipeline] %s", e.message)
                return CaptureResult.failure(e.message)
            except Exception as e:
                logger.exception("[Pipeline] Frame processing failed")
                return CaptureResult.failure(str(e) or type(e).__name__)

    def _file_path_for(self, code):
        name = make_safe_filename(code) + self.config.image_extension
        return os.path.join(self.output_dir, name)

    def _save(self, image, file_path):
        """Downscale and encode `image` to `file_path`."""
        timer = Timer().start()
        try:
            ensure_directory(self.output_dir)
            compressed = downscale(image, self.config.max_save_dimension)
            params = [int(cv2.IMWRITE_JPEG_QUALITY), int(self.config.jpeg_quality)]
            if not cv2.imwrite(file_path, compressed, params):
                raise PersistenceFailedError(file_path, "encoder returned False")
        except PersistenceFailedError:
            raise
        except Exception as e:
            raise PersistenceFailedError(file_path, str(e)) from e
        logger.info("[Pipeline] Saved %s, %.0fms", file_path, timer.elapsed_ms())

    def remove_duplicate_barcode(self, code: str):
        """Unblock `code` after its history record was deleted."""
        self.deduplicator.remove(code)
