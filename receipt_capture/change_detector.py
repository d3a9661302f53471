"""
Frame change detection
Answers one question per frame: does it differ significantly from the
last frame confirmed as stable? It keeps no temporal memory beyond that
single reference and never decides how long the scene has been stable.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .config import CaptureConfig
from .utils import validate_frame

logger = logging.getLogger(__name__)

# Rows of the sample grid compared per batch before the early-exit check
_ROWS_PER_BATCH = 8


@dataclass(frozen=True)
class SampleGrid:
    """Coarse luminance sampling of a frame at a fixed stride."""
    samples: np.ndarray  # flat uint8, row-major
    width: int
    height: int

    @property
    def size(self) -> int:
        return self.width * self.height

    def same_shape(self, other: Optional["SampleGrid"]) -> bool:
        return (other is not None
                and other.width == self.width
                and other.height == self.height)


def sample_luminance(frame: np.ndarray, step: int) -> SampleGrid:
    """
    Sample luminance every `step` pixels in both axes

    Args:
        frame: BGR or BGRA uint8 image
        step: Sampling stride

    Returns:
        SampleGrid with ceil(W / step) x ceil(H / step) samples
    """
    validate_frame(frame)
    sampled = frame[::step, ::step, :3].astype(np.uint32)
    b, g, r = sampled[..., 0], sampled[..., 1], sampled[..., 2]

    # 0.299 R + 0.587 G + 0.114 B in integer arithmetic
    lum = ((r * 299 + g * 587 + b * 114) // 1000).astype(np.uint8)
    height, width = lum.shape
    return SampleGrid(samples=lum.ravel(), width=width, height=height)


class ChangeDetector:
    """Pure per-frame comparator against a single stable reference."""

    def __init__(self, config: Optional[CaptureConfig] = None):
        self.config = config or CaptureConfig()
        self._reference: Optional[SampleGrid] = None

    @property
    def reference(self) -> Optional[SampleGrid]:
        return self._reference

    def reset(self):
        """Forget the reference frame."""
        self._reference = None

    def confirm_stable(self, frame: np.ndarray):
        """Store `frame` as the new stable reference."""
        self._reference = sample_luminance(frame, self.config.sample_step)

    def is_changing(self, frame: np.ndarray) -> bool:
        """
        Compare `frame` against the stable reference

        The first frame, or a frame whose resolution differs from the
        reference, becomes the new baseline and is reported as not changing.

        Args:
            frame: BGR or BGRA uint8 image

        Returns:
            bool: True if more than `change_ratio_threshold` of the samples
            moved by more than `luminance_threshold`
        """
        current = sample_luminance(frame, self.config.sample_step)
        reference = self._reference

        if not current.same_shape(reference):
            self._reference = current
            logger.debug("Baseline established: %dx%d samples", current.width, current.height)
            return False

        total = current.size
        early_exit_count = int(total * self.config.early_exit_ratio)
        threshold = self.config.luminance_threshold

        cur = current.samples.reshape(current.height, current.width).astype(np.int16)
        ref = reference.samples.reshape(reference.height, reference.width).astype(np.int16)

        changed = 0
        for row in range(0, current.height, _ROWS_PER_BATCH):
            diff = np.abs(cur[row:row + _ROWS_PER_BATCH] - ref[row:row + _ROWS_PER_BATCH])
            changed += int(np.count_nonzero(diff > threshold))
            if changed > early_exit_count:
                logger.debug("Early exit: %d/%d samples changed", changed, total)
                return True

        ratio = changed / total
        logger.debug("Change ratio %.3f (%d/%d)", ratio, changed, total)
        return ratio > self.config.change_ratio_threshold
