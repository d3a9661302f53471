"""
Configuration for the auto-capture pipeline
All tunables of change detection, the capture state machine,
rectification, decoding, deduplication and persistence live here.
"""

from dataclasses import dataclass, field
from typing import Tuple

from .errors import ConfigurationError


@dataclass
class CaptureConfig:
    """Configuration for the auto-capture pipeline."""
    # Change detection
    sample_step: int = 20                 # Sampling stride in pixels (both axes)
    luminance_threshold: int = 20         # Noise dead-zone on a 0-255 scale
    change_ratio_threshold: float = 0.15  # Changed-sample ratio above which a frame is "changing"
    early_exit_ratio: float = 0.25        # Stop comparing once this ratio is exceeded

    # State machine
    enter_ready_frames: int = 1           # Stable frames needed to leave Unstable
    stable_frame_threshold: int = 2       # Stable frames in Ready before a trigger
    cooldown_ms: int = 1200               # Minimum gap between two triggers
    changing_timeout_ms: int = 3000       # Continuous change treated as a page swap
    poll_interval_ms: int = 16            # Worker wait timeout (~60 fps latency)
    shutdown_timeout_s: float = 1.0

    # Rectification
    margin_divisor: int = 30              # Crop min(w, h) / divisor from every edge
    morph_kernel_size: int = 5
    approx_epsilon_ratio: float = 0.02
    default_quad_ratio: Tuple[float, float] = (0.85, 0.88)
    a4_min_ratio: float = 1.2             # width / height above this -> A4 (landscape)
    a5_max_ratio: float = 0.85            # width / height below this -> A5 (portrait)

    # Decoding
    min_code_length: int = 6

    # Deduplication
    dedup_ttl_s: float = 300.0

    # Persistence
    output_dir: str = "A4"
    image_extension: str = ".jpg"
    max_save_dimension: int = 1200
    jpeg_quality: int = 80

    # Diagnostics
    debug_dir: str = field(default="")

    def validate(self) -> "CaptureConfig":
        """
        Check the configuration for values the pipeline cannot work with

        Returns:
            The same config, to allow chaining

        Raises:
            ConfigurationError: if any value is out of range
        """
        positive_ints = {
            "sample_step": self.sample_step,
            "enter_ready_frames": self.enter_ready_frames,
            "stable_frame_threshold": self.stable_frame_threshold,
            "poll_interval_ms": self.poll_interval_ms,
            "margin_divisor": self.margin_divisor,
            "morph_kernel_size": self.morph_kernel_size,
            "min_code_length": self.min_code_length,
            "max_save_dimension": self.max_save_dimension,
        }
        for name, value in positive_ints.items():
            if value <= 0:
                raise ConfigurationError(name, value, "must be positive")

        if not 0 <= self.luminance_threshold <= 255:
            raise ConfigurationError("luminance_threshold", self.luminance_threshold,
                                     "must be within 0-255")

        for name in ("change_ratio_threshold", "early_exit_ratio"):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise ConfigurationError(name, value, "must be within (0, 1]")

        if self.early_exit_ratio < self.change_ratio_threshold:
            raise ConfigurationError("early_exit_ratio", self.early_exit_ratio,
                                     "must not be below change_ratio_threshold")

        for name in ("cooldown_ms", "changing_timeout_ms", "dedup_ttl_s"):
            if getattr(self, name) < 0:
                raise ConfigurationError(name, getattr(self, name), "must not be negative")

        w_ratio, h_ratio = self.default_quad_ratio
        if not (0.0 < w_ratio <= 1.0 and 0.0 < h_ratio <= 1.0):
            raise ConfigurationError("default_quad_ratio", self.default_quad_ratio,
                                     "fractions must be within (0, 1]")

        if not 1 <= self.jpeg_quality <= 100:
            raise ConfigurationError("jpeg_quality", self.jpeg_quality, "must be within 1-100")

        if not self.image_extension.startswith("."):
            raise ConfigurationError("image_extension", self.image_extension,
                                     "must start with '.'")

        return self
