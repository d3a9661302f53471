"""
Utility functions for the auto-capture pipeline
"""

import logging
import os
import re
import sys
import time
from typing import Optional

import cv2
import numpy as np

from .errors import UnsupportedFrameError

# Characters rejected in file names on Windows, plus ASCII control characters
_INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Handlers added to the root logger by setup_logging
_installed_handlers = []


def ensure_directory(directory):
    """
    Create the specified directory if it doesn't exist

    Args:
        directory: Path to the directory to create
    """
    os.makedirs(directory, exist_ok=True)


def make_safe_filename(name):
    """
    Turn an arbitrary string into a file name that is valid on any platform

    Args:
        name: Raw name, usually a decoded barcode

    Returns:
        str: name with every invalid character replaced by '_'
    """
    if not name:
        return "sheet"
    return _INVALID_FILENAME_CHARS.sub("_", name)


def validate_frame(frame):
    """
    Check that a frame is a packed 24- or 32-bit color image

    Raises:
        UnsupportedFrameError: for any other layout
    """
    if (not isinstance(frame, np.ndarray) or frame.dtype != np.uint8
            or frame.ndim != 3 or frame.shape[2] not in (3, 4)
            or frame.shape[0] == 0 or frame.shape[1] == 0):
        shape = getattr(frame, "shape", ())
        dtype = getattr(frame, "dtype", type(frame).__name__)
        raise UnsupportedFrameError(shape, dtype)


def to_bgr(frame):
    """Drop the alpha channel of a BGRA frame; BGR frames are returned as-is"""
    if frame.shape[2] == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2BGR)
    return frame


def setup_logging(log_dir: Optional[str] = "logs", verbose: bool = False):
    """
    Configure root logging for the command line application

    Args:
        log_dir: Directory for app.log (None disables the file handler)
        verbose: Log DEBUG messages as well
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    # Calling again replaces the handlers installed here instead of stacking them
    while _installed_handlers:
        handler = _installed_handlers.pop()
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    _installed_handlers.append(console)

    if log_dir:
        ensure_directory(log_dir)
        _installed_handlers.append(logging.FileHandler(
            os.path.join(log_dir, "app.log"), mode="a", encoding="utf-8"))

    for handler in _installed_handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)


class Timer:
    def __init__(self):
        self.start_time = None

    def start(self):
        self.start_time = time.perf_counter()
        return self

    def elapsed_ms(self) -> float:
        if self.start_time is None:
            return 0.0
        return (time.perf_counter() - self.start_time) * 1000.0
