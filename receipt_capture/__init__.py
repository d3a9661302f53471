"""
Receipt Capture - automatic barcode capture of shipping receipts from a
fixed-mount document camera
"""

__version__ = "1.0.0"

from .barcode import BarcodeDecoder, is_valid_code
from .change_detector import ChangeDetector, SampleGrid
from .config import CaptureConfig
from .deduplicator import BarcodeDeduplicator
from .document import DocumentRectifier, sort_corners
from .errors import (
    CaptureError,
    ConfigurationError,
    DecodeEmptyError,
    DetectionUnavailableError,
    PersistenceFailedError,
    UnsupportedFrameError,
)
from .pipeline import CapturePipeline, CaptureResult
from .state_machine import AutoCaptureService, CaptureState

__all__ = [
    'AutoCaptureService',
    'BarcodeDecoder',
    'BarcodeDeduplicator',
    'CaptureConfig',
    'CaptureError',
    'CapturePipeline',
    'CaptureResult',
    'CaptureState',
    'ChangeDetector',
    'ConfigurationError',
    'DecodeEmptyError',
    'DetectionUnavailableError',
    'DocumentRectifier',
    'PersistenceFailedError',
    'SampleGrid',
    'UnsupportedFrameError',
    'is_valid_code',
    'sort_corners',
]
