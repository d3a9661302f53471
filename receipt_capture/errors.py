"""
Error types for the auto-capture pipeline
Every failure inside a capture attempt resolves to one of these and is
converted to a CaptureResult at the pipeline boundary.
"""


class CaptureError(Exception):
    """Base exception for capture errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to a JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class DetectionUnavailableError(CaptureError):
    """No document could be rectified from the frame"""
    def __init__(self, reason=None):
        super().__init__(
            message="No document found in frame",
            error_code="DETECTION_UNAVAILABLE",
            details={"reason": reason}
        )


class DecodeEmptyError(CaptureError):
    """No valid barcode on the rectified page"""
    def __init__(self):
        super().__init__(
            message="No valid barcode found",
            error_code="DECODE_EMPTY"
        )


class PersistenceFailedError(CaptureError):
    """The capture image could not be written"""
    def __init__(self, file_path, reason=None):
        super().__init__(
            message=f"Failed to save capture image: {file_path}",
            error_code="PERSISTENCE_FAILED",
            details={"file_path": str(file_path), "reason": reason}
        )


class UnsupportedFrameError(CaptureError):
    """Frame is not a packed 24- or 32-bit color image"""
    def __init__(self, shape, dtype):
        super().__init__(
            message=f"Unsupported frame layout: shape={shape}, dtype={dtype}",
            error_code="UNSUPPORTED_FRAME",
            details={"shape": tuple(shape), "dtype": str(dtype)}
        )


class ConfigurationError(CaptureError):
    """A configuration value is out of range"""
    def __init__(self, name, value, reason):
        super().__init__(
            message=f"Invalid configuration '{name}'={value!r}: {reason}",
            error_code="INVALID_CONFIG",
            details={"name": name, "value": value}
        )
