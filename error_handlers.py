"""
Error Handling System
Provides consistent error kinds and responses across all layers
"""
import logging
from enum import Enum

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    """Error categories reported to the result sink"""
    INITIALIZATION_FAILURE = "INITIALIZATION_FAILURE"
    SOURCE_BINDING_FAILURE = "SOURCE_BINDING_FAILURE"
    DECODE_FAILURE = "DECODE_FAILURE"
    ENGINE_FAILURE = "ENGINE_FAILURE"
    CAPTURE_FAILURE = "CAPTURE_FAILURE"
    ANALYSIS_FAILURE = "ANALYSIS_FAILURE"


class ScannerError(Exception):
    """Base exception for scanner errors"""
    kind = ErrorKind.ANALYSIS_FAILURE

    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "error_kind": self.kind.value,
            "details": self.details
        }


# Initialization Errors - Trained data assets
class InitializationError(ScannerError):
    """OCR trained data could not be prepared"""
    kind = ErrorKind.INITIALIZATION_FAILURE

    def __init__(self, asset_name, reason=None):
        super().__init__(
            message=f"Failed to initialize OCR: {reason or asset_name}",
            error_code="OCR_INIT_FAILED",
            details={
                "asset_name": asset_name,
                "reason": reason,
                "suggestion": "Check that the trained data file exists in the assets directory"
            }
        )


# Layer 1 Errors - Frame source
class SourceBindingError(ScannerError):
    """Frame source could not be started"""
    kind = ErrorKind.SOURCE_BINDING_FAILURE

    def __init__(self, reason, details=None):
        super().__init__(
            message=f"Camera binding failed: {reason}",
            error_code="SOURCE_BINDING_FAILED",
            details=details or {"reason": str(reason)}
        )


class CameraNotFoundError(SourceBindingError):
    """Camera device not found"""
    def __init__(self, camera_index):
        super().__init__(
            reason=f"camera not found at /dev/video{camera_index}",
            details={
                "camera_index": camera_index,
                "suggestion": "Check camera connection and device index"
            }
        )
        self.error_code = "CAMERA_NOT_FOUND"


class CameraInitError(SourceBindingError):
    """Camera initialization failed"""
    def __init__(self, camera_index, reason=None):
        super().__init__(
            reason=f"failed to initialize camera at /dev/video{camera_index}",
            details={
                "camera_index": camera_index,
                "reason": reason,
                "suggestion": "Check camera permissions and ensure no other app is using it"
            }
        )
        self.error_code = "CAMERA_INIT_FAILED"


class FrameDecodeError(ScannerError):
    """Frame buffer could not be converted to a bitmap"""
    kind = ErrorKind.DECODE_FAILURE

    def __init__(self, reason, frame_format=None):
        super().__init__(
            message=f"Frame decode failed: {reason}",
            error_code="FRAME_DECODE_FAILED",
            details={
                "reason": str(reason),
                "frame_format": frame_format
            }
        )


class UnsupportedFormatError(FrameDecodeError):
    """Frame format is neither a known planar layout nor a decodable image"""
    def __init__(self, frame_format):
        super().__init__(
            reason=f"unsupported frame format {frame_format}",
            frame_format=frame_format
        )
        self.error_code = "UNSUPPORTED_FORMAT"


class CaptureError(ScannerError):
    """One-shot photo capture failed"""
    kind = ErrorKind.CAPTURE_FAILURE

    def __init__(self, reason, error_code="PHOTO_ERROR"):
        super().__init__(
            message=f"Photo capture failed: {reason}",
            error_code=error_code,
            details={
                "reason": str(reason),
                "suggestion": "Start the camera before taking a photo"
            }
        )


# Layer 3 Errors - OCR
class EngineError(ScannerError):
    """OCR engine internal error"""
    kind = ErrorKind.ENGINE_FAILURE

    def __init__(self, reason):
        super().__init__(
            message=f"OCR engine failed: {reason}",
            error_code="OCR_ENGINE_FAILED",
            details={"reason": str(reason)}
        )


# Error response helpers
def error_kind_of(error):
    """Map any exception to the ErrorKind reported for it"""
    if isinstance(error, ScannerError):
        return error.kind
    return ErrorKind.ANALYSIS_FAILURE


def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, ScannerError):
        # Known scanner error
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        # Unexpected error
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "error_kind": ErrorKind.ANALYSIS_FAILURE.value,
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }
