"""
Error Handling System
Provides consistent error responses across all layers
"""
import logging

logger = logging.getLogger(__name__)


class DeskError(Exception):
    """Base exception for exemption desk errors"""
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
            "details": self.details
        }


# Layer 1 Errors - Capture
class CaptureError(DeskError):
    """Capture surface errors"""
    pass


class CaptureAccessError(CaptureError):
    """Camera unavailable; capture is aborted, never retried"""
    def __init__(self, camera_index, reason=None):
        super().__init__(
            message=f"Camera unavailable at /dev/video{camera_index}",
            error_code="CAPTURE_ACCESS_FAILED",
            details={
                "camera_index": camera_index,
                "reason": reason,
                "suggestion": "Check camera connection or import the document as a file"
            }
        )


# Layer 2 Errors - Normalization
class NormalizationError(DeskError):
    """Document normalization errors"""
    pass


class PayloadTooLargeError(NormalizationError):
    """Document exceeds the accepted size"""
    def __init__(self, size=None, limit=None, source="upload"):
        if size is None:
            message = "Document is too large"
        else:
            message = f"Document is too large ({size} bytes, max {limit} bytes)"
        super().__init__(
            message=message,
            error_code="PAYLOAD_TOO_LARGE",
            details={
                "size": size,
                "limit": limit,
                "source": source,
                "suggestion": "Take a photo of the document instead of importing the file"
            }
        )


class UnreadableImageError(NormalizationError):
    """Image payload could not be decoded"""
    def __init__(self, media_type):
        super().__init__(
            message="Could not read image file",
            error_code="INVALID_IMAGE",
            details={
                "media_type": media_type,
                "suggestion": "Retake the photo or import a JPEG, PNG or PDF file"
            }
        )


# Layer 3 Errors - Extraction
class ExtractionError(DeskError):
    """Extraction provider errors"""
    pass


class AuthError(ExtractionError):
    """Credential missing or rejected by the provider"""
    def __init__(self, reason, rejected=False):
        super().__init__(
            message=(
                "API key rejected by the extraction provider"
                if rejected else
                "API key not configured"
            ),
            error_code="AUTH_REJECTED" if rejected else "AUTH_MISSING",
            details={
                "reason": reason,
                "suggestion": "Set GEMINI_API_KEY to a valid key and restart the service"
            }
        )


class TransientProviderError(ExtractionError):
    """Provider overloaded or rate-limited through every attempt"""
    def __init__(self, attempts, reason):
        super().__init__(
            message="Extraction servers are temporarily overloaded",
            error_code="PROVIDER_OVERLOADED",
            details={
                "attempts": attempts,
                "reason": reason,
                "suggestion": "Try again in 30 seconds or fill in the form manually"
            }
        )


class MalformedResponseError(ExtractionError):
    """Provider response does not match the extraction schema"""
    def __init__(self, reason):
        super().__init__(
            message=f"Extraction response could not be read: {reason}",
            error_code="MALFORMED_RESPONSE",
            details={
                "reason": str(reason),
                "suggestion": "Fill in the form manually"
            }
        )


class UnclassifiedProviderError(ExtractionError):
    """Any other provider failure, surfaced with the raw message"""
    def __init__(self, raw_message, status_code=None):
        super().__init__(
            message=raw_message or "Error while analysing the document",
            error_code="PROVIDER_ERROR",
            details={
                "status_code": status_code,
                "suggestion": "Fill in the form manually"
            }
        )


# Layer 4 Errors - Records
class RecordError(DeskError):
    """Exemption record errors"""
    pass


class ValidationError(RecordError):
    """Required fields missing at submit"""
    def __init__(self, fields):
        super().__init__(
            message="Please fill in at least the last name and first name",
            error_code="VALIDATION_FAILED",
            details={
                "fields": list(fields),
                "suggestion": "Complete the highlighted fields"
            }
        )


class FieldUpdateError(RecordError):
    """Unknown draft field or value of the wrong type"""
    def __init__(self, field, reason):
        super().__init__(
            message=f"Invalid value for '{field}': {reason}",
            error_code="INVALID_FIELD",
            details={
                "field": field,
                "reason": str(reason)
            }
        )


class InvalidTransitionError(RecordError):
    """Lifecycle transition not allowed from the current state"""
    def __init__(self, state, action):
        super().__init__(
            message=f"Cannot {action} while {state}",
            error_code="INVALID_TRANSITION",
            details={
                "state": state,
                "action": action
            }
        )


class RecordNotFoundError(RecordError):
    """No record with the given id"""
    def __init__(self, record_id):
        super().__init__(
            message=f"Exemption {record_id} not found",
            error_code="RECORD_NOT_FOUND",
            details={"record_id": record_id}
        )


# Storage Errors
class StorageError(DeskError):
    """Persistent store errors"""
    def __init__(self, path, reason):
        super().__init__(
            message=f"Failed to write records to {path}",
            error_code="STORAGE_WRITE_FAILED",
            details={
                "path": str(path),
                "reason": str(reason),
                "suggestion": "Check disk space and write permissions"
            }
        )


# Error response helpers
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

    if isinstance(error, DeskError):
        # Known desk error
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
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }


def http_status_for(error):
    """Map an error to the HTTP status the API responds with"""
    if isinstance(error, (ValidationError, FieldUpdateError, UnreadableImageError)):
        return 400
    if isinstance(error, RecordNotFoundError):
        return 404
    if isinstance(error, InvalidTransitionError):
        return 409
    if isinstance(error, PayloadTooLargeError):
        return 413
    if isinstance(error, CaptureAccessError):
        return 503
    if isinstance(error, DeskError):
        return 422
    return 500
