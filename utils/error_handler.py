"""
Centralized Error Handling Module for Page Gobbler

Provides consistent error responses, logging, and user-friendly messages.
"""

import logging
import traceback
from typing import Dict, Any, Optional
from fastapi import status
from fastapi.responses import JSONResponse

# Configure logging
logger = logging.getLogger("page_gobbler")


# =============================================================================
# ERROR HINTS - User-friendly troubleshooting suggestions
# =============================================================================

ERROR_HINTS = {
    "capture_in_progress": {
        "message": "A capture is already running for this page",
        "hint": "Wait for the current capture to finish (poll /api/capture/progress) before starting another one.",
        "docs": "/docs/capture"
    },
    "measurement_failed": {
        "message": "Could not measure the page",
        "hint": "The page may still be loading or has no scrollable body. Wait for it to finish loading and retry.",
        "docs": "/docs/capture"
    },
    "snapshot_failed": {
        "message": "Failed to capture the visible region",
        "hint": "The browser tab may have been closed or navigated away. Keep the page open until the capture completes.",
        "docs": "/docs/snapshots"
    },
    "driver_disconnected": {
        "message": "Lost contact with the page",
        "hint": "The page context was torn down (navigation, crash or closed tab). Reload the page and capture again.",
        "docs": "/docs/capture"
    },
    "timeout": {
        "message": "Capture timed out",
        "hint": "Very long pages take longer to capture. Increase session_timeout_s in settings or reduce the page length.",
        "docs": "/docs/settings"
    },
    "stitch_failed": {
        "message": "Failed to stitch viewport captures",
        "hint": "A viewport capture was missing or had a different width. Avoid resizing the window during capture.",
        "docs": "/docs/pipeline"
    },
    "section_failed": {
        "message": "Failed to split the page into sections",
        "hint": "This is an internal error. Please report it together with the page URL.",
        "docs": "/docs/pipeline"
    },
    "compression_over_budget": {
        "message": "Section exceeds the size budget",
        "hint": "The section was encoded at the lowest quality and scale and is still larger than max_section_bytes. Lower section_max_height_px to produce smaller sections.",
        "docs": "/docs/settings"
    },
    "settings_invalid": {
        "message": "Invalid settings",
        "hint": "Check the value ranges: base_quality must be between 0 and 1, sizes and heights must be positive.",
        "docs": "/docs/settings"
    },
    "no_result": {
        "message": "No capture result available",
        "hint": "Run a capture first with POST /api/capture.",
        "docs": "/docs/capture"
    },
}


def get_error_with_hint(error_type: str, original_message: str = "") -> dict:
    """
    Get error message with troubleshooting hint.

    Args:
        error_type: Key from ERROR_HINTS dictionary
        original_message: Original error message to include

    Returns:
        Dict with error, hint, and optional docs link
    """
    hint_info = ERROR_HINTS.get(error_type, {})
    return {
        "error": original_message or hint_info.get("message", "Unknown error"),
        "hint": hint_info.get("hint", ""),
        "docs": hint_info.get("docs", "")
    }


def classify_error(error_message: str) -> str:
    """
    Classify an error message to determine the appropriate hint type.

    Args:
        error_message: The error message to classify

    Returns:
        Error type key for ERROR_HINTS lookup
    """
    msg = error_message.lower()

    if "already" in msg and ("running" in msg or "in progress" in msg):
        return "capture_in_progress"
    if "measure" in msg or "page dimensions" in msg:
        return "measurement_failed"
    if "timeout" in msg or "timed out" in msg:
        return "timeout"
    if "disconnected" in msg or "unreachable" in msg or "context was destroyed" in msg:
        return "driver_disconnected"
    if "snapshot" in msg or "screenshot" in msg or "visible region" in msg:
        return "snapshot_failed"
    if "stitch" in msg:
        return "stitch_failed"
    if "section" in msg and "budget" in msg:
        return "compression_over_budget"
    if "section" in msg:
        return "section_failed"
    if "setting" in msg or "validation" in msg:
        return "settings_invalid"
    if "no capture result" in msg:
        return "no_result"

    # Default - no specific hint
    return ""


class PageGobblerError(Exception):
    """Base exception for all Page Gobbler errors"""

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)


class MeasurementError(PageGobblerError):
    """Raised when the page dimensions cannot be determined"""

    def __init__(self, message: str, metrics: Optional[Dict[str, Any]] = None):
        super().__init__(
            message, code="MEASUREMENT_ERROR", details={"metrics": metrics}
        )


class SnapshotError(PageGobblerError):
    """Raised when the rate-limited snapshot primitive fails"""

    def __init__(self, message: str, sequence_index: Optional[int] = None):
        super().__init__(
            message, code="SNAPSHOT_ERROR", details={"sequence_index": sequence_index}
        )


class DriverDisconnectedError(PageGobblerError):
    """Raised when the page driver stops responding mid-session"""

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(
            message, code="DRIVER_DISCONNECTED", details={"session_id": session_id}
        )


class CaptureTimeoutError(PageGobblerError):
    """Raised when a capture session exceeds its overall time limit"""

    def __init__(self, message: str, timeout_s: Optional[float] = None):
        super().__init__(
            message, code="CAPTURE_TIMEOUT", details={"timeout_s": timeout_s}
        )


class CaptureInProgressError(PageGobblerError):
    """Raised when a capture is requested while another session is active"""

    def __init__(self, message: str = "A capture session is already running", session_id: Optional[str] = None):
        super().__init__(
            message, code="CAPTURE_IN_PROGRESS", details={"session_id": session_id}
        )


class StitchError(PageGobblerError):
    """Raised when viewport captures cannot be composited"""

    def __init__(self, message: str, sequence_index: Optional[int] = None):
        super().__init__(
            message, code="STITCH_ERROR", details={"sequence_index": sequence_index}
        )


class SectionError(PageGobblerError):
    """Raised when sectioning breaks the contiguity invariant (programming error)"""

    def __init__(self, message: str, start_y: Optional[int] = None):
        super().__init__(
            message, code="SECTION_ERROR", details={"start_y": start_y}
        )


class SettingsValidationError(PageGobblerError):
    """Raised when settings fail validation"""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(
            message, code="SETTINGS_VALIDATION_ERROR", details={"field": field}
        )


class NoCaptureResultError(PageGobblerError):
    """Raised when a result is requested before any capture completed"""

    def __init__(self, message: str = "No capture result available"):
        super().__init__(message, code="NO_CAPTURE_RESULT")


def create_error_response(
    error: Exception,
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
    include_traceback: bool = False,
) -> JSONResponse:
    """
    Create a standardized error response

    Args:
        error: The exception that occurred
        status_code: HTTP status code
        include_traceback: Include full traceback in response (debug only)

    Returns:
        JSONResponse with error details
    """
    error_response = {
        "success": False,
        "error": {"message": str(error), "type": error.__class__.__name__},
    }

    # Add details for PageGobblerError
    if isinstance(error, PageGobblerError):
        error_response["error"]["code"] = error.code
        error_response["error"]["details"] = error.details

    error_response["error"]["user_message"] = get_user_friendly_message(error)

    hint = get_error_with_hint(classify_error(str(error)), str(error))
    if hint["hint"]:
        error_response["error"]["hint"] = hint["hint"]

    if include_traceback:
        error_response["error"]["traceback"] = traceback.format_exc()

    logger.error(f"{error.__class__.__name__}: {error}", exc_info=True)

    return JSONResponse(status_code=status_code, content=error_response)


def handle_api_error(error: Exception) -> JSONResponse:
    """
    Handle API errors with appropriate status codes

    Args:
        error: The exception to handle

    Returns:
        JSONResponse with appropriate status code
    """
    if isinstance(error, CaptureInProgressError):
        return create_error_response(error, status.HTTP_409_CONFLICT)

    elif isinstance(error, NoCaptureResultError):
        return create_error_response(error, status.HTTP_404_NOT_FOUND)

    elif isinstance(error, (SettingsValidationError, ValueError)):
        return create_error_response(error, status.HTTP_400_BAD_REQUEST)

    elif isinstance(error, MeasurementError):
        return create_error_response(error, status.HTTP_422_UNPROCESSABLE_ENTITY)

    elif isinstance(error, CaptureTimeoutError):
        return create_error_response(error, status.HTTP_504_GATEWAY_TIMEOUT)

    elif isinstance(error, DriverDisconnectedError):
        return create_error_response(error, status.HTTP_502_BAD_GATEWAY)

    elif isinstance(error, (SnapshotError, StitchError, SectionError)):
        return create_error_response(error, status.HTTP_500_INTERNAL_SERVER_ERROR)

    else:
        # Generic error
        return create_error_response(error, status.HTTP_500_INTERNAL_SERVER_ERROR)


def get_user_friendly_message(error: Exception) -> str:
    """
    Get a user-friendly error message for frontend display

    Args:
        error: The exception

    Returns:
        User-friendly error message
    """
    if isinstance(error, CaptureInProgressError):
        return "A capture is already running. Please wait for it to finish."

    elif isinstance(error, MeasurementError):
        return f"Could not measure the page: {error.message}"

    elif isinstance(error, SnapshotError):
        return f"Failed to capture part of the page: {error.message}"

    elif isinstance(error, DriverDisconnectedError):
        return "Lost contact with the page during capture. Reload the page and try again."

    elif isinstance(error, CaptureTimeoutError):
        return "The capture took too long and was stopped."

    elif isinstance(error, StitchError):
        return f"Failed to assemble the full-page image: {error.message}"

    elif isinstance(error, SettingsValidationError):
        return f"Settings are invalid: {error.message}"

    elif isinstance(error, NoCaptureResultError):
        return "Nothing captured yet. Capture a page first."

    else:
        return f"An unexpected error occurred: {str(error)}"


def create_success_response(
    data: Any = None,
    message: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Create a standardized success response

    Args:
        data: The response data payload
        message: Optional success message

    Returns:
        Dict with success response format: {success: True, data: ..., message: ...}
    """
    response = {"success": True}

    if data is not None:
        response["data"] = data

    if message is not None:
        response["message"] = message

    return response


# Context manager for error handling
class ErrorContext:
    """
    Context manager for error handling

    Usage:
        with ErrorContext("decoding capture 3", raise_as=StitchError):
            # code that might fail
            pass
    """

    def __init__(self, operation: str, raise_as: type = PageGobblerError):
        self.operation = operation
        self.raise_as = raise_as

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None and issubclass(exc_type, Exception):
            logger.error(f"Error during {self.operation}: {exc_val}", exc_info=True)
            # Re-raise as PageGobblerError
            if not isinstance(exc_val, PageGobblerError):
                raise self.raise_as(f"Failed {self.operation}: {exc_val}") from exc_val
        return False  # Don't suppress exception
