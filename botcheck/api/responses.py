"""Response utilities and error handling for the API.

This module provides:
- Error code constants for consistent error handling across endpoints
- wrap_response() utility for creating standard response envelopes
- raise_api_error() helper for raising HTTP exceptions with error envelopes
- Error code to HTTP status code mappings

Exception handlers in app.py convert raised errors to ErrorEnvelope format.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException

from botcheck.api.models import MetaModel


# Error Code Constants
# These codes are returned in the ErrorEnvelope.error.code field
VALIDATION_ERROR = "VALIDATION_ERROR"  # Invalid request parameters (422)
NOT_FOUND = "NOT_FOUND"  # Requested resource not found (404)
SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"  # Orchestrator not initialized (503)
INTERNAL_ERROR = "INTERNAL_ERROR"  # Unexpected server failure (500)


# Error Code to HTTP Status Code Mapping
ERROR_STATUS_CODES: Dict[str, int] = {
    VALIDATION_ERROR: 422,
    NOT_FOUND: 404,
    SERVICE_UNAVAILABLE: 503,
    INTERNAL_ERROR: 500,
}


def wrap_response(data: Any) -> Dict[str, Any]:
    """Wrap data in the standard response envelope.

    Args:
        data: The response payload (any JSON-serializable type)

    Returns:
        Dict with response envelope structure:
        {
            "data": <data>,
            "meta": {
                "timestamp": "<ISO 8601 UTC timestamp>",
                "version": "1.0"
            }
        }
    """
    meta = MetaModel(
        timestamp=datetime.now(timezone.utc).isoformat(),
        version="1.0"
    )

    return {
        "data": data,
        "meta": meta.model_dump()
    }


def raise_api_error(code: str, message: str, status_code: Optional[int] = None) -> None:
    """Raise an HTTPException with consistent error envelope structure.

    Args:
        code: Error code constant (e.g., VALIDATION_ERROR, NOT_FOUND)
        message: Human-readable error message
        status_code: Optional HTTP status code (defaults to mapped code for known errors)

    Raises:
        HTTPException with the specified status code and detail dict containing
        the error code and message.

    Example:
        if outcome is ProcessOutcome.NOT_FOUND:
            raise_api_error(NOT_FOUND, f"Analysis request {request_id} not found")
    """
    if status_code is None:
        status_code = ERROR_STATUS_CODES.get(code, 500)

    raise HTTPException(
        status_code=status_code,
        detail={"code": code, "message": message}
    )
