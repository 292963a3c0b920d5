"""Pydantic models for API request/response structures.

Response Structure:
    All successful responses use ResponseEnvelope with:
    - data: The actual response payload (any type)
    - meta: Metadata including timestamp and version

Error Structure:
    All error responses use ErrorEnvelope with:
    - error: ErrorDetail containing code and message
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class MetaModel(BaseModel):
    """Metadata included in all successful responses.

    Attributes:
        timestamp: ISO 8601 formatted UTC timestamp of the response
        version: API version string (currently hardcoded as "1.0")
    """
    timestamp: str
    version: str


class ResponseEnvelope(BaseModel):
    """Standard response envelope for all successful API responses."""
    data: Any
    meta: MetaModel


class ErrorDetail(BaseModel):
    """Error details included in error responses.

    Attributes:
        code: Machine-readable error code (see responses.py for constants)
        message: Human-readable error message
    """
    code: str
    message: str


class ErrorEnvelope(BaseModel):
    """Standard error envelope for all error responses."""
    error: ErrorDetail


class AnalyzeRequestBody(BaseModel):
    """Body of POST /analyze.

    Accepts the camelCase ``requestId`` used by submitters as well as
    ``request_id``.
    """
    model_config = ConfigDict(populate_by_name=True)

    request_id: str = Field(..., alias="requestId", min_length=1, description="ID of a queued analysis request")
