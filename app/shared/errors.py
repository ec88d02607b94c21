"""
Error codes, domain exceptions and JSON error envelopes for the knowledge service.

Domain code raises KnowledgePipelineError subclasses; the API layer turns
them into the standard envelope:

    {"error": {"code": "...", "message": "...", "details": {...}, "correlation_id": "..."}}

Usage:
    from app.shared.errors import ErrorCode, InvalidJobState, pipeline_error_response

    try:
        await orchestrator.cancel_job(job_id)
    except KnowledgePipelineError as exc:
        return pipeline_error_response(exc, correlation_id=get_correlation_id(request))
"""

from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel
from fastapi import Request
from fastapi.responses import JSONResponse


class ErrorCode(str, Enum):
    """Error codes shared by API responses and domain exceptions."""

    # Client errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    BAD_REQUEST = "BAD_REQUEST"

    # Server errors (5xx)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    TIMEOUT = "TIMEOUT"

    # Pipeline errors
    NO_KNOWLEDGE = "NO_KNOWLEDGE"
    EMBEDDING_UNAVAILABLE = "EMBEDDING_UNAVAILABLE"
    SOURCE_FETCH_ERROR = "SOURCE_FETCH_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


# HTTP status used when a domain error reaches the API layer
STATUS_BY_CODE: dict[ErrorCode, int] = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.BAD_REQUEST: 400,
    ErrorCode.CONFIGURATION_ERROR: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.NO_KNOWLEDGE: 422,
    ErrorCode.INTERNAL_ERROR: 500,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.EXTERNAL_SERVICE_ERROR: 502,
    ErrorCode.SOURCE_FETCH_ERROR: 502,
    ErrorCode.SERVICE_UNAVAILABLE: 503,
    ErrorCode.EMBEDDING_UNAVAILABLE: 503,
    ErrorCode.TIMEOUT: 504,
}


# =============================================================================
# DOMAIN EXCEPTIONS
# =============================================================================

class KnowledgePipelineError(Exception):
    """Base class for errors raised by the ingestion and answering pipeline."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        retryable: Optional[bool] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.details = details

    @property
    def status_code(self) -> int:
        return STATUS_BY_CODE.get(self.code, 500)


class EmbeddingUnavailable(KnowledgePipelineError):
    """The embedding provider failed or timed out. Callers degrade, never abort."""

    code = ErrorCode.EMBEDDING_UNAVAILABLE
    retryable = True


class AnswerGenerationError(KnowledgePipelineError):
    """
    The live answer could not be produced.

    `code` tells timeouts, provider errors and missing knowledge apart;
    `user_message` is always safe to show to a website visitor.
    """

    code = ErrorCode.EXTERNAL_SERVICE_ERROR
    retryable = True

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        user_message: Optional[str] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message, code=code, retryable=retryable)
        self.user_message = user_message


class SourceFetchError(KnowledgePipelineError):
    """A website or document could not be fetched or had no usable text."""

    code = ErrorCode.SOURCE_FETCH_ERROR
    retryable = True


class ConfigurationError(KnowledgePipelineError):
    """Invalid setup: no sources, bad schedule, missing API key."""

    code = ErrorCode.CONFIGURATION_ERROR


class InvalidJobState(KnowledgePipelineError):
    """Operation not allowed in the job's current lifecycle state."""

    code = ErrorCode.CONFLICT


class ResourceNotFound(KnowledgePipelineError):
    code = ErrorCode.NOT_FOUND

    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} {resource_id} not found",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


# =============================================================================
# RESPONSE ENVELOPES
# =============================================================================

class ErrorDetail(BaseModel):
    """Structured error detail model."""
    code: str
    message: str
    details: Optional[dict[str, Any]] = None
    correlation_id: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error response wrapper."""
    error: ErrorDetail


def get_correlation_id(request: Optional[Request] = None) -> Optional[str]:
    """Correlation ID stored on the request by CorrelationMiddleware, if any."""
    if request is None:
        return None
    return getattr(request.state, "correlation_id", None)


def error_response(
    code: ErrorCode,
    message: str,
    status_code: int,
    details: Optional[dict[str, Any]] = None,
    correlation_id: Optional[str] = None,
) -> JSONResponse:
    """
    Create a standardized JSON error response.

    Args:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        status_code: HTTP status code
        details: Optional additional error details
        correlation_id: Request correlation ID for tracing
    """
    error_detail = ErrorDetail(
        code=code.value,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(
        status_code=status_code,
        content={"error": error_detail.model_dump(exclude_none=True)},
    )


def pipeline_error_response(
    exc: KnowledgePipelineError,
    correlation_id: Optional[str] = None,
) -> JSONResponse:
    """Map a domain exception onto the error envelope and its HTTP status."""
    details = dict(exc.details or {})
    if exc.retryable:
        details["retryable"] = True
    return error_response(
        code=exc.code,
        message=exc.message,
        status_code=exc.status_code,
        details=details or None,
        correlation_id=correlation_id,
    )


def validation_error(
    message: str,
    details: Optional[dict[str, Any]] = None,
    correlation_id: Optional[str] = None,
) -> JSONResponse:
    return error_response(
        code=ErrorCode.VALIDATION_ERROR,
        message=message,
        status_code=400,
        details=details,
        correlation_id=correlation_id,
    )


def internal_error(
    message: str = "Internal server error",
    correlation_id: Optional[str] = None,
) -> JSONResponse:
    """
    Create a 500 internal error response.

    Note: never pass raw exception text here, it may leak store or provider details.
    """
    return error_response(
        code=ErrorCode.INTERNAL_ERROR,
        message=message,
        status_code=500,
        correlation_id=correlation_id,
    )
