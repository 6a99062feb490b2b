"""
Shared error handling for the EMS metrics service.
"""

from typing import Dict, Any, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class EMSException(Exception):
    """Base exception for EMS services."""

    status_code: int = 500

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(EMSException):
    """Missing or malformed request scope."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(EMSException):
    """Referenced organization member or team does not exist."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class QueryError(EMSException):
    """Record store failure. Never retried."""

    status_code = 500

    def __init__(self, message: str = "Query failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("QUERY_ERROR", message, details)


class ConfigurationError(EMSException):
    """A rule asks for an aggregation its dimension does not implement."""

    status_code = 500

    def __init__(self, message: str = "Configuration error", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class CalculationTimeoutError(EMSException):
    """A metrics calculation did not finish within the configured deadline."""

    status_code = 504

    def __init__(self, message: str = "Metrics calculation timed out", details: Optional[Dict[str, Any]] = None):
        super().__init__("CALCULATION_TIMEOUT", message, details)
