"""
Shared error handling for the entitlement reconciliation engine.

Only ``ValidationError`` and ``AmbiguousOrderingError`` ever reach callers.
``MalformedPayloadError`` and ``UnparsableDateError`` are raised internally
and recovered where they occur.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorResponse(BaseModel):
    """Standard error response format."""

    analysis_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class ReconciliationException(Exception):
    """Base exception for the reconciliation engine."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        from .logging import analysis_id_var

        return ErrorResponse(
            analysis_id=analysis_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(ReconciliationException):
    """Caller supplied input the engine cannot work with."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class AmbiguousOrderingError(ReconciliationException):
    """Two snapshots cannot be ordered by request number."""

    def __init__(self, first_request_id: str, second_request_id: str, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault("request_ids", [first_request_id, second_request_id])
        super().__init__(
            "AMBIGUOUS_ORDERING",
            f"Cannot decide which of {first_request_id} and {second_request_id} is current",
            details
        )


class MalformedPayloadError(ReconciliationException):
    """Raw request payload could not be decoded."""

    def __init__(self, message: str = "Malformed payload", details: Optional[Dict[str, Any]] = None):
        super().__init__("MALFORMED_PAYLOAD", message, details)


class UnparsableDateError(ReconciliationException):
    """Date value could not be normalized."""

    def __init__(self, value: Any, details: Optional[Dict[str, Any]] = None):
        self.value = value
        super().__init__("UNPARSABLE_DATE", f"Unparsable date: {value!r}", details)
