"""
Error Code Taxonomy for TripLedger

Structured error codes for alerting, debugging and API responses.

Error Code Format:
- E001-E099: Validation errors (bad input data)
- E200-E299: Database errors (connection, transaction failures)
- E400-E499: Business logic errors (cascade and sequence state)
- E500-E599: System errors
"""

from enum import Enum
from typing import Optional

from exceptions import (
    CascadeOutOfRange,
    InvalidReading,
    ReadOnlyField,
    StaleSequence,
    TransactionFailure,
    TripNotFound,
    ValidationError,
    VehicleNotFound,
)


class ErrorCategory(str, Enum):
    """High-level error categories for grouping and alerting."""

    VALIDATION = "validation"
    DATABASE = "database"
    BUSINESS_LOGIC = "business_logic"
    SYSTEM = "system"


class ErrorCode(str, Enum):
    """Structured error codes with consistent format."""

    # Validation Errors (E001-E099)
    E001_INVALID_READING = "E001"  # Odometer reading below start or negative
    E003_INVALID_DATA_TYPE = "E003"  # Field has wrong data type
    E004_READONLY_FIELD = "E004"  # Field may only change through a cascade

    # Database Errors (E200-E299)
    E200_DB_CONNECTION_FAILED = "E200"  # Database connection failed
    E201_DB_TRANSACTION_FAILED = "E201"  # Atomic batch write rolled back

    # Business Logic Errors (E400-E499)
    E400_TRIP_NOT_FOUND = "E400"  # Trip not found for vehicle
    E401_STALE_SEQUENCE = "E401"  # Trip set changed since preview
    E402_CASCADE_OUT_OF_RANGE = "E402"  # Cascade would produce a negative reading
    E404_VEHICLE_NOT_FOUND = "E404"  # Vehicle does not exist

    # System Errors (E500-E599)
    E500_INTERNAL_SERVER_ERROR = "E500"  # Unhandled internal error


def _meta(category, description, severity, http_status, alert=False):
    return {
        "category": category,
        "description": description,
        "severity": severity,
        "alert": alert,
        "http_status": http_status,
    }


# Error metadata: maps error codes to categories, descriptions and HTTP status
ERROR_METADATA = {
    ErrorCode.E001_INVALID_READING: _meta(
        ErrorCategory.VALIDATION, "Odometer reading is not valid for the trip", "warning", 400
    ),
    ErrorCode.E003_INVALID_DATA_TYPE: _meta(ErrorCategory.VALIDATION, "Field has wrong data type", "warning", 400),
    ErrorCode.E004_READONLY_FIELD: _meta(
        ErrorCategory.VALIDATION, "Odometer readings change only through a cascade correction", "warning", 400
    ),
    ErrorCode.E200_DB_CONNECTION_FAILED: _meta(
        ErrorCategory.DATABASE, "Database connection failed", "critical", 503, alert=True
    ),
    ErrorCode.E201_DB_TRANSACTION_FAILED: _meta(
        ErrorCategory.DATABASE, "Atomic batch write failed and was rolled back", "error", 503, alert=True
    ),
    ErrorCode.E400_TRIP_NOT_FOUND: _meta(ErrorCategory.BUSINESS_LOGIC, "Trip not found for vehicle", "warning", 404),
    # Expected when two users edit one vehicle
    ErrorCode.E401_STALE_SEQUENCE: _meta(
        ErrorCategory.BUSINESS_LOGIC, "Trip sequence changed since the preview was computed", "info", 409
    ),
    ErrorCode.E402_CASCADE_OUT_OF_RANGE: _meta(
        ErrorCategory.BUSINESS_LOGIC, "Cascade would drive a downstream reading negative", "warning", 422
    ),
    ErrorCode.E404_VEHICLE_NOT_FOUND: _meta(ErrorCategory.BUSINESS_LOGIC, "Vehicle does not exist", "warning", 404),
    ErrorCode.E500_INTERNAL_SERVER_ERROR: _meta(
        ErrorCategory.SYSTEM, "Unhandled internal error", "critical", 500, alert=True
    ),
}

_UNKNOWN_ERROR = _meta(ErrorCategory.SYSTEM, "Unknown error", "error", 500, alert=True)


# Most specific class first
_EXCEPTION_CODES = (
    (InvalidReading, ErrorCode.E001_INVALID_READING),
    (ReadOnlyField, ErrorCode.E004_READONLY_FIELD),
    (ValidationError, ErrorCode.E003_INVALID_DATA_TYPE),
    (TripNotFound, ErrorCode.E400_TRIP_NOT_FOUND),
    (VehicleNotFound, ErrorCode.E404_VEHICLE_NOT_FOUND),
    (StaleSequence, ErrorCode.E401_STALE_SEQUENCE),
    (CascadeOutOfRange, ErrorCode.E402_CASCADE_OUT_OF_RANGE),
    (TransactionFailure, ErrorCode.E201_DB_TRANSACTION_FAILED),
)


def get_error_metadata(error_code: ErrorCode) -> dict:
    """Get metadata for an error code."""
    return ERROR_METADATA.get(error_code, _UNKNOWN_ERROR)


def error_code_for(exception: Exception) -> ErrorCode:
    """Map an exception to its error code (E500 for anything unrecognised)."""
    for exc_type, code in _EXCEPTION_CODES:
        if isinstance(exception, exc_type):
            return code
    return ErrorCode.E500_INTERNAL_SERVER_ERROR


class StructuredError:
    """Structured error with code, category, and metadata."""

    def __init__(self, code: ErrorCode, message: str, exception: Optional[Exception] = None, **context):
        """
        Create a structured error.

        Args:
            code: Error code from ErrorCode enum
            message: Human-readable error message
            exception: Original exception (if applicable)
            **context: Additional context fields (vehicle_id, trip_id, etc.)
        """
        self.code = code
        self.message = message
        self.exception = exception
        self.context = context
        self.metadata = get_error_metadata(code)

    @classmethod
    def from_exception(cls, exception: Exception, **context) -> "StructuredError":
        """Build a structured error from a raised exception and its details."""
        details = dict(getattr(exception, "details", {}) or {})
        details.update(context)
        message = getattr(exception, "message", None) or str(exception)
        return cls(error_code_for(exception), message, exception=exception, **details)

    @property
    def http_status(self) -> int:
        return self.metadata["http_status"]

    def to_dict(self) -> dict:
        """Convert to dictionary for logging."""
        error_dict = {
            "code": self.code.value,
            "category": self.metadata["category"].value,
            "message": self.message,
            "severity": self.metadata["severity"],
            "alert": self.metadata["alert"],
        }

        if self.exception:
            error_dict["exception_type"] = type(self.exception).__name__
            error_dict["exception_message"] = str(self.exception)

        if self.context:
            error_dict["context"] = self.context

        return error_dict

    def to_response(self) -> dict:
        """Payload returned to API callers."""
        return {
            "error": self.message,
            "code": self.code.value,
            "details": self.context,
        }

    def __str__(self) -> str:
        """String representation."""
        return f"[{self.code.value}] {self.message}"
