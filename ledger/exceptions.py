"""
Custom exceptions for TripLedger.

This module provides a hierarchy of exceptions for the odometer continuity
engine and the services built around it.
"""


class LedgerError(Exception):
    """Base exception for all TripLedger errors."""

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class TripNotFound(LedgerError):
    """Referenced trip does not exist in the vehicle's sequence."""

    def __init__(self, message: str, trip_id=None, vehicle_id=None):
        details = {}
        if trip_id is not None:
            details['trip_id'] = trip_id
        if vehicle_id is not None:
            details['vehicle_id'] = vehicle_id
        super().__init__(message, details)
        self.trip_id = trip_id
        self.vehicle_id = vehicle_id


class VehicleNotFound(LedgerError):
    """Referenced vehicle does not exist."""

    def __init__(self, message: str, vehicle_id=None):
        details = {}
        if vehicle_id is not None:
            details['vehicle_id'] = vehicle_id
        super().__init__(message, details)
        self.vehicle_id = vehicle_id


class InvalidReading(LedgerError):
    """Proposed odometer reading is not acceptable for the trip."""

    def __init__(self, message: str, trip_id=None, value=None, start_km=None):
        details = {}
        if trip_id is not None:
            details['trip_id'] = trip_id
        if value is not None:
            details['value'] = value
        if start_km is not None:
            details['start_km'] = start_km
        super().__init__(message, details)
        self.trip_id = trip_id
        self.value = value
        self.start_km = start_km


class CascadeOutOfRange(LedgerError):
    """Propagating a correction would drive a downstream reading negative."""

    def __init__(self, message: str, trip_id=None, shifted_start_km=None):
        details = {}
        if trip_id is not None:
            details['trip_id'] = trip_id
        if shifted_start_km is not None:
            details['shifted_start_km'] = shifted_start_km
        super().__init__(message, details)
        self.trip_id = trip_id
        self.shifted_start_km = shifted_start_km


class StaleSequence(LedgerError):
    """Trip set changed between preview and apply."""

    def __init__(self, message: str, vehicle_id=None, expected_version: str = None, actual_version: str = None):
        details = {}
        if vehicle_id is not None:
            details['vehicle_id'] = vehicle_id
        if expected_version:
            details['expected_version'] = expected_version
        if actual_version:
            details['actual_version'] = actual_version
        super().__init__(message, details)
        self.vehicle_id = vehicle_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class TransactionFailure(LedgerError):
    """Atomic batch write failed; nothing was changed."""

    def __init__(self, message: str, vehicle_id=None, row_count: int = None):
        details = {}
        if vehicle_id is not None:
            details['vehicle_id'] = vehicle_id
        if row_count:
            details['row_count'] = row_count
        super().__init__(message, details)
        self.vehicle_id = vehicle_id
        self.row_count = row_count


class ConfigurationError(LedgerError):
    """Invalid or missing configuration."""

    def __init__(self, message: str, config_key: str = None):
        details = {}
        if config_key:
            details['config_key'] = config_key
        super().__init__(message, details)
        self.config_key = config_key


class ValidationError(LedgerError):
    """Request data failed validation before reaching the engine."""

    def __init__(self, message: str, field: str = None, errors: list = None):
        details = {}
        if field:
            details['field'] = field
        if errors:
            details['errors'] = errors
        super().__init__(message, details)
        self.field = field
        self.errors = errors or []


class ReadOnlyField(ValidationError):
    """Field may only change through a cascade correction."""
