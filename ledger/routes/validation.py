"""
Request payload validation shared by the trip and vehicle blueprints.

Validators return ``(is_valid, errors)``; ``require_valid`` turns a failed
result into a ValidationError for the app-level error handler.
"""

from exceptions import ValidationError
from flask import request
from utils import parse_iso_datetime

BOOLEAN_FIELDS = ('refueling_done', 'is_manual_override')
TEXT_FIELDS = {
    'trip_serial_number': 50,
    'remarks': 2000,
}


def _is_number(value):
    return not isinstance(value, bool) and isinstance(value, (int, float))


def _check_common_fields(data, errors):
    for field in BOOLEAN_FIELDS:
        if field in data and not isinstance(data[field], bool):
            errors.append(f'{field} must be true or false')

    for field, max_length in TEXT_FIELDS.items():
        value = data.get(field)
        if value is not None and (not isinstance(value, str) or len(value) > max_length):
            errors.append(f'{field} must be text of at most {max_length} characters')

    fuel = data.get('fuel_quantity')
    if fuel is not None and (not _is_number(fuel) or fuel <= 0):
        errors.append('fuel_quantity must be a positive number')
    if fuel is not None and data.get('refueling_done') is False:
        errors.append('fuel_quantity cannot be set when refueling_done is false')

    for field in ('trip_start_date', 'trip_end_date'):
        if data.get(field) is not None and parse_iso_datetime(data[field]) is None:
            errors.append(f'{field} must be an ISO 8601 datetime')


def validate_trip_data(data):
    """
    Validate a new trip payload.

    Readings themselves (non-negative, end >= start) are checked by the
    orchestrator so the error carries the InvalidReading code.

    Returns (is_valid, errors) tuple.
    """
    errors = []

    for field in ('start_km', 'end_km', 'trip_start_date'):
        if data.get(field) is None:
            errors.append(f'{field} is required')

    _check_common_fields(data, errors)

    return len(errors) == 0, errors


def validate_trip_update(data):
    """Validate a PATCH payload. Returns (is_valid, errors) tuple."""
    errors = []

    if 'trip_start_date' in data and data['trip_start_date'] is None:
        errors.append('trip_start_date cannot be cleared')

    _check_common_fields(data, errors)

    return len(errors) == 0, errors


def validate_vehicle_data(data):
    """Validate a new vehicle payload. Returns (is_valid, errors) tuple."""
    errors = []

    registration = data.get('registration_number')
    if not isinstance(registration, str) or not registration.strip():
        errors.append('registration_number is required')
    elif len(registration) > 32:
        errors.append('registration_number must be at most 32 characters')

    baseline = data.get('baseline_efficiency')
    if baseline is not None and (not _is_number(baseline) or baseline <= 0):
        errors.append('baseline_efficiency must be a positive number')

    return len(errors) == 0, errors


def require_valid(result, message='Invalid request data'):
    is_valid, errors = result
    if not is_valid:
        raise ValidationError(message, errors=errors)


def get_json_body():
    """Parsed JSON object body, or ValidationError."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def coerce_trip_fields(data):
    """Convert validated JSON values into model attribute values."""
    fields = {}
    for name, value in data.items():
        if name in ('trip_start_date', 'trip_end_date'):
            fields[name] = parse_iso_datetime(value)
        else:
            fields[name] = value
    if fields.get('fuel_quantity') is not None and 'refueling_done' not in fields:
        fields['refueling_done'] = True
    return fields
