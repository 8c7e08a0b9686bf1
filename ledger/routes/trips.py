"""
Trip routes for TripLedger.

Plain trip edits, cascade preview/apply for odometer corrections, and
per-trip anomaly flags.
"""

import logging

from database import get_db
from exceptions import ValidationError
from extensions import RateLimits, limiter
from flask import Blueprint, jsonify
from services import CascadeResult, CorrectionOrchestrator

from routes.validation import coerce_trip_fields, get_json_body, require_valid, validate_trip_update

logger = logging.getLogger(__name__)

trips_bp = Blueprint('trips', __name__)


@trips_bp.route('/trips/<int:trip_id>', methods=['GET'])
def get_trip(trip_id):
    """Get a single trip with derived fields."""
    orchestrator = CorrectionOrchestrator.for_session(get_db())
    trip = orchestrator.store.get_trip(trip_id)
    return jsonify(trip.to_dict())


@trips_bp.route('/trips/<int:trip_id>', methods=['PATCH'])
@limiter.limit(RateLimits.WRITE_MODERATE)
def update_trip(trip_id):
    """
    Update non-reading trip fields.

    Allowed fields:
        - trip_serial_number, remarks
        - trip_start_date, trip_end_date (ISO 8601)
        - refueling_done, fuel_quantity
        - is_manual_override

    start_km and end_km are rejected; end readings change through
    /trips/<id>/cascade/preview and /trips/<id>/cascade/apply.
    refueling_done false clears fuel_quantity. The response lists any
    continuity_gaps left around the trip after a trip_start_date move.
    """
    data = get_json_body()
    require_valid(validate_trip_update(data), 'Invalid trip update')

    orchestrator = CorrectionOrchestrator.for_session(get_db())
    result = orchestrator.update_trip_fields(trip_id, coerce_trip_fields(data))

    logger.info(f"Updated trip {trip_id}: {sorted(data)}")
    return jsonify(result)


@trips_bp.route('/trips/<int:trip_id>/cascade/preview', methods=['POST'])
def preview_cascade(trip_id):
    """
    Preview the effect of changing a trip's end reading.

    Request body:
        new_end_km: Proposed end reading (whole km)

    Nothing is written; the returned cascade is posted back to
    /cascade/apply to commit it.
    """
    data = get_json_body()
    if 'new_end_km' not in data:
        raise ValidationError('new_end_km is required', field='new_end_km')

    orchestrator = CorrectionOrchestrator.for_session(get_db())
    trip = orchestrator.store.get_trip(trip_id)
    result = orchestrator.preview_correction(trip.vehicle_id, trip_id, data['new_end_km'])

    return jsonify({'cascade': result.to_dict()})


@trips_bp.route('/trips/<int:trip_id>/cascade/apply', methods=['POST'])
@limiter.limit(RateLimits.CASCADE_APPLY)
def apply_cascade(trip_id):
    """
    Apply a previewed cascade.

    Request body:
        cascade: The cascade object returned by /cascade/preview
        reason: Optional correction reason for the audit trail

    Returns 409 when the vehicle's trips changed since the preview.
    """
    data = get_json_body()
    payload = data.get('cascade')
    if not isinstance(payload, dict):
        raise ValidationError('cascade is required', field='cascade')

    try:
        cascade = CascadeResult.from_dict(payload)
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError('cascade is malformed', field='cascade', errors=[str(e)]) from e

    if cascade.edited_trip_id != trip_id:
        raise ValidationError('cascade does not belong to this trip', field='cascade')

    reason = data.get('reason')
    if reason is not None and not isinstance(reason, str):
        raise ValidationError('reason must be text', field='reason')

    orchestrator = CorrectionOrchestrator.for_session(get_db())
    result = orchestrator.apply_correction(cascade, reason=reason)

    return jsonify(result)


@trips_bp.route('/trips/<int:trip_id>/anomalies', methods=['GET'])
@limiter.limit(RateLimits.READ_HEAVY)
def get_trip_anomalies(trip_id):
    """Anomaly flags for one trip, evaluated against its vehicle's history."""
    orchestrator = CorrectionOrchestrator.for_session(get_db())
    flags = orchestrator.evaluate_trip(trip_id)
    return jsonify({'trip_id': trip_id, 'anomalies': flags})
