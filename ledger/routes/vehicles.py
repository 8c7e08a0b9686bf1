"""
Vehicle routes for TripLedger.

Vehicle registration, the ordered trip sequence, trip inserts, continuity
analysis and correction history.
"""

import logging

from calculations import calculate_tank_to_tank_efficiency
from config import Config
from database import get_db
from exceptions import ValidationError, VehicleNotFound
from extensions import RateLimits, limiter
from flask import Blueprint, jsonify, request
from models import Trip, Vehicle
from services import CorrectionOrchestrator, analyze_continuity, find_gaps, validate_chain
from sqlalchemy.exc import IntegrityError

from routes.validation import (
    coerce_trip_fields,
    get_json_body,
    require_valid,
    validate_trip_data,
    validate_vehicle_data,
)

logger = logging.getLogger(__name__)

vehicles_bp = Blueprint('vehicles', __name__)

TRIP_INPUT_FIELDS = (
    'trip_serial_number',
    'trip_start_date',
    'trip_end_date',
    'start_km',
    'end_km',
    'refueling_done',
    'fuel_quantity',
    'is_manual_override',
    'remarks',
)


def _get_vehicle_or_404(db, vehicle_id):
    vehicle = db.get(Vehicle, vehicle_id)
    if vehicle is None:
        raise VehicleNotFound('Vehicle not found', vehicle_id=vehicle_id)
    return vehicle


def _pagination_args():
    try:
        page = max(1, int(request.args.get('page', 1)))
    except (ValueError, TypeError):
        page = 1

    try:
        per_page = min(Config.API_MAX_PER_PAGE, max(1, int(request.args.get('per_page', Config.API_DEFAULT_PER_PAGE))))
    except (ValueError, TypeError):
        per_page = Config.API_DEFAULT_PER_PAGE

    return page, per_page


@vehicles_bp.route('/vehicles', methods=['POST'])
@limiter.limit(RateLimits.WRITE_MODERATE)
def create_vehicle():
    """
    Register a vehicle.

    Request body:
        registration_number: Unique registration
        make_model: Optional description
        baseline_efficiency: Optional expected km per fuel unit
    """
    data = get_json_body()
    require_valid(validate_vehicle_data(data), 'Invalid vehicle data')

    db = get_db()
    vehicle = Vehicle(
        registration_number=data['registration_number'].strip(),
        make_model=data.get('make_model'),
        baseline_efficiency=data.get('baseline_efficiency'),
    )
    try:
        db.add(vehicle)
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ValidationError('registration_number already exists', field='registration_number') from e

    logger.info(f"Registered vehicle {vehicle.id} ({vehicle.registration_number})")
    return jsonify(vehicle.to_dict()), 201


@vehicles_bp.route('/vehicles/<int:vehicle_id>', methods=['GET'])
def get_vehicle(vehicle_id):
    return jsonify(_get_vehicle_or_404(get_db(), vehicle_id).to_dict())


@vehicles_bp.route('/vehicles/<int:vehicle_id>/trips', methods=['GET'])
@limiter.limit(RateLimits.READ_HEAVY)
def get_vehicle_trips(vehicle_id):
    """
    Get a vehicle's trips in sequence order.

    Each trip carries its anomaly flags and tank-to-tank efficiency.

    Query params:
        page: Page number (default 1)
        per_page: Items per page (default 50, max 100)
    """
    db = get_db()
    _get_vehicle_or_404(db, vehicle_id)

    orchestrator = CorrectionOrchestrator.for_session(db)
    trips = orchestrator.store.fetch_trips_for_vehicle(vehicle_id)
    anomalies = orchestrator.evaluate_vehicle(vehicle_id)

    tank_to_tank = {}
    previous_refuel = None
    for trip in trips:
        if trip.refueling_done:
            efficiency = calculate_tank_to_tank_efficiency(trip, previous_refuel)
            tank_to_tank[trip.id] = round(efficiency, 2) if efficiency is not None else None
            previous_refuel = trip

    page, per_page = _pagination_args()
    total_count = len(trips)
    offset = (page - 1) * per_page

    items = []
    for trip in trips[offset:offset + per_page]:
        item = trip.to_dict()
        item['tank_to_tank_efficiency'] = tank_to_tank.get(trip.id)
        item['anomalies'] = anomalies.get(trip.id, [])
        items.append(item)

    return jsonify({
        'trips': items,
        'pagination': {
            'page': page,
            'per_page': per_page,
            'total': total_count,
            'pages': (total_count + per_page - 1) // per_page if per_page > 0 else 0
        }
    })


@vehicles_bp.route('/vehicles/<int:vehicle_id>/trips', methods=['POST'])
@limiter.limit(RateLimits.WRITE_MODERATE)
def create_trip(vehicle_id):
    """
    Record a trip for a vehicle.

    Request body:
        start_km, end_km: Odometer readings (whole km)
        trip_start_date: ISO 8601 start time
        trip_end_date, trip_serial_number, remarks: Optional
        refueling_done, fuel_quantity: Optional refuelling data
        is_manual_override: Optional, exempts the trip from cascades

    The response includes the trip's anomaly flags and, when the start
    reading does not chain from the previous trip, the gap found.
    """
    data = get_json_body()
    require_valid(validate_trip_data(data), 'Invalid trip data')

    db = get_db()
    _get_vehicle_or_404(db, vehicle_id)

    fields = coerce_trip_fields({k: v for k, v in data.items() if k in TRIP_INPUT_FIELDS})
    trip = Trip(vehicle_id=vehicle_id, **fields)

    orchestrator = CorrectionOrchestrator.for_session(db)
    result = orchestrator.record_trip(trip)

    gap = next((g for g in find_gaps(orchestrator.store.fetch_trips_for_vehicle(vehicle_id))
                if g['trip_id'] == trip.id), None)
    result['continuity_gap'] = gap if gap and gap['gap_km'] != 0 else None

    return jsonify(result), 201


@vehicles_bp.route('/vehicles/<int:vehicle_id>/continuity', methods=['GET'])
@limiter.limit(RateLimits.READ_HEAVY)
def get_vehicle_continuity(vehicle_id):
    """Continuity score, gap breakdown and chain integrity issues."""
    db = get_db()
    _get_vehicle_or_404(db, vehicle_id)

    orchestrator = CorrectionOrchestrator.for_session(db)
    trips = orchestrator.store.fetch_trips_for_vehicle(vehicle_id)

    return jsonify({
        'vehicle_id': vehicle_id,
        'analysis': analyze_continuity(trips),
        'gaps': [g for g in find_gaps(trips) if g['gap_km'] != 0],
        'issues': validate_chain(trips),
    })


@vehicles_bp.route('/vehicles/<int:vehicle_id>/corrections', methods=['GET'])
def get_vehicle_corrections(vehicle_id):
    """Correction audit history, newest first."""
    db = get_db()
    _get_vehicle_or_404(db, vehicle_id)

    orchestrator = CorrectionOrchestrator.for_session(db)
    _, per_page = _pagination_args()
    corrections = orchestrator.store.corrections_for_vehicle(vehicle_id, limit=per_page)

    return jsonify({'corrections': [c.to_dict() for c in corrections]})
