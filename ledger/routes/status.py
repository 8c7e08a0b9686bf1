"""
Status routes for TripLedger.

Health check used by load balancers and the deployment smoke test.
"""

import logging

from database import get_db
from flask import Blueprint, Response, jsonify
from models import TripCorrection
from sqlalchemy import desc, text
from sqlalchemy.exc import SQLAlchemyError
from utils.error_codes import ErrorCode, StructuredError

logger = logging.getLogger(__name__)

status_bp = Blueprint('status', __name__)


@status_bp.route('/health', methods=['GET'])
def get_health() -> Response:
    """Report database connectivity and the last correction applied."""
    db = get_db()

    try:
        db.execute(text('SELECT 1'))
        last_correction = db.query(TripCorrection).order_by(desc(TripCorrection.corrected_at)).first()
    except SQLAlchemyError as e:
        structured = StructuredError(ErrorCode.E200_DB_CONNECTION_FAILED, "Database unavailable", exception=e)
        logger.error(f"Health check failed: {structured}: {e}")
        return jsonify({'status': 'degraded', 'database': 'unavailable', **structured.to_response()}), structured.http_status

    return jsonify({
        'status': 'online',
        'database': 'connected',
        'last_correction_at': (
            last_correction.corrected_at.isoformat()
            if last_correction and last_correction.corrected_at else None
        ),
    })
