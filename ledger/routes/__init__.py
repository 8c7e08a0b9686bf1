"""
Routes module for TripLedger Flask blueprints.

This module contains Flask blueprints that handle different areas of the API.
"""

from routes.status import status_bp
from routes.trips import trips_bp
from routes.vehicles import vehicles_bp

__all__ = [
    "status_bp",
    "trips_bp",
    "vehicles_bp",
]


def register_blueprints(app):
    """Register all blueprints with the Flask app."""
    app.register_blueprint(status_bp, url_prefix="/api")
    app.register_blueprint(trips_bp, url_prefix="/api")
    app.register_blueprint(vehicles_bp, url_prefix="/api")
