"""
Pytest fixtures for TripLedger tests.
"""

import os
import sys

import pytest

# Add ledger to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'ledger'))

# Set DATABASE_URL BEFORE importing app to use SQLite for tests
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['FLASK_TESTING'] = 'true'

from app import app as flask_app, Session, engine  # noqa: E402
from models import Base  # noqa: E402

from factories import TripFactory, VehicleFactory, build_chain  # noqa: E402


@pytest.fixture
def app():
    """Create application for testing."""
    flask_app.config['TESTING'] = True

    # Create all tables in the test database
    Base.metadata.create_all(engine)

    yield flask_app

    # Clean up tables after test
    Session.remove()
    Base.metadata.drop_all(engine)


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def db_session(app):
    """Provide a database session for tests."""
    session = Session()
    yield session
    session.rollback()
    Session.remove()


@pytest.fixture
def vehicle(db_session):
    """A persisted vehicle with no trips."""
    return VehicleFactory.create(db_session=db_session)


@pytest.fixture
def trip_chain(db_session, vehicle):
    """
    Five persisted, continuous trips for one vehicle.

    Readings: 1000-1100, 1100-1250, 1250-1300, 1300-1480, 1480-1500.
    """
    return build_chain(
        db_session,
        vehicle,
        distances=[100, 150, 50, 180, 20],
        start_km=1000,
    )


@pytest.fixture
def plain_trips():
    """Unsaved trips for pure engine tests: T1 -> T2 -> T3, continuous."""
    return [
        TripFactory.build(id=1, start_km=0, end_km=100, day=0),
        TripFactory.build(id=2, start_km=100, end_km=250, day=1),
        TripFactory.build(id=3, start_km=250, end_km=300, day=2),
    ]
