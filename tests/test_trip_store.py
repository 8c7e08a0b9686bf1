"""
Tests for the SQLAlchemy trip sequence store.
"""

from datetime import datetime
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from exceptions import InvalidReading, TransactionFailure, TripNotFound
from models import Trip, TripCorrection
from services import continuity_engine
from services.continuity_engine import CascadeRow
from services.trip_store import FIELD_CASCADE, FIELD_END_KM, TripSequenceStore

from factories import TripFactory, VehicleFactory


@pytest.fixture
def store(db_session):
    return TripSequenceStore(db_session)


class TestFetch:
    """Tests for reading a vehicle's sequence."""

    def test_returns_sequence_order(self, store, db_session, vehicle):
        TripFactory.create(db_session=db_session, vehicle_id=vehicle.id, day=2, start_km=300, end_km=400)
        TripFactory.create(db_session=db_session, vehicle_id=vehicle.id, day=0, start_km=100, end_km=200)
        TripFactory.create(db_session=db_session, vehicle_id=vehicle.id, day=1, start_km=200, end_km=300)

        trips = store.fetch_trips_for_vehicle(vehicle.id)

        assert [t.start_km for t in trips] == [100, 200, 300]

    def test_same_start_ordered_by_creation(self, store, db_session, vehicle):
        same = datetime(2024, 6, 1, 8, 0)
        first = TripFactory.create(db_session=db_session, vehicle_id=vehicle.id, trip_start_date=same,
                                   created_at=datetime(2024, 6, 1, 9), start_km=0, end_km=10)
        second = TripFactory.create(db_session=db_session, vehicle_id=vehicle.id, trip_start_date=same,
                                    created_at=datetime(2024, 6, 1, 10), start_km=10, end_km=20)

        assert [t.id for t in store.fetch_trips_for_vehicle(vehicle.id)] == [first.id, second.id]

    def test_only_own_vehicle(self, store, db_session, trip_chain):
        other = VehicleFactory.create(db_session=db_session)
        TripFactory.create(db_session=db_session, vehicle_id=other.id, start_km=0, end_km=5)

        trips = store.fetch_trips_for_vehicle(trip_chain[0].vehicle_id)

        assert len(trips) == 5
        assert all(t.vehicle_id == trip_chain[0].vehicle_id for t in trips)

    def test_get_trip_missing(self, store):
        with pytest.raises(TripNotFound):
            store.get_trip(12345)

    def test_current_version_tracks_changes(self, store, db_session, trip_chain):
        vehicle_id = trip_chain[0].vehicle_id
        before = store.current_version(vehicle_id)

        trip_chain[-1].end_km += 5
        db_session.commit()

        assert store.current_version(vehicle_id) != before


class TestCommitTripUpdates:
    """Tests for the atomic batch write."""

    def test_writes_readings_and_audit_rows(self, store, db_session, trip_chain):
        vehicle_id = trip_chain[0].vehicle_id
        trips = store.fetch_trips_for_vehicle(vehicle_id)
        result = continuity_engine.preview(trips, trip_chain[2].id, 1320)

        count = store.commit_trip_updates(result.rows, reason="Odometer photo", edited_trip_id=trip_chain[2].id)

        assert count == 3
        refreshed = store.fetch_trips_for_vehicle(vehicle_id)
        assert [(t.start_km, t.end_km) for t in refreshed] == [
            (1000, 1100), (1100, 1250), (1250, 1320), (1320, 1500), (1500, 1520),
        ]

        audit = db_session.query(TripCorrection).order_by(TripCorrection.id).all()
        assert [a.field_name for a in audit] == [FIELD_END_KM, FIELD_CASCADE, FIELD_CASCADE]
        assert (audit[0].old_value, audit[0].new_value) == ("1300", "1320")
        assert audit[0].affects_subsequent_trips is True
        assert (audit[1].old_value, audit[1].new_value) == ("1300-1480", "1320-1500")
        assert audit[1].correction_reason == "Odometer photo"

    def test_single_row_does_not_affect_subsequent(self, store, db_session, trip_chain):
        last = trip_chain[-1]
        row = CascadeRow(last.id, last.start_km, last.start_km, last.end_km, last.end_km + 7)

        store.commit_trip_updates([row], edited_trip_id=last.id)

        audit = db_session.query(TripCorrection).one()
        assert audit.affects_subsequent_trips is False

    def test_empty_batch(self, store):
        assert store.commit_trip_updates([]) == 0

    def test_database_error_rolls_back_everything(self, store, db_session, trip_chain):
        vehicle_id = trip_chain[0].vehicle_id
        trips = store.fetch_trips_for_vehicle(vehicle_id)
        result = continuity_engine.preview(trips, trip_chain[0].id, 1110)

        with patch.object(db_session, "commit", side_effect=OperationalError("UPDATE", {}, Exception("disk full"))):
            with pytest.raises(TransactionFailure) as exc_info:
                store.commit_trip_updates(result.rows, edited_trip_id=trip_chain[0].id)

        assert exc_info.value.row_count == 5
        refreshed = store.fetch_trips_for_vehicle(vehicle_id)
        assert [t.end_km for t in refreshed] == [1100, 1250, 1300, 1480, 1500]
        assert db_session.query(TripCorrection).count() == 0

    def test_missing_trip_rolls_back(self, store, db_session, trip_chain):
        first = trip_chain[0]
        rows = [
            CascadeRow(first.id, 1000, 1000, 1100, 1120),
            CascadeRow(99999, 1, 21, 2, 22),
        ]

        with pytest.raises(TripNotFound):
            store.commit_trip_updates(rows, edited_trip_id=first.id)

        assert db_session.get(Trip, first.id).end_km == 1100

    @pytest.mark.parametrize("new_start, new_end", [(-7, 5000), (1000, 900)])
    def test_refuses_negative_or_reversed_readings(self, store, db_session, trip_chain, new_start, new_end):
        first = trip_chain[0]
        rows = [CascadeRow(first.id, 1000, new_start, 1100, new_end)]

        with pytest.raises(InvalidReading):
            store.commit_trip_updates(rows, edited_trip_id=first.id)

        assert (db_session.get(Trip, first.id).start_km, db_session.get(Trip, first.id).end_km) == (1000, 1100)
        assert db_session.query(TripCorrection).count() == 0


class TestCorrectionsForVehicle:
    def test_newest_first_and_scoped(self, store, db_session, trip_chain):
        last = trip_chain[-1]
        store.commit_trip_updates(
            [CascadeRow(last.id, 1480, 1480, 1500, 1505)], reason="first", edited_trip_id=last.id
        )
        store.commit_trip_updates(
            [CascadeRow(last.id, 1480, 1480, 1505, 1510)], reason="second", edited_trip_id=last.id
        )

        corrections = store.corrections_for_vehicle(last.vehicle_id)

        assert [c.correction_reason for c in corrections] == ["second", "first"]
        assert store.corrections_for_vehicle(last.vehicle_id + 1000) == []
