"""
SQLAlchemy-backed trip sequence store.

Fetches a vehicle's trips in sequence order and writes accepted corrections
as a single transaction, together with one TripCorrection audit row per
changed trip.
"""

import logging
from typing import Iterable, List, Optional

from exceptions import InvalidReading, TransactionFailure, TripNotFound
from models import Trip, TripCorrection, Vehicle
from sqlalchemy.exc import SQLAlchemyError

from services.continuity_engine import sequence_version, sort_trips

logger = logging.getLogger(__name__)

FIELD_END_KM = "end_km"
FIELD_CASCADE = "odometer_cascade"


class TripSequenceStore:
    """Persistence contract for the continuity engine."""

    def __init__(self, session):
        self.session = session

    def fetch_trips_for_vehicle(self, vehicle_id: int) -> List[Trip]:
        """All trips for a vehicle, ordered by sequence key."""
        trips = self.session.query(Trip).filter(Trip.vehicle_id == vehicle_id).all()
        return sort_trips(trips)

    def get_trip(self, trip_id: int) -> Trip:
        trip = self.session.get(Trip, trip_id)
        if trip is None:
            raise TripNotFound("Trip not found", trip_id=trip_id)
        return trip

    def get_vehicle(self, vehicle_id: int) -> Optional[Vehicle]:
        return self.session.get(Vehicle, vehicle_id)

    def sequence_version(self, trips: Iterable[Trip]) -> str:
        return sequence_version(trips)

    def current_version(self, vehicle_id: int) -> str:
        return self.sequence_version(self.fetch_trips_for_vehicle(vehicle_id))

    def add_trip(self, trip: Trip) -> Trip:
        """Insert a trip and commit."""
        try:
            self.session.add(trip)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Failed to insert trip for vehicle {trip.vehicle_id}: {e}")
            raise TransactionFailure("Trip could not be saved", vehicle_id=trip.vehicle_id) from e
        return trip

    def update_trip(self, trip: Trip, fields: dict) -> Trip:
        """Set plain attributes on a trip and commit."""
        try:
            for name, value in fields.items():
                setattr(trip, name, value)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Failed to update trip {trip.id}: {e}")
            raise TransactionFailure("Trip could not be updated", vehicle_id=trip.vehicle_id) from e
        return trip

    def commit_trip_updates(self, rows, reason: Optional[str] = None, edited_trip_id: Optional[int] = None) -> int:
        """
        Write new readings for every row in one transaction.

        Either every trip and audit row is written or nothing is: any database
        error rolls the whole batch back and surfaces as TransactionFailure.

        Args:
            rows: CascadeRow objects (edited trip first)
            reason: Free-text reason stored on each audit row
            edited_trip_id: Trip the user edited; the rest are cascade shifts

        Returns:
            Number of trips updated

        Raises:
            InvalidReading: a row would store a negative start or an end below its start
            TransactionFailure: the database write failed
        """
        rows = list(rows)
        if not rows:
            return 0

        for row in rows:
            if row.new_start_km < 0 or row.new_end_km < row.new_start_km:
                raise InvalidReading(
                    "Correction would store a negative or reversed reading",
                    trip_id=row.trip_id,
                    value=row.new_end_km,
                    start_km=row.new_start_km,
                )

        vehicle_id = None
        try:
            trips = {
                trip.id: trip
                for trip in self.session.query(Trip).filter(Trip.id.in_([row.trip_id for row in rows])).all()
            }
            for row in rows:
                trip = trips.get(row.trip_id)
                if trip is None:
                    raise TripNotFound("Trip disappeared during correction", trip_id=row.trip_id)
                vehicle_id = trip.vehicle_id

                trip.start_km = row.new_start_km
                trip.end_km = row.new_end_km
                self.session.add(self._audit_row(row, reason, edited_trip_id, len(rows) > 1))

            self.session.commit()
        except TripNotFound:
            self.session.rollback()
            raise
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(f"Cascade commit rolled back for vehicle {vehicle_id}: {e}")
            raise TransactionFailure(
                "Batch update failed; no trips were changed",
                vehicle_id=vehicle_id,
                row_count=len(rows),
            ) from e

        logger.info(f"Committed {len(rows)} trip updates for vehicle {vehicle_id}")
        return len(rows)

    @staticmethod
    def _audit_row(row, reason, edited_trip_id, affects_subsequent) -> TripCorrection:
        if row.trip_id == edited_trip_id:
            return TripCorrection(
                trip_id=row.trip_id,
                field_name=FIELD_END_KM,
                old_value=str(row.current_end_km),
                new_value=str(row.new_end_km),
                correction_reason=reason,
                affects_subsequent_trips=affects_subsequent,
            )
        return TripCorrection(
            trip_id=row.trip_id,
            field_name=FIELD_CASCADE,
            old_value=f"{row.current_start_km}-{row.current_end_km}",
            new_value=f"{row.new_start_km}-{row.new_end_km}",
            correction_reason=reason or f"Cascade from trip {edited_trip_id}",
            affects_subsequent_trips=False,
        )

    def corrections_for_vehicle(self, vehicle_id: int, limit: Optional[int] = None) -> List[TripCorrection]:
        """Audit history for a vehicle, newest first."""
        query = (
            self.session.query(TripCorrection)
            .join(Trip, TripCorrection.trip_id == Trip.id)
            .filter(Trip.vehicle_id == vehicle_id)
            .order_by(TripCorrection.corrected_at.desc(), TripCorrection.id.desc())
        )
        if limit:
            query = query.limit(limit)
        return query.all()
