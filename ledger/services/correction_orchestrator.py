"""
Correction orchestrator.

Glue between the HTTP layer, the continuity engine, the anomaly detector and
the trip store. Preview and apply for one vehicle are serialized through a
per-vehicle lock, and apply re-checks the sequence version recorded at
preview time so a result computed against an older trip set is rejected
with StaleSequence. Every write re-runs anomaly evaluation for the trips it
changed.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Dict, Optional

from exceptions import InvalidReading, ReadOnlyField, StaleSequence, TripNotFound, ValidationError
from models import Trip
from utils.wide_events import log_anomaly_event, log_cascade_event, track_operation

from services import anomaly_detector, continuity_analysis, continuity_engine
from services.continuity_engine import CascadeResult
from services.trip_store import TripSequenceStore

logger = logging.getLogger(__name__)

# Fields a plain PATCH may change. Readings only move through a cascade.
EDITABLE_FIELDS = {
    "trip_serial_number",
    "trip_start_date",
    "trip_end_date",
    "refueling_done",
    "fuel_quantity",
    "is_manual_override",
    "remarks",
}
READING_FIELDS = {"start_km", "end_km"}


class VehicleLockRegistry:
    """Hands out one lock per vehicle id; different vehicles never contend."""

    def __init__(self):
        self._locks: Dict[int, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, vehicle_id: int) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(vehicle_id)
            if lock is None:
                lock = self._locks[vehicle_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, vehicle_id: int):
        lock = self.lock_for(vehicle_id)
        with lock:
            yield


# Shared across orchestrator instances (one per request)
_vehicle_locks = VehicleLockRegistry()


def auto_confirm(cascade_result: CascadeResult) -> bool:
    return True


class CorrectionOrchestrator:
    """Coordinates preview, confirmation, apply and anomaly re-evaluation."""

    def __init__(self, store: TripSequenceStore, locks: Optional[VehicleLockRegistry] = None, anomaly_base=None):
        self.store = store
        self.locks = locks or _vehicle_locks
        self.anomaly_base = anomaly_base

    @classmethod
    def for_session(cls, session, **kwargs) -> "CorrectionOrchestrator":
        return cls(TripSequenceStore(session), **kwargs)

    # ------------------------------------------------------------------
    # Cascades
    # ------------------------------------------------------------------

    def preview_correction(self, vehicle_id: int, trip_id: int, new_end_km) -> CascadeResult:
        """Compute the cascade for a proposed end reading without writing anything."""
        with self.locks.hold(vehicle_id):
            with track_operation("cascade_preview", vehicle_id=vehicle_id, trip_id=trip_id) as event:
                with event.timer("load_trips"):
                    trips = self.store.fetch_trips_for_vehicle(vehicle_id)
                event.add_technical_metric("trips_loaded", len(trips))
                self._require_trip(trips, trip_id, vehicle_id)

                result = continuity_engine.preview(trips, trip_id, new_end_km)
                result.sequence_version = self.store.sequence_version(trips)

                event.add_context(new_end_km=new_end_km, sequence_length=len(trips))
                event.add_business_metric("delta_km", result.delta)
                event.add_business_metric("rows_shifted", len(result.shifted_rows))
                if result.stopped_at_trip_id is not None:
                    event.add_business_metric("stopped_at_manual_trip", result.stopped_at_trip_id)
                return result

    def apply_correction(self, cascade_result, reason: Optional[str] = None) -> dict:
        """
        Apply a previously previewed cascade.

        Args:
            cascade_result: CascadeResult or its to_dict() form
            reason: Stored on the correction audit rows

        Returns:
            {"cascade": ..., "applied": bool, "rows_written": int, "anomalies": {trip_id: [flag, ...]}}

        Raises:
            StaleSequence: trips changed since the preview was computed
            CascadeOutOfRange: the result is not an ``ok`` preview
            ValidationError: no sequence_version, or rows that differ from the recomputed cascade
            TransactionFailure: the batch write was rolled back
        """
        if isinstance(cascade_result, dict):
            cascade_result = CascadeResult.from_dict(cascade_result)

        # The vehicle always comes from the stored trip, never from the posted result
        vehicle_id = self.store.get_trip(cascade_result.edited_trip_id).vehicle_id
        if cascade_result.vehicle_id not in (None, vehicle_id):
            raise ValidationError("cascade vehicle does not own the edited trip", field="vehicle_id")
        cascade_result.vehicle_id = vehicle_id

        with self.locks.hold(vehicle_id):
            return self._apply_locked(cascade_result, reason)

    def correct_end_reading(
        self,
        vehicle_id: int,
        trip_id: int,
        new_end_km,
        reason: Optional[str] = None,
        confirm: Callable[[CascadeResult], bool] = auto_confirm,
    ) -> dict:
        """
        Preview and apply in one locked step.

        ``confirm`` sees the preview and decides whether it is applied; a
        declined preview is returned with ``applied`` False.
        """
        with self.locks.hold(vehicle_id):
            trips = self.store.fetch_trips_for_vehicle(vehicle_id)
            self._require_trip(trips, trip_id, vehicle_id)
            result = continuity_engine.preview(trips, trip_id, new_end_km)
            result.sequence_version = self.store.sequence_version(trips)

            if not confirm(result):
                logger.info(f"Correction of trip {trip_id} declined after preview")
                log_cascade_event(vehicle_id, trip_id, "declined", success=True, delta_km=result.delta)
                return {"cascade": result.to_dict(), "applied": False, "rows_written": 0, "anomalies": {}}

            return self._apply_locked(result, reason)

    def _apply_locked(self, cascade_result: CascadeResult, reason: Optional[str]) -> dict:
        vehicle_id = cascade_result.vehicle_id
        with track_operation(
            "cascade_apply", vehicle_id=vehicle_id, trip_id=cascade_result.edited_trip_id
        ) as event:
            with event.timer("load_trips"):
                trips = self.store.fetch_trips_for_vehicle(vehicle_id)
            event.add_technical_metric("trips_loaded", len(trips))

            continuity_engine.require_applicable(cascade_result)
            expected_version = cascade_result.sequence_version
            if not expected_version:
                raise ValidationError(
                    "cascade has no sequence_version; preview the correction first",
                    field="sequence_version",
                )

            current_version = self.store.sequence_version(trips)
            if expected_version != current_version:
                if not self._already_applied(trips, cascade_result):
                    event.add_business_metric("stale_sequence", True)
                    raise StaleSequence(
                        "Trip sequence changed since the preview; preview again",
                        vehicle_id=vehicle_id,
                        expected_version=expected_version,
                        actual_version=current_version,
                    )

            with event.timer("commit"):
                written = continuity_engine.apply(trips, cascade_result, store=self.store, reason=reason)

            anomalies = {}
            if written:
                with event.timer("evaluate"):
                    refreshed = self.store.fetch_trips_for_vehicle(vehicle_id)
                    anomalies = self._evaluate_ids(refreshed, [row.trip_id for row in written], vehicle_id)

            event.add_context(delta_km=cascade_result.delta, reason=reason)
            event.add_business_metric("rows_written", len(written))
            event.add_business_metric("cascade_applied", bool(written))
            event.add_business_metric("anomalies_flagged", sum(len(f) for f in anomalies.values()))

            return {
                "cascade": cascade_result.to_dict(),
                "applied": bool(written),
                "rows_written": len(written),
                "anomalies": anomalies,
            }

    @staticmethod
    def _already_applied(trips, cascade_result: CascadeResult) -> bool:
        by_id = {trip.id: trip for trip in trips}
        return all(
            row.trip_id in by_id and row.matches_new(by_id[row.trip_id])
            for row in cascade_result.rows
        )

    # ------------------------------------------------------------------
    # Plain writes
    # ------------------------------------------------------------------

    def record_trip(self, trip: Trip) -> dict:
        """Insert a trip and evaluate it against the vehicle's history."""
        self._check_readings(trip)

        with self.locks.hold(trip.vehicle_id):
            with track_operation("trip_record", vehicle_id=trip.vehicle_id) as event:
                self.store.add_trip(trip)
                event.add_context(trip_id=trip.id)
                event.add_business_metric("trip_recorded", True)

                trips = self.store.fetch_trips_for_vehicle(trip.vehicle_id)
                flags = self._evaluate_ids(trips, [trip.id], trip.vehicle_id).get(trip.id, [])
                event.add_business_metric("anomalies_flagged", len(flags))

        return {"trip": trip.to_dict(), "anomalies": flags}

    def update_trip_fields(self, trip_id: int, fields: dict) -> dict:
        """
        Edit non-reading fields of a trip, then re-evaluate it.

        Clearing ``refueling_done`` also clears ``fuel_quantity``. Moving
        ``trip_start_date`` can reorder the sequence without shifting any
        reading, so the gaps on either side of the trip are returned as
        ``continuity_gaps``.

        Raises:
            ReadOnlyField: fields include start_km or end_km
            ValidationError: fields include anything else not editable, or
                fuel_quantity alongside refueling_done False
        """
        readings = READING_FIELDS.intersection(fields)
        if readings:
            field = sorted(readings)[0]
            raise ReadOnlyField(f"{field} can only be changed through a cascade correction", field=field)

        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError("Fields cannot be edited", errors=sorted(unknown))

        fields = self._normalize_fuel(fields)

        trip = self.store.get_trip(trip_id)
        with self.locks.hold(trip.vehicle_id):
            self.store.update_trip(trip, fields)
            trips = self.store.fetch_trips_for_vehicle(trip.vehicle_id)
            flags = self._evaluate_ids(trips, [trip.id], trip.vehicle_id).get(trip.id, [])
            gaps = self._gaps_touching(trips, trip.id) if "trip_start_date" in fields else []

        if gaps:
            logger.warning(
                f"Moving trip {trip.id} left {len(gaps)} continuity gap(s) for vehicle {trip.vehicle_id}"
            )
        log_anomaly_event(trip.vehicle_id, trip.id, flags, updated_fields=sorted(fields), continuity_gaps=len(gaps))

        return {"trip": trip.to_dict(), "anomalies": flags, "continuity_gaps": gaps}

    @staticmethod
    def _normalize_fuel(fields: dict) -> dict:
        fields = dict(fields)
        if fields.get("refueling_done") is False:
            if fields.get("fuel_quantity") is not None:
                raise ValidationError(
                    "fuel_quantity cannot be set on a trip without refuelling",
                    field="fuel_quantity",
                )
            fields["fuel_quantity"] = None
        elif fields.get("fuel_quantity") is not None and "refueling_done" not in fields:
            fields["refueling_done"] = True
        return fields

    @staticmethod
    def _gaps_touching(trips, trip_id) -> list:
        return [
            gap for gap in continuity_analysis.find_gaps(trips)
            if gap["gap_km"] != 0 and trip_id in (gap["trip_id"], gap["previous_trip_id"])
        ]

    # ------------------------------------------------------------------
    # Read-only evaluation
    # ------------------------------------------------------------------

    def evaluate_trip(self, trip_id: int) -> list:
        trip = self.store.get_trip(trip_id)
        trips = self.store.fetch_trips_for_vehicle(trip.vehicle_id)
        return self._evaluate_ids(trips, [trip.id], trip.vehicle_id).get(trip.id, [])

    def evaluate_vehicle(self, vehicle_id: int) -> Dict[int, list]:
        """Anomaly flags for every trip of a vehicle, keyed by trip id."""
        trips = self.store.fetch_trips_for_vehicle(vehicle_id)
        return self._evaluate_ids(trips, [trip.id for trip in trips], vehicle_id)

    def _evaluate_ids(self, trips, trip_ids, vehicle_id) -> Dict[int, list]:
        vehicle = self.store.get_vehicle(vehicle_id)
        by_id = {trip.id: trip for trip in trips}
        results = {}
        for trip_id in trip_ids:
            trip = by_id.get(trip_id)
            if trip is None:
                continue
            context = anomaly_detector.build_context(trips, trip, vehicle, self.anomaly_base)
            flags = anomaly_detector.evaluate(trip, context)
            results[trip_id] = [flag.to_dict() for flag in flags]
        return results

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_trip(trips, trip_id, vehicle_id):
        if not any(trip.id == trip_id for trip in trips):
            raise TripNotFound("Trip not found for vehicle", trip_id=trip_id, vehicle_id=vehicle_id)

    @staticmethod
    def _check_readings(trip: Trip):
        for name in ("start_km", "end_km"):
            value = getattr(trip, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise InvalidReading(f"{name} must be a non-negative whole number", trip_id=trip.id, value=value)
        if trip.end_km < trip.start_km:
            raise InvalidReading(
                "End reading cannot be less than the trip's start reading",
                trip_id=trip.id,
                value=trip.end_km,
                start_km=trip.start_km,
            )
