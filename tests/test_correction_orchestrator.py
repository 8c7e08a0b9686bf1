"""
Tests for the correction orchestrator: preview/apply coordination,
staleness detection and anomaly re-evaluation on writes.
"""

from datetime import timedelta

import pytest

from exceptions import (
    CascadeOutOfRange,
    InvalidReading,
    ReadOnlyField,
    StaleSequence,
    TripNotFound,
    ValidationError,
)
from models import Trip, TripCorrection
from services.continuity_engine import CascadeResult
from services.correction_orchestrator import CorrectionOrchestrator, VehicleLockRegistry

from factories import BASE_TIME, TripFactory, build_chain


@pytest.fixture
def orchestrator(db_session):
    return CorrectionOrchestrator.for_session(db_session, locks=VehicleLockRegistry())


def chain_readings(orchestrator, vehicle_id):
    return [(t.start_km, t.end_km) for t in orchestrator.store.fetch_trips_for_vehicle(vehicle_id)]


class TestPreviewCorrection:
    def test_preview_is_stamped_with_store_version(self, orchestrator, trip_chain):
        vehicle_id = trip_chain[0].vehicle_id
        result = orchestrator.preview_correction(vehicle_id, trip_chain[1].id, 1260)

        assert result.sequence_version == orchestrator.store.current_version(vehicle_id)
        assert [r.trip_id for r in result.rows] == [t.id for t in trip_chain[1:]]

    def test_preview_writes_nothing(self, orchestrator, db_session, trip_chain):
        vehicle_id = trip_chain[0].vehicle_id
        before = chain_readings(orchestrator, vehicle_id)

        orchestrator.preview_correction(vehicle_id, trip_chain[0].id, 1150)

        assert chain_readings(orchestrator, vehicle_id) == before
        assert db_session.query(TripCorrection).count() == 0

    def test_trip_from_other_vehicle(self, orchestrator, trip_chain):
        with pytest.raises(TripNotFound) as exc_info:
            orchestrator.preview_correction(trip_chain[0].vehicle_id + 1, trip_chain[0].id, 1150)
        assert exc_info.value.vehicle_id == trip_chain[0].vehicle_id + 1

    def test_invalid_reading(self, orchestrator, trip_chain):
        with pytest.raises(InvalidReading):
            orchestrator.preview_correction(trip_chain[0].vehicle_id, trip_chain[1].id, 1000)


class TestApplyCorrection:
    def test_apply_restores_continuity(self, orchestrator, trip_chain):
        vehicle_id = trip_chain[0].vehicle_id
        preview = orchestrator.preview_correction(vehicle_id, trip_chain[0].id, 1130)

        outcome = orchestrator.apply_correction(preview, reason="Misread odometer")

        assert outcome["applied"] is True
        assert outcome["rows_written"] == 5
        assert chain_readings(orchestrator, vehicle_id) == [
            (1000, 1130), (1130, 1280), (1280, 1330), (1330, 1510), (1510, 1530),
        ]

    def test_apply_accepts_dict_form(self, orchestrator, trip_chain):
        vehicle_id = trip_chain[0].vehicle_id
        preview = orchestrator.preview_correction(vehicle_id, trip_chain[3].id, 1470)

        outcome = orchestrator.apply_correction(preview.to_dict())

        assert outcome["rows_written"] == 2
        assert chain_readings(orchestrator, vehicle_id)[-1] == (1470, 1490)

    def test_apply_resolves_missing_vehicle_id(self, orchestrator, trip_chain):
        preview = orchestrator.preview_correction(trip_chain[0].vehicle_id, trip_chain[4].id, 1510)
        data = preview.to_dict()
        data["vehicle_id"] = None

        outcome = orchestrator.apply_correction(CascadeResult.from_dict(data))

        assert outcome["cascade"]["vehicle_id"] == trip_chain[0].vehicle_id

    def test_apply_twice_is_noop(self, orchestrator, db_session, trip_chain):
        vehicle_id = trip_chain[0].vehicle_id
        preview = orchestrator.preview_correction(vehicle_id, trip_chain[2].id, 1310)

        orchestrator.apply_correction(preview)
        after_first = chain_readings(orchestrator, vehicle_id)
        audit_count = db_session.query(TripCorrection).count()

        outcome = orchestrator.apply_correction(preview)

        assert outcome["applied"] is False
        assert outcome["rows_written"] == 0
        assert chain_readings(orchestrator, vehicle_id) == after_first
        assert db_session.query(TripCorrection).count() == audit_count

    def test_stale_when_trip_added_after_preview(self, orchestrator, db_session, trip_chain):
        vehicle_id = trip_chain[0].vehicle_id
        preview = orchestrator.preview_correction(vehicle_id, trip_chain[0].id, 1120)

        TripFactory.create(db_session=db_session, vehicle_id=vehicle_id, day=10, start_km=1500, end_km=1600)

        with pytest.raises(StaleSequence) as exc_info:
            orchestrator.apply_correction(preview)

        assert exc_info.value.expected_version == preview.sequence_version
        assert chain_readings(orchestrator, vehicle_id)[0] == (1000, 1100)

    def test_stale_when_manual_flag_set_after_preview(self, orchestrator, db_session, trip_chain):
        vehicle_id = trip_chain[0].vehicle_id
        preview = orchestrator.preview_correction(vehicle_id, trip_chain[0].id, 1120)

        trip_chain[2].is_manual_override = True
        db_session.commit()

        with pytest.raises(StaleSequence):
            orchestrator.apply_correction(preview)

    def test_out_of_range_result_refused(self, orchestrator, trip_chain):
        result = CascadeResult(
            vehicle_id=trip_chain[0].vehicle_id,
            edited_trip_id=trip_chain[0].id,
            delta=-2000,
            status="out_of_range",
            offending_trip_id=trip_chain[1].id,
        )
        with pytest.raises(CascadeOutOfRange):
            orchestrator.apply_correction(result)

    def test_requires_sequence_version(self, orchestrator, trip_chain):
        vehicle_id = trip_chain[0].vehicle_id
        data = orchestrator.preview_correction(vehicle_id, trip_chain[0].id, 1130).to_dict()
        del data["sequence_version"]
        data["rows"] = data["rows"][:1]

        with pytest.raises(ValidationError) as exc_info:
            orchestrator.apply_correction(data)

        assert exc_info.value.field == "sequence_version"
        assert chain_readings(orchestrator, vehicle_id)[:2] == [(1000, 1100), (1100, 1250)]

    def test_altered_rows_rejected(self, orchestrator, trip_chain):
        vehicle_id = trip_chain[0].vehicle_id
        data = orchestrator.preview_correction(vehicle_id, trip_chain[0].id, 1130).to_dict()
        data["rows"][1].update(new_start_km=-7, new_end_km=5000)
        before = chain_readings(orchestrator, vehicle_id)

        with pytest.raises(ValidationError):
            orchestrator.apply_correction(data)

        assert chain_readings(orchestrator, vehicle_id) == before

    def test_vehicle_comes_from_the_edited_trip(self, orchestrator, trip_chain):
        data = orchestrator.preview_correction(trip_chain[0].vehicle_id, trip_chain[0].id, 1130).to_dict()
        data["vehicle_id"] = trip_chain[0].vehicle_id + 100

        with pytest.raises(ValidationError) as exc_info:
            orchestrator.apply_correction(data)

        assert exc_info.value.field == "vehicle_id"

    def test_reevaluates_changed_trips(self, orchestrator, db_session, vehicle):
        """Lowering a refuel trip's end reading drops its efficiency below 40% of average."""
        trips = build_chain(
            db_session, vehicle,
            distances=[200, 200, 200, 200],
            fuel={0: 10, 1: 10, 2: 10, 3: 10},
        )
        preview = orchestrator.preview_correction(vehicle.id, trips[3].id, trips[3].start_km + 50)

        outcome = orchestrator.apply_correction(preview)

        flags = outcome["anomalies"][trips[3].id]
        assert [f["kind"] for f in flags] == ["PoorEfficiency"]
        assert flags[0]["severity"] == "critical"

    def test_manual_checkpoint_survives_apply(self, orchestrator, db_session, vehicle):
        trips = build_chain(db_session, vehicle, distances=[100, 100, 100], manual_positions=(1,))

        preview = orchestrator.preview_correction(vehicle.id, trips[0].id, 1150)
        orchestrator.apply_correction(preview)

        assert chain_readings(orchestrator, vehicle.id) == [(1000, 1150), (1100, 1200), (1200, 1300)]


class TestCorrectEndReading:
    def test_auto_confirm(self, orchestrator, trip_chain):
        vehicle_id = trip_chain[0].vehicle_id
        outcome = orchestrator.correct_end_reading(vehicle_id, trip_chain[4].id, 1550, reason="import fix")

        assert outcome["applied"] is True
        assert chain_readings(orchestrator, vehicle_id)[-1] == (1480, 1550)

    def test_declined(self, orchestrator, trip_chain):
        vehicle_id = trip_chain[0].vehicle_id
        seen = []

        def decline(result):
            seen.append(result)
            return False

        outcome = orchestrator.correct_end_reading(vehicle_id, trip_chain[0].id, 1120, confirm=decline)

        assert outcome["applied"] is False
        assert len(seen) == 1
        assert chain_readings(orchestrator, vehicle_id)[0] == (1000, 1100)


class TestRecordTrip:
    def test_records_and_evaluates(self, orchestrator, vehicle):
        trip = Trip(vehicle_id=vehicle.id, trip_start_date=BASE_TIME, start_km=0, end_km=1200)

        outcome = orchestrator.record_trip(trip)

        assert outcome["trip"]["id"] is not None
        assert [f["kind"] for f in outcome["anomalies"]] == ["ExcessiveDistance"]

    def test_rejects_end_below_start(self, orchestrator, vehicle):
        trip = Trip(vehicle_id=vehicle.id, trip_start_date=BASE_TIME, start_km=500, end_km=400)
        with pytest.raises(InvalidReading):
            orchestrator.record_trip(trip)

    @pytest.mark.parametrize("start_km", [-1, "10", 1.5, None])
    def test_rejects_malformed_readings(self, orchestrator, vehicle, start_km):
        trip = Trip(vehicle_id=vehicle.id, trip_start_date=BASE_TIME, start_km=start_km, end_km=400)
        with pytest.raises(InvalidReading):
            orchestrator.record_trip(trip)


class TestUpdateTripFields:
    def test_updates_fuel_and_reevaluates(self, orchestrator, trip_chain):
        outcome = orchestrator.update_trip_fields(
            trip_chain[0].id, {"refueling_done": True, "fuel_quantity": 250.0}
        )

        assert outcome["trip"]["fuel_quantity"] == 250.0
        assert "ExcessiveFuelVolume" in [f["kind"] for f in outcome["anomalies"]]

    def test_end_km_rejected(self, orchestrator, trip_chain):
        with pytest.raises(ReadOnlyField) as exc_info:
            orchestrator.update_trip_fields(trip_chain[0].id, {"end_km": 1200})
        assert exc_info.value.field == "end_km"

    def test_unknown_field_rejected(self, orchestrator, trip_chain):
        with pytest.raises(ValidationError):
            orchestrator.update_trip_fields(trip_chain[0].id, {"vehicle_id": 99})

    def test_missing_trip(self, orchestrator):
        with pytest.raises(TripNotFound):
            orchestrator.update_trip_fields(424242, {"remarks": "x"})

    def test_clearing_refueling_clears_fuel(self, orchestrator, trip_chain):
        trip_id = trip_chain[0].id
        orchestrator.update_trip_fields(trip_id, {"fuel_quantity": 250.0})

        outcome = orchestrator.update_trip_fields(trip_id, {"refueling_done": False})

        assert outcome["trip"]["refueling_done"] is False
        assert outcome["trip"]["fuel_quantity"] is None
        assert outcome["anomalies"] == []

    def test_fuel_without_refueling_rejected(self, orchestrator, trip_chain):
        with pytest.raises(ValidationError) as exc_info:
            orchestrator.update_trip_fields(trip_chain[0].id, {"refueling_done": False, "fuel_quantity": 5.0})
        assert exc_info.value.field == "fuel_quantity"

    def test_moving_start_date_reports_gaps(self, orchestrator, trip_chain):
        """T1 moved after T5 now starts 500 km below T5's end."""
        first, last = trip_chain[0], trip_chain[-1]
        first_id, last_id = first.id, last.id

        outcome = orchestrator.update_trip_fields(first_id, {"trip_start_date": BASE_TIME + timedelta(days=10)})

        assert [(g["previous_trip_id"], g["trip_id"], g["gap_km"]) for g in outcome["continuity_gaps"]] == [
            (last_id, first_id, -500),
        ]
        assert outcome["continuity_gaps"][0]["classification"] == "negative"

    def test_plain_edit_reports_no_gaps(self, orchestrator, trip_chain):
        outcome = orchestrator.update_trip_fields(trip_chain[0].id, {"remarks": "Depot run"})
        assert outcome["continuity_gaps"] == []


class TestEvaluateVehicle:
    def test_flags_keyed_by_trip(self, orchestrator, trip_chain):
        results = orchestrator.evaluate_vehicle(trip_chain[0].vehicle_id)
        assert set(results) == {t.id for t in trip_chain}
        assert all(flags == [] for flags in results.values())
