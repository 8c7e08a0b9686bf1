"""
Odometer continuity engine.

Pure preview/apply over one vehicle's trip sequence. When a trip's end
reading changes, every later trip is shifted by the same delta so that each
start reading again equals its predecessor's end reading. A trip flagged
``is_manual_override`` is a checkpoint: propagation stops there and neither
it nor anything after it moves.

The functions accept any objects exposing ``id``, ``start_km``, ``end_km``,
``is_manual_override``, ``trip_start_date`` and ``created_at`` (ORM rows or
plain namespaces), so the engine can be driven without a database.
"""

import hashlib
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import List, Optional

from exceptions import CascadeOutOfRange, InvalidReading, StaleSequence, TripNotFound, ValidationError
from utils.timezone import normalize_datetime

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_OUT_OF_RANGE = "out_of_range"


@dataclass
class CascadeRow:
    """Old and new readings for one trip touched by a cascade."""

    trip_id: int
    current_start_km: int
    new_start_km: int
    current_end_km: int
    new_end_km: int

    @property
    def current_distance_km(self) -> int:
        return self.current_end_km - self.current_start_km

    @property
    def new_distance_km(self) -> int:
        return self.new_end_km - self.new_start_km

    def matches_current(self, trip) -> bool:
        return trip.start_km == self.current_start_km and trip.end_km == self.current_end_km

    def matches_new(self, trip) -> bool:
        return trip.start_km == self.new_start_km and trip.end_km == self.new_end_km

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "CascadeRow":
        return cls(
            trip_id=int(data["trip_id"]),
            current_start_km=int(data["current_start_km"]),
            new_start_km=int(data["new_start_km"]),
            current_end_km=int(data["current_end_km"]),
            new_end_km=int(data["new_end_km"]),
        )


@dataclass
class CascadeResult:
    """
    Outcome of a cascade preview.

    ``rows`` is ordered by sequence with the edited trip first. When
    propagation stopped at a manual-override trip its id is kept in
    ``stopped_at_trip_id``. ``sequence_version`` identifies the trip set the
    preview was computed from.
    """

    vehicle_id: Optional[int]
    edited_trip_id: int
    delta: int
    rows: List[CascadeRow] = field(default_factory=list)
    status: str = STATUS_OK
    offending_trip_id: Optional[int] = None
    stopped_at_trip_id: Optional[int] = None
    sequence_version: Optional[str] = None

    @property
    def is_ok(self) -> bool:
        return self.status == STATUS_OK

    @property
    def shifted_rows(self) -> List[CascadeRow]:
        """Downstream rows, excluding the edited trip."""
        return [row for row in self.rows if row.trip_id != self.edited_trip_id]

    def to_dict(self) -> dict:
        return {
            "vehicle_id": self.vehicle_id,
            "edited_trip_id": self.edited_trip_id,
            "delta": self.delta,
            "status": self.status,
            "offending_trip_id": self.offending_trip_id,
            "stopped_at_trip_id": self.stopped_at_trip_id,
            "sequence_version": self.sequence_version,
            "rows": [row.to_dict() for row in self.rows],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CascadeResult":
        """Rebuild a result that was sent to a client and posted back for apply."""
        return cls(
            vehicle_id=data.get("vehicle_id"),
            edited_trip_id=int(data["edited_trip_id"]),
            delta=int(data["delta"]),
            rows=[CascadeRow.from_dict(row) for row in data.get("rows", [])],
            status=data.get("status", STATUS_OK),
            offending_trip_id=data.get("offending_trip_id"),
            stopped_at_trip_id=data.get("stopped_at_trip_id"),
            sequence_version=data.get("sequence_version"),
        )


def sequence_key(trip):
    """
    Ordering key for a vehicle's trips: start time, then creation time, then id.

    Trips sharing a start timestamp keep the order they were created in.
    """
    start = normalize_datetime(getattr(trip, "trip_start_date", None)) or datetime.min
    created = normalize_datetime(getattr(trip, "created_at", None)) or datetime.min
    trip_id = trip.id if trip.id is not None else 0
    return (start, created, trip_id)


def sort_trips(trips) -> list:
    return sorted(trips, key=sequence_key)


def sequence_version(trips) -> str:
    """SHA-256 digest over the fields a cascade depends on, in sequence order."""
    digest = hashlib.sha256()
    for trip in sort_trips(trips):
        start = normalize_datetime(getattr(trip, "trip_start_date", None))
        digest.update(
            "{}|{}|{}|{}|{};".format(
                trip.id,
                trip.start_km,
                trip.end_km,
                int(bool(getattr(trip, "is_manual_override", False))),
                start.isoformat() if start else "",
            ).encode("utf-8")
        )
    return digest.hexdigest()


def _coerce_reading(value, trip_id, start_km) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidReading("End reading must be a whole number of km", trip_id=trip_id, value=value, start_km=start_km)
    if isinstance(value, float):
        if not value.is_integer():
            raise InvalidReading(
                "End reading must be a whole number of km", trip_id=trip_id, value=value, start_km=start_km
            )
        value = int(value)
    if value < 0:
        raise InvalidReading("End reading cannot be negative", trip_id=trip_id, value=value, start_km=start_km)
    return value


def preview(vehicle_trips, edited_trip_id, new_end_km, raise_on_out_of_range: bool = True) -> CascadeResult:
    """
    Compute the corrections needed after changing one trip's end reading.

    Args:
        vehicle_trips: All trips for one vehicle, in any order
        edited_trip_id: Trip whose end reading changes
        new_end_km: Proposed end reading
        raise_on_out_of_range: Raise CascadeOutOfRange (default) instead of
            returning a result with status ``out_of_range``

    Returns:
        CascadeResult whose first row is the edited trip

    Raises:
        TripNotFound: edited_trip_id is not in vehicle_trips
        InvalidReading: new_end_km is negative, fractional or below the trip's start
        CascadeOutOfRange: a shifted downstream reading would go negative
    """
    trips = list(vehicle_trips)
    edited = next((t for t in trips if t.id == edited_trip_id), None)
    if edited is None:
        raise TripNotFound("Trip not found in vehicle sequence", trip_id=edited_trip_id)

    new_end_km = _coerce_reading(new_end_km, edited.id, edited.start_km)
    if new_end_km < edited.start_km:
        raise InvalidReading(
            "End reading cannot be less than the trip's start reading",
            trip_id=edited.id,
            value=new_end_km,
            start_km=edited.start_km,
        )

    vehicle_id = getattr(edited, "vehicle_id", None)
    sequence = sort_trips(t for t in trips if getattr(t, "vehicle_id", None) == vehicle_id)
    position = next(i for i, t in enumerate(sequence) if t.id == edited.id)
    delta = new_end_km - edited.end_km

    result = CascadeResult(
        vehicle_id=vehicle_id,
        edited_trip_id=edited.id,
        delta=delta,
        rows=[CascadeRow(edited.id, edited.start_km, edited.start_km, edited.end_km, new_end_km)],
        sequence_version=sequence_version(sequence),
    )

    if delta == 0:
        return result

    for trip in sequence[position + 1:]:
        if getattr(trip, "is_manual_override", False):
            result.stopped_at_trip_id = trip.id
            break

        new_start = trip.start_km + delta
        new_end = trip.end_km + delta
        if new_start < 0 or new_end < 0:
            result.status = STATUS_OUT_OF_RANGE
            result.offending_trip_id = trip.id
            logger.info(
                f"Cascade from trip {edited.id} out of range at trip {trip.id} "
                f"(start {trip.start_km} shifted by {delta})"
            )
            if raise_on_out_of_range:
                raise CascadeOutOfRange(
                    "Cascade would make a downstream odometer reading negative",
                    trip_id=trip.id,
                    shifted_start_km=new_start,
                )
            return result

        result.rows.append(CascadeRow(trip.id, trip.start_km, new_start, trip.end_km, new_end))

    return result


def apply(vehicle_trips, cascade_result: CascadeResult, store=None, reason: Optional[str] = None) -> List[CascadeRow]:
    """
    Write a previewed cascade back as one all-or-nothing batch.

    Every row is checked against ``vehicle_trips`` first. Rows already at
    their new readings are skipped, so applying the same result twice
    changes nothing. With a ``store`` the batch goes through
    ``store.commit_trip_updates``; without one the trip objects are updated
    in place.

    Before anything is written the cascade is recomputed from
    ``vehicle_trips`` and the edited row's new end reading; the posted rows
    must equal the recomputed ones.

    Returns:
        Rows that were actually written (empty when already applied)

    Raises:
        CascadeOutOfRange: the result was not an ``ok`` preview, or shifting now goes negative
        InvalidReading: the edited row's new end reading is not valid for the trip
        StaleSequence: a trip is missing, holds neither the previewed nor the new
            readings, or the sequence changed since the preview
        ValidationError: the rows are not the cascade the engine computes
        TransactionFailure: raised by the store when the batch write fails
    """
    require_applicable(cascade_result)

    by_id = {trip.id: trip for trip in vehicle_trips}
    pending = []
    applied = 0

    for row in cascade_result.rows:
        trip = by_id.get(row.trip_id)
        if trip is None:
            raise StaleSequence(
                f"Trip {row.trip_id} is no longer part of the sequence",
                vehicle_id=cascade_result.vehicle_id,
            )
        if row.matches_new(trip):
            applied += 1
        elif row.matches_current(trip):
            pending.append((trip, row))
        else:
            raise StaleSequence(
                f"Trip {row.trip_id} readings changed since the preview",
                vehicle_id=cascade_result.vehicle_id,
            )

    if not pending:
        logger.debug(f"Cascade for trip {cascade_result.edited_trip_id} already applied")
        return []

    # A half-applied result can only come from an outside write
    if applied:
        raise StaleSequence(
            "Sequence is partially at the previewed readings",
            vehicle_id=cascade_result.vehicle_id,
        )

    _verify_against_preview(vehicle_trips, cascade_result)

    rows = [row for _, row in pending]
    if store is not None:
        store.commit_trip_updates(rows, reason=reason, edited_trip_id=cascade_result.edited_trip_id)
    else:
        for trip, row in pending:
            trip.start_km = row.new_start_km
            trip.end_km = row.new_end_km

    logger.info(
        f"Applied cascade from trip {cascade_result.edited_trip_id}: "
        f"delta {cascade_result.delta:+d}, {len(rows)} trips updated"
    )
    return rows


def require_applicable(cascade_result: CascadeResult) -> None:
    """Refuse results that were rejected at preview or do not lead with the edited trip."""
    if not cascade_result.is_ok:
        raise CascadeOutOfRange(
            "Cannot apply a cascade that was rejected as out of range",
            trip_id=cascade_result.offending_trip_id,
        )
    rows = cascade_result.rows
    if not rows or rows[0].trip_id != cascade_result.edited_trip_id:
        raise ValidationError("Cascade rows must start with the edited trip", field="cascade")


def _verify_against_preview(vehicle_trips, cascade_result: CascadeResult) -> None:
    expected = preview(vehicle_trips, cascade_result.edited_trip_id, cascade_result.rows[0].new_end_km)

    posted = (cascade_result.rows, cascade_result.delta, cascade_result.stopped_at_trip_id)
    if posted == (expected.rows, expected.delta, expected.stopped_at_trip_id):
        return

    if cascade_result.sequence_version and cascade_result.sequence_version != expected.sequence_version:
        raise StaleSequence(
            "Trip sequence changed since the preview; preview again",
            vehicle_id=cascade_result.vehicle_id,
            expected_version=cascade_result.sequence_version,
            actual_version=expected.sequence_version,
        )

    logger.warning(
        f"Rejected cascade for trip {cascade_result.edited_trip_id}: "
        f"{len(cascade_result.rows)} rows posted, {len(expected.rows)} computed"
    )
    raise ValidationError(
        "Cascade rows do not match the correction computed from the current trips",
        field="cascade",
    )
