"""
Anomaly detection for individual trips.

Classifies a trip along three independent axes: single-trip distance, fuel
volume, and efficiency relative to the vehicle's rolling average. Flags are
advisory. A trip can carry several at once, and a missing or malformed field
only suppresses the checks that depend on it; ``evaluate`` never raises.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Optional

from calculations import (
    calculate_efficiency,
    calculate_percent_of_baseline,
    calculate_weighted_average,
    coerce_number,
)
from calculations.constants import (
    FLEET_BASELINE_EFFICIENCY,
    HIGH_EFFICIENCY_PCT,
    MAX_FUEL_VOLUME,
    MAX_TRIP_DISTANCE_KM,
    POOR_EFFICIENCY_PCT,
    ROLLING_AVERAGE_WINDOW,
)

from services.continuity_engine import sequence_key

logger = logging.getLogger(__name__)


class AnomalyKind(str, Enum):
    EXCESSIVE_DISTANCE = "ExcessiveDistance"
    EXCESSIVE_FUEL_VOLUME = "ExcessiveFuelVolume"
    SUSPICIOUSLY_HIGH_EFFICIENCY = "SuspiciouslyHighEfficiency"
    POOR_EFFICIENCY = "PoorEfficiency"


class Severity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


SEVERITY_BY_KIND = {
    AnomalyKind.EXCESSIVE_DISTANCE: Severity.WARNING,
    AnomalyKind.EXCESSIVE_FUEL_VOLUME: Severity.WARNING,
    AnomalyKind.SUSPICIOUSLY_HIGH_EFFICIENCY: Severity.WARNING,
    AnomalyKind.POOR_EFFICIENCY: Severity.CRITICAL,
}


@dataclass(frozen=True)
class AnomalyFlag:
    """A single advisory classification attached to a trip."""

    kind: AnomalyKind
    severity: Severity
    reason: str  # key=value pairs, stable for machine parsing

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class AnomalyContext:
    """Vehicle baseline plus the configurable bounds a trip is checked against."""

    rolling_average_efficiency: Optional[float] = None
    max_distance_km: float = MAX_TRIP_DISTANCE_KM
    max_fuel_volume: float = MAX_FUEL_VOLUME
    high_efficiency_pct: float = HIGH_EFFICIENCY_PCT
    poor_efficiency_pct: float = POOR_EFFICIENCY_PCT
    baseline_source: Optional[str] = None  # rolling_average, vehicle_baseline, fleet_baseline

    @classmethod
    def from_config(cls, rolling_average_efficiency: Optional[float] = None) -> "AnomalyContext":
        return cls(
            rolling_average_efficiency=rolling_average_efficiency,
            max_distance_km=MAX_TRIP_DISTANCE_KM,
            max_fuel_volume=MAX_FUEL_VOLUME,
            high_efficiency_pct=HIGH_EFFICIENCY_PCT,
            poor_efficiency_pct=POOR_EFFICIENCY_PCT,
        )

    def with_average(self, average: Optional[float], source: Optional[str]) -> "AnomalyContext":
        return replace(self, rolling_average_efficiency=average, baseline_source=source)


def _fmt(value: float) -> str:
    return f"{value:g}" if float(value).is_integer() else f"{value:.2f}"


def _fuel_quantity(trip) -> Optional[float]:
    # Fuel left on a trip explicitly marked as not refuelling is ignored
    if getattr(trip, "refueling_done", None) is False:
        return None
    return coerce_number(getattr(trip, "fuel_quantity", None))


def _trip_efficiency(trip) -> Optional[float]:
    start = coerce_number(getattr(trip, "start_km", None))
    end = coerce_number(getattr(trip, "end_km", None))
    if start is None or end is None:
        return None
    return calculate_efficiency(end - start, _fuel_quantity(trip))


def build_context(vehicle_trips, trip, vehicle=None, base: Optional[AnomalyContext] = None) -> AnomalyContext:
    """
    Derive the efficiency baseline ``trip`` is compared against.

    Uses the weighted average of the most recent refuelling efficiencies
    recorded before ``trip`` in sequence order (newest weighted highest).
    Without history it falls back to the vehicle's ``baseline_efficiency``
    and then to the fleet baseline setting.
    """
    context = base or AnomalyContext.from_config()
    target_key = sequence_key(trip)

    earlier = sorted(
        (t for t in vehicle_trips if t.id != trip.id and sequence_key(t) < target_key),
        key=sequence_key,
        reverse=True,
    )
    efficiencies = [e for e in (_trip_efficiency(t) for t in earlier) if e is not None and e > 0]

    average = calculate_weighted_average(efficiencies, window=ROLLING_AVERAGE_WINDOW)
    if average is not None:
        return context.with_average(average, "rolling_average")

    vehicle_baseline = coerce_number(getattr(vehicle, "baseline_efficiency", None))
    if vehicle_baseline is not None and vehicle_baseline > 0:
        return context.with_average(vehicle_baseline, "vehicle_baseline")

    if FLEET_BASELINE_EFFICIENCY is not None and FLEET_BASELINE_EFFICIENCY > 0:
        return context.with_average(FLEET_BASELINE_EFFICIENCY, "fleet_baseline")

    return context.with_average(None, None)


def evaluate(trip, context: Optional[AnomalyContext] = None) -> List[AnomalyFlag]:
    """
    Classify one trip.

    Args:
        trip: Object with start_km, end_km and optional fuel_quantity;
            fuel is ignored when refueling_done is False
        context: Baseline and bounds (Config defaults when omitted)

    Returns:
        Flags in a fixed order: distance, fuel volume, efficiency
    """
    context = context or AnomalyContext.from_config()
    flags = []

    start = coerce_number(getattr(trip, "start_km", None))
    end = coerce_number(getattr(trip, "end_km", None))
    distance = end - start if start is not None and end is not None else None
    fuel = _fuel_quantity(trip)

    if distance is not None and distance > context.max_distance_km:
        flags.append(_flag(
            AnomalyKind.EXCESSIVE_DISTANCE,
            f"distance_km={_fmt(distance)} exceeds max_distance_km={_fmt(context.max_distance_km)}",
        ))

    if fuel is not None and fuel > context.max_fuel_volume:
        flags.append(_flag(
            AnomalyKind.EXCESSIVE_FUEL_VOLUME,
            f"fuel_quantity={_fmt(fuel)} exceeds max_fuel_volume={_fmt(context.max_fuel_volume)}",
        ))

    efficiency = calculate_efficiency(distance, fuel)
    pct = calculate_percent_of_baseline(efficiency, context.rolling_average_efficiency)
    if pct is not None:
        detail = (
            f"efficiency={_fmt(efficiency)} average={_fmt(context.rolling_average_efficiency)} "
            f"pct={_fmt(pct)}"
        )
        if pct >= context.high_efficiency_pct:
            flags.append(_flag(
                AnomalyKind.SUSPICIOUSLY_HIGH_EFFICIENCY,
                f"{detail} at_or_above={_fmt(context.high_efficiency_pct)}",
            ))
        elif pct <= context.poor_efficiency_pct:
            flags.append(_flag(
                AnomalyKind.POOR_EFFICIENCY,
                f"{detail} at_or_below={_fmt(context.poor_efficiency_pct)}",
            ))

    if flags:
        logger.debug(f"Trip {getattr(trip, 'id', None)} flagged: {[f.kind.value for f in flags]}")

    return flags


def _flag(kind: AnomalyKind, reason: str) -> AnomalyFlag:
    return AnomalyFlag(kind=kind, severity=SEVERITY_BY_KIND[kind], reason=reason)


def evaluate_sequence(vehicle_trips, vehicle=None, base: Optional[AnomalyContext] = None) -> dict:
    """Evaluate every trip of a vehicle against its own history. Keyed by trip id."""
    trips = list(vehicle_trips)
    return {trip.id: evaluate(trip, build_context(trips, trip, vehicle, base)) for trip in trips}
