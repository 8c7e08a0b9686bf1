"""
Efficiency Calculations

Handles fuel efficiency metrics in km per fuel unit:
- Single-trip efficiency
- Tank-to-tank efficiency between refuelling trips
- Weighted rolling average used as a vehicle's baseline
- Percentage of baseline used for anomaly classification
"""

import math
from typing import Iterable, Optional

from .constants import (
    MAX_PLAUSIBLE_EFFICIENCY,
    MIN_PLAUSIBLE_EFFICIENCY,
    MIN_TRIPS_FOR_ROLLING_AVERAGE,
    ROLLING_AVERAGE_WINDOW,
)


def coerce_number(value) -> Optional[float]:
    """Coerce to float; None for missing, non-numeric, non-finite or bool input."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def calculate_efficiency(distance_km, fuel_quantity) -> Optional[float]:
    """
    Calculate km per fuel unit for a single trip.

    Args:
        distance_km: Distance covered
        fuel_quantity: Fuel added on the trip

    Returns:
        Efficiency, or None if either value is missing or fuel is not positive

    Examples:
        >>> calculate_efficiency(200, 5)
        40.0
        >>> calculate_efficiency(200, 0)
        None
    """
    distance = coerce_number(distance_km)
    fuel = coerce_number(fuel_quantity)

    if distance is None or fuel is None:
        return None

    if fuel <= 0 or distance < 0:
        return None

    return distance / fuel


def calculate_tank_to_tank_efficiency(trip, previous_refuel) -> Optional[float]:
    """
    Calculate efficiency over everything driven since the previous refuel.

    Distance is the current trip's end reading minus the previous refuelling
    trip's end reading; fuel is what was added on the current trip. Without a
    previous refuel this falls back to single-trip efficiency.
    """
    if not getattr(trip, 'refueling_done', False):
        return None

    fuel = coerce_number(getattr(trip, 'fuel_quantity', None))
    if fuel is None or fuel <= 0:
        return None

    if previous_refuel is None:
        return calculate_efficiency(trip.end_km - trip.start_km, fuel)

    distance = trip.end_km - previous_refuel.end_km
    if distance <= 0:
        return None

    return distance / fuel


def calculate_weighted_average(values: Iterable[float], window: int = ROLLING_AVERAGE_WINDOW) -> Optional[float]:
    """
    Weighted average of the most recent efficiencies.

    ``values`` must be ordered most recent first. The newest value carries
    weight ``n``, the oldest weight 1.

    Examples:
        >>> calculate_weighted_average([30, 20, 10])
        23.33
    """
    recent = [v for v in (coerce_number(x) for x in values) if v is not None and v > 0][:window]

    if len(recent) < max(MIN_TRIPS_FOR_ROLLING_AVERAGE, 1):
        return None

    n = len(recent)
    total_weight = n * (n + 1) / 2
    weighted_sum = sum(value * (n - index) for index, value in enumerate(recent))

    return round(weighted_sum / total_weight, 2)


def calculate_percent_of_baseline(efficiency, baseline) -> Optional[float]:
    """
    Express an efficiency as a percentage of the baseline.

    Examples:
        >>> calculate_percent_of_baseline(40, 20)
        200.0
        >>> calculate_percent_of_baseline(40, 0)
        None
    """
    efficiency = coerce_number(efficiency)
    baseline = coerce_number(baseline)

    if efficiency is None or baseline is None or baseline <= 0:
        return None

    return efficiency / baseline * 100


def is_efficiency_plausible(
    efficiency,
    min_efficiency: float = MIN_PLAUSIBLE_EFFICIENCY,
    max_efficiency: float = MAX_PLAUSIBLE_EFFICIENCY
) -> bool:
    """
    Check if efficiency is within the physically plausible range.

    Examples:
        >>> is_efficiency_plausible(12.5)
        True
        >>> is_efficiency_plausible(80)
        False
    """
    efficiency = coerce_number(efficiency)
    if efficiency is None:
        return False
    return min_efficiency <= efficiency <= max_efficiency
