"""
TripLedger Calculation Module

Efficiency and threshold utilities shared by the anomaly detector and the
continuity analysis.

Usage:
    from calculations import calculate_efficiency, calculate_weighted_average
    from calculations.constants import MAX_TRIP_DISTANCE_KM
"""

from .efficiency import (
    coerce_number,
    calculate_efficiency,
    calculate_percent_of_baseline,
    calculate_tank_to_tank_efficiency,
    calculate_weighted_average,
    is_efficiency_plausible,
)

from .constants import (
    CHAIN_GAP_ALERT_KM,
    HIGH_EFFICIENCY_PCT,
    MAX_FUEL_VOLUME,
    MAX_TRIP_DISTANCE_KM,
    MODERATE_GAP_KM,
    POOR_EFFICIENCY_PCT,
    ROLLING_AVERAGE_WINDOW,
    SMALL_GAP_KM,
)

__all__ = [
    # Efficiency
    "coerce_number",
    "calculate_efficiency",
    "calculate_tank_to_tank_efficiency",
    "calculate_weighted_average",
    "calculate_percent_of_baseline",
    "is_efficiency_plausible",
    # Constants
    "MAX_TRIP_DISTANCE_KM",
    "MAX_FUEL_VOLUME",
    "HIGH_EFFICIENCY_PCT",
    "POOR_EFFICIENCY_PCT",
    "ROLLING_AVERAGE_WINDOW",
    "SMALL_GAP_KM",
    "MODERATE_GAP_KM",
    "CHAIN_GAP_ALERT_KM",
]
