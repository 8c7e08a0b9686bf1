"""
Calculation Constants for TripLedger

Centralized location for thresholds used by efficiency, anomaly and
continuity calculations. Values that operators tune come from Config.
"""

from config import Config

# Anomaly bounds
MAX_TRIP_DISTANCE_KM = Config.MAX_TRIP_DISTANCE_KM  # Single-trip distance ceiling
MAX_FUEL_VOLUME = Config.MAX_FUEL_VOLUME  # Single refuel volume ceiling
HIGH_EFFICIENCY_PCT = Config.HIGH_EFFICIENCY_PCT  # % of rolling average at/above which efficiency is suspicious
POOR_EFFICIENCY_PCT = Config.POOR_EFFICIENCY_PCT  # % of rolling average at/below which efficiency is poor

# Rolling baseline
ROLLING_AVERAGE_WINDOW = Config.ROLLING_AVERAGE_WINDOW  # Most recent efficiencies used for the average
MIN_TRIPS_FOR_ROLLING_AVERAGE = Config.MIN_TRIPS_FOR_ROLLING_AVERAGE
FLEET_BASELINE_EFFICIENCY = Config.FLEET_BASELINE_EFFICIENCY  # Fallback when a vehicle has no history

# Continuity gaps (km between one trip's end and the next trip's start)
SMALL_GAP_KM = Config.SMALL_GAP_KM
MODERATE_GAP_KM = Config.MODERATE_GAP_KM
CHAIN_GAP_ALERT_KM = Config.CHAIN_GAP_ALERT_KM

# Chain validation plausibility (km per fuel unit)
MIN_PLAUSIBLE_EFFICIENCY = Config.MIN_PLAUSIBLE_EFFICIENCY
MAX_PLAUSIBLE_EFFICIENCY = Config.MAX_PLAUSIBLE_EFFICIENCY

# Continuity score
PERFECT_CONTINUITY_SCORE = 100
EXCELLENT_CONTINUITY_SCORE = 90  # At or above this the chain is reported as excellent
MODERATE_GAPS_REVIEW_COUNT = 3  # More moderate gaps than this triggers a logging-practice review
