"""
Continuity analysis for a vehicle's trip chain.

Read-only reporting over the ordered sequence: classifies the gap between
each trip's start and its predecessor's end, scores the chain, and lists
concrete integrity issues with suggested fixes. Nothing here writes; fixing
a reading goes through a cascade correction.
"""

import logging
from typing import List, Optional

from calculations import calculate_tank_to_tank_efficiency, is_efficiency_plausible
from calculations.constants import (
    CHAIN_GAP_ALERT_KM,
    EXCELLENT_CONTINUITY_SCORE,
    MODERATE_GAP_KM,
    MODERATE_GAPS_REVIEW_COUNT,
    PERFECT_CONTINUITY_SCORE,
    SMALL_GAP_KM,
)

from services.continuity_engine import sort_trips

logger = logging.getLogger(__name__)

GAP_NEGATIVE = "negative"
GAP_PERFECT = "perfect"
GAP_SMALL = "small"
GAP_MODERATE = "moderate"
GAP_LARGE = "large"


def classify_gap(gap_km: int, small_km: int = SMALL_GAP_KM, moderate_km: int = MODERATE_GAP_KM) -> str:
    if gap_km < 0:
        return GAP_NEGATIVE
    if gap_km == 0:
        return GAP_PERFECT
    if gap_km <= small_km:
        return GAP_SMALL
    if gap_km <= moderate_km:
        return GAP_MODERATE
    return GAP_LARGE


def find_gaps(vehicle_trips) -> List[dict]:
    """One entry per consecutive pair, in sequence order."""
    trips = sort_trips(vehicle_trips)
    gaps = []
    for previous, current in zip(trips, trips[1:]):
        gap_km = current.start_km - previous.end_km
        gaps.append({
            "previous_trip_id": previous.id,
            "trip_id": current.id,
            "previous_end_km": previous.end_km,
            "start_km": current.start_km,
            "gap_km": gap_km,
            "classification": classify_gap(gap_km),
        })
    return gaps


def continuity_score(counts: dict, trip_count: int) -> Optional[int]:
    """
    0-100 score driven by the worst gap class present.

    Negative gaps zero the score. Otherwise each large, moderate or small gap
    deducts 10, 5 or 2 points from a ceiling of 50, 70 or 90.
    """
    if trip_count == 0:
        return None
    if counts[GAP_NEGATIVE]:
        return 0
    if counts[GAP_LARGE]:
        return max(50 - counts[GAP_LARGE] * 10, 0)
    if counts[GAP_MODERATE]:
        return max(70 - counts[GAP_MODERATE] * 5, 0)
    if counts[GAP_SMALL]:
        return max(90 - counts[GAP_SMALL] * 2, 0)
    return PERFECT_CONTINUITY_SCORE


def _recommendations(counts: dict, score: Optional[int]) -> List[str]:
    recommendations = []
    if counts[GAP_NEGATIVE]:
        recommendations.append(
            f"CRITICAL: {counts[GAP_NEGATIVE]} trips have negative odometer gaps. Immediate correction required."
        )
    if counts[GAP_LARGE]:
        recommendations.append(
            f"WARNING: {counts[GAP_LARGE]} trips have large gaps (>{MODERATE_GAP_KM}km). Check for missing trips."
        )
    if counts[GAP_MODERATE] > MODERATE_GAPS_REVIEW_COUNT:
        recommendations.append("Multiple moderate gaps detected. Consider reviewing trip logging practices.")
    if score is not None and score >= EXCELLENT_CONTINUITY_SCORE:
        recommendations.append("Excellent odometer continuity maintained!")
    return recommendations


def analyze_continuity(vehicle_trips) -> dict:
    """
    Summarize continuity for a vehicle.

    Gap totals use absolute values so regressions count as distance
    unaccounted for. ``avg_gap_km`` is averaged over trips, not pairs.
    """
    trips = list(vehicle_trips)
    gaps = find_gaps(trips)

    counts = {name: 0 for name in (GAP_NEGATIVE, GAP_PERFECT, GAP_SMALL, GAP_MODERATE, GAP_LARGE)}
    for gap in gaps:
        counts[gap["classification"]] += 1

    total_gap = sum(abs(gap["gap_km"]) for gap in gaps)
    max_gap = max((abs(gap["gap_km"]) for gap in gaps), default=0)
    score = continuity_score(counts, len(trips))

    return {
        "total_trips": len(trips),
        "perfect_continuity_count": counts[GAP_PERFECT],
        "small_gaps_count": counts[GAP_SMALL],
        "moderate_gaps_count": counts[GAP_MODERATE],
        "large_gaps_count": counts[GAP_LARGE],
        "negative_gaps_count": counts[GAP_NEGATIVE],
        "total_gap_km": total_gap,
        "avg_gap_km": round(total_gap / len(trips), 2) if trips else 0,
        "max_gap_km": max_gap,
        "continuity_score": score,
        "recommendations": _recommendations(counts, score),
    }


def _issue(issue_type, severity, trip, description, suggested_fix) -> dict:
    return {
        "issue_type": issue_type,
        "severity": severity,
        "trip_id": trip.id,
        "trip_serial_number": getattr(trip, "trip_serial_number", None),
        "description": description,
        "suggested_fix": suggested_fix,
    }


def validate_chain(vehicle_trips) -> List[dict]:
    """
    List integrity issues along the chain.

    Checks each trip for negative distance, regression against the previous
    end reading, a gap above the alert threshold, and tank-to-tank
    efficiency outside the plausible range.
    """
    issues = []
    previous = None
    previous_refuel = None

    for trip in sort_trips(vehicle_trips):
        if trip.end_km < trip.start_km:
            issues.append(_issue(
                "negative_distance", "critical", trip,
                f"End KM ({trip.end_km}) is less than Start KM ({trip.start_km})",
                "Swap start and end KM values",
            ))

        if previous is not None:
            if trip.start_km < previous.end_km:
                issues.append(_issue(
                    "odometer_regression", "high", trip,
                    f"Start KM ({trip.start_km}) is less than previous trip end KM ({previous.end_km})",
                    f"Adjust start KM to {previous.end_km}",
                ))
            elif trip.start_km - previous.end_km > CHAIN_GAP_ALERT_KM:
                issues.append(_issue(
                    "large_odometer_gap", "medium", trip,
                    f"Large gap of {trip.start_km - previous.end_km} km from previous trip",
                    "Check for missing trips",
                ))

        if getattr(trip, "refueling_done", False):
            efficiency = calculate_tank_to_tank_efficiency(trip, previous_refuel)
            if efficiency is not None and not is_efficiency_plausible(efficiency):
                issues.append(_issue(
                    "unrealistic_efficiency", "medium", trip,
                    f"Unrealistic efficiency: {efficiency:.2f} km per unit",
                    "Verify fuel quantity and odometer readings",
                ))
            previous_refuel = trip

        previous = trip

    if issues:
        logger.debug(f"Chain validation found {len(issues)} issues")
    return issues
