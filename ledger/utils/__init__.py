"""Utility modules for TripLedger."""

from .timezone import (
    utc_now,
    normalize_datetime,
    parse_iso_datetime,
)

__all__ = [
    'utc_now',
    'normalize_datetime',
    'parse_iso_datetime',
]
