"""
Flask extensions for TripLedger.

This module initializes Flask extensions that need to be shared
across the application to avoid circular imports.
"""

from config import Config
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Rate limiting storage (Redis in production, memory for development)
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["1000 per hour", "200 per minute"],
    storage_uri=Config.RATE_LIMIT_STORAGE_URI,
    strategy="fixed-window",
    headers_enabled=True,  # Return X-RateLimit-* headers
)


class RateLimits:
    """Common rate limit configurations for different endpoint types."""

    # Listing and analysis endpoints
    READ_HEAVY = "500 per hour"

    # Trip inserts and plain edits
    WRITE_MODERATE = "100 per hour"

    # Cascade apply rewrites many rows in one transaction
    CASCADE_APPLY = "30 per hour"
