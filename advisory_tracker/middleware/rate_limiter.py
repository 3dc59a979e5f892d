"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in advisory_tracker/__init__.py with no
default limits; this module applies granular limits per route category.

Usage:
    from advisory_tracker.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

RATE_LIMITS = {
    # Lock acquire/release is chatty: every row a user opens claims a lock.
    "entry_locking": "120/minute",
    "sheets": "60/minute",
    "tracking": "200/minute",
}


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Entry locking:   120/minute
        - Sheet workflow:   60/minute  (distribute, submit, unlock, edits)
        - Tracking reads:  200/minute
        - Health check:    exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name, limit in RATE_LIMITS.items():
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(limit)(bp)

    # Health check, exempt from rate limiting
    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: %s",
        ", ".join(f"{name}: {limit}" for name, limit in RATE_LIMITS.items()),
    )
