"""
Rate limiting configuration.

Applies per-blueprint and per-route limits using Flask-Limiter.
The Limiter instance is created in greatloom/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from greatloom.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# A roll runs a full projector + archiver pass under the loom-writes lock.
ROLL_WINDOW_LIMIT = "6/minute"
WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - roll-window / archive / job trigger:  6/minute
        - rules + audit blueprints:            60/minute
        - loom blueprint (reads + patches):   200/minute
        - Health check:                        exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for endpoint in ("loom.roll_window", "loom.archive", "loom.run_job"):
        view = app.view_functions.get(endpoint)
        if view:
            app.view_functions[endpoint] = limiter.limit(ROLL_WINDOW_LIMIT)(view)

    for bp_name in ("rules", "audit"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("loom")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — roll: %s, write: %s, read: %s",
        ROLL_WINDOW_LIMIT, WRITE_LIMIT, READ_LIMIT,
    )
