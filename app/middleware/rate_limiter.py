"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies limits per route category.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

OPERATIONS_LIMIT = "120/minute"
SCHEDULER_LIMIT = "10/minute"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Operations API:   120/minute
        - Scheduler API:    10/minute  (triggers run whole batches)
        - Health check:     exempt

    Disabled in testing mode or when RATELIMIT_ENABLED is false.
    """
    if app.config.get("TESTING") or not app.config.get("RATELIMIT_ENABLED", True):
        app.logger.info("Rate limiter disabled")
        return

    bp = app.blueprints.get("operations")
    if bp:
        limiter.limit(OPERATIONS_LIMIT)(bp)

    bp = app.blueprints.get("scheduler")
    if bp:
        limiter.limit(SCHEDULER_LIMIT)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — operations: %s, scheduler: %s",
                    OPERATIONS_LIMIT, SCHEDULER_LIMIT)
