"""
Rate limiting configuration.

The Limiter instance is created in ovr/__init__.py with no default limits;
this module applies granular limits per blueprint.

Usage:
    from ovr.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# blueprint name -> limit string
BLUEPRINT_LIMITS = {
    "auth": "20/minute",
    "incidents": "120/minute",
    "investigations": "120/minute",
    "corrective_actions": "120/minute",
    "shared_access": "60/minute",
}


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints (per remote IP).

    The token exchange gets the tightest limit; health probes are exempt.
    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name, limit in BLUEPRINT_LIMITS.items():
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(limit)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured: %s",
        ", ".join(f"{k}={v}" for k, v in BLUEPRINT_LIMITS.items()),
    )
