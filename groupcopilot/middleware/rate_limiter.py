"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in groupcopilot/__init__.py with no default
limits; this module applies limits per route category.

Usage:
    from groupcopilot.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Agent chat:       20/minute  (every turn may call the generator)
        - Votes / rooms:    60/minute
        - Audit feed:       200/minute
        - Health, cron:     exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    bp = app.blueprints.get("agent")
    if bp:
        limiter.limit("20/minute")(bp)

    for bp_name in ("approval", "room"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("60/minute")(bp)

    bp = app.blueprints.get("audit")
    if bp:
        limiter.limit("200/minute")(bp)

    for bp_name in ("health", "cron"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.exempt(bp)

    app.logger.info("Rate limiter configured — agent: 20/min, write: 60/min, audit: 200/min")
