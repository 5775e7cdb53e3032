"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in worktrack/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from worktrack.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

WRITE_LIMIT = "60/minute"
UPLOAD_LIMIT = "20/minute"

_WRITE_BLUEPRINTS = ("ticket", "workflow", "file_reference", "work_order", "finance", "progress")
_UPLOAD_BLUEPRINTS = ("document",)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Document uploads / copies:  20/minute
        - Ticket, workflow, file reference, work order, finance, progress: 60/minute
        - Health check:               exempt

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for bp_name in _UPLOAD_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(UPLOAD_LIMIT)(bp)

    for bp_name in _WRITE_BLUEPRINTS:
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — uploads: %s, writes: %s", UPLOAD_LIMIT, WRITE_LIMIT,
    )
