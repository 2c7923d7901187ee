"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in diagnostic/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from diagnostic.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request

logger = logging.getLogger(__name__)

_MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def _is_read_request() -> bool:
    return flask_request.method not in _MUTATING_METHODS


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Diagnostic writes:  DIAGNOSTIC_WRITE_LIMIT (default 60/minute)
        - Diagnostic reads:   exempt
        - Health check:       exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    write_limit = app.config.get("DIAGNOSTIC_WRITE_LIMIT", "60/minute")

    bp = app.blueprints.get("diagnostic")
    if bp:
        limiter.limit(write_limit, exempt_when=_is_read_request)(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured - diagnostic writes: %s", write_limit)
