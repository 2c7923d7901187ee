"""
Identity context middleware.

Authentication happens upstream (gateway / auth proxy).  By the time a
request reaches the engine it carries an already-authenticated identity
in headers; this middleware copies it into ``flask.g`` so services can
attribute audit rows and value events without touching the request.

    X-User-Id    → g.user_id   (default "anonymous")
    X-User-Role  → g.user_role (default "user")

No access control is performed here.
"""

import logging

from flask import g, request

logger = logging.getLogger(__name__)

DEFAULT_USER_ID = "anonymous"
DEFAULT_ROLE = "user"


def current_actor() -> str:
    """Return the current user id, or "system" outside a request."""
    return getattr(g, "user_id", None) or "system"


def init_identity(app):
    """Register the identity before_request hook."""

    @app.before_request
    def _identity_context():
        g.user_id = (request.headers.get("X-User-Id") or DEFAULT_USER_ID).strip()[:120]
        g.user_role = (request.headers.get("X-User-Role") or DEFAULT_ROLE).strip()[:40]
