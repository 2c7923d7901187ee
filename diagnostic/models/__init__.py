"""
Business Diagnostic Engine
Shared SQLAlchemy instance and column helpers.

Every model module imports ``db`` from here; ``create_app()`` binds it
with ``db.init_app(app)``.
"""

import uuid
from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None
