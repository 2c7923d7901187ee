"""
Value events - product milestones recorded fire-and-forget.

    CAUSE_CLASSIFIED  a gap received its root cause
    PLAN_CREATED      a 3-action plan was selected
    GAIN_DECLARED     before/after evidence was recorded

The insert runs in a savepoint; a failure is logged and swallowed so a
domain operation never fails because of telemetry.
"""

import json
import logging

from diagnostic.models import db
from diagnostic.models.audit import VALUE_EVENTS, ValueEvent

logger = logging.getLogger(__name__)


def emit_value_event(event: str, *, assessment_id: str | None = None,
                     company_id: str | None = None, user_id: str | None = None,
                     meta: dict | None = None) -> None:
    if event not in VALUE_EVENTS:
        logger.warning("Unknown value event %r ignored", event)
        return
    row = ValueEvent(
        event=event,
        assessment_id=assessment_id,
        company_id=company_id,
        user_id=user_id,
        meta_json=json.dumps(meta or {}, default=str),
    )
    try:
        with db.session.begin_nested():
            db.session.add(row)
    except Exception:
        logger.warning("Value event %s not recorded", event, exc_info=True,
                       extra={"assessment_id": assessment_id, "event_type": event})
