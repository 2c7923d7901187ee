"""
Business Diagnostic Engine
Audit domain models.

Models:
    - AuditLog:    immutable, append-only audit trail for lifecycle events.
    - ValueEvent:  product value milestones (cause classified, plan created, gain declared).
"""

import json
import logging
from datetime import UTC, datetime

from diagnostic.models import db

logger = logging.getLogger(__name__)


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "assessment", "gap", "plan", "plan_slot", "evidence", "snapshot",
}

AUDIT_ACTIONS = {
    "assessment.create",
    "assessment.answers_saved",
    "assessment.submit",
    "assessment.close",
    "assessment.new_cycle",
    "assessment.new_version",
    "gap.classify",
    "plan.select",
    "plan_slot.dod_confirmed",
    "plan_slot.status_change",
    "evidence.create",
}

VALUE_EVENTS = frozenset({"CAUSE_CLASSIFIED", "PLAN_CREATED", "GAIN_DECLARED"})


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per action.  ``diff_json`` carries old→new status for
    transitions and the relevant keys for creations.
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_company", "company_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.String(64), nullable=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="assessment | gap | plan | plan_slot | evidence | snapshot",
    )
    entity_id = db.Column(
        db.String(80), nullable=False,
        comment="Assessment id, or assessment_id:key for child entities",
    )

    action = db.Column(
        db.String(60), nullable=False,
        comment="assessment.submit | gap.classify | plan_slot.status_change | …",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")

    diff_json = db.Column(db.Text, default="{}")

    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor": self.actor,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


class ValueEvent(db.Model):
    """Product value milestone, recorded fire-and-forget."""

    __tablename__ = "value_events"
    __table_args__ = (
        db.Index("idx_value_event_company", "company_id", "event"),
    )

    id = db.Column(db.Integer, primary_key=True)
    event = db.Column(db.String(40), nullable=False)
    company_id = db.Column(db.String(64), nullable=True)
    assessment_id = db.Column(db.String(36), nullable=True, index=True)
    user_id = db.Column(db.String(120), nullable=True)
    meta_json = db.Column(db.Text, default="{}")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def to_dict(self) -> dict:
        try:
            meta = json.loads(self.meta_json or "{}")
        except (json.JSONDecodeError, TypeError):
            meta = {}
        return {
            "event": self.event,
            "company_id": self.company_id,
            "assessment_id": self.assessment_id,
            "user_id": self.user_id,
            "meta": meta,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id: str,
    action: str,
    actor: str = "system",
    company_id: str | None = None,
    diff: dict | None = None,
) -> AuditLog | None:
    """
    Append a single audit row inside a savepoint.

    The caller keeps transaction control; a failing audit insert rolls
    back only its own savepoint and is logged, never raised.
    """
    log = AuditLog(
        company_id=company_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor=actor or "system",
        diff_json=json.dumps(diff or {}, default=str),
    )
    try:
        with db.session.begin_nested():
            db.session.add(log)
    except Exception:
        logger.warning("Audit write failed: %s %s/%s", action, entity_type, entity_id,
                       exc_info=True)
        return None
    return log
