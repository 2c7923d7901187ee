"""
Business Diagnostic Engine
Action plan domain models.

Models:
    - PlanSlot:         one of the 3 actions of the open cycle
    - DodConfirmation:  Definition-of-Done checklist confirmation (created once)
    - ActionEvidence:   before/after evidence (write-once per action per cycle)
    - CycleHistory:     plan slots archived when a new cycle starts

Lifecycle states:
    PlanSlot:  NOT_STARTED → IN_PROGRESS → DONE | DROPPED
               NOT_STARTED → DONE | DROPPED
"""

from diagnostic.models import _iso, _utcnow, _uuid, db
from diagnostic.models.assessment import _loads


# ── Constants ────────────────────────────────────────────────────────────────

SLOT_STATUSES = frozenset({"NOT_STARTED", "IN_PROGRESS", "DONE", "DROPPED"})

TERMINAL_SLOT_STATUSES = frozenset({"DONE", "DROPPED"})

PLAN_SIZE = 3

PLAN_POSITIONS = frozenset({1, 2, 3})


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

SLOT_TRANSITIONS = {
    "NOT_STARTED": ["IN_PROGRESS", "DONE", "DROPPED"],
    "IN_PROGRESS": ["DONE", "DROPPED"],
    "DONE":        [],
    "DROPPED":     [],
}


def can_transition_slot(old_status, new_status):
    """Return True if PlanSlot status transition is valid."""
    return new_status in SLOT_TRANSITIONS.get(old_status, [])


class PlanSlot(db.Model):
    """One selected action of the current cycle's plan."""

    __tablename__ = "plan_slots"
    __table_args__ = (
        db.UniqueConstraint("assessment_id", "action_key", name="uq_slot_action"),
        db.UniqueConstraint("assessment_id", "position", name="uq_slot_position"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    assessment_id = db.Column(
        db.String(36), db.ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    cycle_no = db.Column(db.Integer, nullable=False, default=1)
    action_key = db.Column(db.String(80), nullable=False)
    process_key = db.Column(db.String(20), nullable=True)
    band = db.Column(db.String(10), nullable=True)
    position = db.Column(db.Integer, nullable=False, comment="1 | 2 | 3")
    owner_name = db.Column(db.String(200), nullable=False)
    metric_text = db.Column(db.String(500), nullable=False)
    checkpoint_date = db.Column(db.Date, nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="NOT_STARTED",
        comment="NOT_STARTED | IN_PROGRESS | DONE | DROPPED",
    )
    dropped_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SLOT_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "cycle_no": self.cycle_no,
            "action_key": self.action_key,
            "process_key": self.process_key,
            "band": self.band,
            "position": self.position,
            "owner_name": self.owner_name,
            "metric_text": self.metric_text,
            "checkpoint_date": _iso(self.checkpoint_date),
            "status": self.status,
            "dropped_reason": self.dropped_reason,
        }

    def __repr__(self):
        return f"<PlanSlot #{self.position} {self.action_key} {self.status}>"


class DodConfirmation(db.Model):
    """Confirmation that every Definition-of-Done item of an action was met."""

    __tablename__ = "dod_confirmations"
    __table_args__ = (
        db.UniqueConstraint("assessment_id", "action_key", "cycle_no", name="uq_dod_action_cycle"),
    )

    id = db.Column(db.Integer, primary_key=True)
    assessment_id = db.Column(
        db.String(36), db.ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    cycle_no = db.Column(db.Integer, nullable=False, default=1)
    action_key = db.Column(db.String(80), nullable=False)
    confirmed_items_json = db.Column(db.Text, default="[]")
    confirmed_by = db.Column(db.String(120), nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    @property
    def confirmed_items(self) -> list:
        return _loads(self.confirmed_items_json, [])

    def to_dict(self):
        return {
            "action_key": self.action_key,
            "cycle_no": self.cycle_no,
            "confirmed_items": self.confirmed_items,
            "confirmed_at": _iso(self.confirmed_at),
        }


class ActionEvidence(db.Model):
    """
    Before/after evidence of one action.

    Write-once: there is no update path anywhere in the code base; the
    unique constraint rejects a second insert for the same cycle.
    """

    __tablename__ = "action_evidence"
    __table_args__ = (
        db.UniqueConstraint(
            "assessment_id", "action_key", "cycle_no", name="uq_evidence_action_cycle",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    assessment_id = db.Column(
        db.String(36), db.ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    cycle_no = db.Column(db.Integer, nullable=False, default=1)
    action_key = db.Column(db.String(80), nullable=False)
    evidence_text = db.Column(db.Text, nullable=True)
    before_baseline = db.Column(db.Text, nullable=False)
    after_result = db.Column(db.Text, nullable=False)
    declared_gain = db.Column(db.Text, nullable=True)
    created_by = db.Column(db.String(120), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "action_key": self.action_key,
            "cycle_no": self.cycle_no,
            "evidence_text": self.evidence_text,
            "before_baseline": self.before_baseline,
            "after_result": self.after_result,
            "declared_gain": self.declared_gain,
            "created_at": _iso(self.created_at),
        }


class CycleHistory(db.Model):
    """Plan slot of a finished cycle, archived by "new cycle"."""

    __tablename__ = "cycle_history"
    __table_args__ = (
        db.UniqueConstraint(
            "assessment_id", "cycle_no", "action_key", name="uq_history_cycle_action",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    assessment_id = db.Column(
        db.String(36), db.ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    cycle_no = db.Column(db.Integer, nullable=False)
    action_key = db.Column(db.String(80), nullable=False)
    process_key = db.Column(db.String(20), nullable=True)
    position = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False)
    owner_name = db.Column(db.String(200), nullable=True)
    metric_text = db.Column(db.String(500), nullable=True)
    checkpoint_date = db.Column(db.Date, nullable=True)
    dropped_reason = db.Column(db.Text, nullable=True)
    declared_gain = db.Column(db.Text, nullable=True)
    archived_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "cycle_no": self.cycle_no,
            "action_key": self.action_key,
            "process_key": self.process_key,
            "position": self.position,
            "status": self.status,
            "owner_name": self.owner_name,
            "metric_text": self.metric_text,
            "checkpoint_date": _iso(self.checkpoint_date),
            "dropped_reason": self.dropped_reason,
            "declared_gain": self.declared_gain,
            "archived_at": _iso(self.archived_at),
        }
