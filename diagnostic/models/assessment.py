"""
Business Diagnostic Engine
Assessment domain models.

Models:
    - Assessment:              root aggregate of one diagnostic (company × full_version)
    - Answer:                  0–10 answer to a catalog question, mutable while DRAFT
    - ProcessScore:            derived score + band per process, recomputed on submit
    - GapInstance:             gap detected at submit, pending root-cause classification
    - CauseAnswer:             Likert answer to a gap's cause question
    - GapCauseRecord:          immutable classification result (one per gap per assessment)
    - Finding:                 raio-x entry (vazamento / alavanca)
    - GeneratedRecommendation: derived recommendation per process/band

Architecture:
    Assessment ──1:N──▶ Answer
    Assessment ──1:4──▶ ProcessScore
    Assessment ──1:N──▶ GapInstance ──1:0..1──▶ GapCauseRecord
    Assessment ──1:N──▶ CauseAnswer
    Assessment ──1:N──▶ Finding
    Assessment ──1:N──▶ GeneratedRecommendation

Lifecycle states:
    Assessment:   DRAFT → SUBMITTED → CLOSED → SUBMITTED (new cycle)
    GapInstance:  CAUSE_PENDING → CAUSE_CLASSIFIED
"""

import json

from diagnostic.models import _iso, _utcnow, _uuid, db


# ── Constants ────────────────────────────────────────────────────────────────

ASSESSMENT_STATUSES = frozenset({"DRAFT", "SUBMITTED", "CLOSED"})

SEGMENTS = frozenset({"C", "I", "S"})

BANDS = ("LOW", "MEDIUM", "HIGH")

GAP_STATUSES = frozenset({"CAUSE_PENDING", "CAUSE_CLASSIFIED"})

FINDING_TYPES = frozenset({"VAZAMENTO", "ALAVANCA"})


# ── Lifecycle Transition Guards ──────────────────────────────────────────────

ASSESSMENT_TRANSITIONS = {
    "DRAFT":     ["SUBMITTED"],
    "SUBMITTED": ["CLOSED"],
    "CLOSED":    ["SUBMITTED"],   # new cycle re-opens the plan branch
}


def can_transition_assessment(old_status, new_status):
    """Return True if Assessment status transition is valid."""
    return new_status in ASSESSMENT_TRANSITIONS.get(old_status, [])


def _loads(raw, default):
    try:
        return json.loads(raw) if raw else default
    except (json.JSONDecodeError, TypeError):
        return default


# ═════════════════════════════════════════════════════════════════════════════
# Assessment
# ═════════════════════════════════════════════════════════════════════════════

class Assessment(db.Model):
    """
    One diagnostic of one company.

    ``full_version`` increments only on an explicit "redo diagnosis" and
    creates a new row; ``cycle_no`` increments on "new cycle" inside the
    same row.  The two axes never share a counter.
    """

    __tablename__ = "assessments"
    __table_args__ = (
        db.UniqueConstraint("company_id", "full_version", name="uq_assessment_company_version"),
        db.Index("idx_assessment_company_status", "company_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    company_id = db.Column(db.String(64), nullable=False, index=True)
    created_by = db.Column(db.String(120), nullable=True)
    segment = db.Column(db.String(1), nullable=False, default="C", comment="C | I | S")
    full_version = db.Column(db.Integer, nullable=False, default=1)
    cycle_no = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(
        db.String(20), nullable=False, default="DRAFT",
        comment="DRAFT | SUBMITTED | CLOSED",
    )
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    answers = db.relationship(
        "Answer", backref="assessment", lazy="dynamic", cascade="all, delete-orphan",
    )
    scores = db.relationship(
        "ProcessScore", backref="assessment", lazy="dynamic", cascade="all, delete-orphan",
        order_by="ProcessScore.process_key",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "created_by": self.created_by,
            "segment": self.segment,
            "full_version": self.full_version,
            "cycle_no": self.cycle_no,
            "status": self.status,
            "submitted_at": _iso(self.submitted_at),
            "closed_at": _iso(self.closed_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<Assessment {self.id} company={self.company_id} v{self.full_version} {self.status}>"


class Answer(db.Model):
    """Answer (0–10) to a catalog question."""

    __tablename__ = "answers"
    __table_args__ = (
        db.UniqueConstraint(
            "assessment_id", "process_key", "question_key", name="uq_answer_question",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    assessment_id = db.Column(
        db.String(36), db.ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    process_key = db.Column(db.String(20), nullable=False)
    question_key = db.Column(db.String(20), nullable=False)
    answer_value = db.Column(db.Integer, nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "process_key": self.process_key,
            "question_key": self.question_key,
            "answer_value": self.answer_value,
        }


class ProcessScore(db.Model):
    """Score (0–10) and band of one process, plus the inputs that produced it."""

    __tablename__ = "process_scores"
    __table_args__ = (
        db.UniqueConstraint("assessment_id", "process_key", name="uq_score_process"),
    )

    id = db.Column(db.Integer, primary_key=True)
    assessment_id = db.Column(
        db.String(36), db.ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    process_key = db.Column(db.String(20), nullable=False)
    band = db.Column(db.String(10), nullable=False, comment="LOW | MEDIUM | HIGH")
    score_numeric = db.Column(db.Float, nullable=False)
    support_json = db.Column(
        db.Text, default="{}",
        comment="JSON: {answers, dimension_scores, band_rule}",
    )
    computed_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    @property
    def support(self) -> dict:
        return _loads(self.support_json, {})

    def to_dict(self):
        return {
            "process_key": self.process_key,
            "band": self.band,
            "score_numeric": self.score_numeric,
            "support": self.support,
        }


class GapInstance(db.Model):
    """Gap detected at submit for a LOW process that maps to a catalog gap."""

    __tablename__ = "gap_instances"
    __table_args__ = (
        db.UniqueConstraint("assessment_id", "gap_id", name="uq_gap_instance"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    assessment_id = db.Column(
        db.String(36), db.ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    gap_id = db.Column(db.String(60), nullable=False)
    process_key = db.Column(db.String(20), nullable=False)
    status = db.Column(
        db.String(20), nullable=False, default="CAUSE_PENDING",
        comment="CAUSE_PENDING | CAUSE_CLASSIFIED",
    )
    detected_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "gap_id": self.gap_id,
            "process_key": self.process_key,
            "status": self.status,
            "detected_at": _iso(self.detected_at),
        }


class CauseAnswer(db.Model):
    """Likert answer to one cause question of a gap."""

    __tablename__ = "cause_answers"
    __table_args__ = (
        db.UniqueConstraint("assessment_id", "gap_id", "q_id", name="uq_cause_answer"),
    )

    id = db.Column(db.Integer, primary_key=True)
    assessment_id = db.Column(
        db.String(36), db.ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    gap_id = db.Column(db.String(60), nullable=False)
    q_id = db.Column(db.String(40), nullable=False)
    answer = db.Column(db.String(30), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {"gap_id": self.gap_id, "q_id": self.q_id, "answer": self.answer}


class GapCauseRecord(db.Model):
    """
    Root-cause classification of a gap.

    Created once per (assessment, gap) and never updated: the unique
    constraint makes concurrent classification first-writer-wins.
    """

    __tablename__ = "gap_cause_records"
    __table_args__ = (
        db.UniqueConstraint("assessment_id", "gap_id", name="uq_gap_cause"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    assessment_id = db.Column(
        db.String(36), db.ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    gap_id = db.Column(db.String(60), nullable=False)
    cause_primary = db.Column(db.String(60), nullable=False)
    cause_secondary = db.Column(db.String(60), nullable=True)
    evidence_json = db.Column(db.Text, default="[]", comment="JSON: [{q_id, answer, prompt}]")
    score_json = db.Column(db.Text, default="{}", comment="JSON: {cause_id: points}")
    catalog_version = db.Column(db.String(20), nullable=False)
    created_by = db.Column(db.String(120), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    @property
    def evidence(self) -> list:
        return _loads(self.evidence_json, [])

    @property
    def scores(self) -> dict:
        return _loads(self.score_json, {})

    def to_dict(self):
        return {
            "gap_id": self.gap_id,
            "cause_primary": self.cause_primary,
            "cause_secondary": self.cause_secondary,
            "evidence": self.evidence,
            "scores": self.scores,
            "catalog_version": self.catalog_version,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<GapCauseRecord {self.gap_id} → {self.cause_primary}>"


class Finding(db.Model):
    """Raio-x entry computed at submit."""

    __tablename__ = "findings"
    __table_args__ = (
        db.UniqueConstraint(
            "assessment_id", "finding_type", "position", name="uq_finding_position",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    assessment_id = db.Column(
        db.String(36), db.ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    finding_type = db.Column(db.String(20), nullable=False, comment="VAZAMENTO | ALAVANCA")
    position = db.Column(db.Integer, nullable=False)
    process_key = db.Column(db.String(20), nullable=False)
    is_fallback = db.Column(db.Boolean, nullable=False, default=False)
    payload_json = db.Column(db.Text, default="{}")

    @property
    def payload(self) -> dict:
        return _loads(self.payload_json, {})

    def to_dict(self):
        return {
            "finding_type": self.finding_type,
            "position": self.position,
            "process_key": self.process_key,
            "is_fallback": self.is_fallback,
            **self.payload,
        }


class GeneratedRecommendation(db.Model):
    """Recommendation derived for one process/band; upserted by key."""

    __tablename__ = "generated_recommendations"
    __table_args__ = (
        db.UniqueConstraint(
            "assessment_id", "process_key", "recommendation_key", name="uq_recommendation_key",
        ),
    )

    id = db.Column(db.Integer, primary_key=True)
    assessment_id = db.Column(
        db.String(36), db.ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    process_key = db.Column(db.String(20), nullable=False)
    band = db.Column(db.String(10), nullable=False)
    recommendation_key = db.Column(db.String(120), nullable=False)
    title = db.Column(db.String(300), nullable=False)
    action_keys_json = db.Column(db.Text, default="[]")
    is_fallback = db.Column(db.Boolean, nullable=False, default=False)
    gap_reason = db.Column(db.String(120), nullable=True)
    no_content_reason = db.Column(
        db.String(40), nullable=True,
        comment="no_score | no_catalog_item_for_band | no_match_ge_2 | action_already_used",
    )
    gap_id = db.Column(db.String(60), nullable=True)
    cause_id = db.Column(db.String(60), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def action_keys(self) -> list:
        return _loads(self.action_keys_json, [])

    def to_dict(self):
        return {
            "process_key": self.process_key,
            "band": self.band,
            "recommendation_key": self.recommendation_key,
            "title": self.title,
            "action_keys": self.action_keys,
            "is_fallback": self.is_fallback,
            "gap_reason": self.gap_reason,
            "no_content_reason": self.no_content_reason,
            "gap_id": self.gap_id,
            "cause_id": self.cause_id,
        }
