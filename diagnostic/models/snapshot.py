"""
Business Diagnostic Engine
Snapshot model.

One frozen, renderable view per assessment: written at submit (plan and
evidence empty) and rewritten at close.  Handed as plain JSON to
external renderers; nothing in it is formatted beyond catalog strings.
"""

import json

from diagnostic.models import _iso, _utcnow, _uuid, db
from diagnostic.models.assessment import _loads


class DiagnosticSnapshot(db.Model):
    """Point-in-time view of an assessment's results and plan."""

    __tablename__ = "diagnostic_snapshots"
    __table_args__ = (
        db.Index("idx_snapshot_company_version", "company_id", "full_version"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    assessment_id = db.Column(
        db.String(36), db.ForeignKey("assessments.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    company_id = db.Column(db.String(64), nullable=False)
    full_version = db.Column(db.Integer, nullable=False)
    cycle_no = db.Column(db.Integer, nullable=False, default=1)
    segment = db.Column(db.String(1), nullable=True)
    processes_json = db.Column(db.Text, default="[]")
    findings_json = db.Column(db.Text, default='{"vazamentos": [], "alavancas": []}')
    recommendations_json = db.Column(db.Text, default="[]")
    plan_json = db.Column(db.Text, default="[]")
    evidence_summary_json = db.Column(db.Text, default="[]")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    @property
    def processes(self) -> list:
        return _loads(self.processes_json, [])

    @property
    def findings(self) -> dict:
        return _loads(self.findings_json, {"vazamentos": [], "alavancas": []})

    @property
    def plan(self) -> list:
        return _loads(self.plan_json, [])

    def set_payload(self, *, processes=None, findings=None, recommendations=None,
                    plan=None, evidence_summary=None):
        """Serialise any provided section into its JSON column."""
        if processes is not None:
            self.processes_json = json.dumps(processes, ensure_ascii=False)
        if findings is not None:
            self.findings_json = json.dumps(findings, ensure_ascii=False)
        if recommendations is not None:
            self.recommendations_json = json.dumps(recommendations, ensure_ascii=False)
        if plan is not None:
            self.plan_json = json.dumps(plan, ensure_ascii=False, default=str)
        if evidence_summary is not None:
            self.evidence_summary_json = json.dumps(evidence_summary, ensure_ascii=False)

    def to_dict(self):
        return {
            "assessment_id": self.assessment_id,
            "company_id": self.company_id,
            "full_version": self.full_version,
            "cycle_no": self.cycle_no,
            "segment": self.segment,
            "processes": self.processes,
            "findings": self.findings,
            "recommendations": _loads(self.recommendations_json, []),
            "plan": self.plan,
            "evidence_summary": _loads(self.evidence_summary_json, []),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    def __repr__(self):
        return f"<DiagnosticSnapshot {self.assessment_id} v{self.full_version}>"
