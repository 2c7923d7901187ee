"""
SnapshotService - frozen, renderable view of an assessment.

Written twice per cycle:
  - at submit: processes, raio-x findings and recommendations; plan and
    evidence empty
  - at close:  same row rewritten with the final plan and evidence summary

Scores are stored on the internal 0–10 scale and exposed on the 0–100
client scale.  Also serves version-to-version comparison for reporting.
"""

from __future__ import annotations

from sqlalchemy import select

from diagnostic.core.exceptions import NotFoundError
from diagnostic.models import db
from diagnostic.models.assessment import Assessment
from diagnostic.models.plan import ActionEvidence, PlanSlot
from diagnostic.models.snapshot import DiagnosticSnapshot
from diagnostic.services import catalog_service
from diagnostic.services.scoring import to_external_score


def _action_title(action_key: str) -> str:
    action = catalog_service.find_action(action_key)
    return action.title if action else action_key


def _finding_titles(findings: dict) -> list[str]:
    titles: list[str] = []
    for section in ("vazamentos", "alavancas"):
        for entry in findings.get(section) or []:
            if entry.get("title") and entry["title"] not in titles:
                titles.append(entry["title"])
    return titles


class SnapshotService:
    """Writes and reads the per-assessment diagnostic snapshot."""

    # ── Capture ───────────────────────────────────────────────────────

    @staticmethod
    def _upsert(assessment: Assessment) -> DiagnosticSnapshot:
        snapshot = db.session.execute(
            select(DiagnosticSnapshot).where(DiagnosticSnapshot.assessment_id == assessment.id)
        ).scalar_one_or_none()
        if snapshot is None:
            snapshot = DiagnosticSnapshot(
                assessment_id=assessment.id,
                company_id=assessment.company_id,
                full_version=assessment.full_version,
            )
            db.session.add(snapshot)
        snapshot.segment = assessment.segment
        snapshot.cycle_no = assessment.cycle_no
        return snapshot

    @staticmethod
    def capture_on_submit(assessment: Assessment, *, processes: list[dict],
                          findings: dict, recommendations: list[dict]) -> DiagnosticSnapshot:
        """
        First write: results only, ``plan = []`` and ``evidence_summary = []``.

        Flushes; the caller commits together with the status change.
        """
        snapshot = SnapshotService._upsert(assessment)
        snapshot.set_payload(
            processes=processes,
            findings=findings,
            recommendations=recommendations,
            plan=[],
            evidence_summary=[],
        )
        db.session.flush()
        return snapshot

    @staticmethod
    def capture_on_close(assessment: Assessment) -> DiagnosticSnapshot:
        """Rewrite plan and evidence summary from the closing cycle's slots."""
        slots = db.session.execute(
            select(PlanSlot)
            .where(PlanSlot.assessment_id == assessment.id)
            .order_by(PlanSlot.position)
        ).scalars().all()
        evidence = {
            e.action_key: e
            for e in db.session.execute(
                select(ActionEvidence).where(
                    ActionEvidence.assessment_id == assessment.id,
                    ActionEvidence.cycle_no == assessment.cycle_no,
                )
            ).scalars().all()
        }

        plan = [
            {
                "position": s.position,
                "action_key": s.action_key,
                "title": _action_title(s.action_key),
                "process_key": s.process_key,
                "owner_name": s.owner_name,
                "metric_text": s.metric_text,
                "checkpoint_date": s.checkpoint_date.isoformat() if s.checkpoint_date else None,
                "status": s.status,
                "dropped_reason": s.dropped_reason,
            }
            for s in slots
        ]
        evidence_summary = [
            {
                "action_key": s.action_key,
                "title": _action_title(s.action_key),
                "before_baseline": evidence[s.action_key].before_baseline,
                "after_result": evidence[s.action_key].after_result,
                "declared_gain": evidence[s.action_key].declared_gain,
            }
            for s in slots if s.action_key in evidence
        ]

        snapshot = SnapshotService._upsert(assessment)
        snapshot.set_payload(plan=plan, evidence_summary=evidence_summary)
        db.session.flush()
        return snapshot

    # ── Query ─────────────────────────────────────────────────────────

    @staticmethod
    def _present(snapshot: DiagnosticSnapshot) -> dict:
        data = snapshot.to_dict()
        for proc in data["processes"]:
            proc["score_external"] = to_external_score(proc.get("score"))
        for section in ("vazamentos", "alavancas"):
            for entry in data["findings"].get(section) or []:
                entry["score_external"] = to_external_score(entry.get("score"))
        return data

    @staticmethod
    def _by_version(company_id: str, full_version: int) -> DiagnosticSnapshot:
        snapshot = db.session.execute(
            select(DiagnosticSnapshot).where(
                DiagnosticSnapshot.company_id == company_id,
                DiagnosticSnapshot.full_version == full_version,
            )
        ).scalar_one_or_none()
        if snapshot is None:
            raise NotFoundError(resource="Snapshot", resource_id=f"{company_id}/v{full_version}")
        return snapshot

    @staticmethod
    def get_snapshot(assessment: Assessment) -> dict:
        snapshot = db.session.execute(
            select(DiagnosticSnapshot).where(DiagnosticSnapshot.assessment_id == assessment.id)
        ).scalar_one_or_none()
        if snapshot is None:
            raise NotFoundError(resource="Snapshot", resource_id=assessment.id)
        return SnapshotService._present(snapshot)

    @staticmethod
    def get_snapshot_by_version(company_id: str, full_version: int) -> dict:
        return SnapshotService._present(SnapshotService._by_version(company_id, full_version))

    # ── Comparison ────────────────────────────────────────────────────

    @staticmethod
    def compare_versions(company_id: str, from_version: int, to_version: int) -> dict:
        """
        Compare two diagnostic versions of a company.

        Returns per-process band/score evolution, raio-x titles that entered
        or left, and what the earlier version's plan delivered.
        """
        old = SnapshotService._by_version(company_id, from_version)
        new = SnapshotService._by_version(company_id, to_version)

        old_procs = {p["process_key"]: p for p in old.processes}
        new_procs = {p["process_key"]: p for p in new.processes}

        def _point(proc: dict | None) -> dict | None:
            if proc is None:
                return None
            return {"band": proc.get("band"), "score": to_external_score(proc.get("score"))}

        evolution = [
            {
                "process_key": pk,
                "from": _point(old_procs.get(pk)),
                "to": _point(new_procs.get(pk)),
            }
            for pk in catalog_service.PROCESS_KEYS
        ]

        old_titles = _finding_titles(old.findings)
        new_titles = _finding_titles(new.findings)
        old_evidence = old.to_dict()["evidence_summary"]

        return {
            "company_id": company_id,
            "from_version": from_version,
            "to_version": to_version,
            "evolution_by_process": evolution,
            "raio_x_entered": [t for t in new_titles if t not in old_titles],
            "raio_x_left": [t for t in old_titles if t not in new_titles],
            "actions_completed_previous": sum(1 for s in old.plan if s.get("status") == "DONE"),
            "gains_declared_previous": [
                {"action_key": e["action_key"], "title": e.get("title"),
                 "declared_gain": e.get("declared_gain")}
                for e in old_evidence if e.get("declared_gain")
            ],
        }
